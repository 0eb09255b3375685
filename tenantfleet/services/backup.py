from __future__ import annotations

import asyncio
import base64
import gzip
import hashlib
import hmac
import logging
import os
import re
import time
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from tenantfleet.core.config import Settings, get_settings
from tenantfleet.core.errors import (
    BackupVerificationFailed,
    OperationCancelled,
    RestoreFailed,
    TenantSuspended,
    UnknownTenant,
    error_code_for,
)
from tenantfleet.domain.lifecycle import LifecycleState
from tenantfleet.domain.records import BackupRecord, TenantFilter, TenantRecord
from tenantfleet.persistence.servers import TenantDatabaseServer
from tenantfleet.persistence.tenant_schema import current_revision_at
from tenantfleet.services.registry import RegistryStore, utc_now
from tenantfleet.services.resilience import (
    CancellationToken,
    RetryPolicy,
    TenantGuard,
    fan_out,
    retry_async,
)
from tenantfleet.services.router import ConnectionRouter
from tenantfleet.services.storage import BlobStorage, LocalBlobStorage
from tenantfleet.services.telemetry import increment_counter, record_operation


logger = logging.getLogger(__name__)

# Tenants whose data is trustworthy enough to snapshot.
BACKUP_STATES = frozenset({LifecycleState.ACTIVE, LifecycleState.SUSPENDED, LifecycleState.DEACTIVATED})
RESTORE_FROM_STATES = frozenset({LifecycleState.ACTIVE, LifecycleState.RESTORE_FAILED})
# last_backup_at may advance in any state except mid-restore.
_BACKUP_STAMP_STATES = frozenset(set(LifecycleState) - {LifecycleState.RESTORING})

_KEY_SAFE_RE = re.compile(r"[^A-Za-z0-9_.-]+")
_GCM_NONCE_BYTES = 12
_GCM_TAG_BYTES = 16


@dataclass(frozen=True)
class BackupOutcome:
    # Per-tenant result of a fleet backup run.
    tenant_id: str
    status: str
    backup_id: str | None = None
    size_bytes: int | None = None
    error_code: str | None = None
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _decode_key(raw: str) -> bytes:
    # Accept hex or base64 encoded keys to align with operator tooling.
    cleaned = raw.strip()
    try:
        return bytes.fromhex(cleaned)
    except ValueError:
        return base64.b64decode(cleaned)


def _encryption_key(settings: Settings) -> bytes:
    # Enforce configured encryption keys when encryption is enabled.
    if not settings.backup_encryption_key:
        raise ValueError("BACKUP_ENCRYPTION_KEY is required when encryption is enabled")
    key = _decode_key(settings.backup_encryption_key)
    if len(key) not in {16, 24, 32}:
        raise ValueError("BACKUP_ENCRYPTION_KEY must be 128/192/256-bit")
    return key


def _signing_key(settings: Settings) -> bytes:
    # Enforce configured signing keys when signing is enabled.
    if not settings.backup_signing_key:
        raise ValueError("BACKUP_SIGNING_KEY is required when signing is enabled")
    return settings.backup_signing_key.encode("utf-8")


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def encrypt_bytes(data: bytes, key: bytes) -> bytes:
    # AES-GCM layout: nonce | ciphertext | tag.
    nonce = os.urandom(_GCM_NONCE_BYTES)
    encryptor = Cipher(algorithms.AES(key), modes.GCM(nonce)).encryptor()
    body = encryptor.update(data) + encryptor.finalize()
    return nonce + body + encryptor.tag


def decrypt_bytes(blob: bytes, key: bytes) -> bytes:
    if len(blob) < _GCM_NONCE_BYTES + _GCM_TAG_BYTES:
        raise ValueError("Encrypted snapshot is too small to contain nonce + tag")
    nonce = blob[:_GCM_NONCE_BYTES]
    tag = blob[-_GCM_TAG_BYTES:]
    decryptor = Cipher(algorithms.AES(key), modes.GCM(nonce, tag)).decryptor()
    return decryptor.update(blob[_GCM_NONCE_BYTES:-_GCM_TAG_BYTES]) + decryptor.finalize()


def sign_record(record: BackupRecord, signing_key: bytes) -> str:
    # Produce HMAC SHA256 signatures over the immutable record fields.
    return hmac.new(signing_key, record.signing_payload(), hashlib.sha256).hexdigest()


def verify_signature(record: BackupRecord, signing_key: bytes) -> bool:
    # Validate record signatures using constant-time comparison.
    if not record.signature:
        return False
    return hmac.compare_digest(sign_record(record, signing_key), record.signature)


def storage_key_for(tenant_id: str, backup_id: str, taken_at: datetime) -> str:
    safe_tenant = _KEY_SAFE_RE.sub("_", tenant_id).strip("._") or "tenant"
    return f"{safe_tenant}/{taken_at:%Y%m%dT%H%M%SZ}_{backup_id}.snap"


class BackupCoordinator:
    def __init__(
        self,
        registry: RegistryStore,
        server: TenantDatabaseServer,
        *,
        router: ConnectionRouter | None = None,
        storage: BlobStorage | None = None,
        guard: TenantGuard | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._registry = registry
        self._server = server
        self._router = router
        self._storage = storage or LocalBlobStorage(Path(self._settings.backup_local_dir))
        self._guard = guard or TenantGuard()

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            timeout_s=float(self._settings.backup_timeout_s),
            max_attempts=self._settings.backup_max_attempts,
            backoff_ms=self._settings.backup_backoff_ms,
        )

    async def _require_tenant(self, tenant_id: str) -> TenantRecord:
        record = await self._registry.get(tenant_id)
        if record is None:
            raise UnknownTenant(tenant_id)
        return record

    async def backup(self, tenant_id: str, *, cancel: CancellationToken | None = None) -> BackupRecord:
        record = await self._require_tenant(tenant_id)
        if record.lifecycle_state not in BACKUP_STATES:
            raise TenantSuspended(tenant_id, record.lifecycle_state.value)
        started = time.monotonic()
        async with self._guard.hold(tenant_id, "backup"):
            try:
                backup = await self._backup_locked(record, cancel)
            except Exception:
                record_operation(
                    operation="backup",
                    tenant_id=tenant_id,
                    latency_ms=(time.monotonic() - started) * 1000.0,
                    success=False,
                )
                increment_counter("backups_failed_total")
                raise
        record_operation(
            operation="backup",
            tenant_id=tenant_id,
            latency_ms=(time.monotonic() - started) * 1000.0,
            success=True,
        )
        increment_counter("backups_completed_total")
        return backup

    async def _backup_locked(self, record: TenantRecord, cancel: CancellationToken | None) -> BackupRecord:
        tenant_id = record.tenant_id
        settings = self._settings
        if cancel is not None:
            cancel.raise_if_cancelled(tenant_id=tenant_id, checkpoint="backup_not_started")

        schema_revision = await current_revision_at(self._server, record.database_locator)
        raw = await retry_async(
            lambda: self._server.snapshot(record.database_locator),
            policy=self.retry_policy,
            label=f"snapshot:{tenant_id}",
        )
        if cancel is not None:
            # Nothing has been stored yet; dropping the snapshot leaves no trace.
            cancel.raise_if_cancelled(tenant_id=tenant_id, checkpoint="snapshot_taken")

        payload = gzip.compress(raw)
        encrypted = settings.backup_encryption_enabled
        if encrypted:
            payload = encrypt_bytes(payload, _encryption_key(settings))
        checksum = sha256_hex(payload)

        backup_id = uuid4().hex
        taken_at = utc_now()
        storage_locator = await self._storage.put(storage_key_for(tenant_id, backup_id, taken_at), payload)
        try:
            stored = await self._storage.get(storage_locator)
        except Exception as exc:  # noqa: BLE001 - any read-back failure means the upload is unverified
            await self._discard_blob(storage_locator)
            raise BackupVerificationFailed(
                f"stored snapshot for {tenant_id!r} could not be read back: {exc}", tenant_id=tenant_id
            ) from exc
        if sha256_hex(stored) != checksum:
            await self._discard_blob(storage_locator)
            raise BackupVerificationFailed(
                f"stored snapshot checksum mismatch for tenant {tenant_id!r}", tenant_id=tenant_id
            )

        backup = BackupRecord(
            backup_id=backup_id,
            tenant_id=tenant_id,
            storage_locator=storage_locator,
            taken_at=taken_at,
            size_bytes=len(payload),
            checksum=checksum,
            schema_revision=schema_revision,
            encrypted=encrypted,
        )
        if settings.backup_signing_enabled:
            backup = replace(backup, signature=sign_record(backup, _signing_key(settings)))
        await self._registry.add_backup(backup)
        await self._registry.conditional_update(
            tenant_id,
            expected_state=_BACKUP_STAMP_STATES,
            fields={"last_backup_at": taken_at},
        )
        logger.info(
            "tenant_backup_completed tenant=%s backup=%s size=%s encrypted=%s",
            tenant_id,
            backup_id,
            backup.size_bytes,
            encrypted,
        )
        return backup

    async def _discard_blob(self, storage_locator: str) -> None:
        try:
            await self._storage.delete(storage_locator)
        except Exception as exc:  # noqa: BLE001 - verification error is the one to surface
            logger.warning("backup_blob_discard_failed locator=%s", storage_locator, exc_info=exc)

    async def restore(
        self,
        tenant_id: str,
        backup: BackupRecord,
        *,
        cancel: CancellationToken | None = None,
    ) -> TenantRecord:
        if backup.tenant_id != tenant_id:
            raise ValueError(f"backup {backup.backup_id} belongs to tenant {backup.tenant_id!r}, not {tenant_id!r}")
        record = await self._require_tenant(tenant_id)
        if cancel is not None:
            cancel.raise_if_cancelled(tenant_id=tenant_id, checkpoint="restore_not_started")
        started = time.monotonic()

        async with self._guard.hold(tenant_id, "restore"):
            # Phase 1: take the tenant out of rotation and drain its pool.
            previous = record.lifecycle_state
            await self._registry.conditional_update(
                tenant_id,
                expected_state=RESTORE_FROM_STATES,
                new_state=LifecycleState.RESTORING,
            )
            logger.info("tenant_restore_started tenant=%s backup=%s", tenant_id, backup.backup_id)
            # Live data is untouched until phase 2, so a cancel here hands the tenant back as it was.
            fallback = previous if previous in RESTORE_FROM_STATES else LifecycleState.ACTIVE
            if self._router is not None:
                try:
                    await self._router.evict(tenant_id)
                except asyncio.CancelledError:
                    await self._registry.conditional_update(
                        tenant_id, expected_state=LifecycleState.RESTORING, new_state=fallback
                    )
                    raise

            if cancel is not None and cancel.cancelled:
                await self._registry.conditional_update(
                    tenant_id, expected_state=LifecycleState.RESTORING, new_state=fallback
                )
                raise OperationCancelled(cancel.reason or "cancelled", tenant_id=tenant_id, checkpoint="restoring")

            # Phase 2: verify, decode and swap the database contents.
            try:
                raw = await self._load_verified(backup)
                await self._server.load_snapshot(record.database_locator, raw)
            except asyncio.CancelledError:
                # The snapshot may be half-loaded; the tenant stays out of rotation for an operator.
                await self._mark_restore_failed(tenant_id, backup, started, "task cancelled")
                raise
            except Exception as exc:  # noqa: BLE001 - every failure lands in RESTORE_FAILED
                await self._mark_restore_failed(tenant_id, backup, started, exc)
                raise RestoreFailed(
                    f"restore of tenant {tenant_id!r} from {backup.backup_id} failed: {exc}",
                    tenant_id=tenant_id,
                    cause=exc,
                ) from exc

            # Phase 3: back into rotation at the snapshot's schema revision.
            fields: dict[str, Any] = {}
            if backup.schema_revision:
                fields["last_migrated_version"] = backup.schema_revision
            restored = await self._registry.conditional_update(
                tenant_id,
                expected_state=LifecycleState.RESTORING,
                new_state=LifecycleState.ACTIVE,
                fields=fields,
            )
        increment_counter("restores_completed_total")
        record_operation(
            operation="restore",
            tenant_id=tenant_id,
            latency_ms=(time.monotonic() - started) * 1000.0,
            success=True,
        )
        logger.info("tenant_restore_completed tenant=%s backup=%s", tenant_id, backup.backup_id)
        return restored

    async def _mark_restore_failed(
        self, tenant_id: str, backup: BackupRecord, started: float, error: BaseException | str
    ) -> None:
        await self._registry.conditional_update(
            tenant_id,
            expected_state=LifecycleState.RESTORING,
            new_state=LifecycleState.RESTORE_FAILED,
        )
        increment_counter("restores_failed_total")
        record_operation(
            operation="restore",
            tenant_id=tenant_id,
            latency_ms=(time.monotonic() - started) * 1000.0,
            success=False,
        )
        logger.error("tenant_restore_failed tenant=%s backup=%s error=%s", tenant_id, backup.backup_id, error)

    async def _load_verified(self, backup: BackupRecord) -> bytes:
        settings = self._settings
        if backup.signature or settings.restore_require_signature:
            if not settings.backup_signing_key:
                raise BackupVerificationFailed(
                    "backup signature cannot be checked without BACKUP_SIGNING_KEY", tenant_id=backup.tenant_id
                )
            if not verify_signature(backup, _signing_key(settings)):
                raise BackupVerificationFailed(
                    f"signature verification failed for backup {backup.backup_id}", tenant_id=backup.tenant_id
                )
        payload = await self._storage.get(backup.storage_locator)
        if sha256_hex(payload) != backup.checksum:
            raise BackupVerificationFailed(
                f"checksum mismatch for backup {backup.backup_id}", tenant_id=backup.tenant_id
            )
        if backup.encrypted:
            payload = decrypt_bytes(payload, _encryption_key(settings))
        return gzip.decompress(payload)

    async def backup_fleet(
        self,
        tenant_filter: TenantFilter | None = None,
        *,
        cancel: CancellationToken | None = None,
        concurrency: int | None = None,
    ) -> list[BackupOutcome]:
        tenant_filter = tenant_filter or TenantFilter(
            states=frozenset({LifecycleState.ACTIVE, LifecycleState.SUSPENDED})
        )
        records = await self._registry.list(tenant_filter)
        logger.info("backup_fleet_started tenants=%s", len(records))

        async def _unit(record: TenantRecord) -> BackupOutcome:
            backup = await self.backup(record.tenant_id, cancel=cancel)
            return BackupOutcome(
                tenant_id=record.tenant_id,
                status="succeeded",
                backup_id=backup.backup_id,
                size_bytes=backup.size_bytes,
            )

        def _on_error(record: TenantRecord, exc: Exception) -> BackupOutcome:
            return BackupOutcome(
                tenant_id=record.tenant_id,
                status="cancelled" if isinstance(exc, OperationCancelled) else "failed",
                error_code=error_code_for(exc),
                error_message=str(exc)[:2000],
            )

        def _on_cancelled(record: TenantRecord) -> BackupOutcome:
            return BackupOutcome(tenant_id=record.tenant_id, status="cancelled")

        outcomes = await fan_out(
            records,
            _unit,
            concurrency=max(1, concurrency or self._settings.backup_concurrency),
            on_error=_on_error,
            on_cancelled=_on_cancelled,
            cancel=cancel,
        )
        failed = sum(1 for item in outcomes if item.status != "succeeded")
        logger.info("backup_fleet_completed tenants=%s failed=%s", len(outcomes), failed)
        return outcomes

    async def list_backups(self, tenant_id: str) -> list[BackupRecord]:
        await self._require_tenant(tenant_id)
        return await self._registry.list_backups(tenant_id)

    # Delete backups past retention, always keeping the newest few per tenant
    async def prune_backups(self, tenant_id: str | None = None, *, now: datetime | None = None) -> list[BackupRecord]:
        settings = self._settings
        if settings.backup_retention_days <= 0:
            return []
        cutoff = (now or utc_now()) - timedelta(days=settings.backup_retention_days)
        if tenant_id is not None:
            tenant_ids = [tenant_id]
        else:
            every_state = TenantFilter(states=frozenset(LifecycleState))
            tenant_ids = [record.tenant_id for record in await self._registry.list(every_state)]

        pruned: list[BackupRecord] = []
        for current in tenant_ids:
            backups = await self._registry.list_backups(current)
            for backup in backups[max(0, settings.backup_retention_min_keep):]:
                if backup.taken_at >= cutoff:
                    continue
                # Drop the record first so a half-pruned backup is never offered for restore.
                await self._registry.delete_backup(backup.backup_id)
                await self._discard_blob(backup.storage_locator)
                pruned.append(backup)
        if pruned:
            increment_counter("backups_pruned_total", len(pruned))
            logger.info("backups_pruned count=%s", len(pruned))
        return pruned
