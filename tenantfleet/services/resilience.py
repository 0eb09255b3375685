from __future__ import annotations

import asyncio
import logging
import random
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Generic, Sequence, TypeVar
from uuid import uuid4

from redis.asyncio import Redis
from sqlalchemy.exc import DBAPIError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from tenantfleet.core.config import get_settings
from tenantfleet.core.errors import OperationCancelled, TenantBusy
from tenantfleet.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

TransientException = (TimeoutError, OSError, PoolTimeoutError)

# Driver errors that mean "the server was unreachable or refused us for now".
_TRANSIENT_DRIVER_ERRORS = {
    "CannotConnectNowError",
    "TooManyConnectionsError",
    "ConnectionDoesNotExistError",
    "ConnectionFailureError",
    "AdminShutdownError",
}


def is_transient(exc: BaseException) -> bool:
    # Retry only connectivity and timeout failures; schema conflicts are structural.
    if isinstance(exc, TransientException):
        return True
    if isinstance(exc, DBAPIError):
        if exc.connection_invalidated:
            return True
        for candidate in (exc.orig, getattr(exc.orig, "__cause__", None)):
            if candidate is None:
                continue
            if isinstance(candidate, (TimeoutError, OSError)):
                return True
            if type(candidate).__name__ in _TRANSIENT_DRIVER_ERRORS:
                return True
        # sqlite reports writer contention this way.
        if "database is locked" in str(exc.orig):
            return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    timeout_s: float
    max_attempts: int
    backoff_ms: int


@dataclass(frozen=True)
class RetryOutcome(Generic[T]):
    # Explicit result so callers see attempt counts without unwinding exceptions.
    attempts: int
    value: T | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


def backoff_delay(policy: RetryPolicy, attempt: int) -> float:
    # Exponential backoff with jitter so fleet retries don't synchronize.
    jitter = random.uniform(0.5, 1.5)
    return (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter


async def attempt_with_retry(
    func: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[BaseException], bool] | None = None,
    label: str = "operation",
) -> RetryOutcome[T]:
    retryable = retryable or is_transient
    attempt = 1
    while True:
        try:
            value = await asyncio.wait_for(func(), timeout=policy.timeout_s)
            return RetryOutcome(attempts=attempt, value=value)
        except Exception as exc:  # noqa: BLE001 - returned to the caller as an explicit outcome
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                return RetryOutcome(attempts=attempt, error=exc)
            increment_counter("lifecycle_retries_total")
            delay = backoff_delay(policy, attempt)
            logger.warning("retrying label=%s attempt=%s delay_s=%.2f error=%s", label, attempt, delay, exc)
            await asyncio.sleep(delay)
            attempt += 1


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[BaseException], bool] | None = None,
    label: str = "operation",
) -> T:
    outcome = await attempt_with_retry(func, policy=policy, retryable=retryable, label=label)
    return outcome.unwrap()


# Cooperative cancellation signal checked at tenant-unit boundaries
class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by caller") -> None:
        self.reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self, *, tenant_id: str | None = None, checkpoint: str | None = None) -> None:
        if self.cancelled:
            raise OperationCancelled(self.reason or "cancelled", tenant_id=tenant_id, checkpoint=checkpoint)


# One asyncio lock per key so unrelated tenants never wait on each other
class KeyedLocks:
    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        # Holders and waiters both count; the lock is dropped only when nobody references it.
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._users[key] - 1
            if remaining:
                self._users[key] = remaining
            else:
                self._users.pop(key, None)
                self._locks.pop(key, None)

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None


async def get_lock_redis() -> Redis | None:
    # Reuse one Redis client per loop for tenant leases; None means local-only locking.
    settings = get_settings()
    if not settings.tenant_lock_redis_enabled:
        return None
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    try:
        _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        _redis_loop = current_loop
    except Exception as exc:  # noqa: BLE001 - Redis might be unavailable in dev
        logger.warning("lock_redis_unavailable", exc_info=exc)
        return None
    return _redis_pool


def _lease_key(tenant_id: str) -> str:
    return f"{get_settings().tenant_lock_redis_prefix}:{tenant_id}"


async def acquire_tenant_lease(tenant_id: str, purpose: str) -> str | None:
    # Serialize maintenance on one tenant across processes; None when Redis is absent.
    redis = await get_lock_redis()
    if redis is None:
        return None
    lease_id = f"{purpose}:{uuid4().hex}"
    try:
        acquired = await redis.set(_lease_key(tenant_id), lease_id, nx=True, ex=get_settings().tenant_lock_ttl_s)
    except Exception as exc:  # noqa: BLE001 - fall back to in-process locks and registry CAS
        logger.warning("tenant_lease_acquire_failed tenant=%s", tenant_id, exc_info=exc)
        return None
    if not acquired:
        holder = await redis.get(_lease_key(tenant_id))
        raise TenantBusy(f"tenant {tenant_id!r} is busy ({holder})", tenant_id=tenant_id)
    return lease_id


async def release_tenant_lease(tenant_id: str, lease_id: str | None) -> None:
    if not lease_id:
        return
    redis = await get_lock_redis()
    if redis is None:
        return
    try:
        current = await redis.get(_lease_key(tenant_id))
        if current == lease_id:
            await redis.delete(_lease_key(tenant_id))
    except Exception as exc:  # noqa: BLE001 - best-effort lease cleanup, TTL expires it anyway
        logger.warning("tenant_lease_release_failed tenant=%s", tenant_id, exc_info=exc)


# Single writer per tenant for maintenance work: local lock plus optional Redis lease
class TenantGuard:
    def __init__(self) -> None:
        self._locks = KeyedLocks()

    @asynccontextmanager
    async def hold(self, tenant_id: str, purpose: str) -> AsyncIterator[None]:
        async with self._locks.hold(tenant_id):
            lease_id = await acquire_tenant_lease(tenant_id, purpose)
            try:
                yield
            finally:
                await release_tenant_lease(tenant_id, lease_id)

    def is_held(self, tenant_id: str) -> bool:
        return self._locks.locked(tenant_id)


async def fan_out(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    *,
    concurrency: int,
    on_error: Callable[[T, Exception], R],
    on_cancelled: Callable[[T], R],
    cancel: CancellationToken | None = None,
) -> list[R]:
    # Results keep input order. A failing item becomes ``on_error(item, exc)`` without stopping the
    # other workers; once ``cancel`` fires, unstarted items become ``on_cancelled(item)``.
    results: list[Any] = [None] * len(items)
    queue: asyncio.Queue[tuple[int, T]] = asyncio.Queue()
    for index, item in enumerate(items):
        queue.put_nowait((index, item))

    async def _run() -> None:
        while True:
            try:
                index, item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            if cancel is not None and cancel.cancelled:
                results[index] = on_cancelled(item)
                continue
            try:
                results[index] = await worker(item)
            except Exception as exc:  # noqa: BLE001 - isolate per-item failures
                logger.exception("fan_out_item_failed")
                results[index] = on_error(item, exc)

    worker_count = max(1, min(concurrency, len(items)))
    tasks = [asyncio.create_task(_run()) for _ in range(worker_count)]
    try:
        await asyncio.gather(*tasks)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
    return results
