"""Redis Implementation of Distributed Lock Port.

Wraps RedisDistributedLock so the application layer only sees
DistributedLockPort.
"""

from __future__ import annotations

import time
from typing import Any, Optional

from src.domain.ports.services.distributed_lock_port import (
    DistributedLockPort,
    LockAcquisitionError,
    LockHandle,
)
from src.infrastructure.adapters.secondary.cache.redis_lock import (
    DEFAULT_NAMESPACE,
    RedisDistributedLock,
)


class RedisDistributedLockAdapter(DistributedLockPort):
    """
    Redis-based implementation of DistributedLockPort.

    Each acquire() creates a new RedisDistributedLock; held locks are tracked
    by ``key:owner`` so release() can find them again.

    Configuration:
        - namespace: Lock key prefix (default: "sandbox:lock")
        - default_ttl: Default lock TTL in seconds
        - retry_interval: Seconds between acquisition attempts
    """

    def __init__(
        self,
        redis: Any,
        namespace: str = DEFAULT_NAMESPACE,
        default_ttl: int = 60,
        retry_interval: float = 0.5,
    ):
        self._redis = redis
        self._namespace = namespace
        self._default_ttl = default_ttl
        self._retry_interval = retry_interval
        self._active_locks: dict[str, RedisDistributedLock] = {}

    def _full_key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    async def acquire(
        self,
        key: str,
        ttl: int = 60,
        blocking: bool = True,
        timeout: Optional[float] = None,
    ) -> Optional[LockHandle]:
        ttl = ttl or self._default_ttl
        lock = RedisDistributedLock(
            redis=self._redis,
            key=key,
            ttl=ttl,
            retry_interval=self._retry_interval,
            namespace=self._namespace,
        )

        try:
            acquired = await lock.acquire(blocking=blocking, timeout=timeout)
        except Exception as e:
            raise LockAcquisitionError(f"Failed to acquire lock {key}: {e}") from e

        if not acquired:
            return None

        handle = LockHandle(key=key, owner=lock.owner, acquired_at=time.time(), ttl=ttl)
        self._active_locks[f"{key}:{lock.owner}"] = lock
        return handle

    async def release(self, handle: LockHandle) -> bool:
        lock = self._active_locks.pop(f"{handle.key}:{handle.owner}", None)
        if lock is None:
            return False
        return await lock.release()

    async def is_locked(self, key: str) -> bool:
        return await self._redis.get(self._full_key(key)) is not None

    async def cleanup(self) -> None:
        """Release all locks held by this adapter. Called during shutdown."""
        for lock in list(self._active_locks.values()):
            await lock.release()
        self._active_locks.clear()
