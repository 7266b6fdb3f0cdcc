"""Redis Distributed Lock Implementation.

Serializes sandbox lifecycle operations for one project across every
instance of the service.

Features:
- Atomic lock acquisition using SET NX EX
- Automatic expiration so a crashed holder cannot block others forever
- Safe release with owner verification

Usage:
    lock = RedisDistributedLock(redis, "project-123", ttl=120)
    if await lock.acquire(timeout=15):
        try:
            await create_sandbox()
        finally:
            await lock.release()

Key layout: ``{namespace}:{key}``, e.g. ``sandbox:lock:project-123``.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from types import TracebackType
from typing import TYPE_CHECKING

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from redis.asyncio import Redis

DEFAULT_NAMESPACE = "sandbox:lock"

# Only delete if the value matches our owner token
_RELEASE_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
else
    return 0
end
"""


class RedisDistributedLock:
    """
    Distributed lock implementation using Redis.

    Lock Semantics:
        - Non-reentrant: the same instance reports success if already held
        - Auto-expire: Redis drops the key after ``ttl`` seconds
        - Owner verification: only the holder's token can release

    Attributes:
        key: Full Redis key
        owner: Unique token identifying this lock holder
        acquired: Whether lock is currently held
    """

    def __init__(
        self,
        redis: Redis,
        key: str,
        ttl: int = 60,
        retry_interval: float = 0.5,
        namespace: str = DEFAULT_NAMESPACE,
    ) -> None:
        """
        Initialize a distributed lock.

        Args:
            redis: Redis client (async redis-py)
            key: Lock identifier (prefixed with namespace)
            ttl: Lock TTL in seconds
            retry_interval: Seconds between acquisition attempts
            namespace: Key namespace prefix
        """
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")
        self._redis = redis
        self._key = f"{namespace}:{key}"
        self._ttl = ttl
        self._retry_interval = retry_interval
        self._owner = secrets.token_hex(16)
        self._acquired = False
        self._acquired_at: float | None = None

    @property
    def key(self) -> str:
        return self._key

    @property
    def acquired(self) -> bool:
        return self._acquired

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def ttl(self) -> int:
        return self._ttl

    async def acquire(self, blocking: bool = True, timeout: float | None = None) -> bool:
        """
        Acquire the lock.

        Args:
            blocking: If True, poll until acquired or timeout
            timeout: Maximum time to wait in seconds (None = one ttl)

        Returns:
            True if lock acquired, False on contention

        Raises:
            redis.exceptions.RedisError: If Redis cannot be reached
        """
        if self._acquired:
            logger.warning(f"Lock {self._key} already held by this instance")
            return True

        start_time = time.monotonic()
        max_wait = timeout if timeout is not None else float(self._ttl)

        while True:
            try:
                result = await self._redis.set(self._key, self._owner, nx=True, ex=self._ttl)
            except Exception as e:
                logger.error(f"Error acquiring lock {self._key}: {e}")
                raise

            if result:
                self._acquired = True
                self._acquired_at = time.monotonic()
                logger.debug(
                    f"Lock acquired: {self._key} (owner={self._owner[:8]}..., ttl={self._ttl}s)"
                )
                return True

            if not blocking:
                return False

            elapsed = time.monotonic() - start_time
            if elapsed >= max_wait:
                logger.warning(f"Lock acquisition timeout: {self._key} after {elapsed:.1f}s")
                return False

            await asyncio.sleep(min(self._retry_interval, max(max_wait - elapsed, 0.0)))

    async def release(self) -> bool:
        """
        Release the lock.

        Returns:
            True if released, False if not held or taken over after expiry
        """
        if not self._acquired:
            logger.warning(f"Attempting to release non-acquired lock: {self._key}")
            return False

        try:
            result = await self._redis.eval(_RELEASE_SCRIPT, 1, self._key, self._owner)
        finally:
            self._acquired = False
            self._acquired_at = None

        if result:
            logger.debug(f"Lock released: {self._key}")
            return True

        logger.warning(
            f"Lock release failed - not owner: {self._key} (our owner={self._owner[:8]}...)"
        )
        return False

    async def __aenter__(self) -> RedisDistributedLock:
        await self.acquire()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._acquired:
            await self.release()
