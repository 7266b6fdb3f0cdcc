"""Distributed Lock Port Interface.

Defines the abstract interface for the cross-instance lock that serializes
lifecycle operations per project. The application layer depends on this
port; infrastructure provides the Redis implementation.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Optional

from src.domain.model.sandbox.exceptions import LockContentionError

logger = logging.getLogger(__name__)

ReleaseFunction = Callable[[], Awaitable[bool]]


@dataclass
class LockHandle:
    """
    Handle representing an acquired lock.

    The handle carries the owner token needed to verify ownership on
    release.
    """

    key: str
    owner: str
    acquired_at: float
    ttl: int

    def __str__(self) -> str:
        return f"LockHandle(key={self.key}, owner={self.owner[:8]}...)"


class LockError(Exception):
    """Base exception for lock-related errors."""


class LockAcquisitionError(LockError):
    """Raised when lock acquisition fails due to an infrastructure error (not contention)."""


class DistributedLockPort(ABC):
    """
    Abstract interface for distributed locking.

    Lock Semantics:
        - Locks are identified by a string key
        - Locks expire after their TTL so a crashed holder cannot deadlock others;
          the TTL must exceed the longest critical section it guards
        - Only the lock holder can release the lock
        - Locks are non-reentrant

    Usage:
        release = await lock_port.acquire_release(project_id, ttl=120, timeout=15)
        try:
            await do_work()
        finally:
            await release()
    """

    @abstractmethod
    async def acquire(
        self,
        key: str,
        ttl: int = 60,
        blocking: bool = True,
        timeout: Optional[float] = None,
    ) -> Optional[LockHandle]:
        """
        Acquire a distributed lock.

        Args:
            key: Lock identifier (unique within the lock namespace)
            ttl: Lock TTL in seconds (auto-release if not released)
            blocking: If True, poll until lock acquired or timeout
            timeout: Maximum wait time in seconds

        Returns:
            LockHandle if acquired, None on timeout or when non-blocking

        Raises:
            LockAcquisitionError: If the lock store is unreachable
        """

    @abstractmethod
    async def release(self, handle: LockHandle) -> bool:
        """Release a lock. Returns False if no longer held by this handle."""

    @abstractmethod
    async def is_locked(self, key: str) -> bool:
        """Check if a key is currently locked by any process."""

    async def acquire_release(
        self,
        key: str,
        ttl: int = 60,
        timeout: float = 60.0,
    ) -> ReleaseFunction:
        """
        Acquire a lock and return a function that releases it exactly once.

        Calling the returned function again is a no-op that returns False.

        Args:
            key: Lock identifier
            ttl: Lock TTL in seconds
            timeout: Maximum wait time in seconds

        Returns:
            Async release callable

        Raises:
            LockContentionError: If the lock was not freed within ``timeout``
        """
        started = time.monotonic()
        handle = await self.acquire(key, ttl=ttl, blocking=True, timeout=timeout)
        if handle is None:
            raise LockContentionError(key, time.monotonic() - started)

        released = False
        release_guard = asyncio.Lock()

        async def release() -> bool:
            nonlocal released
            async with release_guard:
                if released:
                    return False
                released = True
            try:
                return await self.release(handle)
            except Exception as e:
                # The TTL still bounds the lock lifetime.
                logger.error(f"Failed to release lock {key}: {e}")
                return False

        return release
