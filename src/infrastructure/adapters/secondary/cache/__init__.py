"""
Cache adapters backed by Redis, plus the process-local sandbox handle cache.
"""

from src.infrastructure.adapters.secondary.cache.redis_dev_server_state import RedisDevServerState
from src.infrastructure.adapters.secondary.cache.redis_lock import RedisDistributedLock
from src.infrastructure.adapters.secondary.cache.redis_lock_adapter import (
    RedisDistributedLockAdapter,
)
from src.infrastructure.adapters.secondary.cache.sandbox_handle_cache import SandboxHandleCache

__all__ = [
    "RedisDevServerState",
    "RedisDistributedLock",
    "RedisDistributedLockAdapter",
    "SandboxHandleCache",
]
