"""Redis-backed DevServerStatePort.

Key layout: ``sandbox:envhash:{sandbox_id}`` with a TTL longer than the
provider's sandbox retention window.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from src.domain.ports.services.dev_server_state_port import DevServerStatePort

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

_DEFAULT_TTL = 31 * 24 * 3600


class RedisDevServerState(DevServerStatePort):
    def __init__(
        self,
        redis: Redis,
        namespace: str = "sandbox:envhash",
        ttl_seconds: int = _DEFAULT_TTL,
    ) -> None:
        self._redis = redis
        self._namespace = namespace
        self._ttl = ttl_seconds

    def _key(self, sandbox_id: str) -> str:
        return f"{self._namespace}:{sandbox_id}"

    async def get_env_hash(self, sandbox_id: str) -> str | None:
        value = await self._redis.get(self._key(sandbox_id))
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set_env_hash(self, sandbox_id: str, env_hash: str) -> None:
        await self._redis.set(self._key(sandbox_id), env_hash, ex=self._ttl)
        logger.debug(f"Recorded env hash for sandbox {sandbox_id}: {env_hash[:12]}")

    async def clear(self, sandbox_id: str) -> None:
        await self._redis.delete(self._key(sandbox_id))
