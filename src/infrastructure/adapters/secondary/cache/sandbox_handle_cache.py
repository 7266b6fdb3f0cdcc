"""
Process-local LRU cache of live sandbox handles.

Purely an optimization: the persisted project record is the source of truth
and any entry may vanish at any time. A miss, or an entry whose sandbox_id no
longer matches the record, falls through to the reconnect protocol.

Features:
- LRU eviction bounded by ``max_size``
- Stale-entry detection against the persisted sandbox_id
- Idle tracking for pausing unused sandboxes
"""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable

from src.domain.ports.services.sandbox_port import SandboxHandle

logger = logging.getLogger(__name__)


@dataclass
class CachedSandbox:
    """A cached handle."""

    project_id: str
    handle: SandboxHandle
    cached_at: float
    last_accessed: float
    hits: int = 0

    @property
    def sandbox_id(self) -> str:
        return self.handle.sandbox_id


@dataclass
class SandboxHandleCache:
    """LRU map of project_id to live handle."""

    max_size: int = 256
    clock: Callable[[], float] = time.monotonic
    _entries: "OrderedDict[str, CachedSandbox]" = field(default_factory=OrderedDict, init=False)

    def get(self, project_id: str, expected_sandbox_id: str | None = None) -> SandboxHandle | None:
        """Return the cached handle, or None on miss or when it is stale.

        Args:
            project_id: Project to look up
            expected_sandbox_id: sandbox_id from the persisted record; a cached
                handle for a different sandbox is dropped
        """
        entry = self._entries.get(project_id)
        if entry is None:
            return None

        if expected_sandbox_id is not None and entry.sandbox_id != expected_sandbox_id:
            logger.debug(
                f"Dropping stale cached handle for {project_id}: "
                f"{entry.sandbox_id} != {expected_sandbox_id}"
            )
            self.evict(project_id)
            return None

        entry.last_accessed = self.clock()
        entry.hits += 1
        self._entries.move_to_end(project_id)
        return entry.handle

    def put(self, project_id: str, handle: SandboxHandle) -> None:
        now = self.clock()
        self._entries[project_id] = CachedSandbox(
            project_id=project_id,
            handle=handle,
            cached_at=now,
            last_accessed=now,
        )
        self._entries.move_to_end(project_id)
        while len(self._entries) > self.max_size:
            evicted_id, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted cached sandbox handle for {evicted_id}")

    def evict(self, project_id: str) -> SandboxHandle | None:
        entry = self._entries.pop(project_id, None)
        return entry.handle if entry else None

    def touch(self, project_id: str) -> None:
        entry = self._entries.get(project_id)
        if entry is not None:
            entry.last_accessed = self.clock()

    def idle_entries(self, idle_seconds: float) -> list[CachedSandbox]:
        """Entries not accessed within ``idle_seconds``."""
        cutoff = self.clock() - idle_seconds
        return [e for e in self._entries.values() if e.last_accessed < cutoff]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, project_id: object) -> bool:
        return project_id in self._entries
