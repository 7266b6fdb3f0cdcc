"""Dev Server State Port - remembers the environment a dev server was started with."""

from abc import ABC, abstractmethod


class DevServerStatePort(ABC):
    """Per-sandbox record of the last environment hash a dev server started with.

    Shared across instances so that an env change observed by one instance
    forces a restart no matter which instance handles the next request.
    """

    @abstractmethod
    async def get_env_hash(self, sandbox_id: str) -> str | None:
        """Hash recorded at the last dev server (re)start, None if never recorded."""

    @abstractmethod
    async def set_env_hash(self, sandbox_id: str, env_hash: str) -> None:
        """Record the hash used for the current dev server process."""

    @abstractmethod
    async def clear(self, sandbox_id: str) -> None:
        """Forget the record, e.g. after the sandbox was killed."""
