"""Dev server value objects used by the readiness prober."""

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping


class DevServerProcessState(Enum):
    """What a process-list query plus an internal probe found."""

    NONE = "none"  # No dev server process
    ALIVE = "alive"  # Process up and answering on its port
    ZOMBIE = "zombie"  # Process up but not answering


class DevServerAction(Enum):
    """What ensure_dev_server had to do."""

    NONE = "none"
    STARTED = "started"
    RESTARTED = "restarted"


@dataclass
class ReadinessResult:
    """Outcome of a readiness check.

    ``ready`` is False when the readiness window elapsed; the URL is still
    returned so the caller can show a "starting up" state.
    """

    url: str
    ready: bool
    action: DevServerAction = DevServerAction.NONE
    process_state: DevServerProcessState = DevServerProcessState.NONE
    env_changed: bool = False
    waited_seconds: float = 0.0
    reason: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        return not self.ready

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "ready": self.ready,
            "action": self.action.value,
            "process_state": self.process_state.value,
            "env_changed": self.env_changed,
            "waited_seconds": round(self.waited_seconds, 2),
            "reason": self.reason,
            "details": self.details,
        }


def compute_env_hash(envs: Mapping[str, str]) -> str:
    """Stable digest of an environment map, independent of key order."""
    payload = json.dumps(sorted(envs.items()), separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


COMPILATION_ERROR_MARKERS = ("Failed to compile", "Module not found", "SyntaxError", "TypeError")
RUNTIME_ERROR_MARKERS = ("Error:", "Unhandled Runtime Error")


@dataclass
class DevServerLogs:
    """Tail of the dev server log with a coarse error classification."""

    logs: str
    lines_returned: int
    error_type: str | None = None  # "compilation", "runtime" or None

    @property
    def has_error(self) -> bool:
        return self.error_type is not None

    @classmethod
    def from_output(cls, output: str) -> "DevServerLogs":
        if any(marker in output for marker in COMPILATION_ERROR_MARKERS):
            error_type = "compilation"
        elif any(marker in output for marker in RUNTIME_ERROR_MARKERS):
            error_type = "runtime"
        else:
            error_type = None
        lines = output.splitlines()
        return cls(logs=output, lines_returned=len(lines), error_type=error_type)

    def to_dict(self) -> dict[str, Any]:
        return {
            "logs": self.logs,
            "has_error": self.has_error,
            "error_type": self.error_type,
            "lines_returned": self.lines_returned,
        }
