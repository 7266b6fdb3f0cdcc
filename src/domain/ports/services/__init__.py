# flake8: noqa
from src.domain.ports.services.backup_store_port import BackupMetadata, BackupStorePort
from src.domain.ports.services.dev_server_state_port import DevServerStatePort
from src.domain.ports.services.distributed_lock_port import (
    DistributedLockPort,
    LockAcquisitionError,
    LockError,
    LockHandle,
    ReleaseFunction,
)
from src.domain.ports.services.sandbox_port import (
    LIVENESS_COMMAND,
    LIVENESS_MARKER,
    CommandResult,
    RemoteSandboxInfo,
    SandboxCreateOptions,
    SandboxHandle,
    SandboxProviderPort,
)

__all__ = [
    "BackupMetadata",
    "BackupStorePort",
    "CommandResult",
    "DevServerStatePort",
    "DistributedLockPort",
    "LockAcquisitionError",
    "LockError",
    "LIVENESS_COMMAND",
    "LIVENESS_MARKER",
    "LockHandle",
    "ReleaseFunction",
    "RemoteSandboxInfo",
    "SandboxCreateOptions",
    "SandboxHandle",
    "SandboxProviderPort",
]
