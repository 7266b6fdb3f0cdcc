"""E2B Sandbox Adapter - SandboxProviderPort backed by the E2B async SDK.

Provider exceptions are mapped to typed sandbox errors here so that no
service above this layer ever inspects error message text:
- ``NotFoundException`` -> SandboxNotFoundError
- ``TimeoutException`` / httpx transport errors / other SDK errors -> SandboxTransientError
- ``CommandExitException`` -> CommandResult with the non-zero exit code
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx
from e2b import (
    AsyncSandbox,
    CommandExitException,
    NotFoundException,
    SandboxException,
    TimeoutException,
)

from src.domain.model.sandbox.exceptions import (
    SandboxNotFoundError,
    SandboxTransientError,
)
from src.domain.ports.services.sandbox_port import (
    CommandResult,
    RemoteSandboxInfo,
    SandboxCreateOptions,
    SandboxHandle,
    SandboxProviderPort,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def _translate(
    call: Callable[[], Awaitable[T]],
    sandbox_id: str | None,
    operation: str,
) -> T:
    """Run an SDK call and map its exceptions to typed sandbox errors."""
    try:
        return await call()
    except NotFoundException as e:
        raise SandboxNotFoundError(sandbox_id or "<new>", operation) from e
    except (TimeoutException, httpx.TransportError) as e:
        raise SandboxTransientError(
            f"E2B {operation} timed out or was unreachable: {e}",
            sandbox_id,
            operation,
            cause=e,
        ) from e
    except SandboxException as e:
        raise SandboxTransientError(
            f"E2B {operation} failed: {e}", sandbox_id, operation, cause=e
        ) from e


class E2BSandboxHandle(SandboxHandle):
    """SandboxHandle wrapping an ``AsyncSandbox`` instance."""

    def __init__(self, sandbox: AsyncSandbox, project_id: str | None = None) -> None:
        self._sandbox = sandbox
        self.sandbox_id = sandbox.sandbox_id
        self.project_id = project_id

    @property
    def native(self) -> AsyncSandbox:
        """Expose the SDK object for callers that need provider-specific features."""
        return self._sandbox

    async def run_command(
        self,
        command: str,
        cwd: str | None = None,
        envs: dict[str, str] | None = None,
        timeout: float | None = None,
        background: bool = False,
    ) -> CommandResult:
        kwargs: dict[str, Any] = {"cwd": cwd, "envs": envs or None}
        if timeout is not None:
            kwargs["timeout"] = timeout

        if background:
            handle = await _translate(
                lambda: self._sandbox.commands.run(command, background=True, **kwargs),
                self.sandbox_id,
                "run_command",
            )
            return CommandResult(exit_code=0, pid=getattr(handle, "pid", None))

        async def run_foreground() -> CommandResult:
            # CommandExitException is a SandboxException; keep it out of _translate.
            try:
                result = await self._sandbox.commands.run(command, **kwargs)
            except CommandExitException as e:
                return CommandResult(exit_code=e.exit_code, stdout=e.stdout, stderr=e.stderr)
            return CommandResult(
                exit_code=result.exit_code,
                stdout=result.stdout or "",
                stderr=result.stderr or "",
            )

        return await _translate(run_foreground, self.sandbox_id, "run_command")

    async def write_file(self, path: str, content: str) -> None:
        await _translate(
            lambda: self._sandbox.files.write(path, content),
            self.sandbox_id,
            "write_file",
        )

    async def read_file(self, path: str) -> str:
        return await _translate(
            lambda: self._sandbox.files.read(path),
            self.sandbox_id,
            "read_file",
        )

    def get_host(self, port: int) -> str:
        return self._sandbox.get_host(port)

    async def set_timeout(self, timeout_seconds: int) -> None:
        await _translate(
            lambda: self._sandbox.set_timeout(timeout_seconds),
            self.sandbox_id,
            "set_timeout",
        )


class E2BSandboxAdapter(SandboxProviderPort):
    """
    E2B implementation of SandboxProviderPort.

    Sandboxes are created with ``auto_pause=True`` so the provider pauses
    them on idle timeout instead of killing them.
    """

    def __init__(
        self,
        api_key: str | None,
        template: str | None = None,
        default_timeout_seconds: int = 600,
    ) -> None:
        """
        Initialize the E2B adapter.

        Args:
            api_key: E2B API key (None = read E2B_API_KEY from the environment)
            template: Default template ID for new sandboxes
            default_timeout_seconds: Idle timeout for new and reconnected sandboxes
        """
        self._api_key = api_key
        self._template = template
        self._default_timeout = default_timeout_seconds
        logger.info(
            f"E2BSandboxAdapter initialized: template={template or 'default'}, "
            f"timeout={default_timeout_seconds}s"
        )

    async def create(self, options: SandboxCreateOptions) -> SandboxHandle:
        template = options.template or self._template
        sandbox = await _translate(
            lambda: AsyncSandbox.beta_create(
                template=template,
                timeout=options.timeout_seconds or self._default_timeout,
                auto_pause=True,
                metadata=options.metadata or None,
                envs=options.envs or None,
                api_key=self._api_key,
            ),
            None,
            "create",
        )
        logger.info(f"Created E2B sandbox {sandbox.sandbox_id} (template={template or 'default'})")
        return E2BSandboxHandle(sandbox, options.metadata.get("project_id"))

    async def connect(self, sandbox_id: str, timeout_seconds: int | None = None) -> SandboxHandle:
        sandbox = await _translate(
            lambda: AsyncSandbox.connect(
                sandbox_id,
                timeout=timeout_seconds or self._default_timeout,
                api_key=self._api_key,
            ),
            sandbox_id,
            "connect",
        )
        return E2BSandboxHandle(sandbox)

    async def pause(self, sandbox_id: str) -> None:
        await _translate(
            lambda: AsyncSandbox.beta_pause(sandbox_id, api_key=self._api_key),
            sandbox_id,
            "pause",
        )
        logger.info(f"Paused E2B sandbox {sandbox_id}")

    async def kill(self, sandbox_id: str) -> bool:
        killed = await _translate(
            lambda: AsyncSandbox.kill(sandbox_id, api_key=self._api_key),
            sandbox_id,
            "kill",
        )
        logger.info(f"Kill requested for E2B sandbox {sandbox_id}: killed={killed}")
        return bool(killed)

    async def get_info(self, sandbox_id: str) -> RemoteSandboxInfo:
        info = await _translate(
            lambda: AsyncSandbox.get_info(sandbox_id, api_key=self._api_key),
            sandbox_id,
            "get_info",
        )
        state = getattr(info, "state", None)
        return RemoteSandboxInfo(
            sandbox_id=info.sandbox_id,
            state=getattr(state, "value", str(state or "unknown")),
            started_at=getattr(info, "started_at", None),
            end_at=getattr(info, "end_at", None),
            metadata=dict(getattr(info, "metadata", None) or {}),
        )

