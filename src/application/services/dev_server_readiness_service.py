"""Dev Server Readiness Service - makes the in-sandbox dev server reachable.

Checks, in order:
1. Process state from a process-list query plus an in-sandbox HTTP probe
2. Environment hash recorded at the last start
3. External reachability of the preview URL

A missing process is started; a zombie, a changed environment or an
unreachable preview URL forces a restart. Readiness then needs one
consecutive external success after a fresh start and two after a restart.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

import httpx

from src.domain.model.sandbox.dev_server import (
    DevServerAction,
    DevServerLogs,
    DevServerProcessState,
    ReadinessResult,
    compute_env_hash,
)
from src.domain.model.sandbox.exceptions import (
    OperationTimeoutError,
    ReadinessTimeoutError,
    SandboxError,
    SandboxNotFoundError,
)
from src.domain.model.sandbox.operation_budget import OperationBudget
from src.domain.ports.repositories.project_sandbox_repository import ProjectSandboxRepository
from src.domain.ports.services.dev_server_state_port import DevServerStatePort
from src.domain.ports.services.sandbox_port import SandboxHandle
from src.infrastructure.security.encryption_service import EncryptionService

logger = logging.getLogger(__name__)

# Bracketed so the pattern never matches the shell running pgrep itself.
DEV_SERVER_PROCESS_PATTERN = "[n]ext dev"
FRESH_START_SUCCESSES = 1
RESTART_SUCCESSES = 2
DEV_SERVER_LOG_PATH = "/tmp/dev-server.log"


class DevServerReadinessService:
    """Detects, (re)starts and waits for the dev server inside a sandbox."""

    def __init__(
        self,
        dev_server_state: DevServerStatePort,
        repository: ProjectSandboxRepository,
        encryption: EncryptionService,
        port: int = 3000,
        project_dir: str = "/home/user/project",
        ready_window_seconds: float = 30.0,
        poll_interval: float = 1.0,
        probe_timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._state = dev_server_state
        self._repository = repository
        self._encryption = encryption
        self._port = port
        self._project_dir = project_dir
        self._ready_window = ready_window_seconds
        self._poll_interval = poll_interval
        self._probe_timeout = probe_timeout
        self._transport = transport
        self._sleep = sleep
        self._clock = clock
        self._http_client: httpx.AsyncClient | None = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._probe_timeout),
                follow_redirects=False,
                transport=self._transport,
            )
        return self._http_client

    async def close(self) -> None:
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None

    # ------------------------------------------------------------------
    # Probes
    # ------------------------------------------------------------------

    async def detect_process(self, handle: SandboxHandle) -> DevServerProcessState:
        """Classify the dev server process as none, alive or zombie."""
        listing = await handle.run_command(
            f"pgrep -f '{DEV_SERVER_PROCESS_PATTERN}'", timeout=self._probe_timeout
        )
        if not listing.ok or not listing.stdout.strip():
            return DevServerProcessState.NONE

        probe = await handle.run_command(
            "curl -s -o /dev/null -w '%{http_code}' "
            f"--max-time {int(self._probe_timeout)} http://localhost:{self._port}",
            timeout=self._probe_timeout + 5,
        )
        code = probe.stdout.strip()
        if code.isdigit() and code != "000":
            return DevServerProcessState.ALIVE
        return DevServerProcessState.ZOMBIE

    async def probe_external(self, url: str) -> bool:
        """Any HTTP status proves the edge routes to the server; a 404 counts."""
        client = await self._get_http_client()
        try:
            response = await client.get(url)
        except httpx.TransportError as e:
            logger.debug(f"Preview URL {url} not reachable yet: {type(e).__name__}")
            return False
        return 100 <= response.status_code < 600

    # ------------------------------------------------------------------
    # Start / restart
    # ------------------------------------------------------------------

    async def build_environment(self, project_id: str) -> dict[str, str]:
        """Dev server environment with project secrets decrypted."""
        envs: dict[str, str] = {}
        binding = await self._repository.find_by_project(project_id)
        if binding is not None and binding.environment_variables:
            envs.update(self._encryption.decrypt_environment(binding.environment_variables))
        envs.update(
            {
                "NODE_ENV": "development",
                "PORT": str(self._port),
                "HOSTNAME": "0.0.0.0",
                "NEXT_TELEMETRY_DISABLED": "1",
            }
        )
        return envs

    async def restart(self, handle: SandboxHandle, envs: dict[str, str]) -> int | None:
        """Force-kill any dev server and launch a new one in the background.

        Returns:
            PID of the launched process when the provider reports it
        """
        # pkill exits 1 when nothing matched.
        await handle.run_command(
            f"pkill -9 -f '{DEV_SERVER_PROCESS_PATTERN}'", timeout=self._probe_timeout
        )
        result = await handle.run_command(
            f"npm run dev -- -H 0.0.0.0 -p {self._port} > {DEV_SERVER_LOG_PATH} 2>&1",
            cwd=self._project_dir,
            envs=envs,
            background=True,
        )
        await self._state.set_env_hash(handle.sandbox_id, compute_env_hash(envs))
        logger.info(f"Launched dev server in sandbox {handle.sandbox_id} (pid={result.pid})")
        return result.pid

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    async def wait_until_ready(
        self,
        url: str,
        required_successes: int = FRESH_START_SUCCESSES,
        window_seconds: float | None = None,
        budget: OperationBudget | None = None,
    ) -> float:
        """Poll ``url`` until it answers ``required_successes`` times in a row.

        Returns:
            Seconds waited

        Raises:
            ReadinessTimeoutError: The window elapsed first
            OperationTimeoutError: The overall budget ran out first
        """
        window = window_seconds if window_seconds is not None else self._ready_window
        started = self._clock()
        successes = 0

        while True:
            if budget is not None:
                budget.check("wait_until_ready")
            if await self.probe_external(url):
                successes += 1
                if successes >= required_successes:
                    return self._clock() - started
            else:
                successes = 0

            elapsed = self._clock() - started
            if elapsed >= window:
                raise ReadinessTimeoutError(url, elapsed)
            delay = min(self._poll_interval, window - elapsed)
            if budget is not None:
                delay = budget.cap(delay)
            await self._sleep(delay)

    async def ensure_dev_server(
        self,
        handle: SandboxHandle,
        project_id: str,
        budget: OperationBudget | None = None,
    ) -> ReadinessResult:
        """Make the dev server reachable, restarting it when stale.

        Never raises for a slow or broken server; a result with
        ``ready=False`` is returned instead.

        Raises:
            OperationTimeoutError: The overall budget ran out
            SandboxNotFoundError: The sandbox behind ``handle`` is gone
        """
        url = handle.preview_url(self._port)
        started = self._clock()
        process_state = DevServerProcessState.NONE
        env_changed = False
        action = DevServerAction.NONE

        try:
            if budget is not None:
                budget.check("dev_server")
            envs = await self.build_environment(project_id)
            env_hash = compute_env_hash(envs)
            recorded_hash = await self._state.get_env_hash(handle.sandbox_id)
            process_state = await self.detect_process(handle)
            env_changed = recorded_hash != env_hash

            if process_state == DevServerProcessState.NONE:
                action = DevServerAction.STARTED
            elif process_state == DevServerProcessState.ZOMBIE or env_changed:
                action = DevServerAction.RESTARTED
            elif not await self.probe_external(url):
                logger.info(f"Dev server in {handle.sandbox_id} alive but {url} unreachable")
                action = DevServerAction.RESTARTED
            else:
                return ReadinessResult(url=url, ready=True, process_state=process_state)

            if env_changed and process_state != DevServerProcessState.NONE:
                logger.info(f"Environment changed for project {project_id}, restarting dev server")
            await self.restart(handle, envs)

            required = (
                RESTART_SUCCESSES if action == DevServerAction.RESTARTED else FRESH_START_SUCCESSES
            )
            await self.wait_until_ready(url, required, budget=budget)
        except (OperationTimeoutError, SandboxNotFoundError):
            raise
        except ReadinessTimeoutError as e:
            logger.warning(f"Dev server for project {project_id} still starting: {e.message}")
            return self._degraded(url, action, process_state, env_changed, started, e)
        except SandboxError as e:
            logger.error(f"Dev server check failed for project {project_id}: {e.message}")
            return self._degraded(url, action, process_state, env_changed, started, e)

        return ReadinessResult(
            url=url,
            ready=True,
            action=action,
            process_state=process_state,
            env_changed=env_changed,
            waited_seconds=self._clock() - started,
        )

    def _degraded(
        self,
        url: str,
        action: DevServerAction,
        process_state: DevServerProcessState,
        env_changed: bool,
        started: float,
        error: SandboxError,
    ) -> ReadinessResult:
        return ReadinessResult(
            url=url,
            ready=False,
            action=action,
            process_state=process_state,
            env_changed=env_changed,
            waited_seconds=self._clock() - started,
            reason=type(error).__name__,
            details={"message": error.message},
        )

    async def read_logs(self, handle: SandboxHandle, lines: int = 50) -> DevServerLogs:
        """Return the last ``lines`` lines of the dev server log."""
        result = await handle.run_command(
            f"tail -n {lines} {DEV_SERVER_LOG_PATH}", timeout=10
        )
        if not result.ok:
            return DevServerLogs(logs="", lines_returned=0)
        return DevServerLogs.from_output(result.stdout)
