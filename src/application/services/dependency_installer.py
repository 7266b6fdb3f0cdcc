"""Dependency installer for package.json updates written into a sandbox."""

import json
import logging
import re
import shlex
from dataclasses import dataclass, field

from src.domain.ports.services.dev_server_state_port import DevServerStatePort
from src.domain.ports.services.sandbox_port import SandboxHandle

logger = logging.getLogger(__name__)

NPM_PACKAGE_NAME = re.compile(r"^(@[a-z0-9-~][a-z0-9-._~]*/)?[a-z0-9-~][a-z0-9-._~]*$", re.IGNORECASE)
NPM_PACKAGE_NAME_MAX_LENGTH = 214


def is_valid_package_name(name: str) -> bool:
    return len(name) <= NPM_PACKAGE_NAME_MAX_LENGTH and bool(NPM_PACKAGE_NAME.match(name))


def extract_dependencies(package_json: str | None) -> dict[str, str]:
    """Merge ``dependencies`` and ``devDependencies`` of a manifest.

    Unparseable manifests yield an empty mapping.
    """
    if not package_json:
        return {}
    try:
        manifest = json.loads(package_json)
    except json.JSONDecodeError as e:
        logger.warning(f"Ignoring unparseable package.json: {e}")
        return {}
    if not isinstance(manifest, dict):
        return {}

    merged: dict[str, str] = {}
    for section in ("dependencies", "devDependencies"):
        deps = manifest.get(section) or {}
        if isinstance(deps, dict):
            merged.update({str(k): str(v) for k, v in deps.items()})
    return merged


@dataclass
class InstallResult:
    """Outcome of a dependency install."""

    installed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    ok: bool = True
    output: str = ""

    @property
    def ran(self) -> bool:
        return bool(self.installed)


class DependencyInstaller:
    """Installs packages newly added to a project's package.json."""

    def __init__(
        self,
        project_dir: str = "/home/user/project",
        install_timeout: float = 120.0,
        dev_server_state: DevServerStatePort | None = None,
    ) -> None:
        self._project_dir = project_dir
        self._install_timeout = install_timeout
        self._dev_server_state = dev_server_state

    def new_dependencies(self, previous: str | None, current: str) -> tuple[dict[str, str], list[str]]:
        """Packages added or re-versioned by ``current``, split into valid and rejected names."""
        before = extract_dependencies(previous)
        after = extract_dependencies(current)
        added = {name: version for name, version in after.items() if before.get(name) != version}

        valid: dict[str, str] = {}
        rejected: list[str] = []
        for name, version in added.items():
            if is_valid_package_name(name):
                valid[name] = version
            else:
                logger.warning(f"Skipping invalid npm package name: {name!r}")
                rejected.append(name)
        return valid, rejected

    async def install(
        self,
        handle: SandboxHandle,
        previous_manifest: str | None,
        current_manifest: str,
    ) -> InstallResult:
        """Install what ``current_manifest`` adds over ``previous_manifest``.

        A successful install clears the recorded dev server environment so
        that the next readiness check restarts the server.
        """
        packages, rejected = self.new_dependencies(previous_manifest, current_manifest)
        if not packages:
            return InstallResult(skipped=rejected)

        specs = " ".join(shlex.quote(f"{name}@{version}") for name, version in packages.items())
        command = f"npm install --legacy-peer-deps {specs}"
        logger.info(
            f"Installing {len(packages)} package(s) in sandbox {handle.sandbox_id}: "
            f"{', '.join(packages)}"
        )
        result = await handle.run_command(
            command, cwd=self._project_dir, timeout=self._install_timeout
        )
        if not result.ok:
            logger.error(
                f"npm install failed in sandbox {handle.sandbox_id} "
                f"(exit {result.exit_code}): {result.stderr[-500:]}"
            )
            return InstallResult(
                installed=[], skipped=rejected, ok=False, output=result.stderr or result.stdout
            )

        if self._dev_server_state is not None:
            await self._dev_server_state.clear(handle.sandbox_id)
        return InstallResult(installed=list(packages), skipped=rejected, output=result.stdout)
