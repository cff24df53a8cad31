"""Native binary runner for services in ``local`` deployment mode.

Starts the platform build of a service binary (for example the ClaraCore
engine listening on :8091), tracks the child process, and stops it with
SIGTERM followed by SIGKILL after the grace period. Process output goes to
``<install_dir>/logs/<service>.log``; a process that exits during startup
fails the start with its exit code and the tail of that log.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING

from clarafleet.api.schemas.services import DeploymentMode, ServiceActionResult
from clarafleet.core.config import Settings, get_settings
from clarafleet.core.exceptions import ProcessExitedError, ServiceConfigurationError
from clarafleet.core.logging import get_logger

if TYPE_CHECKING:
    from clarafleet.services.service_definitions import ServiceDefinition

logger = get_logger(__name__)


class LocalBinaryRunner:
    """Runs one service binary as a child process.

    Args:
        definition: Catalog entry with a binary launch spec
        install_dir: Directory the binary path is relative to
        settings: Health polling and stop grace settings
    """

    def __init__(
        self,
        definition: ServiceDefinition,
        install_dir: str | Path,
        settings: Settings | None = None,
    ) -> None:
        if definition.binary is None:
            raise ServiceConfigurationError(f"Service {definition.name} has no binary launch spec")
        self._definition = definition
        self._install_dir = Path(install_dir)
        self._settings = settings or get_settings()
        self._process: asyncio.subprocess.Process | None = None

    @property
    def binary_path(self) -> Path:
        return (self._install_dir / self._definition.binary.path).resolve()  # type: ignore[union-attr]

    @property
    def log_path(self) -> Path:
        return self._install_dir / "logs" / f"{self._definition.name}.log"

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self.running else None  # type: ignore[union-attr]

    def _base_url(self) -> str | None:
        port = self._definition.ports.get("main")
        return f"http://localhost:{port}" if port else None

    async def start(self, wait_for_health: bool = True) -> ServiceActionResult:
        """Launch the binary unless it is already running.

        Raises:
            ServiceConfigurationError: If the binary does not exist.
            ProcessExitedError: If the process exits before start returns.
        """
        name = self._definition.name
        if self.running:
            return ServiceActionResult(
                success=True,
                service=name,
                action="start",
                mode=DeploymentMode.LOCAL,
                already_running=True,
                url=self._base_url(),
                message=f"{self._definition.display_name} is already running",
            )

        path = self.binary_path
        if not path.is_file():
            raise ServiceConfigurationError(
                f"Binary for {name} not found at {path}",
                details={"service": name, "path": str(path)},
            )

        args = self._definition.binary.args  # type: ignore[union-attr]
        log_path = self.log_path
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("wb") as log_file:
            self._process = await asyncio.create_subprocess_exec(
                str(path),
                *args,
                cwd=str(path.parent),
                stdout=log_file,
                stderr=asyncio.subprocess.STDOUT,
            )
        logger.info(
            f"Started {name} binary (pid {self._process.pid})",
            extra={"service": name, "pid": self._process.pid, "path": str(path)},
        )

        healthy: bool | None = None
        if wait_for_health:
            healthy = await self.wait_for_healthy()

        exit_code = self._process.returncode
        if exit_code is not None:
            self._process = None
            output = self._read_output()
            logger.error(
                f"{name} exited during startup with code {exit_code}",
                extra={"service": name, "exit_code": exit_code, "log_path": str(log_path)},
            )
            raise ProcessExitedError(name, exit_code=exit_code, output=output)

        return ServiceActionResult(
            success=True,
            service=name,
            action="start",
            mode=DeploymentMode.LOCAL,
            healthy=healthy,
            url=self._base_url(),
            message=f"{self._definition.display_name} started",
        )

    def _read_output(self, limit: int = 4000) -> str:
        try:
            return self.log_path.read_text(errors="replace")[-limit:].strip()
        except OSError:
            return ""

    async def wait_for_healthy(self) -> bool:
        for _ in range(self._settings.health_poll_attempts):
            if not self.running:
                logger.warning(
                    f"{self._definition.name} exited during startup",
                    extra={"service": self._definition.name},
                )
                return False
            if await self._definition.health_check.check(self._base_url()):
                return True
            await asyncio.sleep(self._settings.health_poll_interval)
        return False

    async def stop(self) -> ServiceActionResult:
        """Terminate the process; kill it if it outlives the grace period."""
        name = self._definition.name
        process = self._process
        if process is None or process.returncode is not None:
            self._process = None
            return ServiceActionResult(
                success=True,
                service=name,
                action="stop",
                mode=DeploymentMode.LOCAL,
                message=f"{name} is not running",
            )

        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=self._settings.stop_grace_period)
        except TimeoutError:
            logger.warning(
                f"{name} did not exit after {self._settings.stop_grace_period}s, killing",
                extra={"service": name, "pid": process.pid},
            )
            process.kill()
            await process.wait()
        self._process = None
        logger.info(f"Stopped {name} binary", extra={"service": name})
        return ServiceActionResult(
            success=True,
            service=name,
            action="stop",
            mode=DeploymentMode.LOCAL,
            message=f"{self._definition.display_name} stopped",
        )
