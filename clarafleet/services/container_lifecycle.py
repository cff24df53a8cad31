"""Lifecycle management for one named local container.

``ContainerLifecycleManager`` drives a service's container through
``absent -> created -> running -> stopped -> removed``:

start(options):
    1. Verify the container engine is reachable (fail fast otherwise)
    2. Pick the hardware variant: explicit ``gpu_type`` or local detection
    3. Free the service's well-known ports (best effort)
    4. Start an existing container, or no-op if it is already running
    5. Otherwise pull the image if missing, create with the variant overlay,
       and start; a container that exits right away fails with its logs
    6. Poll the health endpoint; exhaustion is reported, not raised

Operations on the same container name must be serialized by the caller.
"""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any

from prometheus_client import Counter

from clarafleet.api.schemas.services import (
    ContainerState,
    DeploymentMode,
    HardwareVariant,
    ServiceActionResult,
    StartOptions,
)
from clarafleet.core.config import Settings, get_settings
from clarafleet.core.exceptions import (
    ContainerEngineError,
    ContainerEngineUnavailableError,
    ContainerExitedError,
    PortInUseError,
    ServiceConfigurationError,
    UnsupportedHardwareError,
)
from clarafleet.core.executors import LocalCommandExecutor
from clarafleet.core.logging import get_logger
from clarafleet.services.hardware_detector import HardwareDetector
from clarafleet.services.port_preemption import PortPreemptor

if TYPE_CHECKING:
    from collections.abc import Callable

    from clarafleet.core.docker_client import DockerClient, PullEvent
    from clarafleet.core.executors import CommandExecutor
    from clarafleet.services.service_definitions import ContainerLaunchSpec, ServiceDefinition

logger = get_logger(__name__)

CONTAINER_STARTS_TOTAL = Counter(
    "clarafleet_container_starts_total",
    "Local container start requests by outcome",
    labelnames=["service", "outcome"],  # outcome: started, already_running, failed
)

_PORT_CONFLICT_MARKERS = ("port is already allocated", "address already in use", "bind for")
_EXITED_STATUSES = ("exited", "dead")


def _port_conflict(error: ContainerEngineError) -> bool:
    text = str(error).lower()
    return any(marker in text for marker in _PORT_CONFLICT_MARKERS)


def _variant_from_image(image: str | None) -> str | None:
    if not image or ":" not in image:
        return None
    tag = image.rsplit(":", 1)[1]
    return tag if tag in {v.value for v in HardwareVariant} else None


class ContainerLifecycleManager:
    """Owns create/start/stop/restart/remove/status/logs of one container.

    Args:
        definition: Catalog entry with a container launch spec
        docker_client: Async Docker client
        settings: Timing and preemption settings
        detector: Hardware detector used when no gpu_type is given
        executor: Local command executor for detection probes
        port_preemptor: Frees well-known ports before start
    """

    def __init__(
        self,
        definition: ServiceDefinition,
        docker_client: DockerClient,
        settings: Settings | None = None,
        detector: HardwareDetector | None = None,
        executor: CommandExecutor | None = None,
        port_preemptor: PortPreemptor | None = None,
    ) -> None:
        if definition.container is None:
            raise ServiceConfigurationError(
                f"Service {definition.name} has no container launch spec"
            )
        self._definition = definition
        self._spec: ContainerLaunchSpec = definition.container
        self._docker = docker_client
        self._settings = settings or get_settings()
        self._detector = detector or HardwareDetector(include_vulkan=True)
        self._executor = executor or LocalCommandExecutor()
        self._preemptor = port_preemptor or PortPreemptor(
            allowlist=self._settings.port_preemption_allowlist,
            enabled=self._settings.port_preemption_enabled,
            release_wait=self._settings.port_release_wait,
        )
        self._variant: HardwareVariant | None = None

    @property
    def container_name(self) -> str:
        return self._spec.container_name

    @property
    def service_name(self) -> str:
        return self._definition.name

    @property
    def variant(self) -> HardwareVariant | None:
        """Hardware variant chosen by the last start."""
        return self._variant

    # =========================================================================
    # Start
    # =========================================================================

    async def start(
        self,
        options: StartOptions | None = None,
        on_pull_progress: Callable[[PullEvent], None] | None = None,
    ) -> ServiceActionResult:
        """Start the container, creating it first if needed.

        Returns:
            ServiceActionResult with success=True once the container runs;
            ``healthy`` is False when the health window ran out.

        Raises:
            ContainerEngineUnavailableError: Engine not reachable
            UnsupportedHardwareError: Local machine cannot run the images
            PortInUseError: Port still taken when the container starts
            ImagePullError: Image could not be pulled
            ContainerExitedError: Container exited right after start
            ContainerEngineError: Any other failed engine call
        """
        options = options or StartOptions()
        name = self.container_name

        if not await self._docker.connect():
            CONTAINER_STARTS_TOTAL.labels(service=self.service_name, outcome="failed").inc()
            raise ContainerEngineUnavailableError()

        try:
            variant = await self._resolve_variant(options.gpu_type)
            self._variant = variant

            existing = await self._docker.get_container(name)
            existing_status = await self._docker.get_container_status(name) if existing else None

            if existing_status != "running":
                for port in self._spec.preempt_ports:
                    await self._preemptor.preempt(port)

            if existing is not None and existing_status == "running":
                logger.info(
                    f"Container {name} is already running",
                    extra={"container": name, "service": self.service_name},
                )
                CONTAINER_STARTS_TOTAL.labels(service=self.service_name, outcome="already_running").inc()
                return ServiceActionResult(
                    success=True,
                    service=self.service_name,
                    action="start",
                    mode=DeploymentMode.DOCKER,
                    container_name=name,
                    gpu_type=variant,
                    already_running=True,
                    url=self.health_url(),
                    message=f"{self._definition.display_name} is already running",
                )

            if existing is not None:
                logger.info(f"Starting existing container {name}", extra={"container": name})
                await self._start_checked(name)
            else:
                image = self._spec.image_for(variant)
                if not await self._docker.image_exists(image):
                    await self._pull(image, on_pull_progress)
                await self._docker.create_container(image, name, **self._create_options(variant))
                await self._start_checked(name)
        except Exception:
            CONTAINER_STARTS_TOTAL.labels(service=self.service_name, outcome="failed").inc()
            raise

        CONTAINER_STARTS_TOTAL.labels(service=self.service_name, outcome="started").inc()

        healthy: bool | None = None
        if options.wait_for_health:
            healthy = await self.wait_for_healthy()

        message = f"{self._definition.display_name} started"
        if healthy is False:
            message = f"{message} but is not healthy yet"
        return ServiceActionResult(
            success=True,
            service=self.service_name,
            action="start",
            mode=DeploymentMode.DOCKER,
            container_name=name,
            gpu_type=variant,
            healthy=healthy,
            url=self.health_url(),
            message=message,
        )

    async def _resolve_variant(self, requested: HardwareVariant | None) -> HardwareVariant | None:
        if not self._spec.uses_hardware_variants:
            return None
        if requested is not None:
            return requested

        capability = await self._detector.detect(self._executor)
        if capability.variant is None:
            raise UnsupportedHardwareError(
                capability.error or "This machine cannot run the container images",
                details={"architecture": capability.architecture},
            )
        logger.info(
            f"Using {capability.variant} image for {self.container_name}",
            extra={"container": self.container_name, "variant": str(capability.variant)},
        )
        return capability.variant

    async def _pull(self, image: str, on_progress: Callable[[PullEvent], None] | None) -> None:
        logger.info(f"Pulling image {image}", extra={"image": image})
        progress = self._docker.pull_image(image)
        try:
            async for event in progress:
                if on_progress is not None:
                    on_progress(event)
                if event.status in ("Downloading", "Extracting"):
                    logger.debug(
                        f"{event.status} {event.layer_id}: {event.detail}",
                        extra={"image": image, "layer": event.layer_id},
                    )
        finally:
            await progress.aclose()

    def _create_options(self, variant: HardwareVariant | None) -> dict[str, Any]:
        """docker-py create options with the variant overlay merged onto the base spec."""
        overlay = self._spec.overlay_for(variant)
        restart_policy = self._spec.restart_policy if self._definition.auto_restart else "no"
        options: dict[str, Any] = {
            "ports": {f"{container}/tcp": host for host, container in self._spec.ports.items()},
            "volumes": list(self._spec.volumes),
            "environment": {**self._spec.environment, **overlay.environment},
            "restart_policy": {"Name": restart_policy},
        }
        if self._spec.hostname:
            options["hostname"] = self._spec.hostname
        runtime = overlay.runtime or self._spec.runtime
        if runtime:
            options["runtime"] = runtime
        if overlay.devices:
            options["devices"] = [f"{device}:{device}:rwm" for device in overlay.devices]
        return options

    async def _start_checked(self, name: str) -> None:
        """Start the container and fail with diagnostics if it does not stay up."""
        try:
            await self._docker.start_container(name)
        except ContainerEngineError as e:
            if _port_conflict(e) and self._spec.ports:
                raise PortInUseError(next(iter(self._spec.ports))) from e
            raise

        await asyncio.sleep(self._settings.exit_check_delay)
        status = await self._docker.get_container_status(name)
        if status in _EXITED_STATUSES:
            inspect = await self._docker.inspect_container(name)
            state = inspect.get("State", {})
            logs = await self._docker.get_logs(name, tail=100)
            logger.error(
                f"Container {name} exited immediately",
                extra={"container": name, "exit_code": state.get("ExitCode")},
            )
            raise ContainerExitedError(
                name,
                logs=logs,
                inspect=json.dumps(state, default=str),
                exit_code=state.get("ExitCode"),
            )

    def health_url(self) -> str | None:
        if not self._spec.ports:
            return None
        return f"http://localhost:{next(iter(self._spec.ports))}"

    async def wait_for_healthy(
        self,
        max_attempts: int | None = None,
        interval: float | None = None,
    ) -> bool:
        """Poll the service's health check until healthy or attempts run out."""
        max_attempts = max_attempts or self._settings.health_poll_attempts
        interval = self._settings.health_poll_interval if interval is None else interval

        for attempt in range(1, max_attempts + 1):
            if await self._definition.health_check.check(self.health_url()):
                logger.info(
                    f"{self.service_name} is healthy",
                    extra={"service": self.service_name, "attempt": attempt},
                )
                return True
            if attempt < max_attempts:
                await asyncio.sleep(interval)

        logger.warning(
            f"{self.service_name} not healthy after {max_attempts} attempts",
            extra={"service": self.service_name, "attempts": max_attempts},
        )
        return False

    # =========================================================================
    # Stop / restart / remove
    # =========================================================================

    async def stop(self) -> ServiceActionResult:
        """Stop gracefully; no-op when already stopped or absent."""
        name = self.container_name
        status = await self._docker.get_container_status(name)
        if status != "running":
            return ServiceActionResult(
                success=True,
                service=self.service_name,
                action="stop",
                container_name=name,
                message=f"{name} is not running",
            )

        await self._docker.stop_container(name, timeout=self._settings.stop_grace_period)
        return ServiceActionResult(
            success=True,
            service=self.service_name,
            action="stop",
            container_name=name,
            message=f"{self._definition.display_name} stopped",
        )

    async def restart(self, options: StartOptions | None = None) -> ServiceActionResult:
        """Stop, wait for the port to be released, then start."""
        await self.stop()
        await asyncio.sleep(self._settings.restart_delay)
        if options is None and self._variant is not None:
            options = StartOptions(gpu_type=self._variant)
        result = await self.start(options)
        result.action = "restart"
        return result

    async def remove(self) -> ServiceActionResult:
        """Stop if running, then remove; no-op when absent."""
        name = self.container_name
        if await self._docker.get_container(name) is None:
            return ServiceActionResult(
                success=True,
                service=self.service_name,
                action="remove",
                container_name=name,
                message=f"{name} does not exist",
            )

        await self.stop()
        await self._docker.remove_container(name)
        return ServiceActionResult(
            success=True,
            service=self.service_name,
            action="remove",
            container_name=name,
            message=f"{name} removed",
        )

    # =========================================================================
    # Observation
    # =========================================================================

    async def status(self) -> ContainerState:
        """Current container state. Never raises."""
        name = self.container_name
        try:
            inspect = await self._docker.inspect_container(name)
        except Exception as e:
            logger.warning(f"Error getting status of {name}: {e}", extra={"container": name})
            return ContainerState(name=name, exists=False, running=False, error=str(e))

        if not inspect:
            return ContainerState(
                name=name,
                exists=False,
                running=False,
                gpu_type=str(self._variant) if self._variant else None,
            )

        state = inspect.get("State", {})
        image = inspect.get("Config", {}).get("Image")
        raw_ports = inspect.get("NetworkSettings", {}).get("Ports") or {}
        ports = {
            container_port: [f"{b.get('HostIp', '')}:{b.get('HostPort', '')}" for b in bindings or []]
            for container_port, bindings in raw_ports.items()
        }
        return ContainerState(
            name=name,
            exists=True,
            running=bool(state.get("Running")),
            status=state.get("Status"),
            started_at=state.get("StartedAt"),
            image=image,
            gpu_type=_variant_from_image(image),
            ports=ports,
        )

    async def logs(self, tail_lines: int = 100) -> str:
        """Combined stdout/stderr with timestamps, last ``tail_lines`` lines."""
        return await self._docker.get_logs(self.container_name, tail=tail_lines, timestamps=True)
