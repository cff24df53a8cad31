"""Caller-facing orchestration operations.

``ServiceOrchestrator`` is the single entry point used by the API layer (and
any CLI or UI). It resolves each service's deployment mode through the
registry and dispatches to the component that owns that mode:

- ``docker``: a ContainerLifecycleManager per container (created lazily)
- ``local``: a LocalBinaryRunner per binary
- ``manual``: a health check against the user-supplied URL
- ``remote``: the RemoteDeploymentEngine

Every operation returns a structured result. Expected failures
(``OrchestrationError``) become ``success=False`` results with an error code;
only unexpected faults propagate.
"""

from __future__ import annotations

import asyncio
import uuid
from pathlib import Path
from typing import TYPE_CHECKING

from clarafleet.api.schemas.services import (
    CompatibleService,
    CompatibleServicesResult,
    ConnectionTestResult,
    DeploymentMode,
    DeploymentResult,
    FeatureSelection,
    PlatformCompatibility,
    RemoteDeployConfig,
    RemoteFleetStatus,
    ServiceActionResult,
    ServiceLogsResponse,
    ServiceStatusResponse,
    ServiceType,
    StartOptions,
)
from clarafleet.core.config import Settings, get_settings
from clarafleet.core.docker_client import DockerClient
from clarafleet.core.exceptions import (
    ContainerEngineUnavailableError,
    OrchestrationError,
    ServiceConfigurationError,
    UnsupportedModeError,
)
from clarafleet.core.logging import get_logger, set_operation_id
from clarafleet.services.binary_runner import LocalBinaryRunner
from clarafleet.services.container_lifecycle import ContainerLifecycleManager
from clarafleet.services.health_checks import DockerEngineHealthCheck, create_manual_health_check
from clarafleet.services.remote_deployment import RemoteDeploymentEngine
from clarafleet.services.remote_monitor import RemoteFleetMonitor
from clarafleet.services.service_registry import ServiceRegistry

if TYPE_CHECKING:
    from clarafleet.services.service_definitions import ServiceDefinition

logger = get_logger(__name__)

# Only the inference engine has a remotely deployable image
REMOTE_DEPLOYABLE_SERVICE = "claracore"


def _new_operation_id() -> str:
    operation_id = uuid.uuid4().hex[:12]
    set_operation_id(operation_id)
    return operation_id


def _failure(
    name: str,
    action: str,
    error: OrchestrationError,
    mode: DeploymentMode | None = None,
) -> ServiceActionResult:
    return ServiceActionResult(
        success=False,
        service=name,
        action=action,
        mode=mode,
        message=f"Failed to {action} {name}",
        error=error.message,
        error_code=error.error_code,
        details=error.details,
    )


class ServiceOrchestrator:
    """Facade over the registry, local lifecycle and remote deployment.

    Args:
        settings: Application settings
        docker_client: Local Docker client (created from settings when omitted)
        registry: Service registry (built-in catalog when omitted)
        remote_engine: Remote deployment engine
        monitor: Remote fleet monitor
        install_dir: Directory that local binaries are resolved against
    """

    def __init__(
        self,
        settings: Settings | None = None,
        docker_client: DockerClient | None = None,
        registry: ServiceRegistry | None = None,
        remote_engine: RemoteDeploymentEngine | None = None,
        monitor: RemoteFleetMonitor | None = None,
        install_dir: str | Path | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._docker = docker_client or DockerClient(self._settings.docker_host)
        self._registry = registry or ServiceRegistry.default(
            data_dir=self._settings.data_dir,
            image_repository=self._settings.image_repository,
        )
        self._remote = remote_engine or RemoteDeploymentEngine(self._settings)
        self._monitor = monitor or RemoteFleetMonitor(self._settings)
        self._install_dir = Path(install_dir or self._settings.data_dir)

        self._containers: dict[str, ContainerLifecycleManager] = {}
        self._binaries: dict[str, LocalBinaryRunner] = {}
        self._modes: dict[str, DeploymentMode] = {}
        self._manual_urls: dict[str, str] = {}

        for name in self._registry.names():
            health_check = self._registry.get(name).health_check
            if isinstance(health_check, DockerEngineHealthCheck):
                health_check.bind(self._docker)

    @property
    def registry(self) -> ServiceRegistry:
        return self._registry

    async def close(self) -> None:
        """Stop local binaries started by this orchestrator and release the Docker client."""
        for runner in self._binaries.values():
            if runner.running:
                await runner.stop()
        await self._docker.close()

    # =========================================================================
    # Remote operations
    # =========================================================================

    async def test_remote_setup(self, config: RemoteDeployConfig) -> ConnectionTestResult:
        _new_operation_id()
        return await self._remote.test_connection(config)

    async def deploy_remote(self, config: RemoteDeployConfig) -> DeploymentResult:
        operation_id = _new_operation_id()
        logger.info(
            f"Remote deployment to {config.host} requested",
            extra={"host": config.host, "operation_id": operation_id},
        )
        return await self._remote.deploy(config)

    async def monitor_remote(self, config: RemoteDeployConfig) -> RemoteFleetStatus:
        _new_operation_id()
        return await self._monitor.monitor(config)

    # =========================================================================
    # Registry operations
    # =========================================================================

    def get_platform_compatibility(self) -> PlatformCompatibility:
        return self._registry.platform_compatibility()

    def resolve_compatible_services(
        self,
        features: FeatureSelection,
        mode: DeploymentMode = DeploymentMode.DOCKER,
    ) -> CompatibleServicesResult:
        """Assign modes to the enabled services and validate their dependencies."""
        platform = self._registry.platform
        try:
            resolved = self._registry.resolve_compatible_services(features.enabled_features(), mode)
        except ServiceConfigurationError as e:
            return CompatibleServicesResult(
                success=False,
                platform=platform,
                errors=e.errors,
                error=e.message,
            )

        definitions = {name: item.definition for name, item in resolved.items()}
        errors = self._registry.validate(definitions)
        services = {}
        for name in self._registry.startup_order(definitions):
            item = resolved[name]
            services[name] = CompatibleService(
                name=name,
                display_name=item.definition.display_name,
                type=item.definition.type,
                critical=item.definition.critical,
                priority=item.definition.priority,
                dependencies=list(item.definition.dependencies),
                assigned_mode=item.mode,
            )
        return CompatibleServicesResult(
            success=not errors,
            platform=platform,
            services=services,
            errors=errors,
            error="Service dependencies are invalid" if errors else None,
        )

    # =========================================================================
    # Mode resolution
    # =========================================================================

    def _resolve_mode(self, definition: ServiceDefinition, requested: DeploymentMode | None) -> DeploymentMode:
        name = definition.name
        platform = self._registry.platform
        supported = self._registry.supported_modes(name)
        if requested is not None:
            if requested not in supported:
                raise UnsupportedModeError(
                    f"{definition.display_name} does not support {requested} mode on {platform}",
                    details={
                        "service": name,
                        "mode": str(requested),
                        "supported_modes": [str(m) for m in supported],
                    },
                )
            return requested

        if name in self._modes:
            return self._modes[name]
        default_mode = DeploymentMode(self._settings.default_deployment_mode)
        if default_mode in supported:
            return default_mode
        if not supported:
            raise UnsupportedModeError(
                f"{definition.display_name} has no supported deployment mode on {platform}",
                details={"service": name},
            )
        return supported[0]

    def _container_manager(self, definition: ServiceDefinition) -> ContainerLifecycleManager:
        if definition.container is None:
            raise ServiceConfigurationError(f"Service {definition.name} has no container launch spec")
        key = definition.container.container_name
        manager = self._containers.get(key)
        if manager is None:
            manager = ContainerLifecycleManager(definition, self._docker, self._settings)
            self._containers[key] = manager
        return manager

    def _binary_runner(self, definition: ServiceDefinition) -> LocalBinaryRunner:
        runner = self._binaries.get(definition.name)
        if runner is None:
            runner = LocalBinaryRunner(definition, self._install_dir, self._settings)
            self._binaries[definition.name] = runner
        return runner

    # =========================================================================
    # Local operations
    # =========================================================================

    async def ensure_service_running(
        self,
        name: str,
        mode: DeploymentMode | None = None,
        options: StartOptions | None = None,
        remote_config: RemoteDeployConfig | None = None,
    ) -> ServiceActionResult:
        """Bring a service up in its resolved deployment mode.

        Returns:
            ServiceActionResult; expected failures have ``success=False``.
        """
        operation_id = _new_operation_id()
        options = options or StartOptions()
        resolved_mode: DeploymentMode | None = None
        try:
            definition = self._registry.get(name)
            resolved_mode = self._resolve_mode(definition, mode or options.mode)
            logger.info(
                f"Ensuring {name} is running in {resolved_mode} mode",
                extra={"service": name, "mode": str(resolved_mode), "operation_id": operation_id},
            )
            result = await self._dispatch_start(definition, resolved_mode, options, remote_config)
        except OrchestrationError as e:
            logger.error(
                f"Failed to start {name}: {e.message}",
                extra={"service": name, "error_code": e.error_code, "operation_id": operation_id},
            )
            return _failure(name, "start", e, resolved_mode)

        if result.success:
            self._modes[name] = resolved_mode
        return result

    async def _dispatch_start(
        self,
        definition: ServiceDefinition,
        mode: DeploymentMode,
        options: StartOptions,
        remote_config: RemoteDeployConfig | None,
    ) -> ServiceActionResult:
        if mode == DeploymentMode.DOCKER:
            if definition.type == ServiceType.DOCKER_DAEMON:
                return await self._check_engine(definition)
            return await self._container_manager(definition).start(options)
        if mode == DeploymentMode.LOCAL:
            if definition.binary is None:
                return await self._check_external(definition, mode, None)
            return await self._binary_runner(definition).start(options.wait_for_health)
        if mode == DeploymentMode.REMOTE and definition.name == REMOTE_DEPLOYABLE_SERVICE and remote_config:
            return self._from_deployment(definition, await self._remote.deploy(remote_config))
        return await self._start_manual(definition, mode, options.url)

    async def _check_engine(self, definition: ServiceDefinition) -> ServiceActionResult:
        if not await definition.health_check.check():
            raise ContainerEngineUnavailableError()
        return ServiceActionResult(
            success=True,
            service=definition.name,
            action="start",
            mode=DeploymentMode.DOCKER,
            healthy=True,
            already_running=True,
            message=f"{definition.display_name} is running",
        )

    async def _start_manual(
        self,
        definition: ServiceDefinition,
        mode: DeploymentMode,
        url: str | None,
    ) -> ServiceActionResult:
        """Manual and non-deployable remote services are reached by URL."""
        manual = definition.manual
        url = url or self._manual_urls.get(definition.name) or (manual.default_url if manual else None)
        if not url:
            raise ServiceConfigurationError(
                f"{definition.display_name} needs a URL in {mode} mode",
                details={"service": definition.name, "mode": str(mode)},
            )
        self._manual_urls[definition.name] = url
        return await self._check_external(definition, mode, url)

    async def _check_external(
        self,
        definition: ServiceDefinition,
        mode: DeploymentMode,
        url: str | None,
    ) -> ServiceActionResult:
        if url is not None:
            endpoint = definition.manual.health_endpoint if definition.manual else "/health"
            healthy = await create_manual_health_check(url, endpoint).check()
        else:
            healthy = await definition.health_check.check()
        where = f" at {url}" if url else ""
        return ServiceActionResult(
            success=healthy,
            service=definition.name,
            action="start",
            mode=mode,
            healthy=healthy,
            url=url,
            message=f"{definition.display_name} is reachable{where}" if healthy else "",
            error=None if healthy else f"{definition.display_name} is not reachable{where}",
            error_code=None if healthy else "SERVICE_UNREACHABLE",
        )

    @staticmethod
    def _from_deployment(definition: ServiceDefinition, deployment: DeploymentResult) -> ServiceActionResult:
        return ServiceActionResult(
            success=deployment.success,
            service=definition.name,
            action="start",
            mode=DeploymentMode.REMOTE,
            container_name=deployment.container_name,
            gpu_type=deployment.hardware_type,
            healthy=deployment.healthy,
            url=deployment.url,
            message=deployment.message,
            error=deployment.error,
            error_code=deployment.error_code,
            details={**deployment.details, "fallback_to_cpu": deployment.fallback_to_cpu},
        )

    async def start_local_service(self, name: str, options: StartOptions | None = None) -> ServiceActionResult:
        return await self.ensure_service_running(name, options.mode if options else None, options)

    async def stop_local_service(self, name: str) -> ServiceActionResult:
        _new_operation_id()
        mode: DeploymentMode | None = None
        try:
            definition = self._registry.get(name)
            mode = self._resolve_mode(definition, None)
            if mode == DeploymentMode.DOCKER and definition.type == ServiceType.DOCKER_DAEMON:
                raise UnsupportedModeError(
                    f"{definition.display_name} is managed by the operating system",
                    details={"service": name},
                )
            if mode == DeploymentMode.DOCKER:
                result = await self._container_manager(definition).stop()
            elif mode == DeploymentMode.LOCAL and definition.binary is not None:
                result = await self._binary_runner(definition).stop()
            else:
                result = ServiceActionResult(
                    success=True,
                    service=name,
                    action="stop",
                    message=f"{definition.display_name} is not managed locally in {mode} mode",
                )
        except OrchestrationError as e:
            return _failure(name, "stop", e, mode)
        result.mode = mode
        return result

    async def restart_local_service(self, name: str, options: StartOptions | None = None) -> ServiceActionResult:
        _new_operation_id()
        mode: DeploymentMode | None = None
        try:
            definition = self._registry.get(name)
            mode = self._resolve_mode(definition, options.mode if options else None)
            if mode == DeploymentMode.DOCKER and definition.type != ServiceType.DOCKER_DAEMON:
                result = await self._container_manager(definition).restart(options)
                self._modes[name] = mode
                return result
        except OrchestrationError as e:
            return _failure(name, "restart", e, mode)

        stopped = await self.stop_local_service(name)
        if not stopped.success:
            stopped.action = "restart"
            return stopped
        await asyncio.sleep(self._settings.restart_delay)
        result = await self.ensure_service_running(name, mode, options)
        result.action = "restart"
        return result

    # =========================================================================
    # Observation
    # =========================================================================

    async def get_service_status(self, name: str) -> ServiceStatusResponse:
        """Status of a service in its current mode. Never raises for expected failures."""
        mode: DeploymentMode | None = None
        try:
            definition = self._registry.get(name)
            mode = self._resolve_mode(definition, None)
            if mode == DeploymentMode.DOCKER and definition.type == ServiceType.DOCKER_DAEMON:
                running = await definition.health_check.check()
                return ServiceStatusResponse(service=name, mode=mode, running=running, healthy=running)

            if mode == DeploymentMode.DOCKER:
                manager = self._container_manager(definition)
                state = await manager.status()
                healthy = await definition.health_check.check(manager.health_url()) if state.running else False
                return ServiceStatusResponse(
                    service=name,
                    mode=mode,
                    state=state,
                    running=state.running,
                    healthy=healthy,
                    error=state.error,
                )

            if mode == DeploymentMode.LOCAL and definition.binary is not None:
                runner = self._binary_runner(definition)
                healthy = await definition.health_check.check() if runner.running else False
                return ServiceStatusResponse(service=name, mode=mode, running=runner.running, healthy=healthy)

            url = self._manual_urls.get(name) or (definition.manual.default_url if definition.manual else None)
            if url is not None:
                endpoint = definition.manual.health_endpoint if definition.manual else "/health"
                healthy = await create_manual_health_check(url, endpoint).check()
            else:
                healthy = await definition.health_check.check()
            return ServiceStatusResponse(service=name, mode=mode, running=healthy, healthy=healthy)
        except OrchestrationError as e:
            return ServiceStatusResponse(service=name, mode=mode, error=e.message)

    async def get_service_logs(self, name: str, tail_lines: int = 100) -> ServiceLogsResponse:
        """Container logs of a docker-mode service."""
        try:
            definition = self._registry.get(name)
            mode = self._resolve_mode(definition, None)
            if mode != DeploymentMode.DOCKER or definition.container is None:
                return ServiceLogsResponse(
                    service=name,
                    tail=tail_lines,
                    error=f"Logs are only available for container services ({name} runs in {mode} mode)",
                )
            logs = await self._container_manager(definition).logs(tail_lines)
        except OrchestrationError as e:
            return ServiceLogsResponse(service=name, tail=tail_lines, error=e.message)
        return ServiceLogsResponse(service=name, tail=tail_lines, logs=logs)
