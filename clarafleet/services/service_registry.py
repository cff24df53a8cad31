"""Service registry: feature selection, dependency validation, mode resolution.

The registry wraps a catalog of ``ServiceDefinition`` records (see
``service_definitions``) and answers:

- which services are enabled for a feature selection
- whether a deployment mode is supported for a service on a platform
- whether the dependency graph of a service set is valid
- which mode each enabled service should run in

Usage:
    registry = ServiceRegistry.default()
    services = registry.resolve_enabled_services({"n8n"})
    errors = registry.validate(services)
    assigned = registry.resolve_compatible_services({"n8n"}, DeploymentMode.DOCKER)
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from clarafleet.api.schemas.services import (
    DeploymentMode,
    ManualConfigInfo,
    Platform,
    PlatformCompatibility,
    ServiceCompatibility,
    ServiceType,
)
from clarafleet.core.exceptions import ServiceConfigurationError, ServiceNotFoundError
from clarafleet.core.logging import get_logger
from clarafleet.services.health_checks import HttpHealthCheck
from clarafleet.services.service_definitions import (
    ServiceDefinition,
    build_service_definitions,
    current_platform,
)

logger = get_logger(__name__)

# Health-check timeouts by service type, in seconds
HEALTH_CHECK_TIMEOUTS: dict[ServiceType, float] = {
    ServiceType.DOCKER_DAEMON: 10.0,
    ServiceType.DOCKER_CONTAINER: 15.0,
    ServiceType.BINARY: 5.0,
    ServiceType.SERVICE: 3.0,
    ServiceType.HTTP_SERVICE: 3.0,
}
DEFAULT_HEALTH_CHECK_TIMEOUT = 5.0


@dataclass(frozen=True, slots=True)
class ResolvedService:
    """An enabled service together with the mode it was assigned."""

    definition: ServiceDefinition
    mode: DeploymentMode

    @property
    def name(self) -> str:
        return self.definition.name


class ServiceRegistry:
    """Read-only view over a service catalog for one platform.

    HTTP health checks of the catalog take their request timeout from
    ``health_check_timeout()`` when the registry is built.
    """

    def __init__(
        self,
        definitions: Mapping[str, ServiceDefinition],
        platform: Platform | None = None,
    ) -> None:
        self._definitions = dict(definitions)
        self._platform = platform or current_platform()
        for definition in self._definitions.values():
            if isinstance(definition.health_check, HttpHealthCheck):
                definition.health_check.timeout = self.health_check_timeout(definition)

    @classmethod
    def default(cls, platform: Platform | None = None, **catalog_options: object) -> ServiceRegistry:
        """Registry over the built-in catalog."""
        platform = platform or current_platform()
        return cls(build_service_definitions(platform=platform, **catalog_options), platform)  # type: ignore[arg-type]

    @property
    def platform(self) -> Platform:
        return self._platform

    def names(self) -> list[str]:
        return list(self._definitions)

    def get(self, name: str) -> ServiceDefinition:
        try:
            return self._definitions[name]
        except KeyError:
            raise ServiceNotFoundError(name) from None

    def find(self, name: str) -> ServiceDefinition | None:
        return self._definitions.get(name)

    # =========================================================================
    # Feature selection
    # =========================================================================

    def resolve_enabled_services(self, features: Iterable[str] = ()) -> dict[str, ServiceDefinition]:
        """Return critical services plus the optional services whose feature is selected."""
        selected = set(features)
        enabled = {
            name: definition
            for name, definition in self._definitions.items()
            if definition.critical or (definition.feature is not None and definition.feature in selected)
        }
        logger.debug(
            f"Enabled services: {sorted(enabled)}",
            extra={"features": sorted(selected), "services": sorted(enabled)},
        )
        return enabled

    # =========================================================================
    # Mode / platform compatibility
    # =========================================================================

    def is_mode_supported(
        self,
        service_name: str,
        mode: DeploymentMode,
        platform: Platform | None = None,
    ) -> bool:
        """Check a deployment mode against the service's declared modes and platforms.

        Unknown services support nothing. A mode with no platform entry is
        unrestricted.
        """
        definition = self._definitions.get(service_name)
        if definition is None:
            return False
        platform = platform or self._platform

        if mode not in definition.declared_modes:
            return False
        if definition.platform_support is None:
            return True
        supported_platforms = definition.platform_support.get(mode)
        if supported_platforms is None:
            return True
        return platform in supported_platforms

    def supported_modes(
        self,
        service_name: str,
        platform: Platform | None = None,
    ) -> list[DeploymentMode]:
        """Supported modes in declaration order; the first is the preferred default."""
        definition = self._definitions.get(service_name)
        if definition is None:
            return []
        return [
            mode
            for mode in definition.declared_modes
            if self.is_mode_supported(service_name, mode, platform)
        ]

    def resolve_compatible_services(
        self,
        features: Iterable[str],
        preferred_mode: DeploymentMode,
        platform: Platform | None = None,
    ) -> dict[str, ResolvedService]:
        """Assign a deployment mode to every enabled service.

        The preferred mode is used where supported, otherwise the service's
        first supported mode. Optional services with no supported mode are
        dropped.

        Raises:
            ServiceConfigurationError: If a critical service has no supported
                mode on the platform.
        """
        platform = platform or self._platform
        resolved: dict[str, ResolvedService] = {}
        unsupported_critical: list[str] = []

        for name, definition in self.resolve_enabled_services(features).items():
            if self.is_mode_supported(name, preferred_mode, platform):
                resolved[name] = ResolvedService(definition, preferred_mode)
                continue

            modes = self.supported_modes(name, platform)
            if modes:
                resolved[name] = ResolvedService(definition, modes[0])
                logger.debug(
                    f"Service {name} does not support {preferred_mode} on {platform}; using {modes[0]}",
                    extra={"service": name, "preferred_mode": str(preferred_mode), "mode": str(modes[0])},
                )
            elif definition.critical:
                unsupported_critical.append(name)
            else:
                logger.info(
                    f"Excluding optional service {name}: no supported mode on {platform}",
                    extra={"service": name, "platform": str(platform)},
                )

        if unsupported_critical:
            errors = [
                f"Critical service {name} has no supported deployment mode on {platform}"
                for name in unsupported_critical
            ]
            raise ServiceConfigurationError(
                "Critical services cannot run on this platform",
                errors=errors,
            )
        return resolved

    # =========================================================================
    # Validation
    # =========================================================================

    def validate(self, services: Mapping[str, ServiceDefinition]) -> list[str]:
        """Validate the dependency graph of a service set.

        Detects cycles with a depth-first traversal that tracks the current
        recursion stack, and dependencies that are not in the set. All errors
        are collected.

        Returns:
            List of error messages; empty when the graph is valid.
        """
        errors: list[str] = []
        visited: set[str] = set()
        on_stack: set[str] = set()

        def visit(node: str) -> None:
            if node in on_stack:
                errors.append(f"Circular dependency detected involving {node}")
                return
            if node in visited or node not in services:
                return
            on_stack.add(node)
            for dependency in services[node].dependencies:
                visit(dependency)
            on_stack.discard(node)
            visited.add(node)

        for name in services:
            visit(name)

        for name, definition in services.items():
            for dependency in definition.dependencies:
                if dependency not in services:
                    errors.append(f"Service {name} depends on {dependency} which is not enabled")

        if errors:
            logger.warning(
                f"Service configuration has {len(errors)} dependency errors",
                extra={"errors": errors},
            )
        return errors

    def startup_order(self, services: Mapping[str, ServiceDefinition]) -> list[str]:
        """Service names sorted by priority, lowest first."""
        return sorted(services, key=lambda name: (services[name].priority, name))

    # =========================================================================
    # Health / compatibility
    # =========================================================================

    @staticmethod
    def health_check_timeout(definition: ServiceDefinition) -> float:
        """Health-check timeout of a service: its override, else the type default."""
        if definition.health_check_timeout is not None:
            return definition.health_check_timeout
        return HEALTH_CHECK_TIMEOUTS.get(definition.type, DEFAULT_HEALTH_CHECK_TIMEOUT)

    def platform_compatibility(self, platform: Platform | None = None) -> PlatformCompatibility:
        """Report supported modes and manual configuration for every service."""
        platform = platform or self._platform
        services: dict[str, ServiceCompatibility] = {}
        for name, definition in self._definitions.items():
            manual = definition.manual
            services[name] = ServiceCompatibility(
                name=name,
                display_name=definition.display_name,
                critical=definition.critical,
                supported_modes=self.supported_modes(name, platform),
                docker_supported=self.is_mode_supported(name, DeploymentMode.DOCKER, platform),
                manual_supported=self.is_mode_supported(name, DeploymentMode.MANUAL, platform),
                manual_config=(
                    ManualConfigInfo(
                        required=manual.url_required,
                        default_url=manual.default_url,
                        health_endpoint=manual.health_endpoint,
                        config_key=manual.config_key,
                        description=manual.description,
                    )
                    if manual is not None
                    else None
                ),
            )
        return PlatformCompatibility(platform=platform, services=services)
