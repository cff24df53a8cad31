"""Unit tests for the service registry and built-in catalog."""

import pytest
from hypothesis import given

from clarafleet.api.schemas.services import DeploymentMode, Platform, ServiceType
from clarafleet.core.exceptions import ServiceConfigurationError, ServiceNotFoundError
from clarafleet.services.health_checks import HttpHealthCheck
from clarafleet.services.service_definitions import (
    ServiceDefinition,
    claracore_binary_path,
    normalize_architecture,
)
from clarafleet.services.service_registry import ServiceRegistry
from clarafleet.tests.hypothesis_strategies import acyclic_service_graphs, cyclic_service_graphs


@pytest.fixture
def linux_registry() -> ServiceRegistry:
    return ServiceRegistry.default(Platform.LINUX, data_dir="/tmp/clara")


@pytest.fixture
def darwin_registry() -> ServiceRegistry:
    return ServiceRegistry.default(Platform.DARWIN, data_dir="/tmp/clara")


def _service(name: str, *dependencies: str, critical: bool = True, **kwargs) -> ServiceDefinition:
    return ServiceDefinition(
        name=name,
        display_name=name.title(),
        type=ServiceType.SERVICE,
        critical=critical,
        priority=kwargs.pop("priority", 1),
        dependencies=dependencies,
        **kwargs,
    )


# =============================================================================
# Lookup
# =============================================================================


def test_catalog_contains_known_services(linux_registry):
    assert linux_registry.names() == [
        "docker",
        "python-backend",
        "claracore",
        "comfyui",
        "n8n",
        "mcp",
        "mcp-proxy",
    ]


def test_get_unknown_service_raises(linux_registry):
    with pytest.raises(ServiceNotFoundError) as exc_info:
        linux_registry.get("redis")
    assert exc_info.value.error_code == "SERVICE_NOT_FOUND"
    assert exc_info.value.details["service"] == "redis"


def test_find_unknown_service_returns_none(linux_registry):
    assert linux_registry.find("redis") is None


# =============================================================================
# Feature selection
# =============================================================================


def test_no_features_enables_only_critical_services(linux_registry):
    enabled = linux_registry.resolve_enabled_services()
    assert set(enabled) == {"docker", "python-backend", "claracore"}


def test_mcp_feature_enables_server_and_proxy(linux_registry):
    enabled = linux_registry.resolve_enabled_services({"mcp"})
    assert {"mcp", "mcp-proxy"} <= set(enabled)
    assert "n8n" not in enabled


def test_unknown_feature_is_ignored(linux_registry):
    enabled = linux_registry.resolve_enabled_services({"does-not-exist"})
    assert set(enabled) == {"docker", "python-backend", "claracore"}


# =============================================================================
# Mode support
# =============================================================================


def test_claracore_docker_not_supported_on_darwin(linux_registry, darwin_registry):
    assert linux_registry.is_mode_supported("claracore", DeploymentMode.DOCKER)
    assert not darwin_registry.is_mode_supported("claracore", DeploymentMode.DOCKER)
    assert darwin_registry.is_mode_supported("claracore", DeploymentMode.LOCAL)


def test_comfyui_docker_only_on_windows(linux_registry):
    assert linux_registry.is_mode_supported("comfyui", DeploymentMode.DOCKER, Platform.WIN32)
    assert not linux_registry.is_mode_supported("comfyui", DeploymentMode.DOCKER, Platform.LINUX)


def test_undeclared_modes_default_to_docker(linux_registry):
    assert linux_registry.supported_modes("docker") == [DeploymentMode.DOCKER]
    assert not linux_registry.is_mode_supported("docker", DeploymentMode.MANUAL)


def test_mode_without_platform_entry_is_unrestricted():
    registry = ServiceRegistry(
        {
            "svc": _service(
                "svc",
                deployment_modes=(DeploymentMode.LOCAL, DeploymentMode.MANUAL),
                platform_support={DeploymentMode.LOCAL: (Platform.LINUX,)},
            )
        },
        Platform.DARWIN,
    )
    assert registry.supported_modes("svc") == [DeploymentMode.MANUAL]


def test_unknown_service_supports_nothing(linux_registry):
    assert not linux_registry.is_mode_supported("redis", DeploymentMode.DOCKER)
    assert linux_registry.supported_modes("redis") == []


def test_supported_modes_keep_declaration_order(darwin_registry):
    assert darwin_registry.supported_modes("claracore") == [DeploymentMode.LOCAL, DeploymentMode.REMOTE]


# =============================================================================
# Compatible services
# =============================================================================


def test_preferred_mode_used_where_supported(linux_registry):
    resolved = linux_registry.resolve_compatible_services({"n8n"}, DeploymentMode.DOCKER)

    assert resolved["claracore"].mode == DeploymentMode.DOCKER
    assert resolved["n8n"].mode == DeploymentMode.DOCKER


def test_unsupported_preferred_mode_falls_back_to_first_supported(darwin_registry):
    resolved = darwin_registry.resolve_compatible_services(set(), DeploymentMode.DOCKER)
    assert resolved["claracore"].mode == DeploymentMode.LOCAL


def test_comfyui_falls_back_to_manual_off_windows(linux_registry):
    resolved = linux_registry.resolve_compatible_services({"comfyui"}, DeploymentMode.DOCKER)
    assert resolved["comfyui"].mode == DeploymentMode.MANUAL


def test_optional_service_without_supported_mode_is_dropped():
    registry = ServiceRegistry(
        {
            "core": _service("core"),
            "extra": _service(
                "extra",
                critical=False,
                feature="extra",
                deployment_modes=(DeploymentMode.LOCAL,),
                platform_support={DeploymentMode.LOCAL: (Platform.WIN32,)},
            ),
        },
        Platform.LINUX,
    )

    resolved = registry.resolve_compatible_services({"extra"}, DeploymentMode.DOCKER)

    assert set(resolved) == {"core"}


def test_critical_service_without_supported_mode_raises():
    registry = ServiceRegistry(
        {
            "core": _service(
                "core",
                deployment_modes=(DeploymentMode.LOCAL,),
                platform_support={DeploymentMode.LOCAL: (Platform.WIN32,)},
            )
        },
        Platform.LINUX,
    )

    with pytest.raises(ServiceConfigurationError) as exc_info:
        registry.resolve_compatible_services(set(), DeploymentMode.DOCKER)
    assert "core" in exc_info.value.errors[0]


# =============================================================================
# Dependency validation
# =============================================================================


@given(services=acyclic_service_graphs())
def test_acyclic_graphs_validate_cleanly(services):
    assert ServiceRegistry(services, Platform.LINUX).validate(services) == []


@given(services=cyclic_service_graphs())
def test_cyclic_graphs_report_circular_dependency(services):
    errors = ServiceRegistry(services, Platform.LINUX).validate(services)
    assert any(error.startswith("Circular dependency detected involving") for error in errors)


def test_missing_dependency_is_reported():
    services = {"a": _service("a", "b")}

    errors = ServiceRegistry(services).validate(services)

    assert errors == ["Service a depends on b which is not enabled"]


def test_self_dependency_is_circular():
    services = {"a": _service("a", "a")}
    assert ServiceRegistry(services).validate(services) == ["Circular dependency detected involving a"]


def test_all_errors_are_collected():
    services = {
        "a": _service("a", "b"),
        "b": _service("b", "a"),
        "c": _service("c", "missing"),
    }

    errors = ServiceRegistry(services).validate(services)

    assert any("Circular dependency" in error for error in errors)
    assert "Service c depends on missing which is not enabled" in errors


def test_default_catalog_is_valid_for_every_feature_selection(linux_registry):
    for features in (set(), {"comfyui"}, {"n8n"}, {"mcp"}, {"comfyui", "n8n", "mcp"}):
        enabled = linux_registry.resolve_enabled_services(features)
        assert linux_registry.validate(enabled) == []


def test_disabling_dependency_of_enabled_service_is_reported(linux_registry):
    enabled = linux_registry.resolve_enabled_services({"mcp"})
    del enabled["mcp"]

    errors = linux_registry.validate(enabled)

    assert errors == ["Service mcp-proxy depends on mcp which is not enabled"]


def test_startup_order_follows_priority(linux_registry):
    enabled = linux_registry.resolve_enabled_services({"n8n"})
    assert linux_registry.startup_order(enabled) == ["docker", "python-backend", "claracore", "n8n"]


# =============================================================================
# Health timeouts and compatibility report
# =============================================================================


@pytest.mark.parametrize(
    ("service_type", "expected"),
    [
        (ServiceType.DOCKER_DAEMON, 10.0),
        (ServiceType.DOCKER_CONTAINER, 15.0),
        (ServiceType.BINARY, 5.0),
        (ServiceType.SERVICE, 3.0),
        (ServiceType.HTTP_SERVICE, 3.0),
    ],
)
def test_health_check_timeout_by_type(service_type, expected):
    definition = ServiceDefinition(
        name="svc", display_name="Svc", type=service_type, critical=True, priority=1
    )
    assert ServiceRegistry.health_check_timeout(definition) == expected


def test_health_check_timeout_override():
    definition = _service("svc", health_check_timeout=42.0)
    assert ServiceRegistry.health_check_timeout(definition) == 42.0


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("python-backend", 15.0),
        ("claracore", 5.0),
        ("comfyui", 15.0),
        ("n8n", 15.0),
        ("mcp-proxy", 3.0),
    ],
)
def test_catalog_http_checks_use_type_timeouts(linux_registry, name, expected):
    assert linux_registry.get(name).health_check.timeout == expected


def test_http_check_timeout_follows_override():
    definition = ServiceDefinition(
        name="slow",
        display_name="Slow",
        type=ServiceType.DOCKER_CONTAINER,
        critical=True,
        priority=1,
        health_check=HttpHealthCheck("slow", "http://localhost:9000"),
        health_check_timeout=42.0,
    )
    plain = ServiceDefinition(
        name="plain",
        display_name="Plain",
        type=ServiceType.HTTP_SERVICE,
        critical=True,
        priority=2,
        health_check=HttpHealthCheck("plain", "http://localhost:9001", timeout=30.0),
    )

    ServiceRegistry({"slow": definition, "plain": plain}, Platform.LINUX)

    assert definition.health_check.timeout == 42.0
    assert plain.health_check.timeout == 3.0


def test_platform_compatibility_report(darwin_registry):
    report = darwin_registry.platform_compatibility()

    assert report.platform == Platform.DARWIN
    claracore = report.services["claracore"]
    assert claracore.docker_supported is False
    assert claracore.manual_supported is False
    assert claracore.manual_config.config_key == "claracore_url"
    assert report.services["n8n"].manual_supported is True
    assert report.services["docker"].manual_config is None


# =============================================================================
# Catalog helpers
# =============================================================================


@pytest.mark.parametrize(
    ("machine", "expected"),
    [("x86_64", "amd64"), ("AMD64", "amd64"), ("aarch64", "arm64"), ("arm64", "arm64"), ("riscv64", "riscv64")],
)
def test_normalize_architecture(machine, expected):
    assert normalize_architecture(machine) == expected


def test_windows_always_uses_amd64_binary():
    assert claracore_binary_path(Platform.WIN32, "arm64").endswith("windows-amd64.exe")


def test_darwin_arm_binary():
    assert claracore_binary_path(Platform.DARWIN, "aarch64").endswith("darwin-arm64")
