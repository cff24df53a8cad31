"""Declarative service catalog.

``build_service_definitions()`` returns the catalog for one platform: the
container engine itself, the Python backend, the ClaraCore inference engine,
and the optional ComfyUI, n8n and MCP services. Each entry is a
``ServiceDefinition`` record with typed launch specs per deployment mode and
an injected health check strategy.
"""

from __future__ import annotations

import platform as platform_module
from dataclasses import dataclass, field
from pathlib import Path

from clarafleet.api.schemas.services import (
    DeploymentMode,
    HardwareVariant,
    Platform,
    ServiceType,
)
from clarafleet.services.health_checks import (
    DockerEngineHealthCheck,
    HealthCheck,
    HttpHealthCheck,
    StaticHealthCheck,
)

ALL_PLATFORMS: tuple[Platform, ...] = (Platform.WIN32, Platform.DARWIN, Platform.LINUX)

# Well-known ports
CLARACORE_HOST_PORT = 8091
CLARACORE_CONTAINER_PORT = 5890
PYTHON_BACKEND_CONTAINER_PORT = 5000
COMFYUI_PORT = 8188
N8N_PORT = 5678
MCP_PROXY_PORT = 8092


# =============================================================================
# Launch specs
# =============================================================================


@dataclass(frozen=True, slots=True)
class GpuOverlay:
    """Hardware-variant additions merged onto a container's base spec.

    Attributes:
        image: Full image reference for this variant (None = ``{image_base}:{variant}``)
        runtime: Alternate container runtime name (e.g. ``nvidia``)
        devices: Host device paths passed through to the container
        environment: Extra environment variables
    """

    image: str | None = None
    runtime: str | None = None
    devices: tuple[str, ...] = ()
    environment: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ContainerLaunchSpec:
    """How to run a service as a local container.

    ``ports`` maps host port -> container port.
    """

    container_name: str
    image: str | None = None
    image_base: str | None = None
    ports: dict[int, int] = field(default_factory=dict)
    volumes: tuple[str, ...] = ()
    environment: dict[str, str] = field(default_factory=dict)
    hostname: str | None = None
    runtime: str | None = None
    restart_policy: str = "unless-stopped"
    gpu_overlays: dict[HardwareVariant, GpuOverlay] = field(default_factory=dict)
    preempt_ports: tuple[int, ...] = ()
    health_path: str = "/health"

    @property
    def uses_hardware_variants(self) -> bool:
        return bool(self.gpu_overlays) or self.image_base is not None

    def image_for(self, variant: HardwareVariant | None) -> str:
        """Resolve the image reference for a hardware variant."""
        if variant is not None:
            overlay = self.gpu_overlays.get(variant)
            if overlay is not None and overlay.image:
                return overlay.image
            if self.image_base:
                return f"{self.image_base}:{variant}"
        if self.image:
            return self.image
        if self.image_base:
            return f"{self.image_base}:{HardwareVariant.CPU}"
        raise ValueError(f"No image configured for container {self.container_name}")

    def overlay_for(self, variant: HardwareVariant | None) -> GpuOverlay:
        if variant is None:
            return GpuOverlay()
        return self.gpu_overlays.get(variant, GpuOverlay())


@dataclass(frozen=True, slots=True)
class BinaryLaunchSpec:
    """How to run a service as a native binary.

    ``path`` is relative to the install directory.
    """

    path: str
    args: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ManualConnectionSpec:
    """How to reach a user-managed instance of a service."""

    url_required: bool = True
    default_url: str | None = None
    health_endpoint: str = "/health"
    config_key: str | None = None
    description: str = ""


@dataclass(slots=True)
class ServiceDefinition:
    """One catalog entry.

    ``platform_support`` maps a deployment mode to the platforms it runs on;
    a mode without an entry is unrestricted. A service with no declared
    deployment modes supports only ``docker``. With ``auto_restart`` off its
    container is created with the ``no`` restart policy.
    """

    name: str
    display_name: str
    type: ServiceType
    critical: bool
    priority: int
    auto_restart: bool = True
    dependencies: tuple[str, ...] = ()
    deployment_modes: tuple[DeploymentMode, ...] = ()
    platform_support: dict[DeploymentMode, tuple[Platform, ...]] | None = None
    container: ContainerLaunchSpec | None = None
    binary: BinaryLaunchSpec | None = None
    manual: ManualConnectionSpec | None = None
    health_check: HealthCheck = field(default_factory=StaticHealthCheck)
    health_check_timeout: float | None = None
    feature: str | None = None
    ports: dict[str, int] = field(default_factory=dict)

    @property
    def declared_modes(self) -> tuple[DeploymentMode, ...]:
        return self.deployment_modes or (DeploymentMode.DOCKER,)


# =============================================================================
# Platform helpers
# =============================================================================


def current_platform() -> Platform:
    system = platform_module.system().lower()
    if system.startswith("win"):
        return Platform.WIN32
    if system == "darwin":
        return Platform.DARWIN
    return Platform.LINUX


def normalize_architecture(machine: str) -> str:
    """Map machine names onto ``amd64``/``arm64``."""
    machine = machine.lower()
    if machine in ("aarch64", "arm64", "armv8", "armv8l"):
        return "arm64"
    if machine in ("x86_64", "amd64", "x64"):
        return "amd64"
    return machine


def current_architecture() -> str:
    return normalize_architecture(platform_module.machine())


CLARACORE_BINARIES: dict[tuple[Platform, str], str] = {
    (Platform.WIN32, "amd64"): "./claracore/claracore-windows-amd64.exe",
    (Platform.DARWIN, "arm64"): "./claracore/claracore-darwin-arm64",
    (Platform.DARWIN, "amd64"): "./claracore/claracore-darwin-amd64",
    (Platform.LINUX, "arm64"): "./claracore/claracore-linux-arm64",
    (Platform.LINUX, "amd64"): "./claracore/claracore-linux-amd64",
}


def claracore_binary_path(platform: Platform, architecture: str) -> str:
    """Binary for the platform/architecture; Windows always uses the amd64 build."""
    if platform == Platform.WIN32:
        return CLARACORE_BINARIES[(Platform.WIN32, "amd64")]
    return CLARACORE_BINARIES.get(
        (platform, normalize_architecture(architecture)),
        CLARACORE_BINARIES[(Platform.LINUX, "amd64")],
    )


# =============================================================================
# Catalog
# =============================================================================


def build_service_definitions(
    platform: Platform | None = None,
    architecture: str | None = None,
    data_dir: str | Path | None = None,
    image_repository: str = "clara17verse/claracore",
) -> dict[str, ServiceDefinition]:
    """Build the service catalog for a platform.

    Args:
        platform: Target platform (defaults to the running platform)
        architecture: Machine architecture (defaults to the running machine)
        data_dir: Base directory for bind-mounted data (defaults to ``~/.clara``)
        image_repository: Image repository of the inference engine

    Returns:
        Mapping of service name to definition, in priority order
    """
    platform = platform or current_platform()
    architecture = architecture or current_architecture()
    data_path = Path(data_dir) if data_dir else Path.home() / ".clara"

    # Linux runs the backend with host networking on 5000; elsewhere it is mapped to 5001
    backend_host_port = 5000 if platform == Platform.LINUX else 5001
    backend_url = f"http://localhost:{backend_host_port}"

    definitions = [
        ServiceDefinition(
            name="docker",
            display_name="Docker Engine",
            type=ServiceType.DOCKER_DAEMON,
            critical=True,
            priority=1,
            health_check=DockerEngineHealthCheck(),
        ),
        ServiceDefinition(
            name="python-backend",
            display_name="Python Backend Service",
            type=ServiceType.DOCKER_CONTAINER,
            critical=True,
            priority=2,
            dependencies=("docker",),
            deployment_modes=(DeploymentMode.DOCKER, DeploymentMode.MANUAL, DeploymentMode.REMOTE),
            platform_support={
                DeploymentMode.DOCKER: ALL_PLATFORMS,
                DeploymentMode.MANUAL: ALL_PLATFORMS,
                DeploymentMode.REMOTE: ALL_PLATFORMS,
            },
            container=ContainerLaunchSpec(
                container_name="clara_python",
                image="clara17verse/clara-backend:latest",
                ports={backend_host_port: PYTHON_BACKEND_CONTAINER_PORT},
                volumes=(
                    f"{data_path / 'python_backend_data'}:/home/clara",
                    "clara_python_models:/app/models",
                ),
                environment={"PYTHONUNBUFFERED": "1", "CLARA_ENV": "production"},
            ),
            manual=ManualConnectionSpec(
                default_url=backend_url,
                health_endpoint="/health",
                config_key="python_backend_url",
                description="Bring Your Own Python Backend - Connect to external Python Backend instance",
            ),
            health_check=HttpHealthCheck("python-backend", backend_url, "/health"),
            ports={"main": backend_host_port},
        ),
        ServiceDefinition(
            name="claracore",
            display_name="Clara Core AI Engine",
            type=ServiceType.BINARY,
            critical=True,
            priority=3,
            dependencies=("docker",),
            deployment_modes=(DeploymentMode.LOCAL, DeploymentMode.REMOTE, DeploymentMode.DOCKER),
            platform_support={
                DeploymentMode.LOCAL: ALL_PLATFORMS,
                DeploymentMode.REMOTE: ALL_PLATFORMS,
                DeploymentMode.DOCKER: (Platform.WIN32, Platform.LINUX),
            },
            binary=BinaryLaunchSpec(
                path=claracore_binary_path(platform, architecture),
                args=("-listen", f":{CLARACORE_HOST_PORT}"),
            ),
            container=ContainerLaunchSpec(
                container_name="clara_core",
                image_base=image_repository,
                hostname="clara-core",
                ports={CLARACORE_HOST_PORT: CLARACORE_CONTAINER_PORT},
                volumes=("claracore:/app/downloads",),
                environment={"NODE_ENV": "production", "CLARA_PORT": str(CLARACORE_CONTAINER_PORT)},
                gpu_overlays={
                    HardwareVariant.CUDA: GpuOverlay(
                        image=f"{image_repository}:cuda",
                        runtime="nvidia",
                        environment={
                            "NVIDIA_VISIBLE_DEVICES": "all",
                            "NVIDIA_DRIVER_CAPABILITIES": "compute,utility",
                        },
                    ),
                    HardwareVariant.ROCM: GpuOverlay(
                        image=f"{image_repository}:rocm",
                        devices=("/dev/kfd", "/dev/dri"),
                        environment={"HSA_OVERRIDE_GFX_VERSION": "10.3.0"},
                    ),
                    HardwareVariant.STRIX: GpuOverlay(
                        image=f"{image_repository}:strix",
                        devices=("/dev/dri",),
                    ),
                    HardwareVariant.VULKAN: GpuOverlay(
                        image=f"{image_repository}:vulkan",
                        devices=("/dev/dri",),
                        environment={
                            "VK_ICD_FILENAMES": "/usr/share/vulkan/icd.d/nvidia_icd.json",
                        },
                    ),
                    HardwareVariant.CPU: GpuOverlay(image=f"{image_repository}:cpu"),
                },
                preempt_ports=(CLARACORE_HOST_PORT,),
            ),
            manual=ManualConnectionSpec(
                default_url=f"http://localhost:{CLARACORE_HOST_PORT}",
                health_endpoint="/health",
                config_key="claracore_url",
                description="Connect to external ClaraCore instance (local, remote, or docker)",
            ),
            health_check=HttpHealthCheck(
                "claracore", f"http://localhost:{CLARACORE_HOST_PORT}", "/health"
            ),
            ports={"main": CLARACORE_HOST_PORT},
        ),
        ServiceDefinition(
            name="comfyui",
            display_name="ComfyUI Image Generation",
            type=ServiceType.DOCKER_CONTAINER,
            critical=False,
            priority=4,
            dependencies=("docker", "python-backend"),
            deployment_modes=(DeploymentMode.DOCKER, DeploymentMode.MANUAL, DeploymentMode.REMOTE),
            platform_support={
                DeploymentMode.DOCKER: (Platform.WIN32,),
                DeploymentMode.MANUAL: ALL_PLATFORMS,
                DeploymentMode.REMOTE: ALL_PLATFORMS,
            },
            container=ContainerLaunchSpec(
                container_name="clara_comfyui",
                image="clara17verse/clara-comfyui:with-custom-nodes",
                ports={COMFYUI_PORT: COMFYUI_PORT},
                volumes=(
                    f"{data_path / 'comfyui_models'}:/app/ComfyUI/models",
                    f"{data_path / 'comfyui_output'}:/app/ComfyUI/output",
                    f"{data_path / 'comfyui_input'}:/app/ComfyUI/input",
                    f"{data_path / 'comfyui_custom_nodes'}:/app/ComfyUI/custom_nodes",
                    f"{data_path / 'comfyui_temp'}:/tmp",
                ),
                environment={
                    "NVIDIA_VISIBLE_DEVICES": "all",
                    "CUDA_VISIBLE_DEVICES": "0",
                    "PYTORCH_CUDA_ALLOC_CONF": "max_split_size_mb:2048,expandable_segments:True",
                    "COMFYUI_FORCE_FP16": "1",
                    "COMFYUI_HIGHVRAM": "1",
                },
                runtime="nvidia",
                health_path="/",
            ),
            manual=ManualConnectionSpec(
                default_url=f"http://localhost:{COMFYUI_PORT}",
                health_endpoint="/",
                config_key="comfyui_url",
                description="Bring Your Own ComfyUI - Connect to external ComfyUI instance",
            ),
            health_check=HttpHealthCheck("comfyui", f"http://localhost:{COMFYUI_PORT}", "/"),
            feature="comfyui",
            ports={"main": COMFYUI_PORT},
        ),
        ServiceDefinition(
            name="n8n",
            display_name="N8N Workflow Engine",
            type=ServiceType.DOCKER_CONTAINER,
            critical=False,
            priority=5,
            dependencies=("docker",),
            deployment_modes=(DeploymentMode.DOCKER, DeploymentMode.MANUAL, DeploymentMode.REMOTE),
            platform_support={
                DeploymentMode.DOCKER: ALL_PLATFORMS,
                DeploymentMode.MANUAL: ALL_PLATFORMS,
                DeploymentMode.REMOTE: ALL_PLATFORMS,
            },
            container=ContainerLaunchSpec(
                container_name="clara_n8n",
                image="n8nio/n8n:latest",
                ports={N8N_PORT: N8N_PORT},
                volumes=(f"{data_path / 'n8n'}:/home/node/.n8n",),
                environment={
                    "N8N_BASIC_AUTH_ACTIVE": "false",
                    "N8N_METRICS": "true",
                    "WEBHOOK_URL": f"http://localhost:{N8N_PORT}/",
                    "GENERIC_TIMEZONE": "UTC",
                },
                health_path="/healthz",
            ),
            manual=ManualConnectionSpec(
                default_url=f"http://localhost:{N8N_PORT}",
                health_endpoint="/healthz",
                config_key="n8n_url",
                description="Bring Your Own N8N - Connect to external N8N instance",
            ),
            health_check=HttpHealthCheck("n8n", f"http://localhost:{N8N_PORT}", "/healthz"),
            feature="n8n",
            ports={"main": N8N_PORT},
        ),
        ServiceDefinition(
            name="mcp",
            display_name="Model Context Protocol",
            type=ServiceType.SERVICE,
            critical=False,
            priority=6,
            dependencies=("python-backend",),
            deployment_modes=(DeploymentMode.LOCAL,),
            health_check=StaticHealthCheck(True),
            feature="mcp",
        ),
        ServiceDefinition(
            name="mcp-proxy",
            display_name="MCP HTTP Proxy",
            type=ServiceType.HTTP_SERVICE,
            critical=False,
            priority=7,
            dependencies=("mcp",),
            deployment_modes=(DeploymentMode.LOCAL,),
            health_check=HttpHealthCheck(
                "mcp-proxy", f"http://localhost:{MCP_PROXY_PORT}", "/health"
            ),
            feature="mcp",
            ports={"main": MCP_PROXY_PORT},
        ),
    ]
    return {definition.name: definition for definition in definitions}
