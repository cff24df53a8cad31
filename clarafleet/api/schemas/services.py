"""Pydantic schemas for the orchestration core.

These models are the caller-facing shapes of the orchestration operations:
hardware detection results, container state, local service actions, remote
deployment configuration/results, and remote fleet monitoring.
"""

from datetime import datetime
from enum import StrEnum, auto
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr

# =============================================================================
# Enums
# =============================================================================


class ServiceType(StrEnum):
    """Kind of process behind a service definition."""

    DOCKER_DAEMON = "docker-daemon"
    DOCKER_CONTAINER = "docker-container"
    BINARY = "binary"
    SERVICE = "service"
    HTTP_SERVICE = "http-service"


class DeploymentMode(StrEnum):
    """Where a service's process runs relative to the orchestrating machine."""

    LOCAL = auto()  # platform binary started by the orchestrator
    DOCKER = auto()  # local container
    MANUAL = auto()  # user-managed, reached by URL
    REMOTE = auto()  # container deployed over SSH


class Platform(StrEnum):
    WIN32 = auto()
    DARWIN = auto()
    LINUX = auto()


class HardwareVariant(StrEnum):
    """Acceleration variant; selects the container image and runtime overlay."""

    CPU = auto()
    CUDA = auto()
    ROCM = auto()
    STRIX = auto()
    VULKAN = auto()


class DetectedHardware(StrEnum):
    """Detection outcome: a hardware variant, or unsupported architecture."""

    CPU = auto()
    CUDA = auto()
    ROCM = auto()
    STRIX = auto()
    VULKAN = auto()
    UNSUPPORTED = auto()


class Confidence(StrEnum):
    HIGH = auto()
    MEDIUM = auto()
    LOW = auto()


class DeploymentPhase(StrEnum):
    """Step of a remote deployment attempt."""

    CONNECTING = "connecting"
    DETECTING_HARDWARE = "detecting-hardware"
    INSTALLING_PREREQUISITES = "installing-prerequisites"
    CONFIGURING_NETWORK = "configuring-network"
    CLEANING_PREVIOUS = "cleaning-previous"
    PULLING_IMAGE = "pulling-image"
    STARTING_CONTAINER = "starting-container"
    VERIFYING_HEALTH = "verifying-health"
    DONE = "done"
    FAILED = "failed"


# =============================================================================
# Hardware
# =============================================================================


class HardwareCapability(BaseModel):
    """Hardware capabilities of a target machine.

    Computed fresh by every detection request.
    """

    architecture: str = Field("unknown", description="Machine architecture (uname -m)")
    container_runtime: bool = Field(False, description="Whether a Docker CLI is installed")
    docker_version: str | None = Field(None, description="Docker version string")
    nvidia: bool = Field(False, description="Whether an NVIDIA GPU answered nvidia-smi")
    gpu_name: str | None = Field(None, description="NVIDIA GPU product name")
    cuda_version: str | None = Field(None, description="Installed CUDA toolkit release")
    rocm: bool = Field(False, description="Whether an AMD GPU answered rocm-smi")
    rocm_version: str | None = Field(None, description="Installed ROCm version")
    strix: bool = Field(False, description="Whether the CPU is a Strix Halo class APU")
    cpu_model: str | None = Field(None, description="CPU model name")
    vulkan: bool = Field(False, description="Whether vulkaninfo reports a device")
    detected: DetectedHardware = Field(
        DetectedHardware.CPU,
        description="Recommended hardware variant, or 'unsupported'",
    )
    confidence: Confidence = Field(Confidence.HIGH, description="Confidence in the recommendation")
    unsupported_reason: str | None = Field(None, description="Machine-readable unsupported reason")
    error: str | None = Field(None, description="Human-readable reason when unsupported")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "architecture": "x86_64",
                "container_runtime": True,
                "docker_version": "Docker version 27.3.1, build ce12230",
                "nvidia": True,
                "gpu_name": "NVIDIA GeForce RTX 4090",
                "cuda_version": "12.4",
                "rocm": False,
                "strix": False,
                "vulkan": False,
                "detected": "cuda",
                "confidence": "high",
            }
        }
    )

    @property
    def supported(self) -> bool:
        return self.detected != DetectedHardware.UNSUPPORTED

    @property
    def variant(self) -> HardwareVariant | None:
        """The recommended variant, or None when the machine is unsupported."""
        if not self.supported:
            return None
        return HardwareVariant(self.detected.value)


# =============================================================================
# Local services
# =============================================================================


class StartOptions(BaseModel):
    """Options for starting a local service."""

    gpu_type: HardwareVariant | None = Field(
        None,
        description="Hardware variant to use; auto-detected when omitted",
    )
    mode: DeploymentMode | None = Field(
        None,
        description="Deployment mode; the service's preferred supported mode when omitted",
    )
    url: str | None = Field(None, description="Service URL for manual mode")
    wait_for_health: bool = Field(True, description="Poll the health endpoint after start")


class ContainerState(BaseModel):
    """Observed state of one named container. Read-only to callers."""

    name: str
    exists: bool = False
    running: bool = False
    status: str | None = Field(None, description="Engine status string (running, exited, ...)")
    started_at: str | None = Field(None, description="Engine start timestamp")
    image: str | None = None
    gpu_type: str | None = Field(None, description="Hardware variant derived from the image tag")
    ports: dict[str, list[str]] = Field(
        default_factory=dict,
        description="Container port -> list of host bindings (host_ip:host_port)",
    )
    error: str | None = None


class ServiceActionResult(BaseModel):
    """Result of a start/stop/restart/remove request."""

    success: bool
    service: str
    action: str
    mode: DeploymentMode | None = None
    container_name: str | None = None
    gpu_type: HardwareVariant | None = None
    healthy: bool | None = Field(None, description="Health after start; None when not checked")
    already_running: bool = False
    url: str | None = None
    message: str = ""
    error: str | None = None
    error_code: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class ServiceStatusResponse(BaseModel):
    service: str
    mode: DeploymentMode | None = None
    state: ContainerState | None = None
    running: bool = False
    healthy: bool | None = None
    error: str | None = None


class ServiceLogsResponse(BaseModel):
    service: str
    tail: int
    logs: str = ""
    error: str | None = None


# =============================================================================
# Registry
# =============================================================================


class FeatureSelection(BaseModel):
    """Optional services selected by the user."""

    comfyui: bool = False
    n8n: bool = False
    mcp: bool = False

    def enabled_features(self) -> set[str]:
        return {name for name, selected in self.model_dump().items() if selected}


class ManualConfigInfo(BaseModel):
    required: bool = False
    default_url: str | None = None
    health_endpoint: str | None = None
    config_key: str | None = None
    description: str | None = None


class ServiceCompatibility(BaseModel):
    name: str
    display_name: str
    critical: bool
    supported_modes: list[DeploymentMode]
    docker_supported: bool
    manual_supported: bool
    manual_config: ManualConfigInfo | None = None


class PlatformCompatibility(BaseModel):
    platform: Platform
    services: dict[str, ServiceCompatibility]


class CompatibleService(BaseModel):
    name: str
    display_name: str
    type: ServiceType
    critical: bool
    priority: int
    dependencies: list[str]
    assigned_mode: DeploymentMode


class CompatibleServicesResult(BaseModel):
    success: bool = True
    platform: Platform
    services: dict[str, CompatibleService] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)
    error: str | None = None


class ResolveServicesRequest(BaseModel):
    features: FeatureSelection = Field(default_factory=FeatureSelection)
    mode: DeploymentMode = DeploymentMode.DOCKER


# =============================================================================
# Remote deployment
# =============================================================================


class RemoteDeployConfig(BaseModel):
    """Connection and deployment options for a remote host."""

    host: str = Field(..., min_length=1, description="Hostname or IP address")
    port: int = Field(22, ge=1, le=65535, description="SSH port")
    username: str = Field(..., min_length=1, description="SSH user")
    password: SecretStr | None = Field(
        None,
        description="SSH password; also used for sudo unless sudo_password is set",
    )
    private_key_path: str | None = Field(None, description="Private key file for SSH auth")
    sudo_password: SecretStr | None = Field(
        None,
        description="Elevated-privilege secret when it differs from the SSH password",
    )
    hardware_type: HardwareVariant | None = Field(
        None,
        description="Hardware variant to deploy; auto-detected when omitted",
    )

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "host": "10.0.0.5",
                "port": 22,
                "username": "ubuntu",
                "password": "********",
                "hardware_type": "cuda",
            }
        }
    )

    def privileged_secret(self) -> str | None:
        secret = self.sudo_password or self.password
        return secret.get_secret_value() if secret else None


class ConnectionTestResult(BaseModel):
    success: bool
    host: str
    hardware: HardwareCapability | None = None
    error: str | None = None
    error_code: str | None = None


class DeploymentResult(BaseModel):
    """Outcome of one remote deployment."""

    success: bool
    host: str
    hardware_type: HardwareVariant | None = Field(
        None, description="Variant actually deployed (CPU after a fallback)"
    )
    requested_hardware_type: HardwareVariant | None = None
    gpu_available: bool = False
    fallback_to_cpu: bool = False
    url: str | None = None
    container_name: str | None = None
    healthy: bool | None = None
    message: str = ""
    phase: DeploymentPhase = DeploymentPhase.CONNECTING
    error: str | None = None
    error_code: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class RemoteServiceStatus(BaseModel):
    name: str
    hardware_type: str
    status: str
    running: bool
    is_healthy: bool
    ports: str
    url: str | None = None


class RemoteFleetStatus(BaseModel):
    success: bool
    host: str
    services: list[RemoteServiceStatus] = Field(default_factory=list)
    total_services: int = 0
    running_services: int = 0
    healthy_services: int = 0
    timestamp: datetime
    error: str | None = None
