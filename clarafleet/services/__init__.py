"""Orchestration services: registry, detection, lifecycle and remote deployment."""

from .container_lifecycle import ContainerLifecycleManager
from .hardware_detector import HardwareDetector, recommend
from .remote_deployment import RemoteDeploymentEngine, build_docker_run_command, detect_distro
from .remote_monitor import RemoteFleetMonitor
from .service_orchestrator import ServiceOrchestrator
from .service_registry import ServiceRegistry

__all__ = [
    "ContainerLifecycleManager",
    "HardwareDetector",
    "RemoteDeploymentEngine",
    "RemoteFleetMonitor",
    "ServiceOrchestrator",
    "ServiceRegistry",
    "build_docker_run_command",
    "detect_distro",
    "recommend",
]
