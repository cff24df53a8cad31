"""Exception hierarchy for the orchestration core.

Every expected failure of a lifecycle or deployment step is an
``OrchestrationError``. Public operations convert these into structured
``{success: false, error, error_code}`` results; only unexpected faults
escape as raw exceptions.
"""

from __future__ import annotations

from typing import Any


class OrchestrationError(Exception):
    """Base exception for all orchestration errors."""

    default_message: str = "An unexpected orchestration error occurred"
    default_error_code: str = "ORCHESTRATION_ERROR"
    default_status_code: int = 500

    def __init__(
        self,
        message: str | None = None,
        *,
        error_code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.error_code = error_code or self.default_error_code
        self.status_code = status_code or self.default_status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "code": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Registry Errors
# =============================================================================


class ServiceNotFoundError(OrchestrationError):
    default_message = "Service not found"
    default_error_code = "SERVICE_NOT_FOUND"
    default_status_code = 404

    def __init__(self, service_name: str, **kwargs: Any) -> None:
        self.service_name = service_name
        details = kwargs.pop("details", {}) or {}
        details["service"] = service_name
        super().__init__(f"Unknown service: {service_name}", details=details, **kwargs)


class ServiceConfigurationError(OrchestrationError):
    """Raised when the service catalog cannot be resolved for a platform."""

    default_message = "Service configuration is invalid"
    default_error_code = "SERVICE_CONFIGURATION_ERROR"

    def __init__(
        self,
        message: str | None = None,
        *,
        errors: list[str] | None = None,
        **kwargs: Any,
    ) -> None:
        self.errors = errors or []
        details = kwargs.pop("details", {}) or {}
        if self.errors:
            details["errors"] = list(self.errors)
        super().__init__(message, details=details, **kwargs)


class UnsupportedModeError(OrchestrationError):
    default_message = "Deployment mode is not supported for this service on this platform"
    default_error_code = "UNSUPPORTED_MODE"
    default_status_code = 400


# =============================================================================
# Container Engine Errors
# =============================================================================


class ContainerEngineError(OrchestrationError):
    """A mutating container engine call failed."""

    default_message = "Container engine operation failed"
    default_error_code = "CONTAINER_ENGINE_ERROR"
    default_status_code = 502


class ContainerEngineUnavailableError(ContainerEngineError):
    default_message = (
        "Docker is not running. Please start Docker Desktop (or the Docker service) and try again."
    )
    default_error_code = "CONTAINER_ENGINE_UNAVAILABLE"
    default_status_code = 503


class ImagePullError(ContainerEngineError):
    default_message = "Failed to pull container image"
    default_error_code = "IMAGE_PULL_FAILED"

    def __init__(self, message: str | None = None, *, image: str | None = None, **kwargs: Any) -> None:
        self.image = image
        details = kwargs.pop("details", {}) or {}
        if image:
            details["image"] = image
        super().__init__(message, details=details, **kwargs)


class PortInUseError(ContainerEngineError):
    """Raised when a service port is still taken after preemption."""

    default_message = "Port is already in use"
    default_error_code = "PORT_IN_USE"
    default_status_code = 409

    def __init__(self, port: int, **kwargs: Any) -> None:
        self.port = port
        self.remediation = [
            f"Close any application using port {port}",
            f"Find the process holding the port (lsof -i :{port} or netstat -ano | findstr :{port})",
            "Restart Docker and try again",
        ]
        steps = "\n".join(f"{i}. {step}" for i, step in enumerate(self.remediation, start=1))
        details = kwargs.pop("details", {}) or {}
        details.update({"port": port, "remediation": self.remediation})
        super().__init__(
            f"Port {port} is already in use by another application.\n\nTo fix this:\n{steps}",
            details=details,
            **kwargs,
        )


class ContainerExitedError(ContainerEngineError):
    """Raised when a container exits right after being started.

    Carries the container logs and inspect output so the caller can diagnose
    the failure without another round-trip.
    """

    default_message = "Container exited immediately after start"
    default_error_code = "CONTAINER_EXITED"

    def __init__(
        self,
        container_name: str,
        *,
        logs: str = "",
        inspect: str = "",
        exit_code: int | None = None,
        **kwargs: Any,
    ) -> None:
        self.container_name = container_name
        self.logs = logs
        self.inspect = inspect
        self.exit_code = exit_code
        details = kwargs.pop("details", {}) or {}
        details.update(
            {
                "container": container_name,
                "exit_code": exit_code,
                "logs": logs,
                "inspect": inspect,
            }
        )
        message = (
            f"Container {container_name} exited immediately (exit code {exit_code}).\n\n"
            f"Status: {inspect}\n\nLogs:\n{logs[:500]}"
        )
        super().__init__(message, details=details, **kwargs)


# =============================================================================
# Local Binary Errors
# =============================================================================


class ProcessExitedError(OrchestrationError):
    """Raised when a service binary exits before reporting healthy."""

    default_message = "Service process exited during startup"
    default_error_code = "PROCESS_EXITED"
    default_status_code = 502

    def __init__(
        self,
        service_name: str,
        *,
        exit_code: int | None = None,
        output: str = "",
        **kwargs: Any,
    ) -> None:
        self.service_name = service_name
        self.exit_code = exit_code
        self.output = output
        details = kwargs.pop("details", {}) or {}
        details.update({"service": service_name, "exit_code": exit_code, "output": output})
        message = f"{service_name} exited during startup (exit code {exit_code})"
        if output:
            message = f"{message}.\n\nOutput:\n{output[-500:]}"
        super().__init__(message, details=details, **kwargs)


# =============================================================================
# Remote Errors
# =============================================================================


class RemoteError(OrchestrationError):
    default_message = "Remote operation failed"
    default_error_code = "REMOTE_ERROR"
    default_status_code = 502


class RemoteConnectionError(RemoteError):
    """Connection-level failure: unreachable host, authentication, timeout."""

    default_message = "Could not connect to the remote host"
    default_error_code = "REMOTE_CONNECTION_FAILED"


class RemoteCommandError(RemoteError):
    """A mutating remote command exited with a non-zero status."""

    default_message = "Remote command failed"
    default_error_code = "REMOTE_COMMAND_FAILED"

    def __init__(
        self,
        message: str | None = None,
        *,
        command: str | None = None,
        exit_status: int | None = None,
        stderr: str = "",
        **kwargs: Any,
    ) -> None:
        self.command = command
        self.exit_status = exit_status
        self.stderr = stderr
        details = kwargs.pop("details", {}) or {}
        if command:
            details["command"] = command
        if exit_status is not None:
            details["exit_status"] = exit_status
        if stderr:
            details["stderr"] = stderr
        if message is None and command:
            message = f"Command failed with exit status {exit_status}: {command}"
            if stderr:
                message = f"{message}\n{stderr}"
        super().__init__(message, details=details, **kwargs)


class PrerequisiteInstallError(RemoteError):
    default_message = "Failed to install prerequisites"
    default_error_code = "PREREQUISITE_INSTALL_FAILED"


class GpuPrerequisiteError(PrerequisiteInstallError):
    """GPU toolkit or driver setup failed for the requested hardware variant.

    ``transient`` marks failures that may succeed on retry (package download
    errors), as opposed to a missing driver or device.
    """

    default_message = "GPU prerequisite setup failed"
    default_error_code = "GPU_PREREQUISITE_FAILED"

    def __init__(
        self,
        message: str | None = None,
        *,
        variant: str | None = None,
        transient: bool = False,
        **kwargs: Any,
    ) -> None:
        self.variant = variant
        self.transient = transient
        details = kwargs.pop("details", {}) or {}
        if variant:
            details["variant"] = variant
        details["transient"] = transient
        super().__init__(message, details=details, **kwargs)


class DriverNotFoundError(GpuPrerequisiteError):
    default_message = "NVIDIA drivers not found. Please install NVIDIA drivers first."
    default_error_code = "DRIVER_NOT_FOUND"

    def __init__(self, message: str | None = None, **kwargs: Any) -> None:
        kwargs["transient"] = False
        super().__init__(message, **kwargs)


class UnsupportedHardwareError(OrchestrationError):
    default_message = "Hardware is not supported"
    default_error_code = "UNSUPPORTED_HARDWARE"
    default_status_code = 400


class DeploymentVerificationError(RemoteError):
    """Raised when the deployed container is not running after start."""

    default_message = "Container failed to start"
    default_error_code = "DEPLOYMENT_VERIFICATION_FAILED"

    def __init__(
        self,
        container_name: str,
        *,
        status: str = "",
        logs: str = "",
        **kwargs: Any,
    ) -> None:
        self.container_name = container_name
        self.status = status
        self.logs = logs
        details = kwargs.pop("details", {}) or {}
        details.update({"container": container_name, "status": status, "logs": logs})
        message = f"Container failed to start.\n\nStatus: {status}\n\nLogs:\n{logs[:500]}"
        super().__init__(message, details=details, **kwargs)


class DeploymentTimeoutError(OrchestrationError):
    default_message = "Deployment timed out"
    default_error_code = "DEPLOYMENT_TIMEOUT"
    default_status_code = 504
