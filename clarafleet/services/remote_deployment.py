"""Remote deployment of the ClaraCore inference container over SSH.

A deployment walks through these phases, one remote command at a time over
a single SSH session:

    connecting -> detecting-hardware -> installing-prerequisites
    -> configuring-network -> cleaning-previous -> pulling-image
    -> starting-container -> verifying-health -> done

Any phase may exit to ``failed``. GPU prerequisite failures do not fail the
deployment: transient ones are retried, then the engine falls back to the
CPU image and reports ``fallback_to_cpu``.

The elevated-privilege secret is bound to the session of one ``deploy()``
call, never to the engine, so concurrent deployments cannot see each
other's secret. It is handed to the executor per privileged command (never
interpolated into a command line) and dropped in ``finally`` on every exit
path, together with connection teardown.
"""

from __future__ import annotations

import asyncio
import shlex
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from prometheus_client import Counter

from clarafleet.api.schemas.services import (
    ConnectionTestResult,
    DeploymentPhase,
    DeploymentResult,
    HardwareVariant,
    RemoteDeployConfig,
)
from clarafleet.core.config import Settings, get_settings
from clarafleet.core.exceptions import (
    DeploymentTimeoutError,
    DeploymentVerificationError,
    DriverNotFoundError,
    GpuPrerequisiteError,
    ImagePullError,
    OrchestrationError,
    PrerequisiteInstallError,
    RemoteCommandError,
    UnsupportedHardwareError,
)
from clarafleet.core.executors import PrivilegedCommand
from clarafleet.core.logging import get_logger, sanitize_error
from clarafleet.core.remote_shell import RemoteShellExecutor
from clarafleet.core.retry import RetryContext
from clarafleet.services.hardware_detector import HardwareDetector

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from clarafleet.core.executors import CommandExecutor, CommandResult

logger = get_logger(__name__)

REMOTE_DEPLOYMENTS_TOTAL = Counter(
    "clarafleet_remote_deployments_total",
    "Remote deployments by outcome and deployed hardware variant",
    labelnames=["outcome", "variant"],  # outcome: success, fallback, failed, timeout
)

IMAGE_REPOSITORY = "clara17verse/claracore"
CONTAINER_PREFIX = "claracore-"
SERVICE_PORT = 5890
HOST_PORT = 8091
HEALTH_COMMAND = f"curl -sf http://localhost:{SERVICE_PORT}/health"

DOCKER_INSTALL_SCRIPT_URL = "https://get.docker.com"
ROCM_INSTALL_GUIDE = "https://rocmdocs.amd.com/en/latest/Installation_Guide/Installation-Guide.html"

NVIDIA_TOOLKIT_APT_COMMANDS = (
    "curl -fsSL https://nvidia.github.io/libnvidia-container/gpgkey "
    "| sudo gpg --dearmor --yes -o /usr/share/keyrings/nvidia-container-toolkit-keyring.gpg",
    "curl -s -L https://nvidia.github.io/libnvidia-container/stable/deb/nvidia-container-toolkit.list "
    "| sed 's#deb https://#deb [signed-by=/usr/share/keyrings/nvidia-container-toolkit-keyring.gpg] https://#g' "
    "| sudo tee /etc/apt/sources.list.d/nvidia-container-toolkit.list",
    "sudo apt-get update",
    "sudo apt-get install -y nvidia-container-toolkit",
)
NVIDIA_TOOLKIT_YUM_COMMANDS = (
    "curl -s -L https://nvidia.github.io/libnvidia-container/stable/rpm/nvidia-container-toolkit.repo "
    "| sudo tee /etc/yum.repos.d/nvidia-container-toolkit.repo",
    "sudo yum install -y nvidia-container-toolkit",
)
VULKAN_INSTALL_COMMANDS = {
    "debian": ("sudo apt-get update", "sudo apt-get install -y mesa-vulkan-drivers vulkan-tools libvulkan1"),
    "fedora": ("sudo dnf install -y mesa-vulkan-drivers vulkan-tools vulkan-loader",),
    "arch": ("sudo pacman -S --noconfirm vulkan-radeon vulkan-tools",),
}

# Accelerator-specific `docker run` flags
VARIANT_RUN_FLAGS: dict[HardwareVariant, tuple[str, ...]] = {
    HardwareVariant.CPU: (),
    HardwareVariant.CUDA: ("--gpus all",),
    HardwareVariant.ROCM: (
        "--device=/dev/kfd",
        "--device=/dev/dri",
        "--group-add video",
        "--ipc=host",
        "--cap-add=SYS_PTRACE",
        "--security-opt seccomp=unconfined",
    ),
    HardwareVariant.STRIX: (
        "--device=/dev/dri",
        "--group-add video",
        "--security-opt seccomp=unconfined",
    ),
    HardwareVariant.VULKAN: (
        "--device=/dev/dri",
        "--group-add video",
        "--security-opt seccomp=unconfined",
    ),
}

_DISTRO_MARKERS = (
    ("Ubuntu", "Ubuntu"),
    ("Debian", "Debian"),
    ("Fedora", "Fedora"),
    ("CentOS", "CentOS"),
    ("Red Hat", "RHEL"),
    ("Arch", "Arch Linux"),
)
UNKNOWN_DISTRO = "Unknown Linux"

INCORRECT_PASSWORD_MESSAGE = "Incorrect sudo password. Please verify your SSH password and try again."


class RemoteSession(Protocol):
    """A CommandExecutor bound to one remote connection."""

    async def run(
        self,
        command: str,
        *,
        timeout: float | None = None,
        check: bool = False,
        secret: str | None = None,
        on_output: Callable[[str], None] | None = None,
    ) -> CommandResult: ...

    async def close(self) -> None: ...


async def open_ssh_session(config: RemoteDeployConfig, settings: Settings) -> RemoteShellExecutor:
    """Open the SSH session described by a deployment config."""
    return await RemoteShellExecutor.connect(
        host=config.host,
        port=config.port,
        username=config.username,
        password=config.password.get_secret_value() if config.password else None,
        private_key_path=config.private_key_path,
        connect_timeout=settings.ssh_connect_timeout,
        known_hosts=settings.known_hosts,
        default_timeout=settings.remote_command_timeout,
    )


# =============================================================================
# Pure helpers
# =============================================================================


def detect_distro(os_release: str) -> str:
    """Name the Linux distribution described by /etc/os-release contents."""
    for marker, name in _DISTRO_MARKERS:
        if marker in os_release:
            return name
    return UNKNOWN_DISTRO


def container_name_for(variant: HardwareVariant | str) -> str:
    return f"{CONTAINER_PREFIX}{variant}"


def image_for(variant: HardwareVariant | str, repository: str = IMAGE_REPOSITORY) -> str:
    return f"{repository}:{variant}"


def build_docker_run_command(
    variant: HardwareVariant,
    container_name: str,
    image: str,
    network: str = "clara_network",
    docker: str = "docker",
) -> str:
    """Build the ``docker run`` command line for a hardware variant.

    The container is published on both 8091 (standard) and 5890 (legacy),
    joins the shared bridge network, and reaches host services through the
    default bridge gateway.
    """
    parts = [
        f"{docker} run -d",
        f"--name {container_name}",
        f"--network {network}",
        "--restart unless-stopped",
        f"-p {HOST_PORT}:{SERVICE_PORT}",
        f"-p {SERVICE_PORT}:{SERVICE_PORT}",
        "--add-host=host.docker.internal:172.17.0.1",
        *VARIANT_RUN_FLAGS[variant],
        f"-v {CONTAINER_PREFIX}{variant}-downloads:/app/downloads",
        image,
    ]
    return " ".join(parts)


def friendly_error_message(error: OrchestrationError) -> str:
    """Map a deployment failure to the message shown to the user."""
    if "incorrect password" in error.message.lower():
        return INCORRECT_PASSWORD_MESSAGE
    return error.message


def _is_sudo_rejection(error: RemoteCommandError) -> bool:
    return "incorrect password" in error.message.lower()


@dataclass(slots=True)
class _DeploymentState:
    requested: HardwareVariant | None = None
    variant: HardwareVariant | None = None
    phase: DeploymentPhase = DeploymentPhase.CONNECTING
    fallback_to_cpu: bool = False
    docker: str = "docker"


@dataclass(slots=True)
class _ScopedSession:
    """A session bound to the privileged secret of a single deployment.

    The secret accompanies privileged commands only and is dropped with
    ``release()``; commands issued afterwards carry no secret.
    """

    executor: CommandExecutor
    secret: str | None = None

    async def run(
        self,
        command: str,
        *,
        timeout: float | None = None,
        check: bool = False,
        secret: str | None = None,
        on_output: Callable[[str], None] | None = None,
    ) -> CommandResult:
        if secret is None and PrivilegedCommand.is_privileged(command):
            secret = self.secret
        return await self.executor.run(
            command,
            timeout=timeout,
            check=check,
            secret=secret,
            on_output=on_output,
        )

    def release(self) -> None:
        self.secret = None


# =============================================================================
# Engine
# =============================================================================


class RemoteDeploymentEngine:
    """Deploys and probes ClaraCore containers on remote Linux hosts.

    Args:
        settings: Timeouts, retry and network settings
        session_factory: Async callable opening a session for a config;
            defaults to an asyncssh connection
        detector: Hardware detector run over the session
    """

    def __init__(
        self,
        settings: Settings | None = None,
        session_factory: Callable[[RemoteDeployConfig, Settings], Awaitable[RemoteSession]] | None = None,
        detector: HardwareDetector | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._session_factory = session_factory or open_ssh_session
        self._detector = detector or HardwareDetector()
        self._deploys_holding_secret = 0

    @property
    def holds_privileged_secret(self) -> bool:
        """True only while at least one deployment in progress holds a secret."""
        return self._deploys_holding_secret > 0

    # =========================================================================
    # Connection test
    # =========================================================================

    async def test_connection(self, config: RemoteDeployConfig) -> ConnectionTestResult:
        """Connect and detect the remote hardware. Never raises."""
        session: RemoteSession | None = None
        try:
            async with asyncio.timeout(self._settings.ssh_connect_timeout):
                session = await self._session_factory(config, self._settings)
            async with asyncio.timeout(self._settings.remote_command_timeout):
                hardware = await self._detector.detect(session)
        except TimeoutError:
            logger.warning(
                f"Connection test to {config.host} timed out",
                extra={"host": config.host},
            )
            return ConnectionTestResult(
                success=False,
                host=config.host,
                error="Connection timeout. Please check the host address and network connectivity.",
                error_code="REMOTE_CONNECTION_TIMEOUT",
            )
        except OrchestrationError as e:
            return ConnectionTestResult(
                success=False,
                host=config.host,
                error=e.message,
                error_code=e.error_code,
            )
        finally:
            if session is not None:
                await session.close()

        logger.info(
            f"Connection test to {config.host} succeeded: {hardware.detected}",
            extra={"host": config.host, "detected": str(hardware.detected)},
        )
        return ConnectionTestResult(success=True, host=config.host, hardware=hardware)

    # =========================================================================
    # Deploy
    # =========================================================================

    async def deploy(self, config: RemoteDeployConfig) -> DeploymentResult:
        """Deploy the inference container to ``config.host``.

        Expected failures (connection, prerequisites, pull, run, verification,
        timeout) are returned as ``success=False`` results.
        """
        state = _DeploymentState(requested=config.hardware_type)
        session: RemoteSession | None = None
        scoped: _ScopedSession | None = None
        secret = config.privileged_secret()
        holds_secret = secret is not None
        if holds_secret:
            self._deploys_holding_secret += 1
        try:
            async with asyncio.timeout(self._settings.deploy_timeout):
                session = await self._session_factory(config, self._settings)
                scoped = _ScopedSession(session, secret)
                result = await self._deploy(scoped, config, state)
            outcome = "fallback" if state.fallback_to_cpu else "success"
            REMOTE_DEPLOYMENTS_TOTAL.labels(outcome=outcome, variant=str(state.variant)).inc()
            return result
        except TimeoutError:
            error = DeploymentTimeoutError(
                f"Deployment timed out after {self._settings.deploy_timeout:.0f} seconds "
                f"during {state.phase}"
            )
            logger.error(
                error.message,
                extra={"host": config.host, "phase": str(state.phase)},
            )
            REMOTE_DEPLOYMENTS_TOTAL.labels(outcome="timeout", variant=str(state.variant)).inc()
            return self._failure(config, state, error)
        except OrchestrationError as e:
            logger.error(
                f"Deployment to {config.host} failed during {state.phase}: {sanitize_error(e)}",
                extra={"host": config.host, "phase": str(state.phase), "error_code": e.error_code},
            )
            REMOTE_DEPLOYMENTS_TOTAL.labels(outcome="failed", variant=str(state.variant)).inc()
            return self._failure(config, state, e)
        finally:
            if scoped is not None:
                scoped.release()
            if holds_secret:
                self._deploys_holding_secret -= 1
            if session is not None:
                await session.close()

    def _failure(
        self,
        config: RemoteDeployConfig,
        state: _DeploymentState,
        error: OrchestrationError,
    ) -> DeploymentResult:
        return DeploymentResult(
            success=False,
            host=config.host,
            hardware_type=state.variant,
            requested_hardware_type=state.requested,
            fallback_to_cpu=state.fallback_to_cpu,
            phase=DeploymentPhase.FAILED,
            message=f"Deployment failed during {state.phase}",
            error=friendly_error_message(error),
            error_code=error.error_code,
            details={**error.details, "failed_phase": str(state.phase)},
        )

    async def _deploy(
        self,
        session: _ScopedSession,
        config: RemoteDeployConfig,
        state: _DeploymentState,
    ) -> DeploymentResult:
        host = config.host
        logger.info(f"SSH session established with {host}", extra={"host": host})

        state.phase = DeploymentPhase.DETECTING_HARDWARE
        capability = await self._detector.detect(session)
        if not capability.supported:
            raise UnsupportedHardwareError(
                capability.error or f"Hardware on {host} is not supported",
                details={"architecture": capability.architecture},
            )
        requested = config.hardware_type or capability.variant or HardwareVariant.CPU
        state.requested = requested
        state.variant = requested

        state.phase = DeploymentPhase.INSTALLING_PREREQUISITES
        if not capability.container_runtime:
            await self._install_docker(session, config)
        state.docker = await self._docker_command(session)

        if requested != HardwareVariant.CPU:
            try:
                await self._setup_gpu_with_retry(session, requested, state.docker)
            except GpuPrerequisiteError as e:
                logger.warning(
                    f"GPU setup for {requested} failed on {host}: {e.message}",
                    extra={"host": host, "variant": str(requested), "error_code": e.error_code},
                )
                logger.warning(
                    "GPU acceleration not available, falling back to CPU mode. "
                    "Inference will run on CPU only, which will be slower.",
                    extra={"host": host},
                )
                state.variant = HardwareVariant.CPU
                state.fallback_to_cpu = True

        variant = state.variant
        docker = state.docker
        network = self._settings.remote_network_name

        state.phase = DeploymentPhase.CONFIGURING_NETWORK
        await self._ensure_network(session, docker)

        container_name = container_name_for(variant)
        image = image_for(variant, self._settings.image_repository)

        state.phase = DeploymentPhase.CLEANING_PREVIOUS
        await self._remove_previous_containers(session, docker, host)

        state.phase = DeploymentPhase.PULLING_IMAGE
        logger.info(f"Pulling image {image}", extra={"host": host, "image": image})
        try:
            await self._run(
                session,
                f"{docker} pull {image}",
                check=True,
                timeout=self._settings.remote_install_timeout,
                on_output=lambda line: logger.debug(f"[pull] {line}", extra={"host": host}),
            )
        except RemoteCommandError as e:
            raise ImagePullError(f"Failed to pull {image}: {e.message}", image=image) from e

        state.phase = DeploymentPhase.STARTING_CONTAINER
        run_command = build_docker_run_command(variant, container_name, image, network, docker)
        logger.info(f"Starting container {container_name}", extra={"host": host, "variant": str(variant)})
        try:
            await self._run(session, run_command, check=True)
        except RemoteCommandError as e:
            if _is_sudo_rejection(e):
                raise
            raise RemoteCommandError(
                f"Failed to start container: {e.message}",
                command=e.command,
                exit_status=e.exit_status,
                stderr=e.stderr,
            ) from e

        await asyncio.sleep(self._settings.container_settle_delay)
        await self._verify_running(session, container_name, docker)
        logger.info(f"Container {container_name} is running", extra={"host": host})

        state.phase = DeploymentPhase.VERIFYING_HEALTH
        health = await self._run(session, HEALTH_COMMAND)
        healthy = health.ok
        if healthy:
            logger.info("Service is healthy and responding", extra={"host": host})
        else:
            logger.warning(
                "Service health endpoint not available, but container is running",
                extra={"host": host},
            )

        state.phase = DeploymentPhase.DONE
        gpu_available = variant != HardwareVariant.CPU
        if gpu_available:
            message = f"Successfully deployed with {variant.upper()} acceleration"
        elif state.fallback_to_cpu:
            message = "Deployed in CPU mode (GPU unavailable)"
        else:
            message = "Deployed in CPU mode"

        return DeploymentResult(
            success=True,
            host=host,
            hardware_type=variant,
            requested_hardware_type=state.requested,
            gpu_available=gpu_available,
            fallback_to_cpu=state.fallback_to_cpu,
            url=f"http://{host}:{SERVICE_PORT}",
            container_name=container_name,
            healthy=healthy,
            phase=DeploymentPhase.DONE,
            message=message,
        )

    # =========================================================================
    # Command helper
    # =========================================================================

    async def _run(
        self,
        session: CommandExecutor,
        command: str,
        *,
        check: bool = False,
        timeout: float | None = None,
        on_output: Callable[[str], None] | None = None,
    ) -> CommandResult:
        """Run a command; a deployment session attaches its secret to privileged ones."""
        return await session.run(
            command,
            timeout=timeout or self._settings.remote_command_timeout,
            check=check,
            on_output=on_output,
        )

    async def _remote_user(self, session: CommandExecutor) -> str:
        return (await self._run(session, "whoami")).output

    # =========================================================================
    # Prerequisites
    # =========================================================================

    async def _install_docker(self, session: CommandExecutor, config: RemoteDeployConfig) -> None:
        """Install Docker with the official convenience script."""
        install_timeout = self._settings.remote_install_timeout
        try:
            os_release = (await self._run(session, "cat /etc/os-release")).stdout
            logger.info(
                f"Installing Docker on {detect_distro(os_release)}",
                extra={"host": config.host},
            )
            await self._run(
                session,
                f"curl -fsSL {DOCKER_INSTALL_SCRIPT_URL} -o /tmp/get-docker.sh",
                check=True,
            )
            await self._run(
                session,
                "sudo sh /tmp/get-docker.sh",
                check=True,
                timeout=install_timeout,
                on_output=lambda line: logger.debug(f"[docker-install] {line}"),
            )
            await self._run(session, "rm -f /tmp/get-docker.sh")

            user = await self._remote_user(session) or config.username
            await self._run(session, f"sudo usermod -aG docker {shlex.quote(user)}", check=True)
            await self._run(session, "sudo systemctl start docker", check=True)
            await self._run(session, "sudo systemctl enable docker", check=True)
        except RemoteCommandError as e:
            raise PrerequisiteInstallError(
                f"Failed to install Docker: {e.message}", details=e.details
            ) from e
        logger.info(
            "Docker installed; docker group membership applies to new login sessions",
            extra={"host": config.host},
        )

    async def _docker_command(self, session: CommandExecutor) -> str:
        """Return ``docker`` or ``sudo docker`` depending on socket access."""
        result = await self._run(session, "docker info 2>&1")
        if "permission denied" in f"{result.stdout}\n{result.stderr}".lower():
            logger.info("Session lacks docker group membership, using sudo for docker commands")
            return "sudo docker"
        return "docker"

    async def _setup_gpu_with_retry(
        self, session: CommandExecutor, variant: HardwareVariant, docker: str
    ) -> None:
        retry = RetryContext(
            max_retries=self._settings.gpu_prerequisite_retries,
            base_delay=self._settings.gpu_prerequisite_retry_delay,
            jitter=0.0,
            retry_on=(GpuPrerequisiteError,),
            is_retryable=lambda e: getattr(e, "transient", False),
            operation_name=f"gpu_prerequisites_{variant}",
        )
        while retry.should_retry():
            try:
                await self._setup_gpu(session, variant, docker)
                retry.record_success()
                return
            except GpuPrerequisiteError as e:
                if not retry.can_retry(e):
                    raise
                await retry.wait()

    async def _setup_gpu(self, session: CommandExecutor, variant: HardwareVariant, docker: str) -> None:
        """Install and verify the prerequisites of a GPU variant.

        Raises:
            GpuPrerequisiteError: Setup failed and the CPU image should be used.
            RemoteCommandError: sudo rejected the secret.
        """
        try:
            if variant == HardwareVariant.CUDA:
                await self._setup_cuda(session, docker)
            elif variant == HardwareVariant.ROCM:
                await self._setup_rocm(session)
            elif variant in (HardwareVariant.STRIX, HardwareVariant.VULKAN):
                await self._setup_vulkan(session, variant)
        except RemoteCommandError as e:
            if _is_sudo_rejection(e):
                raise
            raise GpuPrerequisiteError(
                f"{variant.upper()} setup failed: {e.message}", variant=variant
            ) from e

    async def _install_packages(
        self, session: CommandExecutor, commands: tuple[str, ...], variant: HardwareVariant
    ) -> None:
        """Run package installation commands; failures are worth retrying."""
        for command in commands:
            try:
                await self._run(
                    session,
                    command,
                    check=True,
                    timeout=self._settings.remote_install_timeout,
                    on_output=lambda line: logger.debug(f"[install] {line}"),
                )
            except RemoteCommandError as e:
                if _is_sudo_rejection(e):
                    raise
                raise GpuPrerequisiteError(
                    f"Package installation failed: {e.message}",
                    variant=variant,
                    transient=True,
                ) from e

    async def _device_exists(self, session: CommandExecutor, path: str) -> bool:
        result = await self._run(session, f'test -e {path} && echo "exists" || echo "missing"')
        return result.output == "exists"

    async def _setup_cuda(self, session: CommandExecutor, docker: str) -> None:
        if not (await self._run(session, "nvidia-smi 2>/dev/null")).ok:
            raise DriverNotFoundError(variant=HardwareVariant.CUDA)
        logger.info("NVIDIA drivers detected")

        if (await self._run(session, "which nvidia-ctk 2>/dev/null")).output:
            logger.info("NVIDIA Container Toolkit already installed")
        else:
            logger.info("Installing NVIDIA Container Toolkit")
            if (await self._run(session, "which apt-get 2>/dev/null")).output:
                await self._install_packages(session, NVIDIA_TOOLKIT_APT_COMMANDS, HardwareVariant.CUDA)
            elif (await self._run(session, "which yum 2>/dev/null")).output:
                await self._install_packages(session, NVIDIA_TOOLKIT_YUM_COMMANDS, HardwareVariant.CUDA)
            else:
                raise GpuPrerequisiteError(
                    "Unsupported package manager. Only apt and yum are supported.",
                    variant=HardwareVariant.CUDA,
                )

        logger.info("Configuring NVIDIA runtime for Docker")
        await self._run(session, "sudo nvidia-ctk runtime configure --runtime=docker", check=True)
        await self._run(session, "sudo systemctl daemon-reload", check=True)
        await self._run(session, "sudo systemctl restart docker", check=True)
        await asyncio.sleep(self._settings.docker_restart_delay)

        context = await self._run(session, "docker context show 2>/dev/null")
        if "desktop-linux" in context.output:
            logger.info("Switching from Docker Desktop to Docker Engine context")
            await self._run(session, "docker context use default", check=True)
            user = await self._remote_user(session)
            if user:
                await self._run(session, f"sudo usermod -aG docker {shlex.quote(user)}", check=True)

        runtimes = await self._run(session, f"{docker} info 2>/dev/null | grep -i runtime")
        if "nvidia" in runtimes.output:
            logger.info("NVIDIA Container Toolkit configured")
        else:
            logger.warning("NVIDIA runtime may not be configured; the container may need manual intervention")

    async def _setup_rocm(self, session: CommandExecutor) -> None:
        if not await self._device_exists(session, "/dev/kfd"):
            raise GpuPrerequisiteError(
                "ROCm device /dev/kfd not found. Please install ROCm drivers first.\n\n"
                f"Installation guide: {ROCM_INSTALL_GUIDE}",
                variant=HardwareVariant.ROCM,
            )
        if not await self._device_exists(session, "/dev/dri"):
            raise GpuPrerequisiteError(
                "Device /dev/dri not found. AMD GPU drivers may not be installed correctly.",
                variant=HardwareVariant.ROCM,
            )
        logger.info("ROCm devices found: /dev/kfd and /dev/dri")
        await self._add_gpu_groups(session)

    async def _setup_vulkan(self, session: CommandExecutor, variant: HardwareVariant) -> None:
        if not await self._device_exists(session, "/dev/dri"):
            raise GpuPrerequisiteError(
                "Device /dev/dri not found. AMD GPU drivers (amdgpu) may not be installed.\n\n"
                "Please ensure the Linux kernel has amdgpu drivers loaded.",
                variant=variant,
            )

        if (await self._run(session, "which vulkaninfo 2>/dev/null")).output:
            logger.info("Vulkan already installed")
        else:
            os_release = (await self._run(session, "cat /etc/os-release")).stdout
            distro = detect_distro(os_release)
            logger.info(f"Installing Vulkan packages for {distro}")
            if distro in ("Ubuntu", "Debian"):
                commands = VULKAN_INSTALL_COMMANDS["debian"]
            elif distro in ("Fedora", "RHEL", "CentOS"):
                commands = VULKAN_INSTALL_COMMANDS["fedora"]
            elif distro == "Arch Linux":
                commands = VULKAN_INSTALL_COMMANDS["arch"]
            else:
                raise GpuPrerequisiteError(
                    f"Unsupported distribution: {distro}. "
                    "Please install mesa-vulkan-drivers and vulkan-tools manually.",
                    variant=variant,
                )
            await self._install_packages(session, commands, variant)

            verify = await self._run(
                session, 'vulkaninfo --summary 2>&1 | grep -i "Vulkan Instance Version"'
            )
            if verify.ok:
                logger.info("Vulkan installed and detected")
            else:
                logger.warning("Vulkan installed but may not be functioning; a reboot might be required")

        await self._add_gpu_groups(session)

    async def _add_gpu_groups(self, session: CommandExecutor) -> None:
        user = await self._remote_user(session)
        if not user:
            return
        await self._run(session, f"sudo usermod -a -G video,render {shlex.quote(user)}", check=True)
        logger.info(f"Added {user} to video and render groups")

    # =========================================================================
    # Network and verification
    # =========================================================================

    async def _ensure_network(self, session: CommandExecutor, docker: str) -> None:
        network = self._settings.remote_network_name
        existing = await self._run(
            session, f'{docker} network ls --filter name={network} --format "{{{{.Name}}}}"'
        )
        if network in existing.output.splitlines():
            logger.info(f"Network {network} exists")
            return
        await self._run(
            session,
            f"{docker} network create {network} --driver bridge "
            f"--subnet {self._settings.remote_network_subnet}",
            check=True,
        )
        logger.info(f"Network {network} created")

    async def _remove_previous_containers(self, session: CommandExecutor, docker: str, host: str) -> None:
        """Stop and remove every ClaraCore container, whatever its variant.

        Only one variant may own the published ports at a time.
        """
        listed = await self._run(
            session,
            f'{docker} ps -a --filter name={CONTAINER_PREFIX} --format "{{{{.Names}}}}"',
        )
        # The name filter matches substrings anywhere in the name
        names = sorted(
            {name for name in listed.output.split() if name.startswith(CONTAINER_PREFIX)}
        )
        for name in names:
            logger.info(f"Removing previous {name} container", extra={"host": host})
            await self._run(session, f"{docker} stop {name} 2>/dev/null || true")
            await self._run(session, f"{docker} rm -f {name} 2>/dev/null || true")

    async def _verify_running(self, session: CommandExecutor, container_name: str, docker: str) -> None:
        """Raise DeploymentVerificationError with diagnostics if not running."""
        running = await self._run(session, f'{docker} ps -q -f "name=^/{container_name}$"')
        if running.output:
            return
        logs = await self._run(session, f"{docker} logs {container_name} 2>&1")
        inspect = await self._run(
            session,
            f"{docker} inspect {container_name} --format='{{{{.State.Status}}}}: {{{{.State.Error}}}}' 2>&1",
        )
        raise DeploymentVerificationError(
            container_name,
            status=inspect.output or "Container not found",
            logs=logs.output or "No logs available",
        )
