"""Hardware capability detection for local and remote machines.

The same probe sequence runs against any ``CommandExecutor``: the local
subprocess executor for local container starts, or an SSH executor during
remote deployment. Only the dispatch differs.

Probe order:
    1. Architecture (``uname -m``); ARM short-circuits to ``unsupported``
    2. Docker CLI version
    3. NVIDIA GPU name, then CUDA toolkit release
    4. AMD ROCm product name, then ROCm version file
    5. CPU model string (Strix Halo class APUs)
    6. Vulkan device summary (optional, local starts only)

A failed probe (tool missing, non-zero exit, empty output) means the feature
is absent. Only a broken executor channel (RemoteConnectionError) propagates.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from clarafleet.api.schemas.services import Confidence, DetectedHardware, HardwareCapability
from clarafleet.core.logging import get_logger

if TYPE_CHECKING:
    from clarafleet.core.executors import CommandExecutor

logger = get_logger(__name__)


# =============================================================================
# Probe commands
# =============================================================================

ARCH_COMMAND = "uname -m"
DOCKER_VERSION_COMMAND = "docker --version 2>/dev/null"
NVIDIA_GPU_COMMAND = "nvidia-smi --query-gpu=name --format=csv,noheader 2>/dev/null"
CUDA_VERSION_COMMAND = "nvcc --version 2>/dev/null | grep \"release\" | awk '{print $5}'"
ROCM_PRODUCT_COMMAND = "rocm-smi --showproductname 2>/dev/null"
ROCM_VERSION_COMMAND = "cat /opt/rocm/.info/version 2>/dev/null"
CPU_MODEL_COMMAND = 'lscpu | grep "Model name"'
VULKAN_COMMAND = "vulkaninfo --summary 2>/dev/null"

# CPU model substrings identifying Strix Halo class APUs
STRIX_SIGNATURES = ("Ryzen AI Max", "Strix", "8040")

ARM_MARKERS = ("arm", "aarch")

PROBE_TIMEOUT_SECONDS = 15.0


def is_arm_architecture(architecture: str) -> bool:
    arch = architecture.lower()
    return any(marker in arch for marker in ARM_MARKERS)


def is_strix_cpu(cpu_model: str | None) -> bool:
    return bool(cpu_model) and any(sig in cpu_model for sig in STRIX_SIGNATURES)  # type: ignore[operator]


class HardwareDetector:
    """Detects GPU/CPU capabilities through a command executor.

    Detection results are never cached; each ``detect()`` call probes again.

    Args:
        include_vulkan: Probe ``vulkaninfo`` and allow a Vulkan recommendation.
            Used for local starts, where the inference engine ships a Vulkan
            image; remote deployments only distinguish CUDA/ROCm/Strix/CPU.
        probe_timeout: Timeout of each probe command in seconds.
    """

    def __init__(self, include_vulkan: bool = False, probe_timeout: float = PROBE_TIMEOUT_SECONDS) -> None:
        self._include_vulkan = include_vulkan
        self._probe_timeout = probe_timeout

    async def _probe(self, executor: CommandExecutor, command: str) -> str | None:
        """Run a probe command; None means the feature is absent."""
        result = await executor.run(command, timeout=self._probe_timeout)
        output = result.output
        if not result.ok or not output or "command not found" in output.lower():
            logger.debug(
                f"Probe reported absent: {command}",
                extra={"command": command, "exit_status": result.exit_status},
            )
            return None
        return output

    async def detect(self, executor: CommandExecutor) -> HardwareCapability:
        """Probe the machine behind ``executor``.

        Returns:
            A freshly computed HardwareCapability.

        Raises:
            RemoteConnectionError: If the executor's channel fails.
        """
        architecture = await self._probe(executor, ARCH_COMMAND) or "unknown"

        if is_arm_architecture(architecture):
            logger.info(
                f"Unsupported architecture detected: {architecture}",
                extra={"architecture": architecture},
            )
            return HardwareCapability(
                architecture=architecture,
                detected=DetectedHardware.UNSUPPORTED,
                confidence=Confidence.HIGH,
                unsupported_reason="arm",
                error=(
                    f"ARM architecture ({architecture}) is not supported yet. "
                    "ClaraCore Docker images are currently only available for "
                    "x86_64/amd64 architecture."
                ),
            )

        docker_version = await self._probe(executor, DOCKER_VERSION_COMMAND)

        gpu_name = await self._probe(executor, NVIDIA_GPU_COMMAND)
        cuda_version = None
        if gpu_name:
            gpu_name = gpu_name.splitlines()[0].strip()
            release = await self._probe(executor, CUDA_VERSION_COMMAND)
            if release:
                cuda_version = release.splitlines()[0].strip().rstrip(",")

        rocm_product = await self._probe(executor, ROCM_PRODUCT_COMMAND)
        rocm_version = None
        if rocm_product:
            rocm_version = await self._probe(executor, ROCM_VERSION_COMMAND)

        cpu_model = None
        cpu_line = await self._probe(executor, CPU_MODEL_COMMAND)
        if cpu_line:
            cpu_model = cpu_line.split(":", 1)[-1].strip()

        vulkan = False
        if self._include_vulkan:
            vulkan = await self._probe(executor, VULKAN_COMMAND) is not None

        capability = HardwareCapability(
            architecture=architecture,
            container_runtime=docker_version is not None,
            docker_version=docker_version,
            nvidia=gpu_name is not None,
            gpu_name=gpu_name,
            cuda_version=cuda_version,
            rocm=rocm_product is not None,
            rocm_version=rocm_version,
            strix=is_strix_cpu(cpu_model),
            cpu_model=cpu_model,
            vulkan=vulkan,
        )
        detected, confidence = recommend(capability)
        capability.detected = detected
        capability.confidence = confidence

        logger.info(
            f"Hardware detected: {detected} ({confidence} confidence)",
            extra={
                "architecture": architecture,
                "detected": str(detected),
                "confidence": str(confidence),
                "gpu_name": gpu_name,
                "cuda_version": cuda_version,
                "rocm_version": rocm_version,
                "cpu_model": cpu_model,
            },
        )
        return capability


def recommend(capability: HardwareCapability) -> tuple[DetectedHardware, Confidence]:
    """Pick the acceleration variant: NVIDIA > Strix > ROCm > Vulkan > CPU."""
    if capability.nvidia:
        confidence = Confidence.HIGH if capability.cuda_version else Confidence.MEDIUM
        return DetectedHardware.CUDA, confidence
    if capability.strix:
        return DetectedHardware.STRIX, Confidence.HIGH
    if capability.rocm:
        return DetectedHardware.ROCM, Confidence.HIGH
    if capability.vulkan:
        return DetectedHardware.VULKAN, Confidence.MEDIUM
    return DetectedHardware.CPU, Confidence.HIGH
