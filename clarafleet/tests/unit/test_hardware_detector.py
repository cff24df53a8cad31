"""Unit tests for hardware detection."""

import pytest

from clarafleet.api.schemas.services import (
    Confidence,
    DetectedHardware,
    HardwareCapability,
    HardwareVariant,
)
from clarafleet.core.exceptions import RemoteConnectionError
from clarafleet.services.hardware_detector import (
    ARCH_COMMAND,
    HardwareDetector,
    is_arm_architecture,
    is_strix_cpu,
    recommend,
)
from clarafleet.tests.mock_utils import ScriptedExecutor, scripted_linux_host

# =============================================================================
# ARM short-circuit
# =============================================================================


@pytest.mark.asyncio
@pytest.mark.parametrize("architecture", ["aarch64", "arm64", "armv7l"])
async def test_arm_architecture_is_unsupported_without_further_probes(architecture):
    executor = ScriptedExecutor().on("uname -m", architecture)

    capability = await HardwareDetector().detect(executor)

    assert capability.detected == DetectedHardware.UNSUPPORTED
    assert capability.unsupported_reason == "arm"
    assert "not supported" in capability.error
    assert capability.variant is None
    assert executor.commands == [ARCH_COMMAND]


def test_is_arm_architecture():
    assert is_arm_architecture("aarch64")
    assert is_arm_architecture("ARM64")
    assert not is_arm_architecture("x86_64")


# =============================================================================
# Variant resolution
# =============================================================================


@pytest.mark.asyncio
async def test_no_accelerator_detects_cpu_with_high_confidence():
    capability = await HardwareDetector().detect(scripted_linux_host())

    assert capability.detected == DetectedHardware.CPU
    assert capability.confidence == Confidence.HIGH
    assert capability.variant == HardwareVariant.CPU
    assert capability.container_runtime is True
    assert capability.cpu_model == "AMD EPYC 7763 64-Core Processor"


@pytest.mark.asyncio
async def test_nvidia_with_toolkit_version_is_high_confidence():
    host = scripted_linux_host(gpu_name="NVIDIA GeForce RTX 4090", cuda_release="12.4")

    capability = await HardwareDetector().detect(host)

    assert capability.detected == DetectedHardware.CUDA
    assert capability.confidence == Confidence.HIGH
    assert capability.gpu_name == "NVIDIA GeForce RTX 4090"
    assert capability.cuda_version == "12.4"


@pytest.mark.asyncio
async def test_nvidia_without_toolkit_is_medium_confidence():
    host = scripted_linux_host(gpu_name="NVIDIA GeForce RTX 3060")

    capability = await HardwareDetector().detect(host)

    assert capability.detected == DetectedHardware.CUDA
    assert capability.confidence == Confidence.MEDIUM
    assert capability.cuda_version is None


@pytest.mark.asyncio
async def test_nvidia_wins_over_rocm_and_strix():
    host = scripted_linux_host(
        gpu_name="NVIDIA RTX A6000",
        cuda_release="12.2",
        cpu_model="AMD Ryzen AI Max+ 395 w/ Radeon 8060S",
    )
    host.on("rocm-smi --showproductname", "Card series: Radeon RX 7900 XTX")

    capability = await HardwareDetector().detect(host)

    assert capability.nvidia and capability.rocm and capability.strix
    assert capability.detected == DetectedHardware.CUDA


@pytest.mark.asyncio
async def test_strix_wins_over_rocm():
    host = scripted_linux_host(cpu_model="AMD Ryzen AI Max+ 395 w/ Radeon 8060S")
    host.on("rocm-smi --showproductname", "Card series: Radeon 8060S")
    host.on("cat /opt/rocm/.info/version", "6.2.0")

    capability = await HardwareDetector().detect(host)

    assert capability.detected == DetectedHardware.STRIX
    assert capability.rocm_version == "6.2.0"


@pytest.mark.asyncio
async def test_rocm_detected():
    host = scripted_linux_host()
    host.on("rocm-smi --showproductname", "Card series: Radeon RX 7900 XTX")

    capability = await HardwareDetector().detect(host)

    assert capability.detected == DetectedHardware.ROCM
    assert capability.confidence == Confidence.HIGH


@pytest.mark.asyncio
async def test_vulkan_only_probed_when_enabled():
    host = scripted_linux_host()
    host.on("vulkaninfo --summary", "deviceName = Intel(R) Arc(tm) A770 Graphics")

    without = await HardwareDetector().detect(host)
    with_vulkan = await HardwareDetector(include_vulkan=True).detect(host)

    assert without.detected == DetectedHardware.CPU
    assert with_vulkan.detected == DetectedHardware.VULKAN
    assert with_vulkan.confidence == Confidence.MEDIUM


# =============================================================================
# Probe failures
# =============================================================================


@pytest.mark.asyncio
async def test_command_not_found_output_means_absent():
    host = scripted_linux_host()
    host.on("rocm-smi --showproductname", "bash: rocm-smi: command not found")

    capability = await HardwareDetector().detect(host)

    assert capability.rocm is False


@pytest.mark.asyncio
async def test_failed_probe_means_absent():
    host = scripted_linux_host()
    host.on("docker --version 2>/dev/null", "Docker version 27.3.1", exit_status=1)

    capability = await HardwareDetector().detect(host)

    assert capability.container_runtime is False
    assert capability.docker_version is None


@pytest.mark.asyncio
async def test_connection_failure_propagates():
    host = scripted_linux_host()
    host.raise_on("lscpu", RemoteConnectionError("Lost connection to 10.0.0.5"))

    with pytest.raises(RemoteConnectionError):
        await HardwareDetector().detect(host)


@pytest.mark.asyncio
async def test_detection_is_not_cached():
    host = scripted_linux_host()
    detector = HardwareDetector()

    await detector.detect(host)
    await detector.detect(host)

    assert host.count(ARCH_COMMAND) == 2


# =============================================================================
# Pure helpers
# =============================================================================


@pytest.mark.parametrize(
    ("cpu_model", "expected"),
    [
        ("AMD Ryzen AI Max+ 395 w/ Radeon 8060S", True),
        ("AMD Ryzen 9 8040HS", True),
        ("Intel(R) Core(TM) i9-13900K", False),
        (None, False),
    ],
)
def test_is_strix_cpu(cpu_model, expected):
    assert is_strix_cpu(cpu_model) is expected


def test_recommend_falls_back_to_cpu():
    assert recommend(HardwareCapability()) == (DetectedHardware.CPU, Confidence.HIGH)
