"""Unit tests for remote fleet monitoring."""

import pytest

from clarafleet.api.schemas.services import RemoteDeployConfig
from clarafleet.core.exceptions import RemoteConnectionError
from clarafleet.services.remote_deployment import HEALTH_COMMAND
from clarafleet.services.remote_monitor import LIST_CONTAINERS_COMMAND, RemoteFleetMonitor
from clarafleet.tests.mock_utils import (
    ScriptedExecutor,
    failing_session_factory,
    session_factory_for,
    slow_session_factory,
)

CONFIG = RemoteDeployConfig(host="10.0.0.5", username="ubuntu", password="s3cr3t-pw")

LISTING = "\n".join(
    [
        "claracore-cuda|Up 3 hours|0.0.0.0:5890->5890/tcp, 0.0.0.0:8091->5890/tcp",
        "claracore-cpu|Exited (0) 2 days ago|",
    ]
)


@pytest.mark.asyncio
async def test_lists_containers_and_probes_running_ones(settings):
    host = ScriptedExecutor().on("docker ps -a", LISTING)

    status = await RemoteFleetMonitor(settings, session_factory_for(host)).monitor(CONFIG)

    assert status.success is True
    assert status.total_services == 2
    assert status.running_services == 1
    assert status.healthy_services == 1

    cuda, cpu = status.services
    assert cuda.name == "claracore-cuda"
    assert cuda.hardware_type == "cuda"
    assert cuda.status == "running"
    assert cuda.is_healthy is True
    assert cuda.url == "http://10.0.0.5:5890"
    assert "8091->5890" in cuda.ports

    assert cpu.running is False
    assert cpu.status == "stopped"
    assert cpu.is_healthy is False
    assert cpu.url is None
    assert cpu.ports == "N/A"

    assert host.commands == [LIST_CONTAINERS_COMMAND, HEALTH_COMMAND]
    assert host.closed


@pytest.mark.asyncio
async def test_failed_health_probe_marks_unhealthy(settings):
    host = ScriptedExecutor().on("docker ps -a", LISTING).fail(HEALTH_COMMAND, exit_status=7)

    status = await RemoteFleetMonitor(settings, session_factory_for(host)).monitor(CONFIG)

    assert status.running_services == 1
    assert status.healthy_services == 0


@pytest.mark.asyncio
async def test_no_containers(settings):
    host = ScriptedExecutor()

    status = await RemoteFleetMonitor(settings, session_factory_for(host)).monitor(CONFIG)

    assert status.success is True
    assert status.services == []
    assert status.total_services == 0


@pytest.mark.asyncio
async def test_connection_failure_is_reported(settings):
    monitor = RemoteFleetMonitor(
        settings, failing_session_factory(RemoteConnectionError("Connection refused"))
    )

    status = await monitor.monitor(CONFIG)

    assert status.success is False
    assert status.error == "Connection refused"
    assert status.timestamp is not None


@pytest.mark.asyncio
async def test_timeout_is_reported(settings):
    fast = settings.model_copy(update={"monitor_timeout": 0.05})
    monitor = RemoteFleetMonitor(fast, slow_session_factory(1.0))

    status = await monitor.monitor(CONFIG)

    assert status.success is False
    assert status.error.startswith("Monitor timeout after")


@pytest.mark.asyncio
async def test_monitoring_only_issues_read_commands(settings):
    host = ScriptedExecutor().on("docker ps -a", LISTING)

    await RemoteFleetMonitor(settings, session_factory_for(host)).monitor(CONFIG)

    assert all(call.secret is None for call in host.calls)
    assert not any("sudo" in command for command in host.commands)
