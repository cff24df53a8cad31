"""Pytest configuration and shared fixtures.

Shared fixtures:
- settings: Settings with all delays zeroed so lifecycle and deployment
  tests run without real sleeps
- reset_settings_cache: clears the cached settings around every test
- mock_docker_client: AsyncMock standing in for clarafleet.core.docker_client.DockerClient

Integration tests (clarafleet/tests/integration/) talk to a real Docker
daemon and are skipped when it is not reachable.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from hypothesis import HealthCheck, settings as hypothesis_settings

from clarafleet.core.config import Settings, get_settings
from clarafleet.tests.mock_utils import create_mock_docker_client

if TYPE_CHECKING:
    from collections.abc import Generator
    from unittest.mock import AsyncMock

hypothesis_settings.register_profile(
    "default",
    max_examples=100,
    suppress_health_check=[HealthCheck.too_slow],
)
hypothesis_settings.register_profile("ci", max_examples=300)
hypothesis_settings.register_profile("fast", max_examples=20)
hypothesis_settings.load_profile("default")


@pytest.fixture(autouse=True)
def reset_settings_cache(monkeypatch: pytest.MonkeyPatch) -> Generator[None]:
    """Clear cached settings and keep tests away from local .env files."""
    monkeypatch.setenv("CLARAFLEET_RUNTIME_ENV_PATH", "/nonexistent/runtime.env")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with every wait shortened for tests."""
    return Settings(
        _env_file=None,
        data_dir=str(tmp_path / "clara"),
        health_poll_interval=0.0,
        health_poll_attempts=3,
        restart_delay=0.0,
        exit_check_delay=0.0,
        port_release_wait=0.0,
        port_preemption_enabled=False,
        stop_grace_period=1,
        ssh_connect_timeout=5.0,
        deploy_timeout=10.0,
        monitor_timeout=5.0,
        remote_command_timeout=5.0,
        remote_install_timeout=5.0,
        container_settle_delay=0.0,
        docker_restart_delay=0.0,
        gpu_prerequisite_retries=1,
        gpu_prerequisite_retry_delay=0.0,
    )


@pytest.fixture
def mock_docker_client() -> AsyncMock:
    """Docker client with a reachable engine and no containers or images."""
    return create_mock_docker_client()
