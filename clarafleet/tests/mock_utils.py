"""Centralized mock utilities for testing.

Usage:
    from clarafleet.tests.mock_utils import (
        ScriptedExecutor,
        create_mock_docker_client,
        scripted_linux_host,
        session_factory_for,
    )

    host = scripted_linux_host(gpu_name="NVIDIA GeForce RTX 4090")
    host.on("which nvidia-ctk", "/usr/bin/nvidia-ctk")
    engine = RemoteDeploymentEngine(settings, session_factory=session_factory_for(host))
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock, MagicMock

from clarafleet.core.executors import CommandResult

if TYPE_CHECKING:
    from collections.abc import Callable

# =============================================================================
# Command executor doubles
# =============================================================================


@dataclass(slots=True)
class CommandCall:
    command: str
    secret: str | None
    check: bool


@dataclass(slots=True)
class _Rule:
    pattern: str
    stdout: str = ""
    exit_status: int = 0
    stderr: str = ""
    delay: float = 0.0
    error: BaseException | None = None


@dataclass
class ScriptedExecutor:
    """CommandExecutor double that answers commands from substring rules.

    The longest pattern contained in a command wins; on a tie the rule added
    last wins, so tests can override the defaults of ``scripted_linux_host``.
    Commands without a rule succeed with empty output, which probes interpret
    as "absent".
    """

    rules: list[_Rule] = field(default_factory=list)
    calls: list[CommandCall] = field(default_factory=list)
    closed: bool = False

    def on(
        self,
        pattern: str,
        stdout: str = "",
        exit_status: int = 0,
        stderr: str = "",
        delay: float = 0.0,
    ) -> ScriptedExecutor:
        self.rules.append(_Rule(pattern, stdout, exit_status, stderr, delay))
        return self

    def fail(self, pattern: str, stderr: str = "", exit_status: int = 1) -> ScriptedExecutor:
        return self.on(pattern, exit_status=exit_status, stderr=stderr)

    def raise_on(self, pattern: str, error: BaseException) -> ScriptedExecutor:
        self.rules.append(_Rule(pattern, error=error))
        return self

    def _match(self, command: str) -> _Rule | None:
        matches = [rule for rule in reversed(self.rules) if rule.pattern in command]
        return max(matches, key=lambda rule: len(rule.pattern)) if matches else None

    async def run(
        self,
        command: str,
        *,
        timeout: float | None = None,
        check: bool = False,
        secret: str | None = None,
        on_output: Callable[[str], None] | None = None,
    ) -> CommandResult:
        self.calls.append(CommandCall(command, secret, check))
        rule = self._match(command)
        if rule is not None and rule.delay:
            await asyncio.sleep(rule.delay)
        if rule is not None and rule.error is not None:
            raise rule.error

        result = (
            CommandResult(command, rule.exit_status, rule.stdout, rule.stderr)
            if rule is not None
            else CommandResult(command, 0)
        )
        if on_output is not None:
            for line in result.stdout.splitlines():
                on_output(line)
        return result.raise_for_status() if check else result

    async def close(self) -> None:
        self.closed = True

    @property
    def commands(self) -> list[str]:
        return [call.command for call in self.calls]

    def ran(self, pattern: str) -> bool:
        return any(pattern in command for command in self.commands)

    def count(self, pattern: str) -> int:
        return sum(1 for command in self.commands if pattern in command)

    def calls_matching(self, pattern: str) -> list[CommandCall]:
        return [call for call in self.calls if pattern in call.command]


def scripted_linux_host(
    *,
    architecture: str = "x86_64",
    docker_installed: bool = True,
    gpu_name: str | None = None,
    cuda_release: str | None = None,
    cpu_model: str = "AMD EPYC 7763 64-Core Processor",
) -> ScriptedExecutor:
    """A remote x86 Linux host on which a deployment succeeds by default."""
    host = ScriptedExecutor()
    host.on("uname -m", architecture)
    if docker_installed:
        host.on("docker --version", "Docker version 27.3.1, build ce12230")
    if gpu_name:
        host.on("nvidia-smi --query-gpu", gpu_name)
        host.on("nvidia-smi 2>/dev/null", "NVIDIA-SMI 550.54.14")
        if cuda_release:
            host.on("nvcc --version", f"{cuda_release},")
    else:
        host.fail("nvidia-smi", exit_status=127)
    host.on("lscpu", f"Model name:                         {cpu_model}")
    host.on("cat /etc/os-release", 'NAME="Ubuntu"\nVERSION="22.04.4 LTS (Jammy Jellyfish)"\nID=ubuntu')
    host.on("whoami", "ubuntu")
    host.on("docker info 2>&1", "Server Version: 27.3.1")
    host.on("docker ps -q -f", "3f2a1b9c8d7e")
    return host


def session_factory_for(executor: ScriptedExecutor) -> Callable[..., Any]:
    """Session factory that hands out the given executor."""

    async def factory(config: Any, settings: Any) -> ScriptedExecutor:
        return executor

    return factory


def failing_session_factory(error: BaseException) -> Callable[..., Any]:
    async def factory(config: Any, settings: Any) -> ScriptedExecutor:
        raise error

    return factory


def slow_session_factory(delay: float, executor: ScriptedExecutor | None = None) -> Callable[..., Any]:
    async def factory(config: Any, settings: Any) -> ScriptedExecutor:
        await asyncio.sleep(delay)
        return executor or ScriptedExecutor()

    return factory


# =============================================================================
# Docker client mock factories
# =============================================================================


def create_mock_container(name: str = "clara_core", status: str = "running") -> MagicMock:
    container = MagicMock()
    container.name = name
    container.status = status
    container.id = f"{name}-id"
    return container


def create_mock_docker_client(
    connected: bool = True,
    containers: dict[str, str] | None = None,
    images: set[str] | None = None,
    **extra_methods: Any,
) -> AsyncMock:
    """Create a mock DockerClient.

    Args:
        connected: Whether ``connect()`` reports a reachable engine
        containers: Container name -> status for existing containers
        images: Images present locally
        **extra_methods: Additional method overrides as method_name=AsyncMock

    Returns:
        AsyncMock shaped like clarafleet.core.docker_client.DockerClient
    """
    state = dict(containers or {})
    local_images = set(images or ())
    client = AsyncMock()
    client.connect = AsyncMock(return_value=connected)
    client.get_container = AsyncMock(
        side_effect=lambda name: create_mock_container(name, state[name]) if name in state else None
    )
    client.get_container_status = AsyncMock(side_effect=lambda name: state.get(name))
    client.image_exists = AsyncMock(side_effect=lambda image: image in local_images)
    client.get_logs = AsyncMock(return_value="")
    client.inspect_container = AsyncMock(return_value={})

    async def _create(image: str, name: str, **kwargs: Any) -> MagicMock:
        state[name] = "created"
        return create_mock_container(name, "created")

    async def _start(name: str) -> None:
        state[name] = "running"

    async def _stop(name: str, timeout: int = 10) -> bool:
        if name not in state:
            return False
        state[name] = "exited"
        return True

    async def _remove(name: str, force: bool = False) -> bool:
        return state.pop(name, None) is not None

    client.create_container = AsyncMock(side_effect=_create)
    client.start_container = AsyncMock(side_effect=_start)
    client.stop_container = AsyncMock(side_effect=_stop)
    client.remove_container = AsyncMock(side_effect=_remove)
    client.pull_image = MagicMock(side_effect=lambda image: create_mock_pull_progress())
    client.close = AsyncMock()
    client.container_states = state

    for method_name, method in extra_methods.items():
        setattr(client, method_name, method)
    return client


class _FakePullProgress:
    def __init__(self, events: list[Any]) -> None:
        self._events = list(events)
        self.closed = False

    def __aiter__(self) -> _FakePullProgress:
        return self

    async def __anext__(self) -> Any:
        if not self._events:
            raise StopAsyncIteration
        return self._events.pop(0)

    async def aclose(self) -> None:
        self.closed = True


def create_mock_pull_progress(events: list[Any] | None = None) -> _FakePullProgress:
    from clarafleet.core.docker_client import PullEvent

    default = [
        PullEvent("Pulling fs layer", layer_id="a1b2c3"),
        PullEvent("Downloading", "[=====>   ] 12MB/40MB", "a1b2c3"),
        PullEvent("Pull complete", layer_id="a1b2c3"),
    ]
    return _FakePullProgress(default if events is None else events)
