"""Unit tests for the asyncssh-backed shell executor."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import asyncssh
import pytest

from clarafleet.core.exceptions import RemoteCommandError, RemoteConnectionError
from clarafleet.core.logging import REDACTED
from clarafleet.core.remote_shell import RemoteShellExecutor, describe_connection_error


class _FakeStdout:
    def __init__(self, lines: list[str]) -> None:
        self._lines = lines

    async def __aiter__(self):
        for line in self._lines:
            yield f"{line}\n"


class _FakeProcess:
    """Just enough of asyncssh.SSHClientProcess for the executor."""

    def __init__(self, stdout: list[str], stderr: str = "", exit_status: int = 0) -> None:
        self.stdin = MagicMock()
        self.stdout = _FakeStdout(stdout)
        self.stderr = MagicMock()
        self.stderr.read = AsyncMock(return_value=stderr)
        self.exit_status = exit_status
        self.wait = AsyncMock()
        self.close = MagicMock()


def _connection(process: _FakeProcess | None = None) -> MagicMock:
    connection = MagicMock()
    connection.create_process = AsyncMock(return_value=process or _FakeProcess([]))
    connection.wait_closed = AsyncMock()
    return connection


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (asyncssh.PermissionDenied("auth failed"), "SSH authentication failed"),
        (ConnectionRefusedError(), "Connection refused"),
        (TimeoutError(), "Connection timeout"),
        (asyncssh.ConnectionLost("reset by peer"), "SSH error: reset by peer"),
        (OSError("No route to host"), "Could not connect to host: No route to host"),
    ],
)
def test_describe_connection_error(error, expected):
    assert describe_connection_error(error).startswith(expected)


@pytest.mark.asyncio
async def test_connect_failure_raises_connection_error():
    with patch(
        "clarafleet.core.remote_shell.asyncssh.connect",
        AsyncMock(side_effect=ConnectionRefusedError()),
    ):
        with pytest.raises(RemoteConnectionError, match="Connection refused") as exc_info:
            await RemoteShellExecutor.connect(host="10.0.0.5", username="ubuntu")

    assert exc_info.value.details == {"host": "10.0.0.5", "port": 22}


@pytest.mark.asyncio
async def test_connect_passes_key_and_timeout():
    connect = AsyncMock(return_value=_connection())
    with patch("clarafleet.core.remote_shell.asyncssh.connect", connect):
        shell = await RemoteShellExecutor.connect(
            host="10.0.0.5",
            username="ubuntu",
            private_key_path="/home/u/.ssh/id_ed25519",
            connect_timeout=7.0,
        )

    assert shell.host == "10.0.0.5"
    kwargs = connect.await_args.kwargs
    assert kwargs["client_keys"] == ["/home/u/.ssh/id_ed25519"]
    assert kwargs["connect_timeout"] == 7.0


@pytest.mark.asyncio
async def test_run_collects_output():
    process = _FakeProcess(["x86_64"], stderr="", exit_status=0)
    shell = RemoteShellExecutor(_connection(process), host="10.0.0.5")
    lines = []

    result = await shell.run("uname -m", on_output=lines.append)

    assert result.ok
    assert result.output == "x86_64"
    assert lines == ["x86_64"]
    process.stdin.write.assert_not_called()
    process.stdin.write_eof.assert_called_once()
    process.close.assert_called_once()


@pytest.mark.asyncio
async def test_privileged_run_sends_secret_on_stdin_only():
    process = _FakeProcess(
        ["[sudo] password for ubuntu:", "installing with hunter2"],
        stderr="Sorry, try again.\nwarning: hunter2",
    )
    connection = _connection(process)
    shell = RemoteShellExecutor(connection, host="10.0.0.5")

    result = await shell.run("sudo apt-get update", secret="hunter2")

    command_line = connection.create_process.await_args.args[0]
    assert command_line.startswith("sudo -S -p ''")
    assert "hunter2" not in command_line
    process.stdin.write.assert_called_once_with("hunter2\n")
    assert result.stdout == f"installing with {REDACTED}"
    assert result.stderr == f"warning: {REDACTED}"


@pytest.mark.asyncio
async def test_run_check_raises_on_failure():
    process = _FakeProcess([], stderr="manifest unknown", exit_status=1)
    shell = RemoteShellExecutor(_connection(process), host="10.0.0.5")

    with pytest.raises(RemoteCommandError) as exc_info:
        await shell.run("docker pull img", check=True)
    assert exc_info.value.exit_status == 1


@pytest.mark.asyncio
async def test_run_timeout_returns_timeout_result():
    connection = _connection()

    async def _hang(command):
        await asyncio.sleep(10)

    connection.create_process = AsyncMock(side_effect=_hang)
    shell = RemoteShellExecutor(connection, host="10.0.0.5")

    result = await shell.run("docker pull big-image", timeout=0.05)

    assert result.exit_status == 124


@pytest.mark.asyncio
async def test_lost_channel_raises_connection_error():
    connection = _connection()
    connection.create_process = AsyncMock(side_effect=ConnectionResetError("reset"))
    shell = RemoteShellExecutor(connection, host="10.0.0.5")

    with pytest.raises(RemoteConnectionError, match="Lost connection to 10.0.0.5"):
        await shell.run("uname -m")


@pytest.mark.asyncio
async def test_closed_session_rejects_commands():
    connection = _connection()
    shell = RemoteShellExecutor(connection, host="10.0.0.5")

    async with shell:
        pass
    await shell.close()

    connection.close.assert_called_once()
    with pytest.raises(RemoteConnectionError, match="closed"):
        await shell.run("uname -m")
