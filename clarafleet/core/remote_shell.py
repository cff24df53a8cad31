"""SSH command executor built on asyncssh.

``RemoteShellExecutor`` implements the ``CommandExecutor`` protocol over a
single SSH connection. Commands are issued one at a time; each opens its
own channel on the shared connection.

Usage:
    async with await RemoteShellExecutor.connect(
        host="10.0.0.5", username="ubuntu", password="..."
    ) as shell:
        result = await shell.run("uname -m")
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import asyncssh

from clarafleet.core.exceptions import RemoteConnectionError
from clarafleet.core.executors import (
    EXIT_TIMEOUT,
    CommandResult,
    clean_output,
    prepare_command,
)
from clarafleet.core.logging import get_logger, is_privilege_prompt, redact

if TYPE_CHECKING:
    from collections.abc import Callable

logger = get_logger(__name__)

_CHANNEL_ERRORS = (
    asyncssh.DisconnectError,
    asyncssh.ChannelOpenError,
    BrokenPipeError,
    ConnectionResetError,
)


def describe_connection_error(error: BaseException) -> str:
    """Turn a connection-level failure into a user-facing message."""
    if isinstance(error, asyncssh.PermissionDenied):
        return "SSH authentication failed. Please check your username and password."
    if isinstance(error, ConnectionRefusedError):
        return "Connection refused. Please check the host and port."
    if isinstance(error, TimeoutError):
        return "Connection timeout. Please check the host address and network connectivity."
    if isinstance(error, asyncssh.Error):
        return f"SSH error: {error.reason}"
    return f"Could not connect to host: {error}"


class RemoteShellExecutor:
    """Runs commands on a remote host over one SSH connection."""

    def __init__(
        self,
        connection: asyncssh.SSHClientConnection,
        *,
        host: str,
        default_timeout: float = 120.0,
    ) -> None:
        self._conn = connection
        self._host = host
        self._default_timeout = default_timeout
        self._closed = False

    @property
    def host(self) -> str:
        return self._host

    @classmethod
    async def connect(
        cls,
        *,
        host: str,
        username: str,
        port: int = 22,
        password: str | None = None,
        private_key_path: str | None = None,
        connect_timeout: float = 30.0,
        known_hosts: str | None = None,
        default_timeout: float = 120.0,
    ) -> RemoteShellExecutor:
        """Open an SSH connection.

        Raises:
            RemoteConnectionError: If the host is unreachable, refuses the
                connection, rejects the credentials, or does not answer in time.
        """
        logger.info(
            f"Connecting to {username}@{host}:{port}",
            extra={"host": host, "port": port, "username": username},
        )
        options: dict[str, object] = {}
        if private_key_path:
            options["client_keys"] = [private_key_path]
        try:
            connection = await asyncssh.connect(
                host,
                port=port,
                username=username,
                password=password,
                known_hosts=known_hosts,
                connect_timeout=connect_timeout,
                **options,
            )
        except (asyncssh.Error, OSError, TimeoutError) as e:
            message = describe_connection_error(e)
            logger.warning(
                f"SSH connection to {host} failed: {message}",
                extra={"host": host, "port": port, "error_type": type(e).__name__},
            )
            raise RemoteConnectionError(
                message, details={"host": host, "port": port}
            ) from e
        return cls(connection, host=host, default_timeout=default_timeout)

    async def __aenter__(self) -> RemoteShellExecutor:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    async def run(
        self,
        command: str,
        *,
        timeout: float | None = None,
        check: bool = False,
        secret: str | None = None,
        on_output: Callable[[str], None] | None = None,
    ) -> CommandResult:
        """Run one command on the remote host. See CommandExecutor.run."""
        if self._closed:
            raise RemoteConnectionError(
                "SSH session is closed", details={"host": self._host}
            )

        timeout = timeout or self._default_timeout
        command_line, stdin_payload = prepare_command(command, secret)
        stdout_lines: list[str] = []

        try:
            async with asyncio.timeout(timeout):
                process = await self._conn.create_process(command_line)
                try:
                    if stdin_payload:
                        process.stdin.write(stdin_payload)
                    process.stdin.write_eof()

                    async def _read_stdout() -> None:
                        async for raw_line in process.stdout:
                            line = raw_line.rstrip("\r\n")
                            if is_privilege_prompt(line):
                                continue
                            line = redact(line, secret)
                            stdout_lines.append(line)
                            if on_output is not None:
                                on_output(line)

                    _, stderr = await asyncio.gather(_read_stdout(), process.stderr.read())
                    await process.wait()
                finally:
                    process.close()
        except TimeoutError:
            logger.warning(
                f"Remote command timed out after {timeout}s",
                extra={"host": self._host, "command": command, "timeout": timeout},
            )
            result = CommandResult(command, EXIT_TIMEOUT, stderr=f"timed out after {timeout}s")
            return result.raise_for_status() if check else result
        except _CHANNEL_ERRORS as e:
            raise RemoteConnectionError(
                f"Lost connection to {self._host}: {e}", details={"host": self._host}
            ) from e

        exit_status = process.exit_status if process.exit_status is not None else -1
        result = CommandResult(
            command,
            exit_status,
            "\n".join(stdout_lines),
            clean_output(str(stderr), secret),
        )
        logger.debug(
            f"Remote command exited with {exit_status}",
            extra={"host": self._host, "command": command, "exit_status": exit_status},
        )
        return result.raise_for_status() if check else result

    async def close(self) -> None:
        """Close the SSH connection. Safe to call multiple times."""
        if self._closed:
            return
        self._closed = True
        self._conn.close()
        try:
            await self._conn.wait_closed()
        except (asyncssh.Error, OSError) as e:
            logger.debug(f"Error closing SSH connection to {self._host}: {e}")
        logger.debug(f"Closed SSH connection to {self._host}", extra={"host": self._host})
