"""Command executors shared by hardware detection and remote deployment.

A ``CommandExecutor`` runs one shell command at a time and returns a
``CommandResult``. Two backends exist:

- ``LocalCommandExecutor``: asyncio subprocesses on this machine
- ``RemoteShellExecutor`` (clarafleet.core.remote_shell): commands over SSH

Privileged commands:
    Any command containing a ``sudo`` marker is rewritten by
    ``PrivilegedCommand`` into ``sudo -S -p '' bash -c '<command>'`` and the
    elevated-privilege secret is written to the process's standard input.
    The secret is never part of the command line, and executors redact it
    from captured output before returning or logging anything.
"""

from __future__ import annotations

import asyncio
import re
import shlex
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from clarafleet.core.exceptions import RemoteCommandError
from clarafleet.core.logging import get_logger, redact, strip_privilege_prompts

if TYPE_CHECKING:
    from collections.abc import Callable

logger = get_logger(__name__)

# Exit status used for commands that could not be run or timed out
EXIT_NOT_RUN = 127
EXIT_TIMEOUT = 124

_SUDO_MARKER = re.compile(r"(^|[\s;&|(])sudo\s+")


@dataclass(slots=True)
class CommandResult:
    """Outcome of one executed command."""

    command: str
    exit_status: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_status == 0

    @property
    def output(self) -> str:
        """Stripped stdout, the value probes care about."""
        return self.stdout.strip()

    def raise_for_status(self) -> CommandResult:
        """Raise RemoteCommandError if the command exited non-zero."""
        if not self.ok:
            raise RemoteCommandError(
                command=self.command,
                exit_status=self.exit_status,
                stderr=(self.stderr or self.stdout).strip(),
            )
        return self


@dataclass(frozen=True, slots=True)
class PrivilegedCommand:
    """A command that needs elevated privileges.

    The command text never carries the secret. ``render()`` produces the
    command line to execute and ``stdin_payload()`` the data to write to
    standard input.
    """

    command: str

    @staticmethod
    def is_privileged(command: str) -> bool:
        return _SUDO_MARKER.search(command) is not None

    @property
    def unprivileged_body(self) -> str:
        """The command with every sudo marker removed."""
        return _SUDO_MARKER.sub(r"\1", self.command).strip()

    def render(self, has_secret: bool) -> str:
        """Build the command line that runs the body as root.

        With a secret, sudo reads it from stdin (``-S``) and prints no prompt;
        without one, sudo must not prompt at all (``-n``).
        """
        flags = "-S -p ''" if has_secret else "-n"
        return f"sudo {flags} bash -c {shlex.quote(self.unprivileged_body)}"

    @staticmethod
    def stdin_payload(secret: str | None) -> str | None:
        return f"{secret}\n" if secret else None


def prepare_command(command: str, secret: str | None) -> tuple[str, str | None]:
    """Return the command line to execute and the stdin payload for it."""
    if PrivilegedCommand.is_privileged(command):
        privileged = PrivilegedCommand(command)
        return privileged.render(secret is not None), privileged.stdin_payload(secret)
    return command, None


def clean_output(text: str, secret: str | None) -> str:
    """Drop sudo prompt noise and redact the secret from command output."""
    return redact(strip_privilege_prompts(text), secret)


@runtime_checkable
class CommandExecutor(Protocol):
    """Runs shell commands on some machine.

    Implementations must treat a non-zero exit as a normal result unless
    ``check`` is set, and must raise RemoteConnectionError (never return a
    result) when the channel to the machine itself is broken.
    """

    async def run(
        self,
        command: str,
        *,
        timeout: float | None = None,
        check: bool = False,
        secret: str | None = None,
        on_output: Callable[[str], None] | None = None,
    ) -> CommandResult:
        """Run a command.

        Args:
            command: Shell command line
            timeout: Seconds before the command is abandoned
            check: Raise RemoteCommandError on non-zero exit
            secret: Elevated-privilege secret for commands with a sudo marker
            on_output: Called with each (cleaned) stdout line as it arrives

        Returns:
            CommandResult with cleaned stdout/stderr
        """
        ...


class LocalCommandExecutor:
    """Executes commands on this machine via asyncio subprocesses."""

    def __init__(self, default_timeout: float = 10.0) -> None:
        self._default_timeout = default_timeout

    async def run(
        self,
        command: str,
        *,
        timeout: float | None = None,
        check: bool = False,
        secret: str | None = None,
        on_output: Callable[[str], None] | None = None,
    ) -> CommandResult:
        timeout = timeout or self._default_timeout
        command_line, stdin_payload = prepare_command(command, secret)

        try:
            proc = await asyncio.create_subprocess_shell(
                command_line,
                stdin=asyncio.subprocess.PIPE if stdin_payload else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.debug(f"Could not run local command: {e}", extra={"command": command})
            result = CommandResult(command, EXIT_NOT_RUN, stderr=str(e))
            return result.raise_for_status() if check else result

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(stdin_payload.encode() if stdin_payload else None),
                timeout=timeout,
            )
        except TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning(
                f"Local command timed out after {timeout}s",
                extra={"command": command, "timeout": timeout},
            )
            result = CommandResult(command, EXIT_TIMEOUT, stderr=f"timed out after {timeout}s")
            return result.raise_for_status() if check else result

        stdout = clean_output(stdout_bytes.decode("utf-8", errors="replace"), secret)
        stderr = clean_output(stderr_bytes.decode("utf-8", errors="replace"), secret)
        if on_output is not None:
            for line in stdout.splitlines():
                on_output(line)

        result = CommandResult(command, proc.returncode or 0, stdout, stderr)
        logger.debug(
            f"Local command exited with {result.exit_status}",
            extra={"command": command, "exit_status": result.exit_status},
        )
        return result.raise_for_status() if check else result
