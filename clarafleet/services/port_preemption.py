"""Free a well-known port before a container binds it.

A local binary left over from an earlier session may still listen on the
inference port. ``PortPreemptor`` finds listening processes with psutil and
terminates them, optionally only when their process name is allow-listed.
Container engine proxies and this process itself are never terminated.

Preemption is best effort: nothing listening, access denied, or a process
that already exited are logged and ignored.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, field

import psutil

from clarafleet.core.logging import get_logger

logger = get_logger(__name__)

# Processes that forward ports into containers; terminating them would break
# the engine rather than free the port.
PROTECTED_PROCESS_PREFIXES = ("docker-proxy", "com.docker", "dockerd", "vpnkit", "wslrelay")

TERMINATE_TIMEOUT_SECONDS = 3.0


@dataclass(slots=True)
class PreemptionResult:
    port: int
    terminated: list[int] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def freed(self) -> bool:
        return bool(self.terminated)


def _listening_pids(port: int) -> set[int]:
    pids: set[int] = set()
    try:
        connections = psutil.net_connections(kind="tcp")
    except psutil.AccessDenied:
        logger.debug("Not permitted to list network connections")
        return pids
    for conn in connections:
        if conn.laddr and conn.laddr.port == port and conn.status == psutil.CONN_LISTEN and conn.pid:
            pids.add(conn.pid)
    return pids


def is_port_in_use(port: int) -> bool:
    """Return True if any process listens on the TCP port."""
    try:
        connections = psutil.net_connections(kind="tcp")
    except psutil.AccessDenied:
        return False
    return any(
        conn.laddr and conn.laddr.port == port and conn.status == psutil.CONN_LISTEN
        for conn in connections
    )


class PortPreemptor:
    """Terminates processes listening on a port.

    Args:
        allowlist: Process names that may be terminated. Empty means any
            unprotected process may be terminated.
        enabled: When False, ``preempt()`` does nothing.
        release_wait: Seconds to wait after terminating for the port to free.
    """

    def __init__(
        self,
        allowlist: list[str] | tuple[str, ...] = (),
        enabled: bool = True,
        release_wait: float = 2.0,
    ) -> None:
        self._allowlist = {name.lower() for name in allowlist}
        self._enabled = enabled
        self._release_wait = release_wait

    def _may_terminate(self, name: str) -> bool:
        lowered = name.lower()
        if lowered.startswith(PROTECTED_PROCESS_PREFIXES):
            return False
        if self._allowlist and lowered not in self._allowlist:
            return False
        return True

    def _terminate_listeners(self, port: int) -> PreemptionResult:
        result = PreemptionResult(port=port)
        own_pid = os.getpid()

        for pid in sorted(_listening_pids(port)):
            if pid == own_pid:
                continue
            try:
                process = psutil.Process(pid)
                name = process.name()
                if not self._may_terminate(name):
                    result.skipped.append(name)
                    logger.info(
                        f"Not terminating {name} (pid {pid}) holding port {port}",
                        extra={"port": port, "pid": pid, "process": name},
                    )
                    continue
                process.terminate()
                try:
                    process.wait(timeout=TERMINATE_TIMEOUT_SECONDS)
                except psutil.TimeoutExpired:
                    process.kill()
                result.terminated.append(pid)
                logger.info(
                    f"Terminated {name} (pid {pid}) holding port {port}",
                    extra={"port": port, "pid": pid, "process": name},
                )
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied:
                logger.warning(
                    f"Access denied terminating pid {pid} on port {port}",
                    extra={"port": port, "pid": pid},
                )
        return result

    async def preempt(self, port: int) -> PreemptionResult:
        """Free ``port`` if a permitted process is listening on it."""
        if not self._enabled:
            logger.debug(f"Port preemption disabled, leaving port {port} alone")
            return PreemptionResult(port=port)

        result = await asyncio.to_thread(self._terminate_listeners, port)
        if result.freed:
            await asyncio.sleep(self._release_wait)
        else:
            logger.debug(f"No process to terminate on port {port}", extra={"port": port})
        return result
