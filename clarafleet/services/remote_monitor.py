"""Read-only monitoring of ClaraCore containers on a remote host."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from clarafleet.api.schemas.services import RemoteFleetStatus, RemoteServiceStatus
from clarafleet.core.config import Settings, get_settings
from clarafleet.core.exceptions import OrchestrationError
from clarafleet.core.logging import get_logger
from clarafleet.services.remote_deployment import (
    CONTAINER_PREFIX,
    HEALTH_COMMAND,
    SERVICE_PORT,
    open_ssh_session,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from clarafleet.api.schemas.services import RemoteDeployConfig
    from clarafleet.services.remote_deployment import RemoteSession

logger = get_logger(__name__)

LIST_CONTAINERS_COMMAND = (
    f'docker ps -a --filter "name={CONTAINER_PREFIX}" --format "{{{{.Names}}}}|{{{{.Status}}}}|{{{{.Ports}}}}"'
)


class RemoteFleetMonitor:
    """Lists deployed containers on a host and probes the running ones.

    Args:
        settings: Monitor timeout
        session_factory: Async callable opening a session for a config
    """

    def __init__(
        self,
        settings: Settings | None = None,
        session_factory: Callable[[RemoteDeployConfig, Settings], Awaitable[RemoteSession]] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._session_factory = session_factory or open_ssh_session

    async def monitor(self, config: RemoteDeployConfig) -> RemoteFleetStatus:
        """Report every ``claracore-*`` container on the host. Never raises."""
        session: RemoteSession | None = None
        try:
            async with asyncio.timeout(self._settings.monitor_timeout):
                session = await self._session_factory(config, self._settings)
                services = await self._collect(session, config.host)
        except TimeoutError:
            logger.warning(f"Monitoring {config.host} timed out", extra={"host": config.host})
            return RemoteFleetStatus(
                success=False,
                host=config.host,
                timestamp=datetime.now(UTC),
                error=f"Monitor timeout after {self._settings.monitor_timeout:.0f} seconds",
            )
        except OrchestrationError as e:
            logger.warning(
                f"Monitoring {config.host} failed: {e.message}",
                extra={"host": config.host, "error_code": e.error_code},
            )
            return RemoteFleetStatus(
                success=False,
                host=config.host,
                timestamp=datetime.now(UTC),
                error=e.message,
            )
        finally:
            if session is not None:
                await session.close()

        return RemoteFleetStatus(
            success=True,
            host=config.host,
            services=services,
            total_services=len(services),
            running_services=sum(1 for s in services if s.running),
            healthy_services=sum(1 for s in services if s.is_healthy),
            timestamp=datetime.now(UTC),
        )

    async def _collect(self, session: RemoteSession, host: str) -> list[RemoteServiceStatus]:
        listing = await session.run(LIST_CONTAINERS_COMMAND)
        services: list[RemoteServiceStatus] = []
        for line in listing.output.splitlines():
            if not line.strip():
                continue
            name, _, rest = line.partition("|")
            status, _, ports = rest.partition("|")
            running = "up" in status.lower()
            healthy = False
            if running:
                healthy = (await session.run(HEALTH_COMMAND)).ok
            services.append(
                RemoteServiceStatus(
                    name=name,
                    hardware_type=name.removeprefix(CONTAINER_PREFIX),
                    status="running" if running else "stopped",
                    running=running,
                    is_healthy=healthy,
                    ports=ports or "N/A",
                    url=f"http://{host}:{SERVICE_PORT}" if running else None,
                )
            )
        logger.debug(f"Found {len(services)} containers on {host}", extra={"host": host})
        return services
