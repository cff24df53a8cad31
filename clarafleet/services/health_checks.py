"""Health check strategies for catalog services.

Each service definition carries one ``HealthCheck``. ``check(url)`` returns
True when the service is ready; ``url`` overrides the strategy's default base
URL (manual mode, remote hosts).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

import httpx

from clarafleet.core.logging import get_logger

if TYPE_CHECKING:
    from clarafleet.core.docker_client import DockerClient

logger = get_logger(__name__)

MANUAL_HEALTH_TIMEOUT_SECONDS = 5.0


def join_url(base_url: str, path: str) -> str:
    """Join a base URL and an endpoint path with exactly one slash."""
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


@runtime_checkable
class HealthCheck(Protocol):
    """Readiness predicate of a service."""

    async def check(self, url: str | None = None) -> bool:
        """Return True when the service is ready."""
        ...


class HttpHealthCheck:
    """HTTP GET against a health endpoint; 2xx means healthy.

    Args:
        name: Service name used in log records
        base_url: Default base URL (e.g. ``http://localhost:8091``)
        path: Health endpoint path (``/health``, ``/healthz``, ``/``)
        timeout: Request timeout in seconds
        accept_redirects: Also treat 3xx responses as healthy
    """

    def __init__(
        self,
        name: str,
        base_url: str | None,
        path: str = "/health",
        timeout: float = 5.0,
        accept_redirects: bool = False,
    ) -> None:
        self.name = name
        self.base_url = base_url
        self.path = path
        self.timeout = timeout
        self.accept_redirects = accept_redirects

    def url_for(self, base_url: str | None = None) -> str | None:
        base = base_url or self.base_url
        return join_url(base, self.path) if base else None

    async def check(self, url: str | None = None) -> bool:
        target = self.url_for(url)
        if target is None:
            logger.debug(f"No health URL configured for {self.name}")
            return False

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(target)
            if self.accept_redirects and response.is_redirect:
                return True
            response.raise_for_status()
            logger.debug(
                f"Health check passed for {self.name}",
                extra={"service": self.name, "url": target},
            )
            return True

        except httpx.ConnectError as e:
            logger.debug(
                f"Health check failed for {self.name}: connection error",
                extra={"service": self.name, "url": target, "error": str(e)},
            )
            return False

        except httpx.TimeoutException:
            logger.debug(
                f"Health check failed for {self.name}: timeout",
                extra={"service": self.name, "url": target, "timeout": self.timeout},
            )
            return False

        except httpx.HTTPStatusError as e:
            logger.debug(
                f"Health check failed for {self.name}: HTTP {e.response.status_code}",
                extra={"service": self.name, "status_code": e.response.status_code},
            )
            return False

        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(
                f"Health check failed for {self.name}: {e}",
                extra={"service": self.name, "url": target, "error": str(e)},
            )
            return False


class DockerEngineHealthCheck:
    """Healthy when the local container engine answers a ping."""

    def __init__(self, docker_client: DockerClient | None = None) -> None:
        self._docker_client = docker_client

    def bind(self, docker_client: DockerClient) -> None:
        self._docker_client = docker_client

    async def check(self, url: str | None = None) -> bool:  # noqa: ARG002
        if self._docker_client is None:
            return False
        return await self._docker_client.connect()


class StaticHealthCheck:
    """Fixed result, for in-process services with no endpoint of their own."""

    def __init__(self, healthy: bool = True) -> None:
        self._healthy = healthy

    async def check(self, url: str | None = None) -> bool:  # noqa: ARG002
        return self._healthy


def create_manual_health_check(url: str, endpoint: str = "/health") -> HttpHealthCheck:
    """Health check for a user-managed service reached by URL.

    Any 2xx or 3xx answer counts as healthy.
    """
    return HttpHealthCheck(
        name=f"manual:{url}",
        base_url=url,
        path=endpoint,
        timeout=MANUAL_HEALTH_TIMEOUT_SECONDS,
        accept_redirects=True,
    )
