"""Docker API wrapper for container management.

This module provides an async wrapper around docker-py for managing Docker/Podman
containers. All synchronous docker-py calls run in a thread via asyncio.to_thread()
so they never block the event loop.

Error policy:
- Query methods (connect, get_container, get_container_status, image_exists,
  get_logs, inspect_container) never raise; failures are logged and reported
  as None/False/empty values.
- Mutating methods (create/start/stop/remove, pull) raise ContainerEngineError
  subclasses so lifecycle callers can surface them.

Usage:
    async with DockerClient() as client:
        if await client.image_exists("clara17verse/claracore:cpu"):
            ...
        async for event in client.pull_image("clara17verse/claracore:cpu"):
            print(event.status, event.detail)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from docker import DockerClient as BaseDockerClient  # type: ignore[attr-defined]
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from clarafleet.core.exceptions import (
    ContainerEngineError,
    ContainerEngineUnavailableError,
    ImagePullError,
)
from clarafleet.core.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterator

    from docker.models.containers import Container

logger = get_logger(__name__)

_END = object()


@dataclass(frozen=True, slots=True)
class PullEvent:
    """One progress event of an image pull."""

    status: str
    detail: str = ""
    layer_id: str | None = None


class PullProgress:
    """Cancellable async stream of image pull progress events.

    The stream is finite: it ends when the engine reports the pull complete,
    and raises ImagePullError when the engine reports an error. It cannot be
    restarted; iterating a finished or closed stream yields nothing.
    """

    def __init__(self, client: BaseDockerClient, image: str) -> None:
        self._client = client
        self._image = image
        self._stream: Iterator[dict[str, Any]] | None = None
        self._finished = False

    @property
    def image(self) -> str:
        return self._image

    @property
    def finished(self) -> bool:
        return self._finished

    def __aiter__(self) -> PullProgress:
        return self

    async def __anext__(self) -> PullEvent:
        if self._finished:
            raise StopAsyncIteration

        try:
            if self._stream is None:
                self._stream = await asyncio.to_thread(
                    self._client.api.pull, self._image, stream=True, decode=True
                )
            item = await asyncio.to_thread(next, self._stream, _END)
        except (NotFound, ImageNotFound) as e:
            self._finished = True
            raise ImagePullError(f"Image not found: {self._image}", image=self._image) from e
        except (APIError, DockerException) as e:
            self._finished = True
            raise ImagePullError(
                f"Failed to pull image {self._image}: {e}", image=self._image
            ) from e

        if item is _END:
            self._finished = True
            logger.info(f"Pulled image {self._image}", extra={"image": self._image})
            raise StopAsyncIteration

        if "error" in item:
            self._finished = True
            message = item.get("errorDetail", {}).get("message") or item["error"]
            raise ImagePullError(f"Failed to pull image {self._image}: {message}", image=self._image)

        return PullEvent(
            status=str(item.get("status", "")),
            detail=str(item.get("progress", "")),
            layer_id=item.get("id"),
        )

    async def aclose(self) -> None:
        """Cancel the pull and release the underlying HTTP stream."""
        if self._finished:
            return
        self._finished = True
        stream, self._stream = self._stream, None
        if stream is not None and hasattr(stream, "close"):
            try:
                await asyncio.to_thread(stream.close)
            except ValueError:
                # generator is still running in a worker thread; it ends with the response
                logger.debug(f"Pull stream for {self._image} still active while closing")
        logger.info(f"Cancelled pull of {self._image}", extra={"image": self._image})


class DockerClient:
    """Async wrapper around docker-py for container management.

    The underlying docker-py client is created lazily so that constructing a
    DockerClient never fails when the engine is down; ``connect()`` reports
    reachability instead.

    Attributes:
        _docker_host: The Docker host URL (e.g., unix:///var/run/docker.sock)
        _client: The underlying docker-py client instance
    """

    def __init__(self, docker_host: str | None = None) -> None:
        """Initialize Docker client.

        Args:
            docker_host: Docker host URL (e.g., unix:///var/run/docker.sock,
                        tcp://192.168.1.100:2375). If None, uses default from
                        environment (DOCKER_HOST) or the standard Docker socket.
        """
        self._docker_host = docker_host
        self._client: BaseDockerClient | None = None

    async def __aenter__(self) -> DockerClient:
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Async context manager exit."""
        await self.close()

    def _create_client(self) -> BaseDockerClient:
        if self._docker_host:
            return BaseDockerClient(base_url=self._docker_host)
        return BaseDockerClient.from_env()

    async def _require_client(self) -> BaseDockerClient:
        if self._client is None:
            try:
                self._client = await asyncio.to_thread(self._create_client)
            except DockerException as e:
                raise ContainerEngineUnavailableError(
                    details={"docker_host": self._docker_host or "default", "error": str(e)}
                ) from e
        return self._client

    async def connect(self) -> bool:
        """Test connection to Docker daemon.

        Returns:
            True if the daemon answers a ping, False otherwise.
        """
        try:
            client = await self._require_client()
            await asyncio.to_thread(client.ping)
            logger.debug(
                "Docker daemon reachable",
                extra={"docker_host": self._docker_host or "default"},
            )
            return True
        except (ContainerEngineUnavailableError, DockerException) as e:
            logger.warning(
                f"Failed to connect to Docker daemon: {e}",
                extra={"docker_host": self._docker_host or "default", "error": str(e)},
            )
            return False

    # =========================================================================
    # Queries
    # =========================================================================

    async def list_containers(self, all: bool = True) -> list[Container]:
        """List containers (running and stopped if all=True). Empty list on error."""
        try:
            client = await self._require_client()
            containers: list[Container] = await asyncio.to_thread(
                client.containers.list, all=all
            )
            return containers
        except (ContainerEngineUnavailableError, DockerException) as e:
            logger.warning(
                f"Failed to list containers: {e}",
                extra={"error": str(e), "include_all": all},
            )
            return []

    async def get_container(self, name_or_id: str) -> Container | None:
        """Get container by exact name or ID.

        Returns:
            Container object if found, None otherwise.
        """
        try:
            client = await self._require_client()
            container: Container = await asyncio.to_thread(client.containers.get, name_or_id)
            return container
        except NotFound:
            logger.debug(
                f"Container not found: {name_or_id}",
                extra={"container": name_or_id},
            )
            return None
        except (ContainerEngineUnavailableError, DockerException) as e:
            logger.warning(
                f"Error getting container {name_or_id}: {e}",
                extra={"container": name_or_id, "error": str(e)},
            )
            return None

    async def get_container_status(self, name_or_id: str) -> str | None:
        """Get container status (running, exited, etc) or None if not found."""
        container = await self.get_container(name_or_id)
        if container is None:
            return None
        try:
            await asyncio.to_thread(container.reload)
        except DockerException as e:
            logger.debug(f"Could not refresh container {name_or_id}: {e}")
        status: str = container.status
        return status

    async def image_exists(self, image: str) -> bool:
        """Check whether an image is present locally."""
        try:
            client = await self._require_client()
            await asyncio.to_thread(client.images.get, image)
            return True
        except ImageNotFound:
            return False
        except (ContainerEngineUnavailableError, DockerException) as e:
            logger.warning(
                f"Error checking for image {image}: {e}",
                extra={"image": image, "error": str(e)},
            )
            return False

    async def get_logs(self, name_or_id: str, tail: int = 100, timestamps: bool = True) -> str:
        """Get combined stdout/stderr of a container. Empty string on error."""
        container = await self.get_container(name_or_id)
        if container is None:
            return ""
        try:
            raw: bytes = await asyncio.to_thread(
                container.logs, stdout=True, stderr=True, timestamps=timestamps, tail=tail
            )
            return raw.decode("utf-8", errors="replace")
        except DockerException as e:
            logger.warning(
                f"Failed to read logs for {name_or_id}: {e}",
                extra={"container": name_or_id, "error": str(e)},
            )
            return ""

    async def inspect_container(self, name_or_id: str) -> dict[str, Any]:
        """Return the container's inspect document, or an empty dict."""
        container = await self.get_container(name_or_id)
        if container is None:
            return {}
        try:
            await asyncio.to_thread(container.reload)
        except DockerException as e:
            logger.debug(f"Could not refresh container {name_or_id}: {e}")
        attrs: dict[str, Any] = container.attrs
        return attrs

    # =========================================================================
    # Mutations
    # =========================================================================

    def pull_image(self, image: str) -> PullProgress:
        """Start pulling an image and return its progress stream.

        Raises:
            ContainerEngineUnavailableError: If the engine client is not connected.
        """
        if self._client is None:
            raise ContainerEngineUnavailableError()
        return PullProgress(self._client, image)

    async def create_container(self, image: str, name: str, **kwargs: Any) -> Container:
        """Create (but do not start) a container.

        Args:
            image: Image reference
            name: Container name
            **kwargs: docker-py ``containers.create`` options (ports, volumes,
                environment, devices, runtime, restart_policy, ...)

        Raises:
            ContainerEngineError: If the engine rejects the request.
        """
        client = await self._require_client()
        try:
            container: Container = await asyncio.to_thread(
                client.containers.create, image, name=name, detach=True, **kwargs
            )
        except DockerException as e:
            logger.error(
                f"Failed to create container {name}: {e}",
                extra={"container": name, "image": image, "error": str(e)},
            )
            raise ContainerEngineError(
                f"Failed to create container {name}: {e}",
                details={"container": name, "image": image},
            ) from e
        logger.info(
            f"Created container {name}",
            extra={"container": name, "image": image},
        )
        return container

    async def start_container(self, name_or_id: str) -> None:
        """Start a container.

        Raises:
            ContainerEngineError: If the container is missing or fails to start.
        """
        client = await self._require_client()
        try:
            container = await asyncio.to_thread(client.containers.get, name_or_id)
            await asyncio.to_thread(container.start)
        except DockerException as e:
            logger.error(
                f"Failed to start container {name_or_id}: {e}",
                extra={"container": name_or_id, "error": str(e)},
            )
            raise ContainerEngineError(
                f"Failed to start container {name_or_id}: {e}",
                details={"container": name_or_id},
            ) from e
        logger.info(f"Started container {name_or_id}", extra={"container": name_or_id})

    async def stop_container(self, name_or_id: str, timeout: int = 10) -> bool:
        """Stop a running container gracefully.

        Returns:
            True if the container was stopped, False if it does not exist.

        Raises:
            ContainerEngineError: If the engine fails to stop it.
        """
        client = await self._require_client()
        try:
            container = await asyncio.to_thread(client.containers.get, name_or_id)
            await asyncio.to_thread(container.stop, timeout=timeout)
        except NotFound:
            logger.debug(f"Cannot stop container - not found: {name_or_id}")
            return False
        except DockerException as e:
            logger.error(
                f"Failed to stop container {name_or_id}: {e}",
                extra={"container": name_or_id, "timeout": timeout, "error": str(e)},
            )
            raise ContainerEngineError(
                f"Failed to stop container {name_or_id}: {e}",
                details={"container": name_or_id},
            ) from e
        logger.info(
            f"Stopped container {name_or_id}",
            extra={"container": name_or_id, "timeout": timeout},
        )
        return True

    async def remove_container(self, name_or_id: str, force: bool = False) -> bool:
        """Remove a container.

        Returns:
            True if removed, False if it does not exist.

        Raises:
            ContainerEngineError: If the engine fails to remove it.
        """
        client = await self._require_client()
        try:
            container = await asyncio.to_thread(client.containers.get, name_or_id)
            await asyncio.to_thread(container.remove, force=force)
        except NotFound:
            logger.debug(f"Cannot remove container - not found: {name_or_id}")
            return False
        except DockerException as e:
            logger.error(
                f"Failed to remove container {name_or_id}: {e}",
                extra={"container": name_or_id, "error": str(e)},
            )
            raise ContainerEngineError(
                f"Failed to remove container {name_or_id}: {e}",
                details={"container": name_or_id},
            ) from e
        logger.info(f"Removed container {name_or_id}", extra={"container": name_or_id})
        return True

    async def close(self) -> None:
        """Close the Docker client connection. Safe to call multiple times."""
        if self._client is not None:
            try:
                await asyncio.to_thread(self._client.close)
                logger.debug("Docker client connection closed")
            except DockerException as e:
                logger.debug(f"Error closing Docker client: {e}")
            finally:
                self._client = None
