"""FastAPI application exposing the orchestration operations."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from clarafleet.api.exception_handlers import register_exception_handlers
from clarafleet.api.routes import services
from clarafleet.core.config import get_settings
from clarafleet.core.docker_client import DockerClient
from clarafleet.core.logging import get_logger, setup_logging
from clarafleet.services.service_orchestrator import ServiceOrchestrator

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Create the orchestrator on startup and release it on shutdown."""
    setup_logging()
    settings = get_settings()

    docker_client = DockerClient(settings.docker_host)
    if await docker_client.connect():
        logger.info("Docker engine reachable")
    else:
        logger.warning("Docker engine not reachable; container services will fail to start")

    orchestrator = ServiceOrchestrator(settings=settings, docker_client=docker_client)
    app.state.orchestrator = orchestrator
    logger.info(
        f"Orchestrator ready on {orchestrator.registry.platform}",
        extra={"services": orchestrator.registry.names()},
    )

    yield

    app.state.orchestrator = None
    await orchestrator.close()
    logger.info("Orchestrator stopped")


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(
        title=settings.app_name,
        description="Service orchestration and remote deployment API",
        version=settings.app_version,
        lifespan=lifespan,
    )
    register_exception_handlers(app)
    app.include_router(services.router)
    return app


app = create_app()
