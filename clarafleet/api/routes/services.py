"""REST API endpoints for service orchestration and remote deployment.

Local service actions, registry queries, and remote deployment/monitoring
all delegate to the ``ServiceOrchestrator`` held in application state.
Expected failures are part of the response body (``success: false``), so
these endpoints answer 200 for them; 404 is reserved for unknown services.
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from clarafleet.api.schemas.services import (
    CompatibleServicesResult,
    ConnectionTestResult,
    DeploymentResult,
    PlatformCompatibility,
    RemoteDeployConfig,
    RemoteFleetStatus,
    ResolveServicesRequest,
    ServiceActionResult,
    ServiceLogsResponse,
    ServiceStatusResponse,
    StartOptions,
)

router = APIRouter(prefix="/api/fleet", tags=["fleet"])


async def get_orchestrator(request: Request) -> Any:
    """Get orchestrator from app state.

    Raises:
        HTTPException: 503 if orchestrator is not available
    """
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(503, "Service orchestrator not available")
    return orchestrator


def _require_service(orchestrator: Any, name: str) -> None:
    if orchestrator.registry.find(name) is None:
        raise HTTPException(404, f"Unknown service: {name}")


# =============================================================================
# Registry
# =============================================================================


@router.get("/compatibility", response_model=PlatformCompatibility)
async def get_platform_compatibility(
    orchestrator: Any = Depends(get_orchestrator),
) -> PlatformCompatibility:
    """Supported deployment modes of every service on this platform."""
    result: PlatformCompatibility = orchestrator.get_platform_compatibility()
    return result


@router.post("/resolve", response_model=CompatibleServicesResult)
async def resolve_services(
    request: ResolveServicesRequest,
    orchestrator: Any = Depends(get_orchestrator),
) -> CompatibleServicesResult:
    """Assign a deployment mode to each enabled service."""
    result: CompatibleServicesResult = orchestrator.resolve_compatible_services(
        request.features, request.mode
    )
    return result


# =============================================================================
# Local services
# =============================================================================


@router.post(
    "/services/{name}/start",
    response_model=ServiceActionResult,
    responses={404: {"description": "Service not found"}},
)
async def start_service(
    name: str,
    options: StartOptions | None = None,
    orchestrator: Any = Depends(get_orchestrator),
) -> ServiceActionResult:
    _require_service(orchestrator, name)
    result: ServiceActionResult = await orchestrator.start_local_service(name, options)
    return result


@router.post(
    "/services/{name}/stop",
    response_model=ServiceActionResult,
    responses={404: {"description": "Service not found"}},
)
async def stop_service(
    name: str,
    orchestrator: Any = Depends(get_orchestrator),
) -> ServiceActionResult:
    _require_service(orchestrator, name)
    result: ServiceActionResult = await orchestrator.stop_local_service(name)
    return result


@router.post(
    "/services/{name}/restart",
    response_model=ServiceActionResult,
    responses={404: {"description": "Service not found"}},
)
async def restart_service(
    name: str,
    options: StartOptions | None = None,
    orchestrator: Any = Depends(get_orchestrator),
) -> ServiceActionResult:
    _require_service(orchestrator, name)
    result: ServiceActionResult = await orchestrator.restart_local_service(name, options)
    return result


@router.get(
    "/services/{name}/status",
    response_model=ServiceStatusResponse,
    responses={404: {"description": "Service not found"}},
)
async def get_service_status(
    name: str,
    orchestrator: Any = Depends(get_orchestrator),
) -> ServiceStatusResponse:
    _require_service(orchestrator, name)
    result: ServiceStatusResponse = await orchestrator.get_service_status(name)
    return result


@router.get(
    "/services/{name}/logs",
    response_model=ServiceLogsResponse,
    responses={404: {"description": "Service not found"}},
)
async def get_service_logs(
    name: str,
    tail: int = Query(100, ge=1, le=10000, description="Number of lines from the end"),
    orchestrator: Any = Depends(get_orchestrator),
) -> ServiceLogsResponse:
    _require_service(orchestrator, name)
    result: ServiceLogsResponse = await orchestrator.get_service_logs(name, tail)
    return result


# =============================================================================
# Remote hosts
# =============================================================================


@router.post("/remote/test", response_model=ConnectionTestResult)
async def test_remote_setup(
    config: RemoteDeployConfig,
    orchestrator: Any = Depends(get_orchestrator),
) -> ConnectionTestResult:
    """Connect to a host and detect its hardware."""
    result: ConnectionTestResult = await orchestrator.test_remote_setup(config)
    return result


@router.post("/remote/deploy", response_model=DeploymentResult)
async def deploy_remote(
    config: RemoteDeployConfig,
    orchestrator: Any = Depends(get_orchestrator),
) -> DeploymentResult:
    """Deploy the inference container to a host, falling back to CPU when needed."""
    result: DeploymentResult = await orchestrator.deploy_remote(config)
    return result


@router.post("/remote/monitor", response_model=RemoteFleetStatus)
async def monitor_remote(
    config: RemoteDeployConfig,
    orchestrator: Any = Depends(get_orchestrator),
) -> RemoteFleetStatus:
    """List deployed containers on a host with their health."""
    result: RemoteFleetStatus = await orchestrator.monitor_remote(config)
    return result
