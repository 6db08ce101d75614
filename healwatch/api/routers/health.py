"""Health check and metrics exposition endpoints."""

from fastapi import APIRouter, Response, status
from fastapi.responses import JSONResponse

from ...constants import CONSTANTS
from ..dependencies import Manager
from ..schemas import HealthCheckResponse

router = APIRouter(tags=["Health & Monitoring"])


@router.get(
    "/health",
    response_model=HealthCheckResponse,
    responses={503: {"model": HealthCheckResponse}},
)
async def health_check(manager: Manager) -> JSONResponse:
    """Health of every monitoring subsystem.

    Returns:
        200 when every check is healthy, 503 otherwise
    """
    body = HealthCheckResponse.model_validate(await manager.check_health())
    status_code = (
        status.HTTP_200_OK if body.status == "healthy" else status.HTTP_503_SERVICE_UNAVAILABLE
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@router.get("/health/live")
async def liveness_check() -> dict[str, str]:
    """Simple liveness check for container orchestration."""
    return {"status": "alive"}


@router.get("/metrics", response_class=Response)
async def prometheus_metrics(manager: Manager) -> Response:
    """Prometheus text exposition of every series and engine counter."""
    return Response(content=manager.export_exposition(), media_type=CONSTANTS.EXPOSITION_CONTENT_TYPE)
