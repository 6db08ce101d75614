"""Main FastAPI application for the healwatch monitoring API."""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..constants import CONSTANTS
from ..core.collaborators import NullSessionLookup, SessionLookup
from ..core.exceptions import (
    AlertNotFoundError,
    ConfigurationError,
    InsufficientDataError,
    InvalidAlertTransition,
    MonitoringError,
    NoApplicableRemediationError,
    ValidationError,
)
from ..monitoring.manager import MonitoringManager
from .middleware import RequestMetricsMiddleware
from .routers import health, monitoring
from .schemas import MessageResponse

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    manager: MonitoringManager = app.state.monitoring_manager
    await manager.start()

    yield

    await manager.shutdown()


async def add_security_headers(request: Request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)

    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["X-Permitted-Cross-Domain-Policies"] = "none"
    response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"

    # Strict-Transport-Security: only when served over HTTPS
    if _is_https_request(request):
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

    response.headers["X-Robots-Tag"] = "noindex, nofollow"
    return response


def _is_https_request(request: Request) -> bool:
    """Check if request is over HTTPS (including reverse proxy detection)."""
    return (
        request.url.scheme == "https"
        or request.headers.get("X-Forwarded-Proto", "").lower() == "https"
        or request.headers.get("X-Forwarded-SSL", "").lower() == "on"
    )


def _error(status_code: int, error: str, exc: MonitoringError, **details) -> JSONResponse:
    content = {"error": error, "message": str(exc)}
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain exceptions onto HTTP responses."""

    @app.exception_handler(ValidationError)
    async def validation_error_handler(_request: Request, exc: ValidationError) -> JSONResponse:
        return _error(422, "validation_error", exc, field=exc.field)

    @app.exception_handler(AlertNotFoundError)
    async def alert_not_found_handler(_request: Request, exc: AlertNotFoundError) -> JSONResponse:
        return _error(404, "alert_not_found", exc, alert_id=exc.alert_id)

    @app.exception_handler(InvalidAlertTransition)
    async def invalid_transition_handler(
        _request: Request, exc: InvalidAlertTransition
    ) -> JSONResponse:
        return _error(409, "invalid_transition", exc, current=exc.current, target=exc.target)

    @app.exception_handler(InsufficientDataError)
    async def insufficient_data_handler(
        _request: Request, exc: InsufficientDataError
    ) -> JSONResponse:
        return _error(
            409, "insufficient_data", exc, available=exc.available, required=exc.required
        )

    @app.exception_handler(NoApplicableRemediationError)
    async def no_remediation_handler(
        _request: Request, exc: NoApplicableRemediationError
    ) -> JSONResponse:
        return _error(404, "no_applicable_remediation", exc, issue_type=exc.issue_type)

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(
        _request: Request, exc: ConfigurationError
    ) -> JSONResponse:
        return _error(409, "configuration_error", exc)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled errors."""
        logger.error("Unhandled API error", path=str(request.url.path), error=str(exc))
        return JSONResponse(
            status_code=CONSTANTS.HTTP_STATUS_SERVER_ERROR,
            content={
                "detail": CONSTANTS.ERROR_INTERNAL_SERVER,
                "type": CONSTANTS.ERROR_TYPE_INTERNAL,
                "path": str(request.url.path),
            },
        )


def create_app(
    manager: MonitoringManager | None = None, session_lookup: SessionLookup | None = None
) -> FastAPI:
    """Build the API application around a monitoring manager.

    Args:
        manager: Manager to serve; the global instance by default
        session_lookup: Resolver for the session token header

    Returns:
        Configured FastAPI application
    """
    if manager is None:
        from ..monitoring.manager import monitoring_manager

        manager = monitoring_manager

    app = FastAPI(
        title="healwatch Monitoring API",
        description="Metrics, alerting, forecasting and self-healing for monitored resources",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.monitoring_manager = manager
    app.state.session_lookup = session_lookup or NullSessionLookup()

    allowed_origins = CONSTANTS.ALLOWED_ORIGINS_DEFAULT.split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.strip() for origin in allowed_origins],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Accept", "Origin", CONSTANTS.SESSION_TOKEN_HEADER],
    )
    app.add_middleware(RequestMetricsMiddleware)
    app.middleware("http")(add_security_headers)

    register_exception_handlers(app)

    app.include_router(health.router)
    app.include_router(monitoring.router)

    @app.get("/", response_model=MessageResponse, tags=["Root"])
    async def root() -> MessageResponse:
        """Root endpoint with API information."""
        return MessageResponse(
            message=f"healwatch API v{__version__} - Docs: /docs, Health: /health, Metrics: /metrics"
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=CONSTANTS.LOCALHOST_IP, port=CONSTANTS.DEFAULT_API_PORT)
