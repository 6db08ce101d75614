"""Request metrics middleware feeding the HTTP histograms of the metric store."""

import time
import uuid
from collections.abc import Callable

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = structlog.get_logger(__name__)


class RequestMetricsMiddleware(BaseHTTPMiddleware):  # pylint: disable=too-few-public-methods
    """Records request counts and durations and propagates a correlation id."""

    def __init__(self, app, correlation_header: str = "X-Correlation-ID"):
        """Initialize request metrics middleware.

        Args:
            app: FastAPI application
            correlation_header: Header name for correlation IDs
        """
        super().__init__(app)
        self.correlation_header = correlation_header

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Time the request and record it against its route template.

        Args:
            request: Incoming HTTP request
            call_next: Next middleware/handler

        Returns:
            HTTP response
        """
        correlation_id = request.headers.get(self.correlation_header) or str(uuid.uuid4())
        start_time = time.perf_counter()
        status_code = 500

        with structlog.contextvars.bound_contextvars(correlation_id=correlation_id):
            try:
                response = await call_next(request)
                status_code = response.status_code
            finally:
                self._record(request, status_code, time.perf_counter() - start_time)

        response.headers[self.correlation_header] = correlation_id
        return response

    @staticmethod
    def _record(request: Request, status_code: int, duration: float) -> None:
        manager = getattr(request.app.state, "monitoring_manager", None)
        if manager is None:
            return
        # Route templates keep label cardinality bounded
        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or "unmatched"
        manager.collector.record_request(request.method, endpoint, status_code, duration)
