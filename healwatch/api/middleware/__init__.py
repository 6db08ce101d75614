"""API middleware modules for request processing and observability."""

from .metrics import RequestMetricsMiddleware

__all__ = ["RequestMetricsMiddleware"]
