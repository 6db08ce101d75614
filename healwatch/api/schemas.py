"""Pydantic schemas for API request/response models."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class MessageResponse(BaseModel):
    """Plain message response."""

    message: str


class ErrorResponse(BaseModel):
    """Structured error body returned for domain errors."""

    error: str
    message: str | None = None
    details: dict[str, Any] | None = None


# Health
class HealthCheckResponse(BaseModel):
    """Schema for health check responses."""

    status: str
    timestamp: datetime
    services: dict[str, Any]
    summary: dict[str, int] | None = None


# Observations
class ObservationCreate(BaseModel):
    """Schema for pushing a metric observation."""

    resource_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    value: float
    labels: dict[str, str] = Field(default_factory=dict)
    category: str | None = None
    system_load: float | None = None
    user_activity: float | None = None
    external_factors: dict[str, Any] = Field(default_factory=dict)
    timestamp: float | None = None


class ObservationResponse(BaseModel):
    """Classified observation plus any alerts it fired."""

    observation: dict[str, Any]
    alerts: list[dict[str, Any]]


# Alerts
class AlertListResponse(BaseModel):
    """Schema for alert list responses."""

    alerts: list[dict[str, Any]]
    total: int
    summary: dict[str, Any]


class AcknowledgeRequest(BaseModel):
    """Optional operator attribution when no session is present."""

    operator: str | None = None


# Predictions
class PredictionRequest(BaseModel):
    """Schema for requesting a forecast."""

    window: float | None = Field(default=None, gt=0)
    metric: str | None = None


# Healing
class HealRequest(BaseModel):
    """Schema for triggering self-healing for an issue."""

    type: str = Field(min_length=1)
    resource_id: str | None = None
    description: str = ""
    severity: str = "high"
    indicators: dict[str, float] = Field(default_factory=dict)


class HealingRecordListResponse(BaseModel):
    """Schema for healing history responses."""

    records: list[dict[str, Any]]
    total: int
    success_rate: float


# Dashboards
class DashboardListResponse(BaseModel):
    """Schema for dashboard list responses."""

    dashboards: list[dict[str, Any]]
