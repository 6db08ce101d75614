"""Monitoring API endpoints: observations, alerts, predictions, healing and dashboards."""

from typing import Any

from fastapi import APIRouter, Query, status
from fastapi.responses import JSONResponse

from ...monitoring.alerts import AlertStatus
from ...monitoring.healing import Issue
from ...monitoring.store import MetricData
from ..dependencies import CurrentOperator, Manager
from ..schemas import (
    AcknowledgeRequest,
    AlertListResponse,
    DashboardListResponse,
    ErrorResponse,
    HealingRecordListResponse,
    HealRequest,
    ObservationCreate,
    ObservationResponse,
    PredictionRequest,
)

router = APIRouter(
    prefix="/monitoring",
    tags=["Monitoring"],
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)


@router.get("/stats")
async def get_stats(manager: Manager) -> dict[str, Any]:
    """Engine counters plus the redacted configuration."""
    return manager.stats()


@router.get("/analytics")
async def get_analytics(manager: Manager) -> dict[str, Any]:
    """Per-subsystem analytics for the enabled features."""
    return manager.analytics()


# Observations


@router.post("/observations", response_model=ObservationResponse, status_code=status.HTTP_201_CREATED)
async def create_observation(payload: ObservationCreate, manager: Manager) -> ObservationResponse:
    """Push one observation through classification and alerting.

    Raises:
        ValidationError: Mapped to 422 when the store rejects the value
    """
    data = MetricData(**payload.model_dump(exclude={"resource_id"}))
    result = await manager.ingest(payload.resource_id, data)
    return ObservationResponse(**result.to_dict())


# Alerts


@router.get("/alerts", response_model=AlertListResponse)
async def list_alerts(
    manager: Manager,
    alert_status: AlertStatus | None = Query(None, alias="status"),
    resource_id: str | None = None,
    limit: int = Query(100, ge=1, le=1000),
) -> AlertListResponse:
    """List alerts newest first."""
    engine = manager.alert_engine
    alerts = engine.list_alerts(status=alert_status, resource_id=resource_id, limit=limit)
    return AlertListResponse(
        alerts=[alert.to_dict() for alert in alerts],
        total=len(alerts),
        summary=engine.get_alert_summary(),
    )


@router.get("/alerts/{alert_id}")
async def get_alert(alert_id: int, manager: Manager) -> dict[str, Any]:
    return manager.alert_engine.get_alert(alert_id).to_dict()


@router.post("/alerts/{alert_id}/acknowledge")
async def acknowledge_alert(
    alert_id: int,
    manager: Manager,
    operator: CurrentOperator,
    payload: AcknowledgeRequest | None = None,
) -> dict[str, Any]:
    """Acknowledge an active alert.

    The signed-in operator takes precedence over the name in the body.
    """
    name = operator.name if operator else (payload.operator if payload else None)
    return manager.alert_engine.acknowledge(alert_id, operator=name).to_dict()


@router.post("/alerts/{alert_id}/resolve")
async def resolve_alert(alert_id: int, manager: Manager) -> dict[str, Any]:
    return manager.alert_engine.resolve(alert_id).to_dict()


@router.get("/alert-rules")
async def list_alert_rules(manager: Manager) -> dict[str, Any]:
    return {"rules": [rule.to_dict() for rule in manager.alert_engine.rules.values()]}


@router.get("/alert-rules/export")
async def export_alert_rules(manager: Manager) -> dict[str, Any]:
    """Alert rules in Grafana alert format."""
    return manager.dashboards.export_alerts(manager.alert_engine.rules.values())


# Predictions


@router.post("/predictions/{resource_id}")
async def create_prediction(
    resource_id: str, manager: Manager, payload: PredictionRequest | None = None
) -> dict[str, Any]:
    """Forecast a resource metric.

    Raises:
        InsufficientDataError: Mapped to 409 when history is too short
    """
    payload = payload or PredictionRequest()
    prediction = await manager.predict(resource_id, window=payload.window, metric=payload.metric)
    return prediction.to_dict()


@router.get("/predictions")
async def list_predictions(
    manager: Manager, resource_id: str | None = None, active: bool = False
) -> dict[str, Any]:
    forecaster = manager.forecaster
    predictions = (
        forecaster.active_predictions(resource_id)
        if active
        else forecaster.list_predictions(resource_id)
    )
    return {"predictions": [p.to_dict() for p in predictions], "total": len(predictions)}


# Self-healing


@router.post("/heal")
async def heal(payload: HealRequest, manager: Manager, operator: CurrentOperator) -> dict[str, Any]:
    """Run the highest-priority healing rule for an issue.

    Raises:
        NoApplicableRemediationError: Mapped to 404 when no rule matches
        ConfigurationError: Mapped to 409 when self-healing is disabled
    """
    issue = Issue(**payload.model_dump(), requested_by=operator.id if operator else None)
    record = await manager.heal(issue)
    return record.to_dict()


@router.get("/healing-records", response_model=HealingRecordListResponse)
async def list_healing_records(
    manager: Manager, limit: int = Query(100, ge=1, le=1000)
) -> HealingRecordListResponse:
    orchestrator = manager.orchestrator
    records = orchestrator.list_records(limit=limit)
    return HealingRecordListResponse(
        records=[record.to_dict() for record in records],
        total=len(orchestrator.records),
        success_rate=orchestrator.success_rate(),
    )


# Dashboards


@router.get("/dashboards", response_model=DashboardListResponse)
async def list_dashboards(manager: Manager) -> DashboardListResponse:
    return DashboardListResponse(dashboards=manager.dashboards.list_dashboards())


@router.get("/dashboards/{dashboard_id}/export")
async def export_dashboard(dashboard_id: str, manager: Manager) -> JSONResponse:
    """Dashboard as a Grafana import document, served as an attachment."""
    envelope = manager.dashboards.export_dashboard(dashboard_id)
    if envelope is None:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND, content={"error": "Dashboard not found"}
        )
    return JSONResponse(
        content=envelope,
        headers={"Content-Disposition": f"attachment; filename={dashboard_id}-dashboard.json"},
    )
