"""Tests for the monitoring API endpoints."""

import pytest
from fastapi import status

from healwatch.monitoring.store import MetricData


@pytest.fixture
def alert_id(manager, client):
    """Id of an active alert raised through the API."""
    manager.store.seed_baseline("web-1", "cpu_usage", mean=40, stddev=5)
    response = client.post(
        "/monitoring/observations",
        json={"resource_id": "web-1", "name": "cpu_usage", "value": 95.0},
    )
    return response.json()["alerts"][0]["id"]


class TestObservations:
    """Test pushing observations."""

    def test_normal_observation(self, client):
        response = client.post(
            "/monitoring/observations",
            json={
                "resource_id": "web-1",
                "name": "cpu_usage",
                "value": 42.0,
                "category": "performance",
                "labels": {"zone": "eu-1"},
            },
        )

        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert data["observation"]["severity"] == "normal"
        assert data["observation"]["context"]["category"] == "performance"
        assert data["alerts"] == []

    def test_critical_observation_alerts(self, client, alert_id, manager):
        alert = manager.alert_engine.get_alert(alert_id)
        assert alert.rule_id == "high_cpu"
        assert alert.priority == 4

    @pytest.mark.parametrize(
        "payload",
        [
            {"resource_id": "web-1", "name": "cpu_usage"},
            {"resource_id": "", "name": "cpu_usage", "value": 1},
            {"resource_id": "web-1", "name": "cpu_usage", "value": "hot"},
        ],
    )
    def test_request_validation(self, client, payload):
        response = client.post("/monitoring/observations", json=payload)
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    def test_domain_validation(self, client, manager):
        response = client.post(
            "/monitoring/observations",
            json={"resource_id": "web-1", "name": "   ", "value": 1.0},
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        data = response.json()
        assert data["error"] == "validation_error"
        assert data["details"] == {"field": "name"}
        assert manager.store.counters["rejected"] == 1

    def test_metric_name_must_be_exposable(self, client, manager):
        response = client.post(
            "/monitoring/observations",
            json={"resource_id": "web-1", "name": "cpu.usage", "value": 1.0},
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert response.json()["details"] == {"field": "name"}
        assert manager.store.resources() == []


class TestAlerts:
    """Test alert listing and lifecycle endpoints."""

    def test_list_alerts(self, client, alert_id):
        response = client.get("/monitoring/alerts")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["total"] == 1
        assert data["alerts"][0]["id"] == alert_id
        assert data["summary"]["total_rules"] == 1

    def test_filter_by_status(self, client, alert_id):
        assert client.get("/monitoring/alerts", params={"status": "resolved"}).json()["total"] == 0
        assert client.get("/monitoring/alerts", params={"status": "active"}).json()["total"] == 1

    def test_filter_by_unknown_status(self, client):
        response = client.get("/monitoring/alerts", params={"status": "snoozed"})
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    def test_get_alert(self, client, alert_id):
        response = client.get(f"/monitoring/alerts/{alert_id}")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "active"

    def test_unknown_alert(self, client):
        response = client.get("/monitoring/alerts/999")

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["error"] == "alert_not_found"
        assert response.json()["details"] == {"alert_id": 999}

    def test_acknowledge_with_body(self, client, alert_id):
        response = client.post(
            f"/monitoring/alerts/{alert_id}/acknowledge", json={"operator": "pat"}
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "acknowledged"
        assert response.json()["acknowledged_by"] == "pat"

    def test_acknowledge_with_session(self, client, alert_id, operator_headers):
        response = client.post(
            f"/monitoring/alerts/{alert_id}/acknowledge",
            json={"operator": "pat"},
            headers=operator_headers,
        )

        assert response.json()["acknowledged_by"] == "Dana Reyes"

    def test_unknown_session_falls_back_to_body(self, client, alert_id):
        response = client.post(
            f"/monitoring/alerts/{alert_id}/acknowledge",
            json={"operator": "pat"},
            headers={"X-Session-Token": "expired"},
        )

        assert response.json()["acknowledged_by"] == "pat"

    def test_resolve_then_invalid_transition(self, client, alert_id):
        assert client.post(f"/monitoring/alerts/{alert_id}/resolve").json()["status"] == "resolved"

        response = client.post(f"/monitoring/alerts/{alert_id}/acknowledge")

        assert response.status_code == status.HTTP_409_CONFLICT
        data = response.json()
        assert data["error"] == "invalid_transition"
        assert data["details"] == {"current": "resolved", "target": "acknowledged"}

    def test_alert_rules(self, client):
        rules = client.get("/monitoring/alert-rules").json()["rules"]

        assert [rule["id"] for rule in rules] == ["high_cpu"]
        assert rules[0]["condition"] == "cpu_usage > 80"

    def test_alert_rules_export(self, client):
        alerts = client.get("/monitoring/alert-rules/export").json()["alerts"]
        assert alerts[0]["alert"]["conditions"][0]["evaluator"] == {"params": [80.0], "type": "gt"}


class TestPredictions:
    """Test forecast endpoints."""

    @pytest.fixture
    def rising_history(self, manager, clock):
        for i in range(20):
            if i:
                clock.advance(60)
            manager.store.observe("web-1", MetricData("cpu_usage", 60.0 + 2 * i, timestamp=clock.now))

    def test_create_prediction(self, client, rising_history, manager):
        response = client.post(
            "/monitoring/predictions/web-1", json={"window": 600, "metric": "cpu_usage"}
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["metric_name"] == "cpu_usage"
        assert data["model"] == "linear_regression"
        assert data["potential_issues"][0]["type"] == "cpu_saturation"
        assert manager.store.history("web-1", metric="cpu_usage_forecast")

    def test_insufficient_data(self, client):
        response = client.post("/monitoring/predictions/web-1")

        assert response.status_code == status.HTTP_409_CONFLICT
        data = response.json()
        assert data["error"] == "insufficient_data"
        assert data["details"] == {"available": 0, "required": 10}

    def test_invalid_window(self, client):
        response = client.post("/monitoring/predictions/web-1", json={"window": 0})
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    def test_list_predictions(self, client, rising_history):
        client.post("/monitoring/predictions/web-1", json={"window": 600, "metric": "cpu_usage"})

        listed = client.get("/monitoring/predictions", params={"resource_id": "web-1"}).json()
        active = client.get("/monitoring/predictions", params={"active": True}).json()
        other = client.get("/monitoring/predictions", params={"resource_id": "db-1"}).json()

        assert listed["total"] == 1
        assert active["total"] == 1
        assert other["total"] == 0


class TestHealing:
    """Test self-healing endpoints."""

    def test_disabled(self, client):
        response = client.post("/monitoring/heal", json={"type": "service_failure"})

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.json()["error"] == "configuration_error"

    def test_heal(self, healing_client):
        response = healing_client.post(
            "/monitoring/heal",
            json={"type": "service_failure", "resource_id": "web-1", "indicators": {"cpu_usage": 95}},
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["success"] is True
        assert data["rule_id"] == "auto_restart"
        assert data["validation"]["effective"] is True

    def test_heal_records_requesting_operator(self, healing_client, operator_headers):
        response = healing_client.post(
            "/monitoring/heal",
            json={"type": "service_failure"},
            headers=operator_headers,
        )

        data = response.json()
        assert data["issue"]["requested_by"] == "op-1"
        assert data["before_state"] == {"cpu_usage": 95.0}
        assert data["after_state"] == {"cpu_usage": 40.0}

    def test_heal_without_session_has_no_operator(self, healing_client):
        response = healing_client.post("/monitoring/heal", json={"type": "service_failure"})

        data = response.json()
        assert data["issue"]["requested_by"] is None
        assert data["before_state"] == {"cpu_usage": 95.0}

    def test_no_applicable_rule(self, healing_client):
        response = healing_client.post("/monitoring/heal", json={"type": "disk_full"})

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["details"] == {"issue_type": "disk_full"}

    def test_healing_records(self, healing_client):
        healing_client.post("/monitoring/heal", json={"type": "service_failure"})

        data = healing_client.get("/monitoring/healing-records").json()

        assert data["total"] == 1
        assert data["success_rate"] == 100.0
        assert data["records"][0]["issue"]["type"] == "service_failure"


class TestReportingAndDashboards:
    """Test stats, analytics and dashboard endpoints."""

    def test_stats(self, client):
        data = client.get("/monitoring/stats").json()

        assert data["running"] is True
        assert data["stats"]["alerts_triggered"] == 0
        assert data["configuration"]["alert_min_severity"] == "high"

    def test_analytics(self, client):
        data = client.get("/monitoring/analytics").json()

        assert data["alerting"]["alert_rules"] == 1
        assert data["overall_health"]["alert_noise"] == 0.0
        assert "self_healing" not in data

    def test_list_dashboards(self, client):
        dashboards = client.get("/monitoring/dashboards").json()["dashboards"]
        assert [d["id"] for d in dashboards][0] == "system-overview"

    def test_export_dashboard(self, client):
        response = client.get("/monitoring/dashboards/system-overview/export")

        assert response.status_code == status.HTTP_200_OK
        assert "system-overview-dashboard.json" in response.headers["content-disposition"]
        assert response.json()["dashboard"]["uid"] == "system-overview"

    def test_export_unknown_dashboard(self, client):
        response = client.get("/monitoring/dashboards/missing/export")

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json() == {"error": "Dashboard not found"}
