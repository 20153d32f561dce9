from __future__ import annotations

import json
import logging

import pytest
from fastapi.testclient import TestClient

from dashboard.src.cluster_settings import (
    CULLER_CONFIG_MAP,
    JUPYTERHUB_CONFIG_MAP,
    SEGMENT_KEY_CONFIG_MAP,
)
from dashboard.src.config import AppConfig
from dashboard.src.main import JSONFormatter, create_app
from dashboard.tests.fakes import (
    FakeAppsApi,
    FakeCoreApi,
    FakeCustomObjectsApi,
    dashboard_resource,
    make_clients,
)

CONFIG = AppConfig(namespace="opendatahub", source="env")


def _client(
    core: FakeCoreApi | None = None,
    apps: FakeAppsApi | None = None,
    custom: FakeCustomObjectsApi | None = None,
) -> TestClient:
    clients = make_clients(core_api=core, apps_api=apps, custom_api=custom)
    return TestClient(create_app(config=CONFIG, clients=clients), raise_server_exceptions=False)


def test_get_cluster_settings_jupyterhub_mode() -> None:
    core = FakeCoreApi(
        {
            JUPYTERHUB_CONFIG_MAP: {"singleuser_pvc_size": "15Gi", "culler_timeout": "600"},
            SEGMENT_KEY_CONFIG_MAP: {"segmentKeyEnabled": "true"},
        }
    )
    client = _client(core=core, custom=FakeCustomObjectsApi(dashboard_resource(False)))

    response = client.get("/api/cluster-settings")

    assert response.status_code == 200
    assert response.json() == {"pvcSize": 15, "cullerTimeout": 600, "userTrackingEnabled": True}


def test_get_cluster_settings_reports_errors() -> None:
    core = FakeCoreApi(fail_reads={CULLER_CONFIG_MAP: 500})
    client = _client(core=core, custom=FakeCustomObjectsApi(dashboard_resource(True)))

    response = client.get("/api/cluster-settings")

    assert response.status_code == 500
    assert response.json()["error"] == "cluster_settings_unavailable"
    assert response.json()["detail"].startswith("Unable to retrieve cluster settings.")


def test_put_cluster_settings_disables_culling_in_controller_mode() -> None:
    core = FakeCoreApi({CULLER_CONFIG_MAP: {"ENABLE_CULLING": "true", "CULL_IDLE_TIME": "60"}})
    apps = FakeAppsApi()
    client = _client(core=core, apps=apps, custom=FakeCustomObjectsApi(dashboard_resource(True)))

    response = client.put(
        "/api/cluster-settings",
        params={"pvcSize": "20", "cullerTimeout": "31536000", "userTrackingEnabled": "null"},
    )

    assert response.status_code == 200
    assert response.json() == {"success": True, "error": None}
    assert CULLER_CONFIG_MAP not in core.config_maps
    assert apps.restarted == ["notebook-controller-deployment"]


def test_put_cluster_settings_rejects_bad_input() -> None:
    client = _client(custom=FakeCustomObjectsApi(dashboard_resource(False)))

    response = client.put("/api/cluster-settings", params={"pvcSize": "abc", "cullerTimeout": "60"})

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert "pvcSize" in response.json()["error"]


def test_put_cluster_settings_reports_dashboard_config_errors() -> None:
    core = FakeCoreApi({CULLER_CONFIG_MAP: {"ENABLE_CULLING": "true", "CULL_IDLE_TIME": "60"}})
    client = _client(core=core, custom=FakeCustomObjectsApi(dashboard_resource(True), fail_status=500))

    response = client.put("/api/cluster-settings", params={"pvcSize": "20", "cullerTimeout": "3600"})

    assert response.status_code == 500
    assert response.json() == {
        "success": False,
        "error": "Unable to update cluster settings. boom (500)",
    }
    assert core.writes_to(CULLER_CONFIG_MAP) == []


def test_get_cluster_settings_rejects_non_finite_idle_time() -> None:
    core = FakeCoreApi({CULLER_CONFIG_MAP: {"ENABLE_CULLING": "true", "CULL_IDLE_TIME": "inf"}})
    client = _client(core=core, custom=FakeCustomObjectsApi(dashboard_resource(True)))

    response = client.get("/api/cluster-settings")

    assert response.status_code == 500
    assert response.json()["error"] == "cluster_settings_unavailable"
    assert "non-finite CULL_IDLE_TIME" in response.json()["detail"]


def test_put_cluster_settings_surfaces_write_errors() -> None:
    core = FakeCoreApi(
        {SEGMENT_KEY_CONFIG_MAP: {"segmentKeyEnabled": "false"}},
        fail_writes={SEGMENT_KEY_CONFIG_MAP: 403},
    )
    client = _client(core=core, custom=FakeCustomObjectsApi(dashboard_resource(False)))

    response = client.put("/api/cluster-settings", params={"userTrackingEnabled": "true"})

    assert response.status_code == 500
    assert response.json() == {
        "success": False,
        "error": "Unable to update cluster settings. boom (403)",
    }


def test_groups_config_round_trip() -> None:
    custom = FakeCustomObjectsApi(
        dashboard_resource(False, {"adminGroups": "odh-admins", "allowedGroups": ""})
    )
    client = _client(custom=custom)

    assert client.get("/api/groups-config").json() == {
        "adminGroups": "odh-admins",
        "allowedGroups": "",
    }

    response = client.put(
        "/api/groups-config",
        json={"adminGroups": "admins", "allowedGroups": "system:authenticated"},
    )

    assert response.status_code == 200
    assert response.json() == {
        "success": {"adminGroups": "admins", "allowedGroups": "system:authenticated"},
        "error": None,
    }
    assert client.get("/api/groups-config").json()["allowedGroups"] == "system:authenticated"


def test_put_groups_config_requires_both_lists() -> None:
    client = _client(custom=FakeCustomObjectsApi(dashboard_resource(False)))

    response = client.put("/api/groups-config", json={"adminGroups": "admins"})

    assert response.status_code == 422


def test_put_groups_config_failure() -> None:
    custom = FakeCustomObjectsApi(dashboard_config=None)
    client = _client(custom=custom)

    response = client.put("/api/groups-config", json={"adminGroups": "a", "allowedGroups": "b"})

    assert response.status_code == 500
    assert response.json() == {
        "success": None,
        "error": "Failed to update Dashboard CR groups configuration",
    }


def test_groups_endpoints() -> None:
    custom = FakeCustomObjectsApi(groups={"odh-admins": ["alice"], "odh-users": ["bob", "carol"]})
    client = _client(custom=custom)

    assert client.get("/api/groups").json() == ["odh-admins", "odh-users"]
    assert client.get("/api/groups/odh-users").json() == ["bob", "carol"]


def test_missing_group_returns_404() -> None:
    client = _client(custom=FakeCustomObjectsApi(groups={}))

    response = client.get("/api/groups/ghost")

    assert response.status_code == 404
    assert response.json()["error"] == "missing_group"


def test_health_and_readiness() -> None:
    client = _client()

    assert client.get("/healthz").text == "ok"
    assert client.get("/readyz").text == "ok source=env"


def test_create_app_loads_config_and_clients(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NAMESPACE", "from-env")
    monkeypatch.setattr("dashboard.src.main.load_kube_configuration", lambda: None)
    monkeypatch.setattr("dashboard.src.main.build_clients", make_clients)

    client = TestClient(create_app())

    assert client.get("/readyz").text == "ok source=env"


def test_metrics_endpoint() -> None:
    client = _client(custom=FakeCustomObjectsApi(dashboard_resource(True)))

    client.put("/api/cluster-settings", params={"pvcSize": "20", "cullerTimeout": "3600"})

    response = client.get("/metrics")
    assert response.status_code == 200
    assert "http_requests_total" in response.text
    assert "http_request_duration_seconds" in response.text
    assert "app_config_loaded_info{" in response.text
    assert 'path="/api/cluster-settings"' in response.text
    assert "dashboard_cluster_settings_updates_total" in response.text
    assert 'dashboard_rollouts_total{kind="Deployment"}' in response.text


def test_metrics_normalize_unknown_paths() -> None:
    client = _client()

    client.get("/missing-one")
    response = client.get("/metrics")

    assert 'path="other"' in response.text
    assert "/missing-one" not in response.text


def test_metrics_use_route_template_for_group_lookups() -> None:
    client = _client(custom=FakeCustomObjectsApi(groups={"odh-admins": []}))

    client.get("/api/groups/odh-admins")
    response = client.get("/metrics")

    assert 'path="/api/groups/{name}"' in response.text
    assert 'path="/api/groups/odh-admins"' not in response.text


def test_unhandled_exception_returns_standard_error_json_and_logs_once(
    monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    monkeypatch.setattr("dashboard.src.main.configure_logging", lambda: None)
    custom = FakeCustomObjectsApi(dashboard_resource(False), fail_status=500)
    app = create_app(config=CONFIG, clients=make_clients(custom_api=custom))

    client = TestClient(app, raise_server_exceptions=False)
    with caplog.at_level(logging.ERROR):
        response = client.get("/api/groups-config")

    assert response.status_code == 500
    assert response.json() == {
        "error": "internal_server_error",
        "detail": "An unexpected error occurred.",
    }

    exception_logs = [
        record
        for record in caplog.records
        if record.name == "dashboard.src.main"
        and record.getMessage() == "Unhandled error for GET /api/groups-config"
    ]
    assert len(exception_logs) == 1


def test_json_formatter_redacts_sensitive_values() -> None:
    formatter = JSONFormatter()
    record = logging.LogRecord(
        name="dashboard.test",
        level=logging.INFO,
        pathname="test_main.py",
        lineno=1,
        msg=(
            "token=abc123 password=hunter2 Authorization: Bearer abc.def.ghi "
            "url=/readyz?access_token=qwerty"
        ),
        args=(),
        exc_info=None,
    )

    parsed = json.loads(formatter.format(record))
    message = parsed["msg"]

    assert "[REDACTED]" in message
    assert "abc123" not in message
    assert "hunter2" not in message
    assert "abc.def.ghi" not in message
    assert "access_token=qwerty" not in message
