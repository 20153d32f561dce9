from __future__ import annotations

import json
import logging
import os
import re
import time

from fastapi import FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from kubernetes.client import ApiException
from prometheus_client import Counter, Gauge, Histogram, generate_latest
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from dashboard.src.cluster_settings import (
    SettingsError,
    SettingsUpdate,
    UpdateResult,
    read_cluster_settings,
    update_cluster_settings,
)
from dashboard.src.config import AppConfig, load_config
from dashboard.src.dashboard_config import DashboardConfigAccessor, GroupsConfig
from dashboard.src.groups import (
    GroupsError,
    MissingGroupError,
    get_all_groups,
    get_group,
    get_groups_cr,
    update_groups_cr,
)
from dashboard.src.kube import KubeClients, api_error_message, build_clients, load_kube_configuration

APP_VERSION = "0.3.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    """Configure structured JSON logging with a level from ``LOG_LEVEL`` env var."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.handlers.clear()
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)
REQUEST_IN_FLIGHT = Gauge(
    "http_in_flight_requests",
    "Current number of HTTP requests being processed",
)
CONFIG_LOADED_TIMESTAMP = Gauge(
    "app_config_loaded_timestamp_seconds",
    "Unix timestamp when application config was loaded at startup",
)
CONFIG_LOADED_INFO = Gauge(
    "app_config_loaded_info",
    "Startup app config metadata",
    ["source", "namespace", "app_version"],
)
KNOWN_METRIC_PATHS = {
    "/healthz",
    "/readyz",
    "/metrics",
    "/api/cluster-settings",
    "/api/groups-config",
    "/api/groups",
    "/api/groups/{name}",
}


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records per-request Prometheus counters and histograms.

    Skips the ``/metrics`` endpoint itself to avoid self-referential inflation.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)
        REQUEST_IN_FLIGHT.inc()
        start = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            duration = time.monotonic() - start
            metric_path = self._normalize_metric_path(request)
            REQUEST_COUNT.labels(method=request.method, path=metric_path, status=status_code).inc()
            REQUEST_DURATION.labels(method=request.method, path=metric_path).observe(duration)
            REQUEST_IN_FLIGHT.dec()
        return response

    @staticmethod
    def _normalize_metric_path(request: Request) -> str:
        route = request.scope.get("route")
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path in KNOWN_METRIC_PATHS:
            return route_path
        if request.url.path in KNOWN_METRIC_PATHS:
            return request.url.path
        return "other"


class GroupsConfigBody(BaseModel):
    """Request body for ``PUT /api/groups-config``; both lists are replaced together."""

    adminGroups: str
    allowedGroups: str


def _error_response(status_code: int, error: str, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "detail": detail})


def create_app(config: AppConfig | None = None, clients: KubeClients | None = None) -> FastAPI:
    """Create and configure the dashboard API application.

    Without explicit *config* and *clients* the namespace is loaded from the
    environment and the Kubernetes clients from in-cluster config or the local
    kubeconfig.

    Endpoints:
        ``GET /api/cluster-settings``:  Current PVC size, culler timeout and
                                         user tracking flag.
        ``PUT /api/cluster-settings``:  Apply ``pvcSize``/``cullerTimeout``/
                                         ``userTrackingEnabled`` query params.
        ``GET /api/groups-config``:     Admin and allowed group lists.
        ``PUT /api/groups-config``:     Replace both group lists.
        ``GET /api/groups``:            Names of all OpenShift Groups.
        ``GET /api/groups/{name}``:     Users of one Group (404 when missing).
        ``GET /healthz``, ``/readyz``, ``/metrics``: Probes and Prometheus metrics.
    """
    configure_logging()
    config = config or load_config()
    logger = logging.getLogger(__name__)
    logger.info(
        "Starting dashboard API (namespace=%s, source=%s)", config.namespace, config.source
    )
    if clients is None:
        load_kube_configuration()
        clients = build_clients()
    kube = clients
    dashboard_configs = DashboardConfigAccessor(
        custom_api=kube.custom_api,
        namespace=config.namespace,
        name=config.dashboard_config_name,
    )

    app = FastAPI(title="dashboard-api", version=APP_VERSION)
    CONFIG_LOADED_TIMESTAMP.set_to_current_time()
    CONFIG_LOADED_INFO.clear()
    CONFIG_LOADED_INFO.labels(
        source=config.source,
        namespace=config.namespace,
        app_version=app.version,
    ).set(1)
    app.state.namespace_source = config.source
    app.add_middleware(MetricsMiddleware)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Return a standardized JSON error body for unhandled exceptions."""
        logger.exception("Unhandled error for %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "internal_server_error", "detail": "An unexpected error occurred."},
        )

    @app.get("/api/cluster-settings", response_model=None)
    def get_cluster_settings() -> dict[str, object] | JSONResponse:
        try:
            settings = read_cluster_settings(kube, config.namespace, dashboard_configs.get())
        except (ApiException, SettingsError) as exc:
            reason = api_error_message(exc) if isinstance(exc, ApiException) else str(exc)
            return _error_response(
                500,
                "cluster_settings_unavailable",
                f"Unable to retrieve cluster settings. {reason}",
            )
        return settings.to_dict()

    @app.put("/api/cluster-settings", response_model=None)
    def put_cluster_settings(
        pvc_size: str | None = Query(None, alias="pvcSize"),
        culler_timeout: str | None = Query(None, alias="cullerTimeout"),
        user_tracking_enabled: str | None = Query(None, alias="userTrackingEnabled"),
    ) -> JSONResponse:
        try:
            update = SettingsUpdate.from_query(pvc_size, culler_timeout, user_tracking_enabled)
        except SettingsError as exc:
            result = UpdateResult(success=False, error=f"Unable to update cluster settings. {exc}")
            return JSONResponse(status_code=400, content=result.to_dict())
        try:
            dashboard_config = dashboard_configs.get()
        except ApiException as exc:
            logger.error("Error reading dashboard config: %s", api_error_message(exc))
            result = UpdateResult(
                success=False,
                error=f"Unable to update cluster settings. {api_error_message(exc)}",
            )
            return JSONResponse(status_code=500, content=result.to_dict())
        result = update_cluster_settings(kube, config.namespace, dashboard_config, update)
        return JSONResponse(status_code=200 if result.success else 500, content=result.to_dict())

    @app.get("/api/groups-config")
    def get_groups_config() -> dict[str, str]:
        return get_groups_cr(dashboard_configs.get()).to_dict()

    @app.put("/api/groups-config", response_model=None)
    def put_groups_config(body: GroupsConfigBody) -> JSONResponse:
        requested = GroupsConfig(admin_groups=body.adminGroups, allowed_groups=body.allowedGroups)
        try:
            updated = update_groups_cr(dashboard_configs, requested)
        except GroupsError as exc:
            return JSONResponse(status_code=500, content={"success": None, "error": str(exc)})
        return JSONResponse(content={"success": updated.to_dict(), "error": None})

    @app.get("/api/groups", response_model=None)
    def list_groups() -> list[str] | JSONResponse:
        try:
            return get_all_groups(kube.custom_api)
        except GroupsError as exc:
            return _error_response(500, "groups_unavailable", str(exc))

    @app.get("/api/groups/{name}", response_model=None)
    def read_group(name: str) -> list[str] | JSONResponse:
        try:
            return get_group(kube.custom_api, name)
        except MissingGroupError as exc:
            return _error_response(404, "missing_group", str(exc))
        except GroupsError as exc:
            return _error_response(500, "groups_unavailable", str(exc))

    @app.get("/healthz", response_class=PlainTextResponse)
    def healthz() -> str:
        return "ok"

    @app.get("/readyz", response_class=PlainTextResponse)
    def readyz() -> str:
        return f"ok source={config.source}"

    @app.get("/metrics", response_class=PlainTextResponse)
    def metrics() -> bytes:
        return generate_latest()

    return app
