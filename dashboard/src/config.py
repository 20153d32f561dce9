from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

SERVICE_ACCOUNT_NAMESPACE_PATH = Path("/var/run/secrets/kubernetes.io/serviceaccount/namespace")
FALLBACK_NAMESPACE = "opendatahub"
DEFAULT_DASHBOARD_CONFIG_NAME = "odh-dashboard-config"


class ConfigError(RuntimeError):
    """Raised when the application configuration is invalid."""


@dataclass(frozen=True)
class AppConfig:
    """Immutable application configuration loaded at startup.

    Attributes:
        namespace:             Namespace holding the dashboard's ConfigMaps,
                               workloads and dashboard config resource.
        source:                Where the namespace came from: ``"env"``,
                               ``"serviceaccount"`` or ``"fallback"``.
        dashboard_config_name: Name of the dashboard config custom resource.
    """

    namespace: str
    source: str
    dashboard_config_name: str = DEFAULT_DASHBOARD_CONFIG_NAME


def parse_bool(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _read_service_account_namespace(path: Path) -> str | None:
    try:
        namespace = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return namespace or None


def load_config(
    env: Mapping[str, str] | None = None,
    namespace_path: Path = SERVICE_ACCOUNT_NAMESPACE_PATH,
) -> AppConfig:
    """Load application config from the environment.

    Namespace resolution order:
    1. ``NAMESPACE`` env var.
    2. The pod's service account namespace file (in-cluster).
    3. Hard-coded fallback if ``ALLOW_NAMESPACE_FALLBACK=true`` (local dev only).
    4. Raises :class:`ConfigError`, which prevents silently targeting the wrong namespace.
    """
    values = env if env is not None else os.environ
    dashboard_config_name = values.get("DASHBOARD_CONFIG_NAME") or DEFAULT_DASHBOARD_CONFIG_NAME

    namespace = values.get("NAMESPACE")
    if namespace:
        return AppConfig(
            namespace=namespace,
            source="env",
            dashboard_config_name=dashboard_config_name,
        )

    namespace = _read_service_account_namespace(namespace_path)
    if namespace:
        return AppConfig(
            namespace=namespace,
            source="serviceaccount",
            dashboard_config_name=dashboard_config_name,
        )

    if parse_bool(values.get("ALLOW_NAMESPACE_FALLBACK")):
        return AppConfig(
            namespace=FALLBACK_NAMESPACE,
            source="fallback",
            dashboard_config_name=dashboard_config_name,
        )

    raise ConfigError(
        "NAMESPACE is not set and no service account namespace is mounted. "
        "Set NAMESPACE or ALLOW_NAMESPACE_FALLBACK=true for local development."
    )
