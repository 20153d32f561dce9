from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass, field, replace
from typing import Any

from kubernetes.client import ApiException, CoreV1Api

from dashboard.src.config import parse_bool
from dashboard.src.dashboard_config import DashboardConfig
from dashboard.src.kube import (
    KubeClients,
    api_error_message,
    create_config_map,
    delete_config_map,
    is_not_found,
    patch_config_map_data,
    read_config_map_data,
)
from dashboard.src.metrics import METRICS
from dashboard.src.rollout import rollout_deployment, rollout_deployment_config

LOGGER = logging.getLogger(__name__)

JUPYTERHUB_CONFIG_MAP = "jupyterhub-cfg"
CULLER_CONFIG_MAP = "notebook-controller-culler-config"
SEGMENT_KEY_CONFIG_MAP = "odh-segment-key-config"

NOTEBOOK_CONTROLLER_DEPLOYMENT = "notebook-controller-deployment"
JUPYTERHUB_DEPLOYMENT_CONFIG = "jupyterhub"
CULLER_DEPLOYMENT_CONFIG = "jupyterhub-idle-culler"

DEFAULT_PVC_SIZE = 20
# One year; stands for "culling disabled".
DEFAULT_CULLER_TIMEOUT = 31536000
DEFAULT_IDLENESS_CHECK_PERIOD = "1"
PVC_SIZE_UNIT = "Gi"


class SettingsError(ValueError):
    """Raised for malformed stored settings or invalid update input."""


class SettingsMode(enum.Enum):
    """Which ConfigMap is authoritative for PVC size and culler timeout."""

    NOTEBOOK_CONTROLLER = "notebook-controller"
    JUPYTERHUB = "jupyterhub"


def select_mode(dashboard_config: DashboardConfig) -> SettingsMode:
    if dashboard_config.notebook_controller_enabled:
        return SettingsMode.NOTEBOOK_CONTROLLER
    return SettingsMode.JUPYTERHUB


@dataclass(frozen=True)
class ClusterSettings:
    pvc_size: int = DEFAULT_PVC_SIZE
    culler_timeout: int = DEFAULT_CULLER_TIMEOUT
    user_tracking_enabled: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pvcSize": self.pvc_size,
            "cullerTimeout": self.culler_timeout,
            "userTrackingEnabled": self.user_tracking_enabled,
        }


@dataclass(frozen=True)
class SettingsUpdate:
    """Requested changes; ``None`` means "leave as is"."""

    pvc_size: int | None = None
    culler_timeout: int | None = None
    user_tracking_enabled: bool | None = None

    @property
    def has_storage_settings(self) -> bool:
        return self.pvc_size is not None and self.culler_timeout is not None

    @classmethod
    def from_query(
        cls,
        pvc_size: str | None,
        culler_timeout: str | None,
        user_tracking_enabled: str | None,
    ) -> SettingsUpdate:
        """Parse the raw query parameters sent by the dashboard UI.

        ``userTrackingEnabled`` uses the string ``"null"`` for "no change".
        """
        tracking: bool | None = None
        if user_tracking_enabled is not None and user_tracking_enabled != "null":
            normalized = user_tracking_enabled.strip().lower()
            if normalized not in {"true", "false"}:
                raise SettingsError(
                    f"userTrackingEnabled must be true, false or null, got: {user_tracking_enabled}"
                )
            tracking = normalized == "true"
        return cls(
            pvc_size=_parse_positive_int("pvcSize", pvc_size),
            culler_timeout=_parse_positive_int("cullerTimeout", culler_timeout),
            user_tracking_enabled=tracking,
        )


def _parse_positive_int(name: str, raw: str | None) -> int | None:
    if raw is None or raw == "":
        return None
    try:
        value = int(raw)
    except ValueError as exc:
        raise SettingsError(f"{name} must be an integer, got: {raw}") from exc
    if value <= 0:
        raise SettingsError(f"{name} must be > 0, got: {value}")
    return value


class ChangeAction(enum.Enum):
    PATCH = "patch"
    # Patch, or create with ``create_defaults`` added when the ConfigMap is missing.
    UPSERT = "upsert"
    DELETE = "delete"


@dataclass(frozen=True)
class ConfigMapChange:
    name: str
    action: ChangeAction
    data: dict[str, str] = field(default_factory=dict)
    create_defaults: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Rollout:
    kind: str
    name: str


@dataclass(frozen=True)
class SettingsPlan:
    """ConfigMap changes and rollouts, applied in order."""

    changes: tuple[ConfigMapChange, ...] = ()
    rollouts: tuple[Rollout, ...] = ()


@dataclass(frozen=True)
class UpdateResult:
    success: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "error": self.error}


def minutes_string(seconds: int) -> str:
    """Render seconds as minutes, without a decimal point when the result is whole."""
    minutes, remainder = divmod(seconds, 60)
    if remainder == 0:
        return str(minutes)
    return str(seconds / 60)


def _tracking_changes(update: SettingsUpdate) -> tuple[ConfigMapChange, ...]:
    if update.user_tracking_enabled is None:
        return ()
    value = "true" if update.user_tracking_enabled else "false"
    return (
        ConfigMapChange(
            name=SEGMENT_KEY_CONFIG_MAP,
            action=ChangeAction.PATCH,
            data={"segmentKeyEnabled": value},
        ),
    )


def plan_notebook_controller_update(update: SettingsUpdate) -> SettingsPlan:
    """Plan an update against the notebook controller's culling ConfigMap.

    The controller deployment is always rolled out; there is no diffing in
    this mode.
    """
    changes = list(_tracking_changes(update))
    if update.pvc_size is not None and update.culler_timeout is not None:
        if update.culler_timeout == DEFAULT_CULLER_TIMEOUT:
            changes.append(ConfigMapChange(name=CULLER_CONFIG_MAP, action=ChangeAction.DELETE))
        else:
            changes.append(
                ConfigMapChange(
                    name=CULLER_CONFIG_MAP,
                    action=ChangeAction.UPSERT,
                    data={
                        "ENABLE_CULLING": "true",
                        "CULL_IDLE_TIME": minutes_string(update.culler_timeout),
                    },
                    create_defaults={"IDLENESS_CHECK_PERIOD": DEFAULT_IDLENESS_CHECK_PERIOD},
                )
            )
    return SettingsPlan(
        changes=tuple(changes),
        rollouts=(Rollout(kind="Deployment", name=NOTEBOOK_CONTROLLER_DEPLOYMENT),),
    )


def plan_jupyterhub_update(
    current: ClusterSettings | None,
    update: SettingsUpdate,
    *,
    config_map_found: bool = True,
) -> SettingsPlan:
    """Plan an update against the legacy jupyterhub ConfigMap.

    Each jupyterhub workload is rolled out only when the value it consumes
    differs from *current*. A ``None`` *current* means the stored values could
    not be parsed, so both workloads are rolled out. When the ConfigMap does
    not exist (``config_map_found=False``) only the tracking flag is written.
    """
    changes = list(_tracking_changes(update))
    if not update.has_storage_settings or not config_map_found:
        return SettingsPlan(changes=tuple(changes))

    changes.append(
        ConfigMapChange(
            name=JUPYTERHUB_CONFIG_MAP,
            action=ChangeAction.PATCH,
            data={
                "singleuser_pvc_size": f"{update.pvc_size}{PVC_SIZE_UNIT}",
                "culler_timeout": str(update.culler_timeout),
            },
        )
    )
    rollouts = []
    if current is None or current.pvc_size != update.pvc_size:
        rollouts.append(Rollout(kind="DeploymentConfig", name=JUPYTERHUB_DEPLOYMENT_CONFIG))
    if current is None or current.culler_timeout != update.culler_timeout:
        rollouts.append(Rollout(kind="DeploymentConfig", name=CULLER_DEPLOYMENT_CONFIG))
    return SettingsPlan(changes=tuple(changes), rollouts=tuple(rollouts))


def parse_jupyterhub_data(data: dict[str, str]) -> tuple[int, int]:
    """Return ``(pvc_size, culler_timeout)`` from the legacy ConfigMap's data."""
    raw_size = data.get("singleuser_pvc_size")
    raw_timeout = data.get("culler_timeout")
    if raw_size is None or raw_timeout is None:
        raise SettingsError(
            f"ConfigMap {JUPYTERHUB_CONFIG_MAP} is missing singleuser_pvc_size or culler_timeout"
        )
    try:
        return int(raw_size.replace(PVC_SIZE_UNIT, "").strip()), int(raw_timeout.strip())
    except ValueError as exc:
        raise SettingsError(
            f"ConfigMap {JUPYTERHUB_CONFIG_MAP} holds non-numeric values: "
            f"singleuser_pvc_size={raw_size!r} culler_timeout={raw_timeout!r}"
        ) from exc


def read_jupyterhub_settings(core_api: CoreV1Api, namespace: str) -> ClusterSettings:
    data = read_config_map_data(core_api, namespace, JUPYTERHUB_CONFIG_MAP)
    pvc_size, culler_timeout = parse_jupyterhub_data(data)
    return ClusterSettings(pvc_size=pvc_size, culler_timeout=culler_timeout)


def culler_timeout_from_data(data: dict[str, str]) -> int:
    """Return the culler timeout in seconds stored in the culling ConfigMap."""
    if not parse_bool(data.get("ENABLE_CULLING")):
        return DEFAULT_CULLER_TIMEOUT
    raw = data.get("CULL_IDLE_TIME", "")
    try:
        minutes = float(raw)
    except ValueError as exc:
        raise SettingsError(
            f"ConfigMap {CULLER_CONFIG_MAP} holds a non-numeric CULL_IDLE_TIME: {raw!r}"
        ) from exc
    if not math.isfinite(minutes):
        raise SettingsError(
            f"ConfigMap {CULLER_CONFIG_MAP} holds a non-finite CULL_IDLE_TIME: {raw!r}"
        )
    return round(minutes * 60)


def read_user_tracking_enabled(core_api: CoreV1Api, namespace: str) -> bool | None:
    """Return the tracking flag, or ``None`` when it cannot be read."""
    try:
        data = read_config_map_data(core_api, namespace, SEGMENT_KEY_CONFIG_MAP)
    except ApiException as exc:
        LOGGER.error("Error retrieving segment key enabled: %s", api_error_message(exc))
        return None
    return data.get("segmentKeyEnabled") == "true"


def read_cluster_settings(
    clients: KubeClients,
    namespace: str,
    dashboard_config: DashboardConfig,
) -> ClusterSettings:
    """Return the current settings, defaults overlaid by the authoritative store.

    In notebook controller mode, errors other than a missing culling ConfigMap
    propagate. In jupyterhub mode, read failures are logged and the defaults
    kept.
    """
    settings = ClusterSettings(
        user_tracking_enabled=read_user_tracking_enabled(clients.core_api, namespace),
    )

    if select_mode(dashboard_config) is SettingsMode.NOTEBOOK_CONTROLLER:
        try:
            data = read_config_map_data(clients.core_api, namespace, CULLER_CONFIG_MAP)
        except ApiException as exc:
            if not is_not_found(exc):
                LOGGER.error(
                    "Error getting notebook controller culling settings: %s",
                    api_error_message(exc),
                )
                raise
            LOGGER.warning("Notebook controller culling config not found, culling disabled")
            return settings
        return replace(settings, culler_timeout=culler_timeout_from_data(data))

    try:
        stored = read_jupyterhub_settings(clients.core_api, namespace)
    except ApiException as exc:
        LOGGER.error("Error retrieving cluster settings: %s", api_error_message(exc))
        return settings
    except SettingsError as exc:
        LOGGER.error("Error retrieving cluster settings: %s", exc)
        return settings
    return replace(settings, pvc_size=stored.pvc_size, culler_timeout=stored.culler_timeout)


def apply_settings_plan(clients: KubeClients, namespace: str, plan: SettingsPlan) -> None:
    for change in plan.changes:
        if change.action is ChangeAction.DELETE:
            delete_config_map(clients.core_api, namespace, change.name)
        elif change.action is ChangeAction.PATCH:
            patch_config_map_data(clients.core_api, namespace, change.name, change.data)
        else:
            try:
                patch_config_map_data(clients.core_api, namespace, change.name, change.data)
            except ApiException as exc:
                if not is_not_found(exc):
                    raise
                LOGGER.info("ConfigMap %s/%s not found; creating it", namespace, change.name)
                create_config_map(
                    clients.core_api,
                    namespace,
                    change.name,
                    {**change.data, **change.create_defaults},
                )

    for rollout in plan.rollouts:
        if rollout.kind == "Deployment":
            rollout_deployment(clients.apps_api, namespace, rollout.name)
        else:
            rollout_deployment_config(clients.custom_api, namespace, rollout.name)


def _read_jupyterhub_current(
    core_api: CoreV1Api, namespace: str
) -> tuple[bool, ClusterSettings | None]:
    """Return ``(found, current)``; *current* is ``None`` when the stored values are malformed."""
    try:
        return True, read_jupyterhub_settings(core_api, namespace)
    except ApiException as exc:
        if not is_not_found(exc):
            raise
        LOGGER.warning(
            "ConfigMap %s/%s not found; leaving PVC size and culler timeout unchanged",
            namespace,
            JUPYTERHUB_CONFIG_MAP,
        )
        return False, None
    except SettingsError as exc:
        LOGGER.warning("%s; overwriting and rolling out all jupyterhub workloads", exc)
        return True, None


def update_cluster_settings(
    clients: KubeClients,
    namespace: str,
    dashboard_config: DashboardConfig,
    update: SettingsUpdate,
) -> UpdateResult:
    """Apply *update* to the store selected by *dashboard_config*.

    Never raises for Kubernetes or data errors; they are logged and reported in
    the returned :class:`UpdateResult`.
    """
    mode = select_mode(dashboard_config)
    if (update.pvc_size is None) != (update.culler_timeout is None):
        LOGGER.info("Ignoring pvcSize/cullerTimeout: both must be supplied together")

    try:
        if mode is SettingsMode.NOTEBOOK_CONTROLLER:
            plan = plan_notebook_controller_update(update)
        else:
            found, current = True, None
            if update.has_storage_settings:
                found, current = _read_jupyterhub_current(clients.core_api, namespace)
            plan = plan_jupyterhub_update(current, update, config_map_found=found)
        apply_settings_plan(clients, namespace, plan)
    except ApiException as exc:
        message = api_error_message(exc)
        LOGGER.error("Setting cluster settings error: %s", message)
        METRICS.settings_updates_total.labels(mode=mode.value, result="error").inc()
        return UpdateResult(success=False, error=f"Unable to update cluster settings. {message}")
    except SettingsError as exc:
        LOGGER.error("Setting cluster settings error: %s", exc)
        METRICS.settings_updates_total.labels(mode=mode.value, result="error").inc()
        return UpdateResult(success=False, error=f"Unable to update cluster settings. {exc}")

    METRICS.settings_updates_total.labels(mode=mode.value, result="success").inc()
    LOGGER.info(
        "Updated cluster settings (mode=%s, changes=%d, rollouts=%d)",
        mode.value,
        len(plan.changes),
        len(plan.rollouts),
    )
    return UpdateResult(success=True)
