from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException, CustomObjectsApi

from dashboard.src.kube import MERGE_PATCH_CONTENT_TYPE, is_not_found

LOGGER = logging.getLogger(__name__)

DASHBOARD_CONFIG_GROUP = "opendatahub.io"
DASHBOARD_CONFIG_VERSION = "v1alpha"
DASHBOARD_CONFIG_PLURAL = "odhdashboardconfigs"


@dataclass(frozen=True)
class GroupsConfig:
    """Admin and allowed group lists, each a comma-separated string of group names."""

    admin_groups: str = ""
    allowed_groups: str = ""

    @classmethod
    def from_dict(cls, raw: Any) -> GroupsConfig:
        if not isinstance(raw, dict):
            return cls()
        return cls(
            admin_groups=str(raw.get("adminGroups") or ""),
            allowed_groups=str(raw.get("allowedGroups") or ""),
        )

    def to_dict(self) -> dict[str, str]:
        return {"adminGroups": self.admin_groups, "allowedGroups": self.allowed_groups}


@dataclass(frozen=True)
class DashboardConfig:
    """Immutable snapshot of the dashboard config custom resource.

    Read once per request and passed explicitly to every operation that
    depends on it, so a request never observes two different versions.
    """

    notebook_controller_enabled: bool = False
    groups_config: GroupsConfig | None = None

    @classmethod
    def from_resource(cls, resource: Any) -> DashboardConfig:
        spec = resource.get("spec") if isinstance(resource, dict) else None
        if not isinstance(spec, dict):
            return cls()

        notebook_controller = spec.get("notebookController")
        enabled = (
            isinstance(notebook_controller, dict)
            and notebook_controller.get("enabled") is True
        )
        groups = spec.get("groupsConfig")
        return cls(
            notebook_controller_enabled=enabled,
            groups_config=GroupsConfig.from_dict(groups) if isinstance(groups, dict) else None,
        )


class DashboardConfigAccessor:
    """Reads and merge-patches the cluster-singleton dashboard config resource."""

    def __init__(self, custom_api: CustomObjectsApi, namespace: str, name: str) -> None:
        self.custom_api = custom_api
        self.namespace = namespace
        self.name = name

    def get(self) -> DashboardConfig:
        """Return a fresh snapshot; a missing resource yields the defaults."""
        try:
            resource = self.custom_api.get_namespaced_custom_object(
                DASHBOARD_CONFIG_GROUP,
                DASHBOARD_CONFIG_VERSION,
                self.namespace,
                DASHBOARD_CONFIG_PLURAL,
                self.name,
            )
        except ApiException as exc:
            if not is_not_found(exc):
                raise
            LOGGER.warning(
                "Dashboard config %s/%s not found; using defaults",
                self.namespace,
                self.name,
            )
            return DashboardConfig()
        return DashboardConfig.from_resource(resource)

    def patch(self, body: dict[str, Any]) -> DashboardConfig:
        """Merge-patch the resource and return a snapshot of the updated object."""
        resource = self.custom_api.patch_namespaced_custom_object(
            DASHBOARD_CONFIG_GROUP,
            DASHBOARD_CONFIG_VERSION,
            self.namespace,
            DASHBOARD_CONFIG_PLURAL,
            self.name,
            body,
            _content_type=MERGE_PATCH_CONTENT_TYPE,
        )
        return DashboardConfig.from_resource(resource)
