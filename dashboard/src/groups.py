from __future__ import annotations

import logging
from typing import Any

from kubernetes.client import ApiException, CustomObjectsApi

from dashboard.src.dashboard_config import DashboardConfig, DashboardConfigAccessor, GroupsConfig
from dashboard.src.kube import api_error_message, is_not_found
from dashboard.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

GROUP_API_GROUP = "user.openshift.io"
GROUP_API_VERSION = "v1"
GROUP_PLURAL = "groups"


class GroupsError(RuntimeError):
    """Raised when groups or the groups configuration cannot be read or written."""


class MissingGroupError(GroupsError):
    """Raised when a named Group does not exist.

    Callers usually treat this as an empty or unconfigured group rather than
    a hard failure.
    """


def get_group(custom_api: CustomObjectsApi, name: str) -> list[str]:
    """Return the usernames in the Group *name*."""
    try:
        group = custom_api.get_cluster_custom_object(
            GROUP_API_GROUP, GROUP_API_VERSION, GROUP_PLURAL, name
        )
    except ApiException as exc:
        METRICS.groups_errors_total.labels(operation="get").inc()
        if is_not_found(exc):
            raise MissingGroupError(f"Failed to retrieve Group {name}, might not exist.") from exc
        LOGGER.error("Error retrieving Group %s: %s", name, api_error_message(exc))
        raise GroupsError(f"Failed to retrieve Group {name}.") from exc
    users = group.get("users") if isinstance(group, dict) else None
    return [str(user) for user in users or []]


def get_all_groups(custom_api: CustomObjectsApi) -> list[str]:
    try:
        response = custom_api.list_cluster_custom_object(
            GROUP_API_GROUP, GROUP_API_VERSION, GROUP_PLURAL
        )
    except ApiException as exc:
        METRICS.groups_errors_total.labels(operation="list").inc()
        LOGGER.error("Error listing Groups: %s", api_error_message(exc))
        raise GroupsError("Failed to list groups.") from exc

    items: list[Any] = []
    if isinstance(response, dict):
        items = response.get("items") or []

    names: list[str] = []
    for item in items:
        metadata = item.get("metadata") if isinstance(item, dict) else None
        name = metadata.get("name") if isinstance(metadata, dict) else None
        if name:
            names.append(str(name))
    return names


def get_groups_cr(dashboard_config: DashboardConfig) -> GroupsConfig:
    return dashboard_config.groups_config or GroupsConfig()


def get_admin_groups(dashboard_config: DashboardConfig) -> str:
    """Return the admin group list alone.

    Kept alongside :func:`get_allowed_groups` so callers that only check one
    list do not need the whole :class:`GroupsConfig` pair.
    """
    return get_groups_cr(dashboard_config).admin_groups


def get_allowed_groups(dashboard_config: DashboardConfig) -> str:
    """Return the allowed group list alone; counterpart of :func:`get_admin_groups`."""
    return get_groups_cr(dashboard_config).allowed_groups


def update_groups_cr(
    accessor: DashboardConfigAccessor,
    groups_config: GroupsConfig,
) -> GroupsConfig:
    """Replace both group lists on the dashboard config resource.

    Failures are wrapped in :class:`GroupsError` and not retried.
    """
    try:
        updated = accessor.patch({"spec": {"groupsConfig": groups_config.to_dict()}})
    except ApiException as exc:
        METRICS.groups_errors_total.labels(operation="update").inc()
        LOGGER.error(
            "Error updating Dashboard CR groups configuration: %s", api_error_message(exc)
        )
        raise GroupsError("Failed to update Dashboard CR groups configuration") from exc
    return get_groups_cr(updated)
