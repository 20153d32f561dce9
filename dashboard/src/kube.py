from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)

MERGE_PATCH_CONTENT_TYPE = "application/merge-patch+json"


@dataclass(frozen=True)
class KubeClients:
    """The Kubernetes API clients shared by every request handler."""

    core_api: CoreV1Api
    apps_api: AppsV1Api
    custom_api: CustomObjectsApi


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> KubeClients:
    """Return core, apps and custom-object API clients using the active kube configuration."""
    return KubeClients(
        core_api=client.CoreV1Api(),
        apps_api=client.AppsV1Api(),
        custom_api=client.CustomObjectsApi(),
    )


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404


def _status_message(body: Any) -> str | None:
    """Extract ``message`` from a Kubernetes ``Status`` response body."""
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    if isinstance(body, str):
        try:
            body = json.loads(body)
        except ValueError:
            return None
    if not isinstance(body, dict):
        return None
    message = body.get("message")
    return str(message) if message else None


def api_error_message(exc: ApiException) -> str:
    """Return a human-readable description of a Kubernetes API error.

    Includes the API server's own ``Status.message`` when the response carries one.
    """
    reason = exc.reason or "Unknown error"
    summary = f"{reason} ({exc.status})" if exc.status else reason
    message = _status_message(exc.body)
    if message:
        return f"{summary}: {message}"
    return summary


def config_map_data(config_map: Any) -> dict[str, str]:
    """Coerce a ConfigMap's ``data`` field into a ``dict[str, str]``.

    Keys holding ``None`` become empty strings; a missing ``data`` field
    yields an empty dict.
    """
    raw_data = getattr(config_map, "data", None)
    if not isinstance(raw_data, dict):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in raw_data.items()
        if isinstance(k, str)
    }


def read_config_map_data(core_api: CoreV1Api, namespace: str, name: str) -> dict[str, str]:
    """Read a ConfigMap and return its data. Raises :class:`ApiException` on failure."""
    return config_map_data(core_api.read_namespaced_config_map(name=name, namespace=namespace))


def patch_config_map_data(
    core_api: CoreV1Api,
    namespace: str,
    name: str,
    data: dict[str, str],
) -> None:
    """Merge *data* into an existing ConfigMap. Keys not listed are left untouched."""
    core_api.patch_namespaced_config_map(
        name=name,
        namespace=namespace,
        body={"data": data},
    )


def create_config_map(
    core_api: CoreV1Api,
    namespace: str,
    name: str,
    data: dict[str, str],
) -> None:
    body = client.V1ConfigMap(
        api_version="v1",
        kind="ConfigMap",
        metadata=client.V1ObjectMeta(name=name),
        data=data,
    )
    core_api.create_namespaced_config_map(namespace=namespace, body=body)


def delete_config_map(core_api: CoreV1Api, namespace: str, name: str) -> bool:
    """Delete a ConfigMap; return ``False`` when it was already absent."""
    try:
        core_api.delete_namespaced_config_map(name=name, namespace=namespace)
    except ApiException as exc:
        if not is_not_found(exc):
            raise
        LOGGER.info("ConfigMap %s/%s already absent", namespace, name)
        return False
    return True


def patch_deployment_restart(
    apps_api: AppsV1Api,
    namespace: str,
    deployment_name: str,
    annotation_key: str,
    timestamp: str,
) -> None:
    """Patch a Deployment's pod template annotation to trigger a rolling restart.

    This is the same mechanism used by ``kubectl rollout restart``: changing a
    pod template annotation causes the ReplicaSet controller to roll new pods.
    """
    body = {
        "spec": {
            "template": {
                "metadata": {
                    "annotations": {annotation_key: timestamp}
                }
            }
        }
    }

    apps_api.patch_namespaced_deployment(
        name=deployment_name,
        namespace=namespace,
        body=body,
    )
