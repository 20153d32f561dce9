from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import AppsV1Api, CustomObjectsApi

from dashboard.src.kube import MERGE_PATCH_CONTENT_TYPE, patch_deployment_restart
from dashboard.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

RESTART_ANNOTATION_KEY = "kubectl.kubernetes.io/restartedAt"
DEPLOYMENT_CONFIG_GROUP = "apps.openshift.io"
DEPLOYMENT_CONFIG_VERSION = "v1"
DEPLOYMENT_CONFIG_PLURAL = "deploymentconfigs"


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``).

    Used as the restart annotation value so Kubernetes sees a template change
    and triggers a rolling update.
    """
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def rollout_deployment(
    apps_api: AppsV1Api,
    namespace: str,
    deployment_name: str,
    now_fn: Callable[[], str] = utc_now_rfc3339,
) -> None:
    """Request a rolling restart of a Deployment. Does not wait for it to complete."""
    patch_deployment_restart(
        apps_api=apps_api,
        namespace=namespace,
        deployment_name=deployment_name,
        annotation_key=RESTART_ANNOTATION_KEY,
        timestamp=now_fn(),
    )
    METRICS.rollouts_total.labels(kind="Deployment").inc()
    LOGGER.info("Requested rollout of Deployment %s/%s", namespace, deployment_name)


def rollout_deployment_config(
    custom_api: CustomObjectsApi,
    namespace: str,
    name: str,
    now_fn: Callable[[], str] = utc_now_rfc3339,
) -> None:
    """Request a new rollout of an OpenShift DeploymentConfig.

    Patches the pod template annotation; the DeploymentConfig's config-change
    trigger then starts the new deployment.
    """
    body = {
        "spec": {
            "template": {
                "metadata": {
                    "annotations": {RESTART_ANNOTATION_KEY: now_fn()}
                }
            }
        }
    }
    custom_api.patch_namespaced_custom_object(
        DEPLOYMENT_CONFIG_GROUP,
        DEPLOYMENT_CONFIG_VERSION,
        namespace,
        DEPLOYMENT_CONFIG_PLURAL,
        name,
        body,
        _content_type=MERGE_PATCH_CONTENT_TYPE,
    )
    METRICS.rollouts_total.labels(kind="DeploymentConfig").inc()
    LOGGER.info("Requested rollout of DeploymentConfig %s/%s", namespace, name)
