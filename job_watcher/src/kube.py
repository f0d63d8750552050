from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, AppsV1Api, BatchV1Api, CoreV1Api
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


def load_kube_configuration(kubeconfig: str | None = None) -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development. An explicit *kubeconfig* path
    skips the in-cluster attempt.
    """
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
        LOGGER.info("Loaded kubeconfig from %s", kubeconfig)
        return
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, AppsV1Api, BatchV1Api]:
    """Return CoreV1, AppsV1 and BatchV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api(), client.BatchV1Api()


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def read_job(batch_api: BatchV1Api, namespace: str, name: str) -> Any:
    return batch_api.read_namespaced_job(name=name, namespace=namespace)


def read_deployment(apps_api: AppsV1Api, namespace: str, name: str) -> Any:
    return apps_api.read_namespaced_deployment(name=name, namespace=namespace)


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
    The body names only that one annotation, so the API server merges it and
    leaves every other field of the Deployment untouched.
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


def patch_job_annotations(
    batch_api: BatchV1Api,
    namespace: str,
    job_name: str,
    annotations: dict[str, str],
) -> None:
    """Merge *annotations* into a Job's metadata without touching any other field."""
    body = {"metadata": {"annotations": dict(annotations)}}

    batch_api.patch_namespaced_job(
        name=job_name,
        namespace=namespace,
        body=body,
    )
