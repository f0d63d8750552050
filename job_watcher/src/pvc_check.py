"""Pre-start gate: refuse to start a Job while its volume claim is in use.

Checks that a namespace and a PersistentVolumeClaim exist, then scans the
namespace for Running or Pending pods (other than the caller's own pod)
that mount the claim. Exit code ``0`` means it is safe to proceed, ``1``
means it is not.
"""

from __future__ import annotations

import argparse
import os
import sys
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from kubernetes.client import ApiException, CoreV1Api
from kubernetes.config.config_exception import ConfigException

from job_watcher.src.kube import load_kube_configuration

DEFAULT_PVC_NAMESPACE = "default-namespace"
DEFAULT_PVC_NAME = "default-app-pvc"
ACTIVE_POD_PHASES = frozenset({"Running", "Pending"})


@dataclass
class PvcCheckResult:
    ok: bool
    messages: list[str] = field(default_factory=list)
    active_pods: list[str] = field(default_factory=list)


def _pod_mounts_claim(pod: Any, claim_name: str) -> bool:
    volumes = getattr(getattr(pod, "spec", None), "volumes", None) or []
    for volume in volumes:
        claim = getattr(volume, "persistent_volume_claim", None)
        if claim is not None and getattr(claim, "claim_name", None) == claim_name:
            return True
    return False


def check_pvc_available(
    core_api: CoreV1Api,
    namespace: str,
    claim_name: str,
    current_pod_name: str | None = None,
) -> PvcCheckResult:
    """Return whether *claim_name* in *namespace* exists and is free to mount."""
    result = PvcCheckResult(ok=False)

    try:
        core_api.read_namespace(name=namespace)
    except ApiException as exc:
        result.messages.append(f"Error: Namespace {namespace} does not exist. {exc.reason}")
        return result

    try:
        core_api.read_namespaced_persistent_volume_claim(name=claim_name, namespace=namespace)
    except ApiException as exc:
        result.messages.append(
            f"Error: PVC {claim_name} does not exist in namespace {namespace}. {exc.reason}"
        )
        return result

    try:
        pods = core_api.list_namespaced_pod(namespace=namespace)
    except ApiException as exc:
        result.messages.append(f"Error: unable to list pods in namespace {namespace}. {exc.reason}")
        return result

    result.messages.append(
        f"Checking for pods actively using {claim_name}, "
        f"excluding current pod {current_pod_name or ''}:"
    )
    for pod in getattr(pods, "items", None) or []:
        pod_name = getattr(getattr(pod, "metadata", None), "name", None)
        if current_pod_name and pod_name == current_pod_name:
            continue
        phase = getattr(getattr(pod, "status", None), "phase", None)
        if phase not in ACTIVE_POD_PHASES:
            continue
        if _pod_mounts_claim(pod, claim_name):
            result.active_pods.append(pod_name or "<unknown>")
            result.messages.append(pod_name or "<unknown>")

    if result.active_pods:
        result.messages.append("Error: active pods found using PVC. Exiting to prevent job start...")
        return result

    result.ok = True
    result.messages.append("No active pods found using PVC. Proceeding with job...")
    return result


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Exit non-zero if a PVC is missing or mounted by another active pod."
    )
    parser.add_argument(
        "--kubeconfig",
        default=None,
        help="Path to a kubeconfig file (defaults to in-cluster config, then ~/.kube/config)",
    )
    args = parser.parse_args(argv)

    namespace = os.getenv("PVC_NAMESPACE") or DEFAULT_PVC_NAMESPACE
    claim_name = os.getenv("PVC_NAME") or DEFAULT_PVC_NAME
    current_pod_name = os.getenv("CURRENT_POD_NAME") or None

    try:
        load_kube_configuration(kubeconfig=args.kubeconfig)
    except ConfigException as exc:
        print(f"Error: unable to load Kubernetes configuration. {exc}")
        return 1
    result = check_pvc_available(
        core_api=CoreV1Api(),
        namespace=namespace,
        claim_name=claim_name,
        current_pod_name=current_pod_name,
    )
    for line in result.messages:
        print(line)
    return 0 if result.ok else 1


if __name__ == "__main__":
    sys.exit(main())
