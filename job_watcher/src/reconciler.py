from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from kubernetes.client import ApiException, AppsV1Api, BatchV1Api

from job_watcher.src.admission import AdmissionFilter, ReconcileKey
from job_watcher.src.config import PROCESSED_ANNOTATION_KEY, RESTARTED_AT_ANNOTATION_KEY
from job_watcher.src.kube import (
    is_not_found,
    patch_deployment_restart,
    patch_job_annotations,
    read_deployment,
    read_job,
    utc_now_rfc3339,
)
from job_watcher.src.metrics import METRICS


class ReconcileOutcome(StrEnum):
    NOT_FOUND = "not_found"
    ALREADY_PROCESSED = "already_processed"
    NAME_MISMATCH = "name_mismatch"
    NOT_COMPLETE = "not_complete"
    BEFORE_STARTUP = "before_startup"
    CANCELLED = "cancelled"
    RESTARTED = "restarted"


@dataclass(frozen=True)
class ReconcileResult:
    """Immutable record of one reconcile invocation that did not fail."""

    key: ReconcileKey
    outcome: ReconcileOutcome
    restarted_at: str | None = None


class ReconcileError(RuntimeError):
    """A reconcile step failed; the key must be retried with backoff."""

    def __init__(self, key: ReconcileKey, step: str, message: str) -> None:
        super().__init__(f"{key}: {step}: {message}")
        self.key = key
        self.step = step


def job_annotations(job: Any) -> dict[str, str]:
    metadata = getattr(job, "metadata", None)
    annotations = getattr(metadata, "annotations", None)
    if not isinstance(annotations, dict):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in annotations.items()
        if isinstance(k, str)
    }


def is_processed(job: Any) -> bool:
    return job_annotations(job).get(PROCESSED_ANNOTATION_KEY) == "true"


def is_complete(job: Any) -> bool:
    """Return True if the Job carries a ``Complete`` condition with status ``True``."""
    status = getattr(job, "status", None)
    conditions = getattr(status, "conditions", None) or []
    return any(
        getattr(condition, "type", None) == "Complete"
        and getattr(condition, "status", None) == "True"
        for condition in conditions
    )


def creation_timestamp(job: Any) -> datetime | None:
    value = getattr(getattr(job, "metadata", None), "creation_timestamp", None)
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class JobReconciler:
    """Restarts the target Deployment once per completed, matching Job.

    Each call to :meth:`reconcile` walks a fixed sequence of guards against
    freshly read cluster state and performs at most two mutations: the
    restart-annotation patch on the Deployment, then the processed-marker
    patch on the Job. Nothing is remembered between calls; the processed
    marker on the Job and the startup cutoff are the only state consulted.

    Guards, in order:

    1. Job no longer exists -> ignored.
    2. Job already carries ``job-watcher/processed: "true"`` -> ignored.
    3. Job name no longer matches the pattern -> ignored.
    4. No ``Complete=True`` condition yet -> ignored; a later notification
       re-triggers evaluation.
    5. Job created before the startup cutoff -> ignored.

    Any failure reading the Deployment or patching either object raises
    :class:`ReconcileError` so the caller requeues with backoff. If the
    restart patch succeeds but the marker patch fails, the retry restarts
    the Deployment again; that duplicate restart is accepted.
    """

    def __init__(
        self,
        batch_api: BatchV1Api,
        apps_api: AppsV1Api,
        namespace: str,
        target_deployment_name: str,
        admission: AdmissionFilter,
        startup_cutoff: datetime,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.batch_api = batch_api
        self.apps_api = apps_api
        self.namespace = namespace
        self.target_deployment_name = target_deployment_name
        self.admission = admission
        self.startup_cutoff = startup_cutoff
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn

    def _target(self) -> str:
        return f"{self.namespace}/{self.target_deployment_name}"

    def reconcile(
        self, key: ReconcileKey, stop_event: threading.Event | None = None
    ) -> ReconcileResult:
        try:
            job = read_job(self.batch_api, namespace=key.namespace, name=key.name)
        except ApiException as exc:
            if is_not_found(exc):
                self.logger.info("Job %s not found, ignoring", key)
                return ReconcileResult(key=key, outcome=ReconcileOutcome.NOT_FOUND)
            raise ReconcileError(key, "get job", f"status={exc.status} reason={exc.reason}") from exc

        if is_processed(job):
            self.logger.info("Job %s already processed, ignoring", key)
            return ReconcileResult(key=key, outcome=ReconcileOutcome.ALREADY_PROCESSED)

        if not self.admission.matches_name(key.name):
            self.logger.info("Job %s name does not match pattern, ignoring", key)
            return ReconcileResult(key=key, outcome=ReconcileOutcome.NAME_MISMATCH)

        if not is_complete(job):
            self.logger.debug("Job %s has not completed yet", key)
            return ReconcileResult(key=key, outcome=ReconcileOutcome.NOT_COMPLETE)

        created_at = creation_timestamp(job)
        if created_at is None or created_at < self.startup_cutoff:
            self.logger.info("Ignoring job %s created before controller startup", key)
            return ReconcileResult(key=key, outcome=ReconcileOutcome.BEFORE_STARTUP)

        if stop_event is not None and stop_event.is_set():
            return ReconcileResult(key=key, outcome=ReconcileOutcome.CANCELLED)

        try:
            read_deployment(
                self.apps_api,
                namespace=self.namespace,
                name=self.target_deployment_name,
            )
        except ApiException as exc:
            if is_not_found(exc):
                raise ReconcileError(
                    key, "get target deployment", f"{self._target()} not found"
                ) from exc
            raise ReconcileError(
                key,
                "get target deployment",
                f"{self._target()} status={exc.status} reason={exc.reason}",
            ) from exc

        if stop_event is not None and stop_event.is_set():
            return ReconcileResult(key=key, outcome=ReconcileOutcome.CANCELLED)

        timestamp = self.now_fn()
        try:
            patch_deployment_restart(
                apps_api=self.apps_api,
                namespace=self.namespace,
                deployment_name=self.target_deployment_name,
                annotation_key=RESTARTED_AT_ANNOTATION_KEY,
                timestamp=timestamp,
            )
        except ApiException as exc:
            raise ReconcileError(
                key,
                "patch target deployment",
                f"{self._target()} status={exc.status} reason={exc.reason}",
            ) from exc
        METRICS.restarts_total.inc()

        # A restart that went through is always followed by the marker patch,
        # even if a stop was requested in between.
        try:
            patch_job_annotations(
                batch_api=self.batch_api,
                namespace=key.namespace,
                job_name=key.name,
                annotations={PROCESSED_ANNOTATION_KEY: "true"},
            )
        except ApiException as exc:
            raise ReconcileError(
                key, "mark job processed", f"status={exc.status} reason={exc.reason}"
            ) from exc

        self.logger.info(
            "Target deployment %s restarted due to completion of job %s",
            self._target(),
            key,
        )
        return ReconcileResult(key=key, outcome=ReconcileOutcome.RESTARTED, restarted_at=timestamp)
