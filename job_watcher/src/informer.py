from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, BatchV1Api

from job_watcher.src.admission import AdmissionFilter, ReconcileKey
from job_watcher.src.metrics import METRICS

_BACKOFF_CAP_SECONDS = 30


class WatchError(RuntimeError):
    """Raised when the Job list/watch cannot be established or is denied."""


class JobInformer:
    """Lists and watches Jobs in one namespace and reports changed keys.

    Every ADDED, MODIFIED and DELETED notification is passed through the
    admission filter; admitted Jobs update a local cache of last-known state
    and their key is handed to ``on_change``. Rejected Jobs are neither
    cached nor reported.

    Delivery is at-least-once: a re-list after ``410 Gone`` and the periodic
    resync both report every cached key again, so consumers must tolerate
    duplicates.
    """

    def __init__(
        self,
        batch_api: BatchV1Api,
        namespace: str,
        admission: AdmissionFilter,
        on_change: Callable[[ReconcileKey], None],
        resync_seconds: int = 300,
        watch_timeout_seconds: int = 30,
        startup_list_attempts: int = 5,
        logger: logging.Logger | None = None,
    ) -> None:
        self.batch_api = batch_api
        self.namespace = namespace
        self.admission = admission
        self.on_change = on_change
        self.resync_seconds = resync_seconds
        self.watch_timeout_seconds = watch_timeout_seconds
        self.startup_list_attempts = startup_list_attempts
        self.logger = logger or logging.getLogger(__name__)

        self._cache: dict[ReconcileKey, Any] = {}
        self._cache_lock = threading.Lock()
        self._last_resync = time.monotonic()
        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def get(self, key: ReconcileKey) -> Any | None:
        with self._cache_lock:
            return self._cache.get(key)

    def keys(self) -> list[ReconcileKey]:
        with self._cache_lock:
            return list(self._cache)

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    @staticmethod
    def _key_for(job: Any) -> ReconcileKey | None:
        metadata = getattr(job, "metadata", None)
        namespace = getattr(metadata, "namespace", None)
        name = getattr(metadata, "name", None)
        if not namespace or not name:
            return None
        return ReconcileKey(namespace=namespace, name=name)

    def handle_event(self, event_type: str, job: Any) -> ReconcileKey | None:
        """Apply one watch notification to the cache and report its key if admitted.

        Returns the reported key, or ``None`` when the notification was
        filtered out or malformed.
        """
        if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            return None

        key = self._key_for(job)
        if key is None:
            return None
        if not self.admission.admit(key.namespace, key.name):
            return None

        with self._cache_lock:
            if event_type == "DELETED":
                self._cache.pop(key, None)
            else:
                self._cache[key] = job
        self.on_change(key)
        return key

    def replace(self, job_list: Any) -> list[ReconcileKey]:
        """Replace the cache with a full listing and report every affected key.

        Keys that disappeared since the previous listing are reported too,
        so a deletion missed while disconnected still reaches the consumer.
        """
        fresh: dict[ReconcileKey, Any] = {}
        for job in getattr(job_list, "items", None) or []:
            key = self._key_for(job)
            if key is None or not self.admission.admit(key.namespace, key.name):
                continue
            fresh[key] = job

        with self._cache_lock:
            vanished = [key for key in self._cache if key not in fresh]
            self._cache = fresh

        reported = [*fresh, *vanished]
        for key in reported:
            self.on_change(key)
        return reported

    def resync(self) -> int:
        """Report every cached key again; returns how many were reported."""
        keys = self.keys()
        for key in keys:
            self.on_change(key)
        self._last_resync = time.monotonic()
        METRICS.resyncs_total.inc()
        self.logger.debug("Resynced %d cached job(s)", len(keys))
        return len(keys)

    def _resync_if_due(self, now_monotonic: float) -> None:
        if self.resync_seconds <= 0:
            return
        if now_monotonic - self._last_resync >= self.resync_seconds:
            self.resync()

    def _next_watch_timeout_seconds(self, now_monotonic: float) -> int:
        """Return the next watch timeout, shortened so the loop wakes for the next resync."""
        if self.resync_seconds <= 0:
            return self.watch_timeout_seconds

        remaining = self.resync_seconds - (now_monotonic - self._last_resync)
        return min(self.watch_timeout_seconds, max(1, math.ceil(remaining)))

    def _list(self) -> tuple[Any, str | None]:
        listing = self.batch_api.list_namespaced_job(namespace=self.namespace)
        resource_version = getattr(getattr(listing, "metadata", None), "resource_version", None)
        return listing, resource_version

    def _initial_list(self, stop: threading.Event) -> str | None:
        """List Jobs until it succeeds, retrying with jittered exponential backoff.

        ``401``/``403`` responses are configuration errors (RBAC/auth) and fail
        immediately. Any other failure is retried up to
        ``startup_list_attempts`` times before giving up with
        :class:`WatchError`.
        """
        backoff_seconds = 1
        last_error: Exception | None = None
        for attempt in range(1, self.startup_list_attempts + 1):
            try:
                listing, resource_version = self._list()
            except ApiException as exc:
                if exc.status in {401, 403}:
                    raise WatchError(
                        f"Kubernetes API access denied while listing jobs in "
                        f"{self.namespace} (status={exc.status}). "
                        "Check controller RBAC and service account permissions."
                    ) from exc
                self.logger.exception(
                    "Initial Kubernetes job list failed (attempt %d/%d)",
                    attempt,
                    self.startup_list_attempts,
                )
                METRICS.watch_errors_total.inc()
                last_error = exc
            except Exception as exc:
                self.logger.exception(
                    "Unexpected error during initial job list (attempt %d/%d)",
                    attempt,
                    self.startup_list_attempts,
                )
                METRICS.watch_errors_total.inc()
                last_error = exc
            else:
                self.replace(listing)
                self._last_resync = time.monotonic()
                return resource_version

            if attempt == self.startup_list_attempts or self._should_stop(stop):
                break
            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, _BACKOFF_CAP_SECONDS)

        if self._should_stop(stop):
            return None
        raise WatchError(
            f"Unable to list jobs in {self.namespace} after "
            f"{self.startup_list_attempts} attempt(s)"
        ) from last_error

    def run(self, stop_event: threading.Event | None = None) -> None:
        """List-then-watch Jobs until stopped.

        1. Performs the initial list (see :meth:`_initial_list`), seeds the
           cache and reports every admitted Job, then marks the informer ready.
        2. Opens a streaming watch from the list's ``resourceVersion``.
        3. On ``410 Gone`` (etcd compaction), re-lists and resumes.
        4. On transient errors, applies exponential backoff with jitter
           (capped at 30 s).
        5. Resyncs the cache into ``on_change`` every ``resync_seconds``.

        Raises :class:`WatchError` when the initial list cannot be completed or
        when the API denies access at any point.
        """
        stop = stop_event or threading.Event()
        self._external_stop.clear()

        resource_version = self._initial_list(stop)
        if self._should_stop(stop):
            self.ready.clear()
            return
        self.ready.set()
        self.logger.info(
            "Watching jobs in %s from resourceVersion %s", self.namespace, resource_version
        )

        # Reset to 1 on every clean watch iteration; doubled on error up to
        # the cap. Jitter is applied at sleep time.
        backoff_seconds = 1
        watch_stream_count = 0

        try:
            while not self._should_stop(stop):
                self._resync_if_due(time.monotonic())
                watcher = watch.Watch()
                with self._watcher_lock:
                    self._active_watcher = watcher
                try:
                    timeout_seconds = self._next_watch_timeout_seconds(time.monotonic())
                    if watch_stream_count > 0:
                        METRICS.watch_reconnects_total.inc()
                    watch_stream_count += 1
                    stream = watcher.stream(
                        self.batch_api.list_namespaced_job,
                        namespace=self.namespace,
                        resource_version=resource_version,
                        timeout_seconds=timeout_seconds,
                    )

                    for event in stream:
                        if self._should_stop(stop):
                            break

                        event_type = str(event.get("type", ""))
                        obj = event.get("object")
                        if event_type == "ERROR":
                            code = obj.get("code") if isinstance(obj, dict) else None
                            raise ApiException(status=code or 500, reason="watch error event")
                        if obj is None:
                            continue

                        metadata = getattr(obj, "metadata", None)
                        if metadata and metadata.resource_version:
                            resource_version = metadata.resource_version

                        self.handle_event(event_type=event_type, job=obj)

                    backoff_seconds = 1
                except ApiException as exc:
                    # 410 Gone means etcd compacted past our resourceVersion;
                    # a fresh list is the only way to resume.
                    if exc.status == 410:
                        self.logger.warning("Watch resource version expired, re-listing")
                        try:
                            listing, resource_version = self._list()
                            self.replace(listing)
                        except ApiException as relist_exc:
                            if relist_exc.status in {401, 403}:
                                raise WatchError(
                                    "Kubernetes API access denied during 410 re-list "
                                    f"(status={relist_exc.status})"
                                ) from relist_exc
                            self.logger.exception("Failed to re-list after 410")
                            METRICS.watch_errors_total.inc()
                            resource_version = None
                        continue

                    if exc.status in {401, 403}:
                        METRICS.watch_errors_total.inc()
                        raise WatchError(
                            f"Kubernetes API watch denied (status={exc.status}). "
                            "Check controller RBAC and service account permissions."
                        ) from exc

                    self.logger.exception("Kubernetes API watch error")
                    METRICS.watch_errors_total.inc()
                    jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                    stop.wait(timeout=jittered)
                    backoff_seconds = min(backoff_seconds * 2, _BACKOFF_CAP_SECONDS)
                except Exception:
                    self.logger.exception("Unexpected watch error")
                    METRICS.watch_errors_total.inc()
                    jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                    stop.wait(timeout=jittered)
                    backoff_seconds = min(backoff_seconds * 2, _BACKOFF_CAP_SECONDS)
                finally:
                    watcher.stop()
                    with self._watcher_lock:
                        if self._active_watcher is watcher:
                            self._active_watcher = None
        finally:
            self.ready.clear()
