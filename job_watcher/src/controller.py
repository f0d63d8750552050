from __future__ import annotations

import logging
import threading
import time

from kubernetes.client import AppsV1Api, BatchV1Api

from job_watcher.src.admission import AdmissionFilter, ReconcileKey
from job_watcher.src.config import ControllerConfig
from job_watcher.src.informer import JobInformer
from job_watcher.src.metrics import METRICS
from job_watcher.src.reconciler import JobReconciler, ReconcileError, ReconcileOutcome
from job_watcher.src.workqueue import ExponentialBackoff, RateLimitingQueue

WORKER_STOP_TIMEOUT_SECONDS = 30.0


class JobWatcherController:
    """Connects the Job informer, the work queue and a pool of reconcile workers.

    The informer runs on the calling thread and feeds ``queue.add``; each
    worker thread loops ``get -> reconcile -> done``. The queue guarantees a
    key is held by at most one worker at a time, so workers run in parallel
    only across distinct Jobs.

    Outcomes per key:
        success or ignored
            ``forget`` resets the key's backoff.
        :class:`ReconcileError` or any unexpected exception
            the key is requeued after its next backoff delay. There is no
            retry limit; a persistent failure keeps showing up in the logs
            and in ``job_watcher_reconcile_errors_total``.

    On shutdown the queue stops accepting keys, the cancel event handed to
    every reconcile is set, and workers drain the remaining ready keys
    without acting on them before exiting.
    """

    def __init__(
        self,
        informer: JobInformer,
        queue: RateLimitingQueue,
        reconciler: JobReconciler,
        worker_count: int = 2,
        logger: logging.Logger | None = None,
    ) -> None:
        if worker_count < 1:
            raise ValueError("worker_count must be >= 1")
        self.informer = informer
        self.queue = queue
        self.reconciler = reconciler
        self.worker_count = worker_count
        self.logger = logger or logging.getLogger(__name__)
        self.ready = informer.ready
        self._cancel = threading.Event()
        self._workers: list[threading.Thread] = []

    def _handle_failure(self, key: ReconcileKey, exc: Exception) -> None:
        METRICS.reconcile_errors_total.inc()
        METRICS.reconcile_total.labels(outcome="error").inc()
        delay_seconds = self.queue.requeue_rate_limited(key)
        self.logger.warning(
            "Requeued job %s (attempt %d) in %.1fs after error: %s",
            key,
            self.queue.num_requeues(key),
            delay_seconds,
            exc,
        )

    def process_next(self, timeout: float | None = None) -> bool:
        """Take one key from the queue and reconcile it.

        Returns ``False`` once the queue is shut down and empty (or *timeout*
        elapsed with nothing to do), ``True`` otherwise.
        """
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False

        try:
            if self._cancel.is_set():
                return True

            started = time.monotonic()
            try:
                result = self.reconciler.reconcile(key, stop_event=self._cancel)
            except ReconcileError as exc:
                self.logger.error("Reconcile failed: %s", exc)
                self._handle_failure(key, exc)
            except Exception as exc:
                self.logger.exception("Unexpected error reconciling job %s", key)
                self._handle_failure(key, exc)
            else:
                if result.outcome is not ReconcileOutcome.CANCELLED:
                    self.queue.forget(key)
                METRICS.reconcile_total.labels(outcome=result.outcome.value).inc()
            finally:
                METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)
        finally:
            self.queue.done(key)
        return True

    def _run_worker(self) -> None:
        while self.process_next():
            pass

    def _start_workers(self) -> None:
        self._workers = [
            threading.Thread(
                target=self._run_worker,
                name=f"job-watcher-worker-{i}",
                daemon=True,
            )
            for i in range(self.worker_count)
        ]
        for worker in self._workers:
            worker.start()
        self.logger.info("Started %d reconcile worker(s)", self.worker_count)

    def _stop_workers(self) -> None:
        self._cancel.set()
        self.queue.shut_down()
        deadline = time.monotonic() + WORKER_STOP_TIMEOUT_SECONDS
        for worker in self._workers:
            worker.join(timeout=max(0.0, deadline - time.monotonic()))
            if worker.is_alive():
                self.logger.error(
                    "Worker %s did not stop within %.0fs", worker.name, WORKER_STOP_TIMEOUT_SECONDS
                )
        self._workers = []

    def request_stop(self) -> None:
        """Cancel in-flight reconciles and interrupt the informer's watch stream."""
        self._cancel.set()
        self.informer.request_stop()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Run workers and the informer until *shutdown_event* is set.

        :class:`~job_watcher.src.informer.WatchError` from the informer
        propagates after the workers have been stopped.
        """
        self._cancel.clear()
        self._start_workers()
        try:
            self.informer.run(stop_event=shutdown_event)
        finally:
            self._stop_workers()
            self.logger.info("Controller workers stopped")


def build_controller(
    config: ControllerConfig,
    batch_api: BatchV1Api,
    apps_api: AppsV1Api,
) -> JobWatcherController:
    admission = AdmissionFilter(
        namespace=config.monitored_namespace,
        name_pattern=config.job_name_pattern,
    )
    queue = RateLimitingQueue(
        ExponentialBackoff(
            base_seconds=config.backoff_base_seconds,
            max_seconds=config.backoff_max_seconds,
        )
    )
    informer = JobInformer(
        batch_api=batch_api,
        namespace=config.monitored_namespace,
        admission=admission,
        on_change=queue.add,
        resync_seconds=config.resync_seconds,
        watch_timeout_seconds=config.watch_timeout_seconds,
        startup_list_attempts=config.startup_list_attempts,
    )
    reconciler = JobReconciler(
        batch_api=batch_api,
        apps_api=apps_api,
        namespace=config.monitored_namespace,
        target_deployment_name=config.target_deployment_name,
        admission=admission,
        startup_cutoff=config.startup_cutoff,
    )
    return JobWatcherController(
        informer=informer,
        queue=queue,
        reconciler=reconciler,
        worker_count=config.worker_count,
    )

