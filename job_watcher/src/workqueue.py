from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Hashable

from job_watcher.src.metrics import METRICS

# 2**n beyond this overflows float conversion.
_MAX_BACKOFF_EXPONENT = 62


class ExponentialBackoff:
    """Per-key failure counter producing doubling, capped retry delays.

    The first failure of a key waits ``base_seconds``; each further failure
    doubles the delay until ``max_seconds``. ``forget`` resets the key after
    a successful reconcile.
    """

    def __init__(self, base_seconds: float = 1.0, max_seconds: float = 300.0) -> None:
        if base_seconds <= 0:
            raise ValueError("base_seconds must be > 0")
        if max_seconds < base_seconds:
            raise ValueError("max_seconds must be >= base_seconds")
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, key: Hashable) -> float:
        """Record one more failure for *key* and return the delay before its retry."""
        with self._lock:
            exponent = self._failures.get(key, 0)
            self._failures[key] = exponent + 1

        if exponent >= _MAX_BACKOFF_EXPONENT:
            return self.max_seconds
        return min(self.max_seconds, self.base_seconds * (2**exponent))

    def num_requeues(self, key: Hashable) -> int:
        with self._lock:
            return self._failures.get(key, 0)

    def forget(self, key: Hashable) -> None:
        with self._lock:
            self._failures.pop(key, None)


class RateLimitingQueue:
    """Deduplicating work queue with delayed, backoff-driven requeues.

    Keys move through three internal collections guarded by one condition
    variable:

        ``_dirty``
            Keys that need processing. Adding a key already here is a no-op,
            which coalesces bursts of notifications for the same object.
        ``_processing``
            Keys handed out by :meth:`get` and not yet passed to :meth:`done`.
            A key re-added while processing stays dirty but is not queued
            again until ``done``, so at most one worker ever holds a key.
        ``_waiting``
            Heap of ``(ready_at, seq, key)`` for keys scheduled with
            :meth:`requeue_after`. Entries are promoted into the ready queue
            when due; ``_waiting_due`` keeps the earliest due time per key so
            a later schedule never postpones an earlier one.

    There is no ordering guarantee across distinct keys.
    """

    def __init__(self, backoff: ExponentialBackoff | None = None) -> None:
        self.backoff = backoff or ExponentialBackoff()
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._waiting_due: dict[Hashable, float] = {}
        self._sequence = itertools.count()
        self._shutting_down = False
        METRICS.queue_depth.set(0)

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def is_shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _add_locked(self, key: Hashable) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        METRICS.queue_adds_total.inc()
        if key in self._processing:
            return
        self._queue.append(key)
        METRICS.queue_depth.set(len(self._queue))
        self._cond.notify()

    def _promote_due_locked(self, now_monotonic: float) -> None:
        while self._waiting and self._waiting[0][0] <= now_monotonic:
            ready_at, _, key = heapq.heappop(self._waiting)
            if self._waiting_due.get(key) != ready_at:
                # Superseded by an earlier schedule for the same key.
                continue
            del self._waiting_due[key]
            self._add_locked(key)

    def add(self, key: Hashable) -> None:
        """Mark *key* as needing processing; a no-op if it is already pending."""
        with self._cond:
            self._add_locked(key)

    def requeue_after(self, key: Hashable, delay_seconds: float) -> None:
        """Make *key* eligible again once *delay_seconds* have elapsed."""
        with self._cond:
            if self._shutting_down:
                return
            if delay_seconds <= 0:
                self._add_locked(key)
                return

            ready_at = time.monotonic() + delay_seconds
            existing = self._waiting_due.get(key)
            if existing is not None and existing <= ready_at:
                return
            self._waiting_due[key] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._sequence), key))
            # Wake sleeping getters so they shorten their wait to the new due time.
            self._cond.notify_all()

    def requeue_rate_limited(self, key: Hashable) -> float:
        """Requeue *key* after its next backoff delay and return that delay."""
        delay_seconds = self.backoff.when(key)
        METRICS.queue_retries_total.inc()
        self.requeue_after(key, delay_seconds)
        return delay_seconds

    def forget(self, key: Hashable) -> None:
        self.backoff.forget(key)

    def num_requeues(self, key: Hashable) -> int:
        return self.backoff.num_requeues(key)

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Block until a key is ready and mark it as processing.

        Returns ``None`` when *timeout* elapses, or once the queue has been
        shut down and no ready key remains.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                now_monotonic = time.monotonic()
                self._promote_due_locked(now_monotonic)

                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    METRICS.queue_depth.set(len(self._queue))
                    return key

                if self._shutting_down:
                    return None

                wait_seconds: float | None = None
                if self._waiting:
                    wait_seconds = max(0.0, self._waiting[0][0] - now_monotonic)
                if deadline is not None:
                    remaining = deadline - now_monotonic
                    if remaining <= 0:
                        return None
                    wait_seconds = remaining if wait_seconds is None else min(wait_seconds, remaining)
                self._cond.wait(timeout=wait_seconds)

    def done(self, key: Hashable) -> None:
        """Finish processing *key*; if it was re-added meanwhile, queue it again."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                METRICS.queue_depth.set(len(self._queue))
                self._cond.notify()

    def shut_down(self) -> None:
        """Stop accepting keys, drop delayed ones, and wake every blocked getter."""
        with self._cond:
            self._shutting_down = True
            self._waiting.clear()
            self._waiting_due.clear()
            self._cond.notify_all()
