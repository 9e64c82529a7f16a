"""Fixed-size worker pool pulling jobs from the dispatch queue."""

from __future__ import annotations

import logging
from threading import Event, Lock, Thread
import time

from .config import Settings
from .engine import Dispatcher
from .observability import DispatchMetrics, log_event
from .queue import DispatchQueue, Lease


logger = logging.getLogger("notification_dispatch.workers")


class WorkerPool:
    """N independent pull loops: dequeue, dispatch, ack or nack."""

    def __init__(
        self,
        *,
        settings: Settings,
        queue: DispatchQueue,
        dispatcher: Dispatcher,
        metrics: DispatchMetrics,
        worker_count: int | None = None,
    ) -> None:
        self._settings = settings
        self._queue = queue
        self._dispatcher = dispatcher
        self._metrics = metrics
        self._worker_count = max(worker_count if worker_count is not None else settings.worker_count, 1)
        self._stop = Event()
        self._threads: list[Thread] = []
        self._busy_lock = Lock()
        self._busy = 0
        self._dispatching = Event()
        if settings.dispatch_enabled:
            self._dispatching.set()

    @property
    def running(self) -> int:
        return sum(1 for thread in self._threads if thread.is_alive())

    @property
    def busy(self) -> int:
        with self._busy_lock:
            return self._busy

    @property
    def paused(self) -> bool:
        return not self._dispatching.is_set()

    def pause(self) -> None:
        """Hold queued jobs; running threads stay up and idle."""

        self._dispatching.clear()
        log_event(logger, "notification_dispatch_paused")

    def resume(self) -> None:
        self._dispatching.set()
        log_event(logger, "notification_dispatch_resumed")

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        for index in range(self._worker_count):
            thread = Thread(target=self._run, name=f"dispatch-worker-{index}", daemon=True)
            thread.start()
            self._threads.append(thread)
        log_event(logger, "notification_workers_started", workers=self._worker_count)

    def stop(self, *, drain: bool = True, timeout: float = 30.0) -> bool:
        """Stop the pool. With `drain`, wait for queued work first.

        Returns True when the queue was fully drained before stopping.
        """

        deadline = time.monotonic() + max(timeout, 0.0)
        drained = True
        if drain and self.paused:
            drained = self._queue.pending_count() == 0
        elif drain:
            drained = self.wait_until_idle(timeout=timeout)

        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=max(deadline - time.monotonic(), 0.0) + self._settings.worker_poll_interval_seconds)
        self._threads = []
        log_event(logger, "notification_workers_stopped", drained=drained)
        return drained

    def wait_until_idle(self, *, timeout: float) -> bool:
        """Block until no job is queued, delayed, leased or being processed."""

        deadline = time.monotonic() + max(timeout, 0.0)
        while time.monotonic() < deadline:
            if self._queue.pending_count() == 0 and self.busy == 0:
                return True
            time.sleep(min(self._settings.worker_poll_interval_seconds, 0.05))
        return self._queue.pending_count() == 0 and self.busy == 0

    def run_once(self, timeout: float | None = 0.0) -> bool:
        """Process at most one job on the calling thread. Returns False if none was due."""

        if self.paused:
            return False
        lease = self._queue.dequeue(timeout=timeout)
        if lease is None:
            return False
        self._process(lease)
        return True

    def _run(self) -> None:
        while not self._stop.is_set():
            if self.paused:
                self._stop.wait(self._settings.worker_poll_interval_seconds)
                continue
            try:
                lease = self._queue.dequeue(timeout=self._settings.worker_poll_interval_seconds)
            except Exception as exc:
                self._metrics.record_infrastructure_failure()
                log_event(logger, "notification_worker_iteration_failed", level=logging.ERROR, stage="dequeue", error=str(exc))
                self._stop.wait(self._settings.infra_retry_delay_seconds)
                continue
            if lease is not None:
                self._process(lease)

    def _process(self, lease: Lease) -> None:
        with self._busy_lock:
            self._busy += 1
        try:
            self._dispatcher.handle(lease)
        except Exception as exc:
            # Store or queue failure: give the job back and keep the worker alive.
            self._metrics.record_infrastructure_failure()
            log_event(
                logger,
                "notification_worker_iteration_failed",
                level=logging.ERROR,
                stage="dispatch",
                job_id=lease.job.job_id,
                request_id=lease.job.request_id,
                error=str(exc),
            )
            try:
                self._queue.nack(lease, self._settings.infra_retry_delay_seconds)
            except Exception as nack_exc:
                log_event(logger, "notification_worker_nack_failed", level=logging.ERROR, job_id=lease.job.job_id, error=str(nack_exc))
        finally:
            with self._busy_lock:
                self._busy -= 1
