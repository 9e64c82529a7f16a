"""Core dispatch logic: one channel attempt per job, then retry, failover or finish."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from threading import Lock
from time import perf_counter
from typing import Iterator, Literal
from uuid import uuid4

from .adapters import ChannelAdapter, Outcome
from .config import Settings
from .events import build_notification_delivery_status_event
from .observability import DispatchMetrics, log_event
from .queue import Clock, DispatchQueue, Lease, utc_now
from .registry import ChannelDescriptor, ChannelRegistry
from .schemas import AttemptOutcome, NotificationJob, RequestStatus
from .store import DeliveryAttemptRecord, DeliveryReportStore, RequestRecord


logger = logging.getLogger("notification_dispatch.engine")

DispatchAction = Literal[
    "delivered",
    "retry_scheduled",
    "failover_scheduled",
    "exhausted",
    "failed_configuration",
    "cancelled",
    "skipped_duplicate",
    "skipped_stale",
    "skipped_terminal",
    "skipped_busy",
    "orphaned",
]


@dataclass(frozen=True)
class DispatchResult:
    """What processing one job did."""

    action: DispatchAction
    job: NotificationJob
    record: DeliveryAttemptRecord | None = None
    follow_up: NotificationJob | None = None


@dataclass(frozen=True)
class FollowUp:
    kind: Literal["retry", "failover"]
    job: NotificationJob


def new_job_id() -> str:
    return f"job_{uuid4().hex[:20]}"


class RequestClaims:
    """In-process set of requests whose job chain is being advanced.

    The dispatcher holds a claim while it sends and schedules the follow-up;
    the scheduler and sweeper hold one between enqueueing a job and recording
    it on the request.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._held: set[str] = set()

    def acquire(self, request_id: str) -> bool:
        with self._lock:
            if request_id in self._held:
                return False
            self._held.add(request_id)
            return True

    def release(self, request_id: str) -> None:
        with self._lock:
            self._held.discard(request_id)

    @contextmanager
    def holding(self, request_id: str) -> Iterator[bool]:
        acquired = self.acquire(request_id)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(request_id)


def plan_follow_up(
    *,
    request: RequestRecord,
    job: NotificationJob,
    outcome: AttemptOutcome,
    registry: ChannelRegistry,
    settings: Settings,
    at: datetime,
    origin: str,
) -> FollowUp | None:
    """Return the next job after a failed attempt, or None when the request is exhausted.

    A transient failure below the channel ceiling retries the same channel
    after backoff. Anything else moves to the next channel in the request's
    list, starting at attempt 1.
    """

    descriptor = registry.resolve(job.channel)
    if (
        outcome == "TRANSIENT_FAILURE"
        and descriptor is not None
        and descriptor.retryable
        and job.attempt < descriptor.max_attempts
    ):
        delay = descriptor.backoff_policy.delay_for(job.attempt)
        return FollowUp(
            kind="retry",
            job=NotificationJob(
                job_id=new_job_id(),
                request_id=job.request_id,
                channel=job.channel,
                attempt=job.attempt + 1,
                max_attempts=descriptor.max_attempts,
                not_before=at + timedelta(seconds=delay),
                payload=job.payload,
                metadata={"origin": origin, "backoff_seconds": delay},
            ),
        )

    if not settings.fallback_enabled or job.channel not in request.channels:
        return None
    index = request.channels.index(job.channel)
    if index + 1 >= len(request.channels):
        return None

    next_channel = request.channels[index + 1]
    next_descriptor = registry.resolve(next_channel)
    return FollowUp(
        kind="failover",
        job=NotificationJob(
            job_id=new_job_id(),
            request_id=job.request_id,
            channel=next_channel,
            attempt=1,
            max_attempts=next_descriptor.max_attempts if next_descriptor else settings.default_max_attempts,
            not_before=at,
            payload=job.payload,
            metadata={"origin": origin, "failed_over_from": job.channel},
        ),
    )


class Dispatcher:
    """Consumes notification jobs and owns every request state transition."""

    def __init__(
        self,
        *,
        settings: Settings,
        registry: ChannelRegistry,
        store: DeliveryReportStore,
        queue: DispatchQueue,
        metrics: DispatchMetrics,
        clock: Clock = utc_now,
        send_executor: ThreadPoolExecutor | None = None,
        claims: RequestClaims | None = None,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._store = store
        self._queue = queue
        self._metrics = metrics
        self._clock = clock
        self._owns_executor = send_executor is None
        self._executor = send_executor or ThreadPoolExecutor(
            max_workers=max(settings.worker_count, 1) * 2,
            thread_name_prefix="channel-send",
        )
        self._claims = claims or RequestClaims()

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False)

    def handle(self, lease: Lease) -> DispatchResult:
        """Process a dequeued lease, then settle it.

        Busy requests are nacked, jobs without a request are dead-lettered and
        everything else is acked.
        """

        result = self.process_job(lease.job)
        if result.action == "skipped_busy":
            self._queue.nack(lease, self._settings.infra_retry_delay_seconds)
        elif result.action == "orphaned":
            self._queue.dead_letter(lease)
        else:
            self._queue.ack(lease)
        return result

    def process_job(self, job: NotificationJob, now: datetime | None = None) -> DispatchResult:
        """Run one channel attempt for `job` and schedule what follows.

        Channel failures never raise; queue and store errors do.
        """

        if self._store.get_request(job.request_id) is None:
            log_event(logger, "notification_job_orphaned", level=logging.WARNING, job_id=job.job_id, request_id=job.request_id)
            self._metrics.record_skipped_job()
            return DispatchResult(action="orphaned", job=job)

        with self._claims.holding(job.request_id) as claimed:
            if not claimed:
                self._log_skip(job, "skipped_busy")
                return DispatchResult(action="skipped_busy", job=job)
            return self._process_claimed(job, now or self._clock())

    def _process_claimed(self, job: NotificationJob, now: datetime) -> DispatchResult:
        request = self._store.get_request(job.request_id)
        if request is None:
            return self._skip(job, "orphaned")
        if request.terminal:
            return self._skip(job, "skipped_terminal")
        if self._store.has_success(request.request_id):
            # Success recorded but the status update was lost; finish it now.
            self._finish(request, "DELIVERED", now)
            return self._skip(job, "skipped_duplicate")
        if request.current_job_id is not None and request.current_job_id != job.job_id:
            return self._skip(job, "skipped_stale")
        if request.cancel_requested:
            self._finish(request, "CANCELLED", now)
            return DispatchResult(action="cancelled", job=job)

        descriptor = self._registry.resolve(job.channel)
        adapter = self._registry.adapter_for(job.channel)
        if descriptor is None or adapter is None:
            return self._fail_unknown_channel(request, job, now)

        record = self._attempt(request, job, descriptor, adapter, now)
        self._store.append(record)
        self._metrics.record_attempt(record.outcome, record.latency_ms)
        log_event(
            logger,
            "notification_attempt_recorded",
            request_id=record.request_id,
            job_id=record.job_id,
            channel=record.channel,
            attempt=record.attempt,
            outcome=record.outcome,
            error_detail=record.error_detail,
            latency_ms=round(record.latency_ms, 3),
        )

        if record.outcome == "SUCCESS":
            self._finish(request, "DELIVERED", record.finished_at)
            return DispatchResult(action="delivered", job=job, record=record)

        follow_up = plan_follow_up(
            request=request,
            job=job,
            outcome=record.outcome,
            registry=self._registry,
            settings=self._settings,
            at=record.finished_at,
            origin="retry" if record.outcome == "TRANSIENT_FAILURE" else "failover",
        )
        if follow_up is None:
            self._finish(request, "EXHAUSTED", record.finished_at, error=record.error_detail)
            return DispatchResult(action="exhausted", job=job, record=record)

        self._queue.enqueue(follow_up.job)
        self._store.mark_enqueued(request.request_id, follow_up.job.job_id, record.finished_at)
        if follow_up.kind == "retry":
            self._metrics.record_retry()
            event, action = "notification_retry_scheduled", "retry_scheduled"
        else:
            self._metrics.record_failover()
            event, action = "notification_failover_scheduled", "failover_scheduled"
        log_event(
            logger,
            event,
            request_id=request.request_id,
            job_id=follow_up.job.job_id,
            channel=follow_up.job.channel,
            attempt=follow_up.job.attempt,
            not_before=follow_up.job.not_before.isoformat(),
        )
        return DispatchResult(action=action, job=job, record=record, follow_up=follow_up.job)

    def _attempt(
        self,
        request: RequestRecord,
        job: NotificationJob,
        descriptor: ChannelDescriptor,
        adapter: ChannelAdapter,
        started_at: datetime,
    ) -> DeliveryAttemptRecord:
        started = perf_counter()
        outcome = self._send(adapter, request.recipient, job, descriptor.timeout_seconds)
        latency_ms = (perf_counter() - started) * 1000.0
        return DeliveryAttemptRecord(
            request_id=request.request_id,
            job_id=job.job_id,
            recipient=request.recipient,
            channel=job.channel,
            attempt=job.attempt,
            started_at=started_at,
            finished_at=started_at + timedelta(milliseconds=latency_ms),
            outcome=outcome.kind,
            error_detail=outcome.detail if not outcome.succeeded else None,
            latency_ms=latency_ms,
        )

    def _send(self, adapter: ChannelAdapter, recipient: str, job: NotificationJob, timeout: float) -> Outcome:
        future = self._executor.submit(adapter.send, recipient, dict(job.payload), timeout)
        try:
            outcome = future.result(timeout=timeout)
        except FutureTimeoutError:
            # The send keeps running on the executor until its own timeout.
            return Outcome.transient(f"{job.channel} send timed out after {timeout:.1f}s")
        except Exception as exc:
            return Outcome.transient(f"{job.channel} adapter error: {exc}")

        if not isinstance(outcome, Outcome):
            return Outcome.transient(f"{job.channel} adapter returned unsupported outcome: {outcome!r}")
        return outcome

    def _fail_unknown_channel(self, request: RequestRecord, job: NotificationJob, now: datetime) -> DispatchResult:
        detail = f"unknown channel: {job.channel}"
        record = DeliveryAttemptRecord(
            request_id=request.request_id,
            job_id=job.job_id,
            recipient=request.recipient,
            channel=job.channel,
            attempt=job.attempt,
            started_at=now,
            finished_at=now,
            outcome="PERMANENT_FAILURE",
            error_detail=detail,
            latency_ms=0.0,
        )
        self._store.append(record)
        self._metrics.record_misconfigured()
        log_event(
            logger,
            "notification_channel_misconfigured",
            level=logging.ERROR,
            request_id=request.request_id,
            job_id=job.job_id,
            channel=job.channel,
        )
        self._finish(request, "FAILED", now, error=detail)
        return DispatchResult(action="failed_configuration", job=job, record=record)

    def _finish(self, request: RequestRecord, status: RequestStatus, at: datetime, *, error: str | None = None) -> None:
        event = build_notification_delivery_status_event(
            request_id=request.request_id,
            status=status,
            recipient=request.recipient,
            attempts=self._store.attempts_for(request.request_id),
            primary_channel=request.channels[0],
            updated_at=at,
            produced_by=self._settings.event_produced_by,
            error=error,
            correlation_id=request.idempotency_key,
        )
        self._store.set_status(request.request_id, status, at, delivery_status_event=event)

        if status == "DELIVERED":
            self._metrics.record_delivered()
            log_event(logger, "notification_delivered", request_id=request.request_id, channel=event["data"]["channel"])
        elif status == "EXHAUSTED":
            self._metrics.record_exhausted()
            log_event(
                logger,
                "notification_exhausted",
                level=logging.WARNING,
                request_id=request.request_id,
                channels_tried=event["data"]["channels_tried"],
                error=error,
            )
        elif status == "CANCELLED":
            self._metrics.record_cancelled()
            log_event(logger, "notification_cancelled", request_id=request.request_id)

    def _skip(self, job: NotificationJob, action: DispatchAction) -> DispatchResult:
        self._log_skip(job, action)
        return DispatchResult(action=action, job=job)

    def _log_skip(self, job: NotificationJob, reason: str) -> None:
        self._metrics.record_skipped_job()
        log_event(
            logger,
            "notification_job_skipped",
            request_id=job.request_id,
            job_id=job.job_id,
            channel=job.channel,
            reason=reason,
        )
