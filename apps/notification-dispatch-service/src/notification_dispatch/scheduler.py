"""Producer-facing API: submit, cancel and report on notifications."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging

from .config import Settings
from .engine import RequestClaims, new_job_id
from .errors import UnknownRequestError
from .observability import DispatchMetrics, log_event
from .queue import Clock, DispatchQueue, utc_now
from .registry import ChannelRegistry
from .schemas import NotificationJob, NotificationRequest, RequestStatus
from .store import AttemptQuery, DeliveryAttemptRecord, DeliveryReportStore, RequestRecord, new_request_id


logger = logging.getLogger("notification_dispatch.scheduler")


@dataclass(frozen=True)
class SubmitResult:
    accepted: bool
    request_id: str | None = None
    reason: str | None = None
    duplicate: bool = False


@dataclass(frozen=True)
class DeliveryReport:
    """All attempts recorded for one request plus its current status."""

    request: RequestRecord
    attempts: list[DeliveryAttemptRecord]

    @property
    def status(self) -> RequestStatus:
        return self.request.status

    @property
    def delivered_channel(self) -> str | None:
        for attempt in self.attempts:
            if attempt.outcome == "SUCCESS":
                return attempt.channel
        return None


class NotificationScheduler:
    """Turns requests into the first job of their chain."""

    def __init__(
        self,
        *,
        settings: Settings,
        registry: ChannelRegistry,
        store: DeliveryReportStore,
        queue: DispatchQueue,
        metrics: DispatchMetrics,
        clock: Clock = utc_now,
        claims: RequestClaims | None = None,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._store = store
        self._queue = queue
        self._metrics = metrics
        self._clock = clock
        self._claims = claims or RequestClaims()

    def submit(self, request: NotificationRequest, now: datetime | None = None) -> SubmitResult:
        now = now or self._clock()

        unknown = [channel for channel in request.channels if channel not in self._registry]
        if unknown:
            reason = f"unknown channel: {', '.join(unknown)}"
            self._metrics.record_rejected_submission()
            log_event(logger, "notification_submit_rejected", recipient=request.recipient, reason=reason)
            return SubmitResult(accepted=False, reason=reason)

        record, created = self._store.register_request(
            RequestRecord(
                request_id=new_request_id(),
                idempotency_key=request.resolved_idempotency_key(),
                recipient=request.recipient,
                channels=list(request.channels),
                payload=dict(request.payload),
                scheduled_at=request.scheduled_at,
                created_at=now,
                updated_at=now,
            )
        )
        if not created:
            self._metrics.record_duplicate_submission()
            log_event(
                logger,
                "notification_duplicate_submission",
                request_id=record.request_id,
                idempotency_key=record.idempotency_key,
                status=record.status,
            )
            return SubmitResult(accepted=True, request_id=record.request_id, duplicate=True)

        primary = record.channels[0]
        descriptor = self._registry.resolve(primary)
        job = NotificationJob(
            job_id=new_job_id(),
            request_id=record.request_id,
            channel=primary,
            attempt=1,
            max_attempts=descriptor.max_attempts if descriptor else self._settings.default_max_attempts,
            not_before=request.scheduled_at or now + timedelta(seconds=self._settings.default_queue_delay_seconds),
            payload=record.payload,
            metadata={"origin": "submit"},
        )
        with self._claims.holding(record.request_id):
            self._queue.enqueue(job)
            self._store.mark_enqueued(record.request_id, job.job_id, now)

        self._metrics.record_submission()
        log_event(
            logger,
            "notification_submitted",
            request_id=record.request_id,
            job_id=job.job_id,
            recipient=record.recipient,
            channels=record.channels,
            not_before=job.not_before.isoformat(),
        )
        return SubmitResult(accepted=True, request_id=record.request_id)

    def cancel(self, request_id: str, now: datetime | None = None) -> bool:
        """Record a cancellation marker; False once the request is terminal."""

        cancelled = self._store.request_cancel(request_id, now or self._clock())
        log_event(logger, "notification_cancel_requested", request_id=request_id, recorded=cancelled)
        return cancelled

    def report(self, request_id: str) -> DeliveryReport:
        request = self._store.get_request(request_id)
        if request is None:
            raise UnknownRequestError(request_id)
        return DeliveryReport(request=request, attempts=self._store.attempts_for(request_id))

    def query(self, query: AttemptQuery) -> list[DeliveryAttemptRecord]:
        return self._store.query(query)
