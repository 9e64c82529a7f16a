"""Periodic backstop that re-creates follow-up jobs lost to a crash."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
import logging

from .config import Settings
from .engine import RequestClaims, new_job_id, plan_follow_up
from .events import build_notification_delivery_status_event
from .observability import DispatchMetrics, log_event
from .queue import Clock, DispatchQueue, utc_now
from .registry import ChannelRegistry
from .schemas import NotificationJob, TerminalStatus
from .store import DeliveryAttemptRecord, DeliveryReportStore, RequestRecord


logger = logging.getLogger("notification_dispatch.sweeper")


class RetrySweeper:
    """Finds pending requests whose next job was never enqueued.

    A request qualifies when its latest attempt is a transient failure older
    than the staleness threshold and the enqueue watermark predates that
    attempt. Requests accepted but never enqueued are repaired the same way.
    A qualifying request that was cancelled is closed as CANCELLED instead.
    """

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

    def sweep(self, now: datetime | None = None) -> list[NotificationJob]:
        """Run one pass and return the jobs it enqueued."""

        now = now or self._clock()
        stale_before = now - timedelta(seconds=self._settings.sweeper_staleness_seconds)
        requeued: list[NotificationJob] = []

        for candidate in self._store.list_requests(status="PENDING"):
            with self._claims.holding(candidate.request_id) as claimed:
                if not claimed:
                    continue
                # Re-read under the claim; a worker may have moved the chain on.
                request = self._store.get_request(candidate.request_id)
                if request is None or request.terminal:
                    continue
                attempts = self._store.attempts_for(request.request_id)
                if not self._follow_up_lost(request, attempts, stale_before):
                    continue
                if request.cancel_requested:
                    self._finish(request, attempts, "CANCELLED", now, reason=None)
                    continue
                job = self._repair(request, attempts, now=now)
                if job is None:
                    continue
                self._queue.enqueue(job)
                self._store.mark_enqueued(request.request_id, job.job_id, now)
            requeued.append(job)
            log_event(
                logger,
                "notification_sweeper_requeued",
                level=logging.WARNING,
                request_id=request.request_id,
                job_id=job.job_id,
                channel=job.channel,
                attempt=job.attempt,
            )

        if requeued:
            self._metrics.record_sweeper_requeue(len(requeued))
        return requeued

    @staticmethod
    def _follow_up_lost(request: RequestRecord, attempts: list[DeliveryAttemptRecord], stale_before: datetime) -> bool:
        """True when nothing was enqueued after the request's last activity, which is stale."""

        if not attempts:
            return request.last_enqueued_at is None and request.created_at <= stale_before
        latest = attempts[-1]
        if latest.outcome != "TRANSIENT_FAILURE" or latest.finished_at > stale_before:
            return False
        return request.last_enqueued_at is None or request.last_enqueued_at < latest.finished_at

    def _repair(self, request: RequestRecord, attempts: list[DeliveryAttemptRecord], *, now: datetime) -> NotificationJob | None:
        if not attempts:
            descriptor = self._registry.resolve(request.channels[0])
            return NotificationJob(
                job_id=new_job_id(),
                request_id=request.request_id,
                channel=request.channels[0],
                attempt=1,
                max_attempts=descriptor.max_attempts if descriptor else self._settings.default_max_attempts,
                not_before=max(request.scheduled_at or now, now),
                payload=request.payload,
                metadata={"origin": "sweeper"},
            )

        latest = attempts[-1]
        if len(attempts) >= self._settings.global_max_attempts:
            self._finish(request, attempts, "EXHAUSTED", now, reason="global attempt ceiling reached")
            return None

        descriptor = self._registry.resolve(latest.channel)
        failed_job = NotificationJob(
            job_id=latest.job_id,
            request_id=request.request_id,
            channel=latest.channel,
            attempt=latest.attempt,
            max_attempts=descriptor.max_attempts if descriptor else latest.attempt,
            not_before=latest.started_at,
            payload=request.payload,
        )
        follow_up = plan_follow_up(
            request=request,
            job=failed_job,
            outcome=latest.outcome,
            registry=self._registry,
            settings=self._settings,
            at=now,
            origin="sweeper",
        )
        if follow_up is None:
            self._finish(request, attempts, "EXHAUSTED", now, reason=latest.error_detail)
            return None
        # Recovered jobs are due immediately; the backoff has long elapsed.
        return follow_up.job.model_copy(update={"not_before": now})

    def _finish(
        self,
        request: RequestRecord,
        attempts: list[DeliveryAttemptRecord],
        status: TerminalStatus,
        now: datetime,
        *,
        reason: str | None,
    ) -> None:
        event = build_notification_delivery_status_event(
            request_id=request.request_id,
            status=status,
            recipient=request.recipient,
            attempts=attempts,
            primary_channel=request.channels[0],
            updated_at=now,
            produced_by=self._settings.event_produced_by,
            error=reason,
            correlation_id=request.idempotency_key,
        )
        self._store.set_status(request.request_id, status, now, delivery_status_event=event)
        if status == "CANCELLED":
            self._metrics.record_cancelled()
            log_event(logger, "notification_cancelled", request_id=request.request_id, origin="sweeper")
            return
        self._metrics.record_exhausted()
        log_event(logger, "notification_exhausted", level=logging.WARNING, request_id=request.request_id, error=reason)

    async def run_forever(self, stop: asyncio.Event | None = None) -> None:
        """Sweep every `sweeper_interval_seconds` until `stop` is set or the task is cancelled."""

        interval_seconds = max(self._settings.sweeper_interval_seconds, 1)
        while stop is None or not stop.is_set():
            try:
                await asyncio.to_thread(self.sweep)
            except Exception as exc:  # pragma: no cover
                log_event(logger, "notification_sweeper_failed", level=logging.ERROR, error=str(exc))
            await asyncio.sleep(interval_seconds)
