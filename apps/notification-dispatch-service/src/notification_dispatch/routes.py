"""HTTP routes for notification dispatch service."""

from datetime import datetime, timezone
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from .errors import UnknownRequestError
from .observability import log_event
from .runtime import DispatchRuntime
from .scheduler import DeliveryReport
from .schemas import (
    AttemptListResponse,
    AttemptOutcome,
    CancelResponse,
    DeliveryAttemptView,
    DeliveryReportResponse,
    DispatchStateResponse,
    HealthResponse,
    NotificationDeliveryStatusEvent,
    NotificationRequest,
    SubmitResponse,
    SweepResponse,
)
from .store import AttemptQuery, DeliveryAttemptRecord

router = APIRouter()
logger = logging.getLogger("notification_dispatch")


def get_runtime(request: Request) -> DispatchRuntime:
    return request.app.state.runtime


def _to_attempt_view(record: DeliveryAttemptRecord) -> DeliveryAttemptView:
    return DeliveryAttemptView(
        request_id=record.request_id,
        job_id=record.job_id,
        recipient=record.recipient,
        channel=record.channel,
        attempt=record.attempt,
        started_at=record.started_at,
        finished_at=record.finished_at,
        outcome=record.outcome,
        error_detail=record.error_detail,
        latency_ms=record.latency_ms,
    )


def _to_report_response(report: DeliveryReport) -> DeliveryReportResponse:
    request = report.request
    event = (
        NotificationDeliveryStatusEvent.model_validate(request.delivery_status_event)
        if request.delivery_status_event
        else None
    )
    return DeliveryReportResponse(
        request_id=request.request_id,
        idempotency_key=request.idempotency_key,
        status=request.status,
        recipient=request.recipient,
        channels=request.channels,
        delivered_channel=report.delivered_channel,
        cancel_requested=request.cancel_requested,
        created_at=request.created_at,
        scheduled_at=request.scheduled_at,
        attempts=[_to_attempt_view(attempt) for attempt in report.attempts],
        delivery_status_event=event,
    )


@router.get("/health", response_model=HealthResponse)
def health(runtime: DispatchRuntime = Depends(get_runtime)) -> HealthResponse:
    return HealthResponse(
        service=runtime.settings.service_name,
        version=runtime.settings.service_version,
        queue_driver=runtime.settings.queue_driver,
        pending_jobs=runtime.queue.pending_count(),
        workers_running=runtime.workers.running,
        dispatch_paused=runtime.workers.paused,
        timestamp=datetime.now(tz=timezone.utc),
    )


@router.get("/metrics", response_class=PlainTextResponse)
def metrics(runtime: DispatchRuntime = Depends(get_runtime)) -> str:
    if not runtime.settings.metrics_enabled:
        raise HTTPException(status_code=404, detail="metrics endpoint disabled")
    return runtime.metrics.render_prometheus()


@router.post("/notifications", response_model=SubmitResponse, response_model_exclude_none=True, status_code=202)
def submit_notification(
    payload: NotificationRequest,
    runtime: DispatchRuntime = Depends(get_runtime),
) -> SubmitResponse | JSONResponse:
    result = runtime.scheduler.submit(payload)
    response = SubmitResponse(
        accepted=result.accepted,
        request_id=result.request_id,
        reason=result.reason,
        duplicate=result.duplicate,
    )
    if not result.accepted:
        return JSONResponse(status_code=422, content=response.model_dump(exclude_none=True))
    return response


@router.post("/notifications/{request_id}/cancel", response_model=CancelResponse)
def cancel_notification(request_id: str, runtime: DispatchRuntime = Depends(get_runtime)) -> CancelResponse:
    try:
        cancelled = runtime.scheduler.cancel(request_id)
    except UnknownRequestError as exc:
        raise HTTPException(status_code=404, detail="notification not found") from exc
    return CancelResponse(request_id=request_id, cancelled=cancelled)


@router.get(
    "/notifications/{request_id}",
    response_model=DeliveryReportResponse,
    response_model_exclude_none=True,
)
def get_delivery_report(request_id: str, runtime: DispatchRuntime = Depends(get_runtime)) -> DeliveryReportResponse:
    try:
        report = runtime.scheduler.report(request_id)
    except UnknownRequestError as exc:
        raise HTTPException(status_code=404, detail="notification not found") from exc
    return _to_report_response(report)


@router.get("/attempts", response_model=AttemptListResponse, response_model_exclude_none=True)
def list_attempts(
    request_id: str | None = Query(default=None),
    recipient: str | None = Query(default=None),
    channel: str | None = Query(default=None),
    status: AttemptOutcome | None = Query(default=None),
    since: datetime | None = Query(default=None),
    runtime: DispatchRuntime = Depends(get_runtime),
) -> AttemptListResponse:
    if since is not None and since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    records = runtime.scheduler.query(
        AttemptQuery(request_id=request_id, recipient=recipient, channel=channel, status=status, since=since)
    )
    return AttemptListResponse(items=[_to_attempt_view(record) for record in records])


@router.post("/sweeps", response_model=SweepResponse, response_model_exclude_none=True)
def run_sweep(runtime: DispatchRuntime = Depends(get_runtime)) -> SweepResponse:
    requeued = runtime.sweeper.sweep()
    log_event(logger, "notification_sweep_triggered", requeued=len(requeued))
    return SweepResponse(requeued=requeued)


@router.post("/dispatch/pause", response_model=DispatchStateResponse)
def pause_dispatch(runtime: DispatchRuntime = Depends(get_runtime)) -> DispatchStateResponse:
    runtime.workers.pause()
    return DispatchStateResponse(dispatch_paused=runtime.workers.paused)


@router.post("/dispatch/resume", response_model=DispatchStateResponse)
def resume_dispatch(runtime: DispatchRuntime = Depends(get_runtime)) -> DispatchStateResponse:
    runtime.workers.resume()
    return DispatchStateResponse(dispatch_paused=runtime.workers.paused)
