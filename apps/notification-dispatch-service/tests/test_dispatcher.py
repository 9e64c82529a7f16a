"""Dispatcher retry, failover and idempotency behaviour."""

from __future__ import annotations

from datetime import timedelta
from threading import Barrier, Thread

from conftest import ScriptedAdapter, run_until_idle

from notification_dispatch.adapters import Outcome
from notification_dispatch.engine import DispatchResult
from notification_dispatch.schemas import NotificationJob, NotificationRequest


def _request(*channels: str, key: str | None = "order-1042-shipped") -> NotificationRequest:
    return NotificationRequest(
        idempotency_key=key,
        recipient="ops@example.com",
        channels=list(channels),
        payload={"subject": "Order shipped", "body": "Your order 1042 is on its way"},
    )


def _channels_attempted(runtime, request_id: str) -> list[tuple[str, int, str]]:
    return [
        (attempt.channel, attempt.attempt, attempt.outcome)
        for attempt in runtime.store.attempts_for(request_id)
    ]


def test_email_always_transient_exhausts_after_max_attempts(runtime, clock, adapters) -> None:
    adapters["email"].default = Outcome.transient("smtp 451 try later")

    submitted = runtime.scheduler.submit(_request("email"))
    results = run_until_idle(runtime, clock)

    report = runtime.scheduler.report(submitted.request_id)
    assert report.status == "EXHAUSTED"
    assert len(report.attempts) == 3
    assert [attempt.outcome for attempt in report.attempts] == ["TRANSIENT_FAILURE"] * 3
    assert [result.action for result in results] == ["retry_scheduled", "retry_scheduled", "exhausted"]
    assert report.request.delivery_status_event["data"]["status"] == "EXHAUSTED"
    assert report.request.delivery_status_event["data"]["error"] == "smtp 451 try later"


def test_retry_delays_are_exponential(runtime, clock, adapters) -> None:
    adapters["email"].default = Outcome.transient("timeout")

    runtime.scheduler.submit(_request("email"))
    results = run_until_idle(runtime, clock)

    retries = [result for result in results if result.action == "retry_scheduled"]
    delays = [
        (result.follow_up.not_before - result.record.finished_at).total_seconds()
        for result in retries
    ]
    assert delays == [1.0, 2.0]
    assert [result.follow_up.attempt for result in retries] == [2, 3]
    assert all(result.follow_up.channel == "email" for result in retries)


def test_backoff_is_non_decreasing_and_capped(runtime_factory, clock, adapters) -> None:
    runtime = runtime_factory(default_max_attempts=6, default_backoff_cap_seconds=5.0)
    adapters["push"].default = Outcome.transient("provider throttled")

    runtime.scheduler.submit(_request("push"))
    results = run_until_idle(runtime, clock)

    delays = [result.follow_up.metadata["backoff_seconds"] for result in results if result.follow_up]
    assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]
    assert delays == sorted(delays)


def test_permanent_failure_fails_over_immediately(runtime, clock, adapters) -> None:
    adapters["sms"].default = Outcome.permanent("invalid phone number")

    submitted = runtime.scheduler.submit(_request("sms", "email"))
    first = runtime.dispatcher.handle(runtime.queue.dequeue(timeout=0))

    assert first.action == "failover_scheduled"
    assert first.follow_up.channel == "email"
    assert first.follow_up.attempt == 1
    assert first.follow_up.not_before == first.record.finished_at

    run_until_idle(runtime, clock)
    assert _channels_attempted(runtime, submitted.request_id) == [
        ("sms", 1, "PERMANENT_FAILURE"),
        ("email", 1, "SUCCESS"),
    ]
    assert runtime.scheduler.report(submitted.request_id).status == "DELIVERED"


def test_failover_follows_channel_order_after_retry_exhaustion(runtime, clock, adapters) -> None:
    adapters["email"].default = Outcome.transient("smtp unavailable")
    adapters["sms"].default = Outcome.transient("gateway 503")

    submitted = runtime.scheduler.submit(_request("email", "sms", "push"))
    run_until_idle(runtime, clock)

    attempts = _channels_attempted(runtime, submitted.request_id)
    assert attempts == [
        ("email", 1, "TRANSIENT_FAILURE"),
        ("email", 2, "TRANSIENT_FAILURE"),
        ("email", 3, "TRANSIENT_FAILURE"),
        ("sms", 1, "TRANSIENT_FAILURE"),
        ("sms", 2, "TRANSIENT_FAILURE"),
        ("sms", 3, "TRANSIENT_FAILURE"),
        ("push", 1, "SUCCESS"),
    ]
    event = runtime.scheduler.report(submitted.request_id).request.delivery_status_event
    assert event["data"]["channels_tried"] == ["email", "sms", "push"]
    assert event["data"]["fallback_used"] is True


def test_success_after_one_transient_failure_stops_the_chain(runtime, clock, adapters) -> None:
    adapters["email"].outcomes = [Outcome.transient("connection reset")]

    submitted = runtime.scheduler.submit(_request("email", "sms", "push"))
    run_until_idle(runtime, clock)

    report = runtime.scheduler.report(submitted.request_id)
    assert report.status == "DELIVERED"
    assert [(a.channel, a.outcome) for a in report.attempts] == [
        ("email", "TRANSIENT_FAILURE"),
        ("email", "SUCCESS"),
    ]
    assert report.delivered_channel == "email"
    assert adapters["sms"].calls == []
    assert adapters["push"].calls == []


def test_attempt_count_is_bounded_by_sum_of_channel_ceilings(runtime_factory, clock, adapters) -> None:
    runtime = runtime_factory(channel_overrides={"sms": {"max_attempts": 2}, "push": {"max_attempts": 4}})
    for channel in ("email", "sms", "push"):
        adapters[channel].default = Outcome.transient("down")

    submitted = runtime.scheduler.submit(_request("email", "sms", "push"))
    run_until_idle(runtime, clock)

    report = runtime.scheduler.report(submitted.request_id)
    assert report.status == "EXHAUSTED"
    assert len(report.attempts) == 3 + 2 + 4


def test_non_retryable_channel_fails_over_on_transient_failure(runtime_factory, clock, adapters) -> None:
    runtime = runtime_factory(channel_overrides={"webhook": {"retryable": False}})
    adapters["webhook"].default = Outcome.transient("webhook HTTP 502")

    submitted = runtime.scheduler.submit(_request("webhook", "in_app"))
    run_until_idle(runtime, clock)

    assert _channels_attempted(runtime, submitted.request_id) == [
        ("webhook", 1, "TRANSIENT_FAILURE"),
        ("in_app", 1, "SUCCESS"),
    ]


def test_fallback_disabled_exhausts_after_primary(runtime_factory, clock, adapters) -> None:
    runtime = runtime_factory(fallback_enabled=False)
    adapters["sms"].default = Outcome.permanent("blocked number")

    submitted = runtime.scheduler.submit(_request("sms", "email"))
    run_until_idle(runtime, clock)

    assert runtime.scheduler.report(submitted.request_id).status == "EXHAUSTED"
    assert adapters["email"].calls == []


def test_unknown_channel_is_terminal_configuration_failure(runtime, clock, adapters) -> None:
    submitted = runtime.scheduler.submit(_request("email", "sms"))
    lease = runtime.queue.dequeue(timeout=0)
    runtime.queue.ack(lease)
    rogue = lease.job.model_copy(update={"channel": "carrier_pigeon"})

    result = runtime.dispatcher.process_job(rogue)

    assert result.action == "failed_configuration"
    assert result.follow_up is None
    assert result.record.outcome == "PERMANENT_FAILURE"
    assert result.record.error_detail == "unknown channel: carrier_pigeon"
    assert runtime.scheduler.report(submitted.request_id).status == "FAILED"
    assert runtime.queue.pending_count() == 0
    assert adapters["sms"].calls == []


def test_adapter_timeout_is_transient(runtime_factory, clock, adapters) -> None:
    runtime = runtime_factory(channel_overrides={"email": {"timeout_seconds": 0.05, "max_attempts": 1}})
    adapters["email"].delay_seconds = 0.5

    submitted = runtime.scheduler.submit(_request("email"))
    result = runtime.dispatcher.handle(runtime.queue.dequeue(timeout=0))

    assert result.record.outcome == "TRANSIENT_FAILURE"
    assert "timed out" in result.record.error_detail
    assert runtime.scheduler.report(submitted.request_id).status == "EXHAUSTED"


def test_adapter_exception_is_transient(runtime, clock, adapters) -> None:
    adapters["email"].raises = ConnectionError("smtp connection refused")

    runtime.scheduler.submit(_request("email", "sms"))
    result = runtime.dispatcher.handle(runtime.queue.dequeue(timeout=0))

    assert result.action == "retry_scheduled"
    assert "smtp connection refused" in result.record.error_detail


def test_redelivered_job_after_success_does_not_send_again(runtime, clock, adapters) -> None:
    submitted = runtime.scheduler.submit(_request("email"))
    lease = runtime.queue.dequeue(timeout=0)

    first = runtime.dispatcher.process_job(lease.job)
    second = runtime.dispatcher.process_job(lease.job)

    assert first.action == "delivered"
    assert second.action == "skipped_terminal"
    assert len(adapters["email"].calls) == 1
    successes = [a for a in runtime.store.attempts_for(submitted.request_id) if a.outcome == "SUCCESS"]
    assert len(successes) == 1


def test_concurrent_duplicate_delivery_yields_one_success(runtime, clock, adapters) -> None:
    adapters["email"].delay_seconds = 0.2
    submitted = runtime.scheduler.submit(_request("email"))
    job = runtime.queue.dequeue(timeout=0).job

    barrier = Barrier(2)
    results: list[DispatchResult] = []

    def worker() -> None:
        barrier.wait()
        results.append(runtime.dispatcher.process_job(job))

    threads = [Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    successes = [a for a in runtime.store.attempts_for(submitted.request_id) if a.outcome == "SUCCESS"]
    assert len(successes) == 1
    assert len(adapters["email"].calls) == 1
    assert sorted(result.action for result in results)[0] == "delivered"


def test_stale_job_is_skipped(runtime, clock, adapters) -> None:
    adapters["email"].outcomes = [Outcome.transient("busy")]
    submitted = runtime.scheduler.submit(_request("email"))
    original = runtime.queue.dequeue(timeout=0).job

    retry = runtime.dispatcher.process_job(original)
    assert retry.action == "retry_scheduled"

    # Same job redelivered after its follow-up was already scheduled.
    replay = runtime.dispatcher.process_job(original)
    assert replay.action == "skipped_stale"
    assert len(runtime.store.attempts_for(submitted.request_id)) == 1


def test_cancelled_request_is_not_sent(runtime, clock, adapters) -> None:
    submitted = runtime.scheduler.submit(_request("email", "sms"))
    assert runtime.scheduler.cancel(submitted.request_id) is True

    results = run_until_idle(runtime, clock)

    assert [result.action for result in results] == ["cancelled"]
    assert adapters["email"].calls == []
    report = runtime.scheduler.report(submitted.request_id)
    assert report.status == "CANCELLED"
    assert report.attempts == []
    assert runtime.scheduler.cancel(submitted.request_id) is False


def test_cancel_between_retries_stops_the_chain(runtime, clock, adapters) -> None:
    adapters["email"].default = Outcome.transient("timeout")
    submitted = runtime.scheduler.submit(_request("email"))
    runtime.dispatcher.handle(runtime.queue.dequeue(timeout=0))

    assert runtime.scheduler.cancel(submitted.request_id) is True
    results = run_until_idle(runtime, clock)

    assert [result.action for result in results] == ["cancelled"]
    assert len(adapters["email"].calls) == 1


def test_orphaned_job_is_dead_lettered_without_send(runtime, clock, adapters) -> None:
    job = NotificationJob(
        job_id="job_orphan",
        request_id="req_missing",
        channel="email",
        attempt=1,
        max_attempts=3,
        not_before=clock.now - timedelta(seconds=1),
        payload={},
    )
    runtime.queue.enqueue(job)

    results = run_until_idle(runtime, clock)

    assert [result.action for result in results] == ["orphaned"]
    assert adapters["email"].calls == []
    assert runtime.queue.pending_count() == 0
    assert [parked.job_id for parked in runtime.queue.dead_letters()] == ["job_orphan"]


def test_scheduled_request_is_not_dispatched_early(runtime, clock, adapters) -> None:
    request = _request("email").model_copy(update={"scheduled_at": clock.now + timedelta(hours=1)})
    runtime.scheduler.submit(request)

    assert runtime.queue.dequeue(timeout=0) is None
    clock.advance(3600)
    lease = runtime.queue.dequeue(timeout=0)
    assert lease is not None
    assert runtime.dispatcher.handle(lease).action == "delivered"


def test_adapter_receives_recipient_payload_and_timeout(runtime, clock, adapters: dict[str, ScriptedAdapter]) -> None:
    runtime.scheduler.submit(_request("webhook"))
    run_until_idle(runtime, clock)

    target, payload, timeout = adapters["webhook"].calls[0]
    assert target == "ops@example.com"
    assert payload["subject"] == "Order shipped"
    assert timeout == 2.0



def test_worker_racing_submit_does_not_strand_retry_chain(runtime, clock, adapters) -> None:
    adapters["email"].default = Outcome.transient("smtp 451 try later")
    enqueue = runtime.queue.enqueue
    early: list[DispatchResult] = []

    def enqueue_then_dispatch(job, not_before=None):
        enqueue(job, not_before)
        if job.metadata and job.metadata.get("origin") == "submit":
            # A worker picks the job up before submit has recorded it.
            early.append(runtime.dispatcher.handle(runtime.queue.dequeue(timeout=0)))

    runtime.queue.enqueue = enqueue_then_dispatch
    submitted = runtime.scheduler.submit(_request("email"))
    run_until_idle(runtime, clock)

    assert [result.action for result in early] == ["skipped_busy"]
    report = runtime.scheduler.report(submitted.request_id)
    assert report.status == "EXHAUSTED"
    assert [attempt.attempt for attempt in report.attempts] == [1, 2, 3]


def test_default_queue_delay_defers_unscheduled_requests(runtime_factory, clock) -> None:
    runtime = runtime_factory(default_queue_delay_seconds=30)
    runtime.scheduler.submit(_request("email"))

    assert runtime.queue.dequeue(timeout=0) is None
    clock.advance(30)
    lease = runtime.queue.dequeue(timeout=0)
    assert lease is not None
    assert lease.job.not_before == clock.now
