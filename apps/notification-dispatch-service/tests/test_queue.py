"""Dispatch queue drivers: visibility, ack/nack and durability."""

from __future__ import annotations

from datetime import timedelta

import pytest
from conftest import FakeClock, make_settings

from notification_dispatch.errors import QueueUnavailableError
from notification_dispatch.queue import FilesystemDispatchQueue, MemoryDispatchQueue, build_queue
from notification_dispatch.schemas import NotificationJob


def _job(clock: FakeClock, job_id: str = "job_0001", *, delay_seconds: float = 0.0) -> NotificationJob:
    return NotificationJob(
        job_id=job_id,
        request_id="req_0001",
        channel="email",
        attempt=1,
        max_attempts=3,
        not_before=clock.now + timedelta(seconds=delay_seconds),
        payload={"subject": "Welcome"},
    )


@pytest.fixture(params=["memory", "filesystem"])
def queue(request, tmp_path, clock):
    if request.param == "memory":
        return MemoryDispatchQueue(visibility_timeout_seconds=30, clock=clock)
    return FilesystemDispatchQueue(tmp_path / "jobs", visibility_timeout_seconds=30, clock=clock)


def test_delayed_job_is_invisible_until_due(queue, clock) -> None:
    queue.enqueue(_job(clock, delay_seconds=10))

    assert queue.dequeue(timeout=0) is None
    assert queue.pending_count() == 1

    clock.advance(10)
    lease = queue.dequeue(timeout=0)
    assert lease is not None
    assert lease.job.job_id == "job_0001"


def test_jobs_come_out_in_visibility_order(queue, clock) -> None:
    queue.enqueue(_job(clock, "job_late", delay_seconds=5))
    queue.enqueue(_job(clock, "job_early", delay_seconds=1))
    clock.advance(6)

    first = queue.dequeue(timeout=0)
    second = queue.dequeue(timeout=0)
    assert [first.job.job_id, second.job.job_id] == ["job_early", "job_late"]


def test_ack_removes_job_permanently(queue, clock) -> None:
    queue.enqueue(_job(clock))
    lease = queue.dequeue(timeout=0)

    assert queue.ack(lease) is True
    assert queue.ack(lease) is False
    assert queue.pending_count() == 0
    clock.advance(3600)
    assert queue.dequeue(timeout=0) is None


def test_nack_returns_job_after_delay(queue, clock) -> None:
    queue.enqueue(_job(clock))
    lease = queue.dequeue(timeout=0)

    assert queue.nack(lease, 5) is True
    assert queue.dequeue(timeout=0) is None
    clock.advance(5)
    again = queue.dequeue(timeout=0)
    assert again is not None
    assert again.job == lease.job


def test_unacked_lease_is_redelivered_after_visibility_timeout(queue, clock) -> None:
    queue.enqueue(_job(clock))
    lease = queue.dequeue(timeout=0)
    assert queue.dequeue(timeout=0) is None

    clock.advance(31)
    redelivered = queue.dequeue(timeout=0)
    assert redelivered is not None
    assert redelivered.job.job_id == lease.job.job_id
    assert queue.ack(lease) is False
    assert queue.ack(redelivered) is True


def test_dead_letter_parks_job_outside_dispatch(queue, clock) -> None:
    queue.enqueue(_job(clock, "job_parked"))
    lease = queue.dequeue(timeout=0)

    assert queue.dead_letter(lease) is True
    assert queue.dead_letter(lease) is False
    assert queue.pending_count() == 0
    clock.advance(3600)
    assert queue.dequeue(timeout=0) is None
    assert [job.job_id for job in queue.dead_letters()] == ["job_parked"]


def test_filesystem_dead_letters_survive_restart(tmp_path, clock) -> None:
    first = FilesystemDispatchQueue(tmp_path / "jobs", clock=clock)
    first.enqueue(_job(clock, "job_parked"))
    first.dead_letter(first.dequeue(timeout=0))

    reopened = FilesystemDispatchQueue(tmp_path / "jobs", clock=clock)
    assert [job.job_id for job in reopened.dead_letters()] == ["job_parked"]
    assert reopened.dequeue(timeout=0) is None


def test_filesystem_queue_survives_restart(tmp_path, clock) -> None:
    first = FilesystemDispatchQueue(tmp_path / "jobs", clock=clock)
    first.enqueue(_job(clock, "job_durable"))

    reopened = FilesystemDispatchQueue(tmp_path / "jobs", clock=clock)
    lease = reopened.dequeue(timeout=0)
    assert lease is not None
    assert lease.job.job_id == "job_durable"
    assert lease.job.payload == {"subject": "Welcome"}


def test_filesystem_queue_rejects_unusable_root(tmp_path) -> None:
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("occupied")

    with pytest.raises(QueueUnavailableError):
        FilesystemDispatchQueue(blocker / "jobs")


def test_memory_dequeue_blocks_until_enqueue_or_timeout(clock) -> None:
    queue = MemoryDispatchQueue(clock=clock)
    assert queue.dequeue(timeout=0.05) is None


def test_build_queue_selects_driver(tmp_path) -> None:
    memory = build_queue(make_settings())
    filesystem = build_queue(make_settings(queue_driver="filesystem", queue_path=str(tmp_path)))

    assert isinstance(memory, MemoryDispatchQueue)
    assert isinstance(filesystem, FilesystemDispatchQueue)
    assert filesystem.root == tmp_path / "notification-queue"
