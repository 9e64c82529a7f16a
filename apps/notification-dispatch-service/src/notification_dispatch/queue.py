"""Dispatch queue contract with in-memory and filesystem drivers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import heapq
import itertools
import os
from pathlib import Path
from threading import Condition, Lock
import time
from typing import Callable, Protocol
from uuid import uuid4

from pydantic import ValidationError

from .config import Settings
from .errors import QueueUnavailableError
from .schemas import NotificationJob


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class Lease:
    """A job handed to one worker until it is acked or nacked."""

    lease_id: str
    job: NotificationJob


class DispatchQueue(Protocol):
    """At-least-once work queue with delayed visibility."""

    def enqueue(self, job: NotificationJob, not_before: datetime | None = None) -> None: ...

    def dequeue(self, timeout: float | None = None) -> Lease | None: ...

    def ack(self, lease: Lease) -> bool: ...

    def nack(self, lease: Lease, delay_seconds: float = 0.0) -> bool: ...

    def dead_letter(self, lease: Lease) -> bool: ...

    def dead_letters(self) -> list[NotificationJob]: ...
    def pending_count(self) -> int: ...


class MemoryDispatchQueue:
    """Process-local queue for development and tests. Not durable."""

    def __init__(self, *, visibility_timeout_seconds: float = 60.0, clock: Clock = utc_now) -> None:
        self._visibility_timeout = timedelta(seconds=visibility_timeout_seconds)
        self._clock = clock
        self._condition = Condition(Lock())
        self._sequence = itertools.count()
        self._ready: list[tuple[datetime, int, NotificationJob]] = []
        self._leases: dict[str, tuple[NotificationJob, datetime]] = {}
        self._dead: list[NotificationJob] = []

    def enqueue(self, job: NotificationJob, not_before: datetime | None = None) -> None:
        visible_at = not_before or job.not_before
        with self._condition:
            heapq.heappush(self._ready, (visible_at, next(self._sequence), job))
            self._condition.notify()

    def dequeue(self, timeout: float | None = None) -> Lease | None:
        deadline = None if timeout is None else time.monotonic() + max(timeout, 0.0)
        with self._condition:
            while True:
                now = self._clock()
                self._reclaim_expired(now)
                if self._ready and self._ready[0][0] <= now:
                    _, _, job = heapq.heappop(self._ready)
                    lease = Lease(lease_id=uuid4().hex, job=job)
                    self._leases[lease.lease_id] = (job, now + self._visibility_timeout)
                    return lease

                wait_for = self._seconds_until_next(now)
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._condition.wait(timeout=wait_for)

    def ack(self, lease: Lease) -> bool:
        with self._condition:
            return self._leases.pop(lease.lease_id, None) is not None

    def nack(self, lease: Lease, delay_seconds: float = 0.0) -> bool:
        with self._condition:
            entry = self._leases.pop(lease.lease_id, None)
            if entry is None:
                return False
            visible_at = self._clock() + timedelta(seconds=max(delay_seconds, 0.0))
            heapq.heappush(self._ready, (visible_at, next(self._sequence), entry[0]))
            self._condition.notify()
            return True

    def pending_count(self) -> int:
        with self._condition:
            return len(self._ready) + len(self._leases)

    def dead_letter(self, lease: Lease) -> bool:
        """Park a leased job outside the dispatch flow without deleting it."""

        with self._condition:
            entry = self._leases.pop(lease.lease_id, None)
            if entry is None:
                return False
            self._dead.append(entry[0])
            return True

    def dead_letters(self) -> list[NotificationJob]:
        with self._condition:
            return list(self._dead)

    def _reclaim_expired(self, now: datetime) -> None:
        expired = [lease_id for lease_id, (_, deadline) in self._leases.items() if deadline <= now]
        for lease_id in expired:
            job, _ = self._leases.pop(lease_id)
            heapq.heappush(self._ready, (now, next(self._sequence), job))

    def _seconds_until_next(self, now: datetime) -> float | None:
        candidates = [deadline for _, deadline in self._leases.values()]
        if self._ready:
            candidates.append(self._ready[0][0])
        if not candidates:
            return None
        return max((min(candidates) - now).total_seconds(), 0.01)


class FilesystemDispatchQueue:
    """Durable queue storing one JSON file per job.

    File names start with the epoch millisecond at which the job becomes
    visible, so a sorted directory listing is the dispatch order. Claiming
    a job is an atomic rename from `ready/` to `leased/`.
    """

    POLL_INTERVAL_SECONDS = 0.1

    def __init__(
        self,
        root: str | Path,
        *,
        visibility_timeout_seconds: float = 60.0,
        clock: Clock = utc_now,
    ) -> None:
        self._root = Path(root)
        self._ready_dir = self._root / "ready"
        self._leased_dir = self._root / "leased"
        self._tmp_dir = self._root / "tmp"
        self._dead_dir = self._root / "dead"
        self._visibility_timeout = timedelta(seconds=visibility_timeout_seconds)
        self._clock = clock
        self._lock = Lock()

        try:
            for directory in (self._ready_dir, self._leased_dir, self._tmp_dir, self._dead_dir):
                directory.mkdir(parents=True, exist_ok=True)
            write_check = self._tmp_dir / f".write-check-{uuid4().hex}"
            write_check.write_text("ok")
            write_check.unlink()
        except OSError as exc:
            raise QueueUnavailableError(f"queue directory unusable: {self._root}: {exc}") from exc

    @property
    def root(self) -> Path:
        return self._root

    def enqueue(self, job: NotificationJob, not_before: datetime | None = None) -> None:
        visible_at = not_before or job.not_before
        tmp_path = self._tmp_dir / f"{uuid4().hex}.json"
        try:
            with tmp_path.open("w", encoding="utf-8") as handle:
                handle.write(job.to_wire())
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self._ready_dir / self._file_name(visible_at))
        except OSError as exc:
            raise QueueUnavailableError(f"enqueue failed for job {job.job_id}: {exc}") from exc

    def dequeue(self, timeout: float | None = None) -> Lease | None:
        deadline = None if timeout is None else time.monotonic() + max(timeout, 0.0)
        while True:
            lease = self._try_claim()
            if lease is not None:
                return lease
            if deadline is not None and time.monotonic() >= deadline:
                return None
            time.sleep(self.POLL_INTERVAL_SECONDS)

    def ack(self, lease: Lease) -> bool:
        try:
            (self._leased_dir / lease.lease_id).unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise QueueUnavailableError(f"ack failed for job {lease.job.job_id}: {exc}") from exc
        return True

    def nack(self, lease: Lease, delay_seconds: float = 0.0) -> bool:
        visible_at = self._clock() + timedelta(seconds=max(delay_seconds, 0.0))
        try:
            os.replace(self._leased_dir / lease.lease_id, self._ready_dir / self._file_name(visible_at))
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise QueueUnavailableError(f"nack failed for job {lease.job.job_id}: {exc}") from exc
        return True

    def dead_letter(self, lease: Lease) -> bool:
        """Move a leased job file to `dead/`, where it stays for an operator."""

        try:
            os.replace(self._leased_dir / lease.lease_id, self._dead_dir / lease.lease_id)
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise QueueUnavailableError(f"dead-letter failed for job {lease.job.job_id}: {exc}") from exc
        return True

    def dead_letters(self) -> list[NotificationJob]:
        try:
            return [NotificationJob.from_wire(path.read_text(encoding="utf-8")) for path in sorted(self._dead_dir.glob("*.json"))]
        except OSError as exc:
            raise QueueUnavailableError(f"dead-letter listing failed: {exc}") from exc

    def pending_count(self) -> int:
        try:
            return sum(1 for _ in self._ready_dir.glob("*.json")) + sum(1 for _ in self._leased_dir.glob("*.json"))
        except OSError as exc:
            raise QueueUnavailableError(f"queue listing failed: {exc}") from exc

    def _try_claim(self) -> Lease | None:
        with self._lock:
            now = self._clock()
            now_ms = self._epoch_ms(now)
            try:
                self._reclaim_expired(now)
                for path in sorted(self._ready_dir.glob("*.json")):
                    if self._visible_ms(path) > now_ms:
                        break
                    lease_name = self._file_name(now + self._visibility_timeout)
                    leased_path = self._leased_dir / lease_name
                    try:
                        os.replace(path, leased_path)
                    except FileNotFoundError:
                        continue
                    raw = leased_path.read_text(encoding="utf-8")
                    try:
                        job = NotificationJob.from_wire(raw)
                    except ValidationError as exc:
                        leased_path.rename(leased_path.with_suffix(".invalid"))
                        raise QueueUnavailableError(f"corrupt job file {path.name}: {exc}") from exc
                    return Lease(lease_id=lease_name, job=job)
            except OSError as exc:
                raise QueueUnavailableError(f"dequeue failed: {exc}") from exc
        return None

    def _reclaim_expired(self, now: datetime) -> None:
        now_ms = self._epoch_ms(now)
        for path in sorted(self._leased_dir.glob("*.json")):
            if self._visible_ms(path) > now_ms:
                break
            try:
                os.replace(path, self._ready_dir / self._file_name(now))
            except FileNotFoundError:
                continue

    def _file_name(self, visible_at: datetime) -> str:
        return f"{self._epoch_ms(visible_at):015d}-{uuid4().hex}.json"

    @staticmethod
    def _epoch_ms(value: datetime) -> int:
        return int(value.timestamp() * 1000)

    @staticmethod
    def _visible_ms(path: Path) -> int:
        return int(path.name.split("-", 1)[0])


def build_queue(settings: Settings, *, clock: Clock = utc_now) -> DispatchQueue:
    """Create the queue driver named in settings."""

    if settings.queue_driver == "filesystem":
        return FilesystemDispatchQueue(
            Path(settings.queue_path) / settings.queue_name,
            visibility_timeout_seconds=settings.visibility_timeout_seconds,
            clock=clock,
        )
    return MemoryDispatchQueue(visibility_timeout_seconds=settings.visibility_timeout_seconds, clock=clock)
