"""Delivery report store: request bookkeeping and append-only attempt rows."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
import json
import os
from pathlib import Path
from threading import Lock
from typing import Any, Protocol
from uuid import uuid4

from .config import Settings
from .errors import StoreUnavailableError, UnknownRequestError
from .schemas import TERMINAL_STATUSES, AttemptOutcome, RequestStatus


@dataclass(frozen=True)
class DeliveryAttemptRecord:
    """One channel adapter invocation. Never mutated once appended."""

    request_id: str
    job_id: str
    recipient: str
    channel: str
    attempt: int
    started_at: datetime
    finished_at: datetime
    outcome: AttemptOutcome
    error_detail: str | None
    latency_ms: float


@dataclass
class RequestRecord:
    """Mutable per-request state owned by the store."""

    request_id: str
    idempotency_key: str
    recipient: str
    channels: list[str]
    payload: dict[str, Any]
    scheduled_at: datetime | None
    created_at: datetime
    status: RequestStatus = "PENDING"
    current_job_id: str | None = None
    last_enqueued_at: datetime | None = None
    cancel_requested: bool = False
    updated_at: datetime | None = None
    delivery_status_event: dict[str, Any] | None = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class AttemptQuery:
    """Filters for `query`; unset fields match everything."""

    request_id: str | None = None
    recipient: str | None = None
    channel: str | None = None
    status: AttemptOutcome | None = None
    since: datetime | None = None


@dataclass
class _RequestState:
    record: RequestRecord
    attempts: list[DeliveryAttemptRecord] = field(default_factory=list)


class DeliveryReportStore(Protocol):
    """Storage the dispatcher, scheduler and sweeper rely on."""

    def register_request(self, record: RequestRecord) -> tuple[RequestRecord, bool]: ...

    def get_request(self, request_id: str) -> RequestRecord | None: ...

    def list_requests(self, *, status: RequestStatus | None = None) -> list[RequestRecord]: ...

    def mark_enqueued(self, request_id: str, job_id: str, at: datetime) -> None: ...

    def set_status(
        self,
        request_id: str,
        status: RequestStatus,
        at: datetime,
        delivery_status_event: dict[str, Any] | None = None,
    ) -> RequestRecord: ...

    def request_cancel(self, request_id: str, at: datetime) -> bool: ...

    def append(self, record: DeliveryAttemptRecord) -> None: ...

    def attempts_for(self, request_id: str) -> list[DeliveryAttemptRecord]: ...

    def has_success(self, request_id: str) -> bool: ...

    def query(self, query: AttemptQuery) -> list[DeliveryAttemptRecord]: ...


def new_request_id() -> str:
    return f"req_{uuid4().hex[:20]}"


class InMemoryDeliveryReportStore:
    """Thread-safe in-memory delivery report storage.

    Returned request records are copies; mutation goes through the store
    methods so every transition happens under the lock.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._requests: dict[str, _RequestState] = {}
            self._by_idempotency_key: dict[str, str] = {}

    def register_request(self, record: RequestRecord) -> tuple[RequestRecord, bool]:
        """Insert `record` unless its idempotency key is already known.

        Returns the stored record and whether it was newly created.
        """

        with self._lock:
            existing_id = self._by_idempotency_key.get(record.idempotency_key)
            if existing_id is not None:
                return replace(self._requests[existing_id].record), False
            self._commit(_RequestState(record=replace(record)))
            self._by_idempotency_key[record.idempotency_key] = record.request_id
            return replace(record), True

    def get_request(self, request_id: str) -> RequestRecord | None:
        with self._lock:
            state = self._requests.get(request_id)
            return replace(state.record) if state else None

    def list_requests(self, *, status: RequestStatus | None = None) -> list[RequestRecord]:
        with self._lock:
            records = [replace(state.record) for state in self._requests.values()]
        if status:
            records = [record for record in records if record.status == status]
        return sorted(records, key=lambda record: record.created_at)

    def mark_enqueued(self, request_id: str, job_id: str, at: datetime) -> None:
        with self._lock:
            state = self._state(request_id)
            record = replace(state.record, current_job_id=job_id, last_enqueued_at=at, updated_at=at)
            self._commit(_RequestState(record=record, attempts=state.attempts))

    def set_status(
        self,
        request_id: str,
        status: RequestStatus,
        at: datetime,
        delivery_status_event: dict[str, Any] | None = None,
    ) -> RequestRecord:
        with self._lock:
            state = self._state(request_id)
            if state.record.terminal:
                return replace(state.record)
            record = replace(state.record, status=status, updated_at=at)
            if delivery_status_event is not None:
                record.delivery_status_event = delivery_status_event
            self._commit(_RequestState(record=record, attempts=state.attempts))
            return replace(record)

    def request_cancel(self, request_id: str, at: datetime) -> bool:
        with self._lock:
            state = self._state(request_id)
            if state.record.terminal:
                return False
            record = replace(state.record, cancel_requested=True, updated_at=at)
            self._commit(_RequestState(record=record, attempts=state.attempts))
            return True

    def append(self, record: DeliveryAttemptRecord) -> None:
        with self._lock:
            state = self._state(record.request_id)
            self._commit(_RequestState(record=state.record, attempts=[*state.attempts, record]))

    def attempts_for(self, request_id: str) -> list[DeliveryAttemptRecord]:
        with self._lock:
            state = self._requests.get(request_id)
            return list(state.attempts) if state else []

    def has_success(self, request_id: str) -> bool:
        with self._lock:
            state = self._requests.get(request_id)
            if state is None:
                return False
            return any(attempt.outcome == "SUCCESS" for attempt in state.attempts)

    def query(self, query: AttemptQuery) -> list[DeliveryAttemptRecord]:
        with self._lock:
            if query.request_id:
                state = self._requests.get(query.request_id)
                records = list(state.attempts) if state else []
            else:
                records = [attempt for state in self._requests.values() for attempt in state.attempts]

        if query.recipient:
            records = [record for record in records if record.recipient == query.recipient]
        if query.channel:
            records = [record for record in records if record.channel == query.channel]
        if query.status:
            records = [record for record in records if record.outcome == query.status]
        if query.since:
            records = [record for record in records if record.started_at >= query.since]

        return sorted(records, key=lambda record: record.started_at)

    def _commit(self, state: _RequestState) -> None:
        """Persist, then publish, a new request state. Caller holds the lock."""

        self._persist(state)
        self._requests[state.record.request_id] = state

    def _persist(self, state: _RequestState) -> None:
        pass

    def _state(self, request_id: str) -> _RequestState:
        state = self._requests.get(request_id)
        if state is None:
            raise UnknownRequestError(request_id)
        return state


def _parse_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _record_to_dict(record: RequestRecord) -> dict[str, Any]:
    data = asdict(record)
    for key in ("scheduled_at", "created_at", "last_enqueued_at", "updated_at"):
        value = data[key]
        data[key] = value.isoformat() if value is not None else None
    return data


def _attempt_to_dict(attempt: DeliveryAttemptRecord) -> dict[str, Any]:
    data = asdict(attempt)
    data["started_at"] = attempt.started_at.isoformat()
    data["finished_at"] = attempt.finished_at.isoformat()
    return data


def _state_from_dict(data: dict[str, Any]) -> _RequestState:
    fields = dict(data["request"])
    for key in ("scheduled_at", "created_at", "last_enqueued_at", "updated_at"):
        fields[key] = _parse_time(fields.get(key))
    attempts = []
    for raw in data.get("attempts", []):
        attempt = dict(raw)
        attempt["started_at"] = _parse_time(attempt["started_at"])
        attempt["finished_at"] = _parse_time(attempt["finished_at"])
        attempts.append(DeliveryAttemptRecord(**attempt))
    return _RequestState(record=RequestRecord(**fields), attempts=attempts)


class FileDeliveryReportStore(InMemoryDeliveryReportStore):
    """In-memory store mirrored to one JSON document per request.

    Pairs with the filesystem queue so jobs left in the queue by a previous
    process still find their request after a restart. Documents are written
    to a temp file, fsynced and renamed into place.
    """

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)
        self._tmp_dir = self._root / "tmp"
        try:
            self._tmp_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreUnavailableError(f"report directory unusable: {self._root}: {exc}") from exc
        super().__init__()
        self._load()

    @property
    def root(self) -> Path:
        return self._root

    def _load(self) -> None:
        with self._lock:
            for path in sorted(self._root.glob("*.json")):
                try:
                    state = _state_from_dict(json.loads(path.read_text(encoding="utf-8")))
                except (OSError, ValueError, KeyError, TypeError) as exc:
                    raise StoreUnavailableError(f"unreadable report file {path.name}: {exc}") from exc
                self._requests[state.record.request_id] = state
                self._by_idempotency_key[state.record.idempotency_key] = state.record.request_id

    def _persist(self, state: _RequestState) -> None:
        document = {
            "request": _record_to_dict(state.record),
            "attempts": [_attempt_to_dict(attempt) for attempt in state.attempts],
        }
        tmp_path = self._tmp_dir / f"{uuid4().hex}.json"
        try:
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(document, handle, default=str)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self._root / f"{state.record.request_id}.json")
        except OSError as exc:
            raise StoreUnavailableError(f"report write failed for {state.record.request_id}: {exc}") from exc


def build_store(settings: Settings) -> DeliveryReportStore:
    """Create the report store matching the configured queue driver."""

    if settings.queue_driver == "filesystem":
        return FileDeliveryReportStore(Path(settings.queue_path) / settings.reports_dir_name)
    return InMemoryDeliveryReportStore()
