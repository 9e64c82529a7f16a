"""Pydantic schemas for notification dispatch APIs and queue payloads."""

from __future__ import annotations

from datetime import datetime, timezone
import hashlib
import json
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


AttemptOutcome = Literal["SUCCESS", "TRANSIENT_FAILURE", "PERMANENT_FAILURE"]
RequestStatus = Literal["PENDING", "DELIVERED", "EXHAUSTED", "FAILED", "CANCELLED"]
TerminalStatus = Literal["DELIVERED", "EXHAUSTED", "FAILED", "CANCELLED"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"DELIVERED", "EXHAUSTED", "FAILED", "CANCELLED"})


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class NotificationRequest(BaseModel):
    """Notification submitted by the rest of the system."""

    idempotency_key: str | None = Field(default=None, min_length=1, max_length=256)
    recipient: str = Field(min_length=1, max_length=256)
    channels: list[str] = Field(min_length=1, max_length=16)
    payload: dict[str, Any] = Field(default_factory=dict)
    scheduled_at: datetime | None = None

    @field_validator("channels")
    @classmethod
    def _normalize_channels(cls, value: list[str]) -> list[str]:
        normalized = [channel.strip().lower() for channel in value]
        if any(not channel for channel in normalized):
            raise ValueError("channel ids must be non-empty")
        if len(set(normalized)) != len(normalized):
            raise ValueError("channel ids must be unique")
        return normalized

    @field_validator("scheduled_at")
    @classmethod
    def _normalize_scheduled_at(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value) if value is not None else None

    def resolved_idempotency_key(self) -> str:
        """Return the caller key, or a digest of the request content."""

        if self.idempotency_key:
            return self.idempotency_key
        canonical = json.dumps(
            {
                "recipient": self.recipient,
                "channels": self.channels,
                "payload": self.payload,
                "scheduled_at": self.scheduled_at.isoformat() if self.scheduled_at else None,
            },
            sort_keys=True,
            default=str,
            separators=(",", ":"),
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class NotificationJob(BaseModel):
    """Unit of work carried by the dispatch queue."""

    model_config = ConfigDict(frozen=True)

    job_id: str = Field(min_length=1, max_length=64)
    request_id: str = Field(min_length=1, max_length=64)
    channel: str = Field(min_length=1, max_length=64)
    attempt: int = Field(ge=1)
    max_attempts: int = Field(ge=1)
    not_before: datetime
    payload: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, str | int | float | bool | None] | None = None

    @field_validator("not_before")
    @classmethod
    def _normalize_not_before(cls, value: datetime) -> datetime:
        return _as_utc(value)

    def to_wire(self) -> str:
        """Serialize to the JSON queue payload."""

        return self.model_dump_json(exclude_none=True)

    @classmethod
    def from_wire(cls, raw: str | bytes) -> NotificationJob:
        return cls.model_validate_json(raw)


class SubmitResponse(BaseModel):
    """Result of one submission."""

    accepted: bool
    request_id: str | None = None
    reason: str | None = None
    duplicate: bool = False


class CancelResponse(BaseModel):
    request_id: str
    cancelled: bool


class DeliveryAttemptView(BaseModel):
    """One channel adapter invocation, as exposed by the report APIs."""

    request_id: str
    job_id: str
    recipient: str
    channel: str
    attempt: int = Field(ge=1)
    started_at: datetime
    finished_at: datetime
    outcome: AttemptOutcome
    error_detail: str | None = None
    latency_ms: float = Field(ge=0)


class AttemptListResponse(BaseModel):
    """Collection of attempt records."""

    items: list[DeliveryAttemptView]


class NotificationDeliveryStatusData(BaseModel):
    """Payload for `notification.delivery.status` event data."""

    request_id: str = Field(min_length=1)
    status: TerminalStatus
    channel: str = Field(min_length=1)
    recipient: str = Field(min_length=1, max_length=256)
    attempts: int = Field(ge=0)
    retries_used: int = Field(ge=0)
    fallback_used: bool
    channels_tried: list[str]
    updated_at: datetime
    error: str | None = None


class NotificationDeliveryStatusEvent(BaseModel):
    """`notification.delivery.status` event envelope."""

    event_id: UUID
    event_type: Literal["notification.delivery.status"]
    event_version: str = Field(pattern=r"^v[0-9]+$")
    occurred_at: datetime
    produced_by: str = Field(min_length=1)
    correlation_id: str | None = Field(default=None, min_length=1, max_length=256)
    data: NotificationDeliveryStatusData


class DeliveryReportResponse(BaseModel):
    """Aggregated view of every attempt recorded for one request."""

    request_id: str
    idempotency_key: str
    status: RequestStatus
    recipient: str
    channels: list[str]
    delivered_channel: str | None = None
    cancel_requested: bool
    created_at: datetime
    scheduled_at: datetime | None = None
    attempts: list[DeliveryAttemptView]
    delivery_status_event: NotificationDeliveryStatusEvent | None = None


class DispatchStateResponse(BaseModel):
    dispatch_paused: bool


class SweepResponse(BaseModel):
    """Jobs re-created by one sweeper pass."""

    requeued: list[NotificationJob]


class HealthResponse(BaseModel):
    """Health endpoint response."""

    status: Literal["ok"] = "ok"
    service: str
    version: str
    queue_driver: str
    pending_jobs: int = Field(ge=0)
    workers_running: int = Field(ge=0)
    dispatch_paused: bool
    timestamp: datetime
