"""Event payload builders for terminal notification outcomes."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from .store import DeliveryAttemptRecord


def build_notification_delivery_status_event(
    *,
    request_id: str,
    status: str,
    recipient: str,
    attempts: list[DeliveryAttemptRecord],
    primary_channel: str,
    updated_at: datetime,
    produced_by: str,
    error: str | None = None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    """Build `notification.delivery.status` event envelope."""

    channels_tried: list[str] = []
    for attempt in attempts:
        if attempt.channel not in channels_tried:
            channels_tried.append(attempt.channel)

    retries_used = sum(1 for attempt in attempts if attempt.attempt > 1)
    channel = attempts[-1].channel if attempts else primary_channel

    data: dict[str, Any] = {
        "request_id": request_id,
        "status": status,
        "channel": channel,
        "recipient": recipient,
        "attempts": len(attempts),
        "retries_used": retries_used,
        "fallback_used": len(channels_tried) > 1,
        "channels_tried": channels_tried,
        "updated_at": updated_at.isoformat(),
    }
    if error:
        data["error"] = error

    event: dict[str, Any] = {
        "event_id": str(uuid4()),
        "event_type": "notification.delivery.status",
        "event_version": "v1",
        "occurred_at": updated_at.isoformat(),
        "produced_by": produced_by,
        "data": data,
    }
    if correlation_id:
        event["correlation_id"] = correlation_id

    return event
