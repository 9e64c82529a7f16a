"""Channel adapter contract and the adapters shipped with the service."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
import socket
from threading import Lock
from typing import Any, Protocol
from urllib import error as url_error
from urllib import request as url_request

from .observability import log_event
from .schemas import AttemptOutcome


logger = logging.getLogger("notification_dispatch.adapters")

TRANSIENT_HTTP_STATUSES = frozenset({408, 425, 429})


@dataclass(frozen=True)
class Outcome:
    """Classified result of one `send` call."""

    kind: AttemptOutcome
    detail: str | None = None

    @classmethod
    def success(cls, detail: str | None = None) -> Outcome:
        return cls(kind="SUCCESS", detail=detail)

    @classmethod
    def transient(cls, detail: str) -> Outcome:
        return cls(kind="TRANSIENT_FAILURE", detail=detail)

    @classmethod
    def permanent(cls, detail: str) -> Outcome:
        return cls(kind="PERMANENT_FAILURE", detail=detail)

    @property
    def succeeded(self) -> bool:
        return self.kind == "SUCCESS"


class ChannelAdapter(Protocol):
    """Transport for one channel kind.

    Implementations classify their own failures and return an `Outcome`.
    An exception escaping `send` is treated as a transient failure.
    """

    def send(self, target: str, payload: dict[str, Any], timeout: float) -> Outcome: ...


class LoggingChannelAdapter:
    """Adapter that records the delivery in the service log and succeeds."""

    def __init__(self, channel: str) -> None:
        self.channel = channel

    def send(self, target: str, payload: dict[str, Any], timeout: float) -> Outcome:
        del timeout
        log_event(
            logger,
            "notification_channel_logged",
            channel=self.channel,
            recipient=target,
            payload_keys=sorted(payload),
        )
        return Outcome.success()


class WebhookChannelAdapter:
    """POST the payload as JSON to a chat/webhook endpoint."""

    def __init__(self, url: str, *, headers: dict[str, str] | None = None) -> None:
        self._url = url
        self._headers = {
            "content-type": "application/json",
            "accept": "application/json",
            **(headers or {}),
        }

    def send(self, target: str, payload: dict[str, Any], timeout: float) -> Outcome:
        body = {"recipient": target, "payload": payload}
        request = url_request.Request(
            url=self._url,
            data=json.dumps(body, default=str).encode("utf-8"),
            method="POST",
            headers=self._headers,
        )

        try:
            with url_request.urlopen(request, timeout=max(timeout, 0.1)) as response:
                response.read()
        except url_error.HTTPError as exc:
            details = exc.read().decode("utf-8", errors="ignore")
            message = f"webhook HTTP {exc.code}: {details[:180]}"
            if exc.code >= 500 or exc.code in TRANSIENT_HTTP_STATUSES:
                return Outcome.transient(message)
            return Outcome.permanent(message)
        except url_error.URLError as exc:
            return Outcome.transient(f"webhook unavailable: {exc.reason}")
        except (TimeoutError, socket.timeout):
            return Outcome.transient(f"webhook timeout after {max(timeout, 0.1):.1f}s")
        except OSError as exc:
            return Outcome.transient(f"webhook network error: {exc}")

        return Outcome.success()


@dataclass(frozen=True)
class InAppMessage:
    """Message delivered to a recipient's in-app inbox."""

    recipient: str
    payload: dict[str, Any]
    delivered_at: datetime


class InAppChannelAdapter:
    """In-memory per-recipient inbox for in-app/real-time notifications."""

    def __init__(self, *, max_inbox_size: int = 500) -> None:
        self._lock = Lock()
        self._max_inbox_size = max_inbox_size
        self._inboxes: dict[str, list[InAppMessage]] = {}

    def send(self, target: str, payload: dict[str, Any], timeout: float) -> Outcome:
        del timeout
        if not target.strip():
            return Outcome.permanent("in-app recipient is blank")

        message = InAppMessage(recipient=target, payload=dict(payload), delivered_at=datetime.now(tz=timezone.utc))
        with self._lock:
            inbox = self._inboxes.setdefault(target, [])
            inbox.append(message)
            if len(inbox) > self._max_inbox_size:
                del inbox[: len(inbox) - self._max_inbox_size]
        return Outcome.success()

    def inbox(self, recipient: str) -> list[InAppMessage]:
        with self._lock:
            return list(self._inboxes.get(recipient, []))


def default_adapters(channels: tuple[str, ...], *, webhook_url: str) -> dict[str, ChannelAdapter]:
    """Build the adapter map used when none is injected."""

    adapters: dict[str, ChannelAdapter] = {}
    for channel in channels:
        if channel == "webhook":
            adapters[channel] = WebhookChannelAdapter(webhook_url)
        elif channel == "in_app":
            adapters[channel] = InAppChannelAdapter()
        else:
            adapters[channel] = LoggingChannelAdapter(channel)
    return adapters
