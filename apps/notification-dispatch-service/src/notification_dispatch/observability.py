"""Structured logging and in-memory metrics for notification dispatch."""

from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from threading import Lock
from typing import Any


OUTCOMES = ("SUCCESS", "TRANSIENT_FAILURE", "PERMANENT_FAILURE")


def configure_logging(level: str) -> None:
    """Configure service logging format once."""

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
    )


def log_event(logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """Emit one structured JSON log line."""

    payload = {
        "timestamp": datetime.now(tz=timezone.utc).isoformat(),
        "event": event,
        **fields,
    }
    logger.log(level, json.dumps(payload, default=str, separators=(",", ":")))


class DispatchMetrics:
    """Thread-safe in-memory metrics for dispatch runtime."""

    def __init__(self, prefix: str = "notification_dispatch") -> None:
        self._prefix = prefix
        self._lock = Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self.submissions_total = 0
            self.duplicate_submissions_total = 0
            self.rejected_submissions_total = 0
            self.attempts_total = {outcome: 0 for outcome in OUTCOMES}
            self.retries_total = 0
            self.failovers_total = 0
            self.delivered_total = 0
            self.exhausted_total = 0
            self.cancelled_total = 0
            self.misconfigured_total = 0
            self.skipped_jobs_total = 0
            self.sweeper_requeued_total = 0
            self.infrastructure_failures_total = 0
            self.send_latency_ms_sum = 0.0
            self.send_latency_ms_count = 0

    def record_submission(self) -> None:
        with self._lock:
            self.submissions_total += 1

    def record_duplicate_submission(self) -> None:
        with self._lock:
            self.duplicate_submissions_total += 1

    def record_rejected_submission(self) -> None:
        with self._lock:
            self.rejected_submissions_total += 1

    def record_attempt(self, outcome: str, latency_ms: float) -> None:
        with self._lock:
            self.attempts_total[outcome] = self.attempts_total.get(outcome, 0) + 1
            self.send_latency_ms_sum += max(latency_ms, 0.0)
            self.send_latency_ms_count += 1

    def record_retry(self) -> None:
        with self._lock:
            self.retries_total += 1

    def record_failover(self) -> None:
        with self._lock:
            self.failovers_total += 1

    def record_delivered(self) -> None:
        with self._lock:
            self.delivered_total += 1

    def record_exhausted(self) -> None:
        with self._lock:
            self.exhausted_total += 1

    def record_cancelled(self) -> None:
        with self._lock:
            self.cancelled_total += 1

    def record_misconfigured(self) -> None:
        with self._lock:
            self.misconfigured_total += 1

    def record_skipped_job(self) -> None:
        with self._lock:
            self.skipped_jobs_total += 1

    def record_sweeper_requeue(self, count: int = 1) -> None:
        with self._lock:
            self.sweeper_requeued_total += count

    def record_infrastructure_failure(self) -> None:
        with self._lock:
            self.infrastructure_failures_total += 1

    def render_prometheus(self) -> str:
        with self._lock:
            counters: list[tuple[str, str, str]] = [
                ("submissions_total", "Notification requests accepted.", str(self.submissions_total)),
                ("duplicate_submissions_total", "Submissions collapsed by idempotency key.", str(self.duplicate_submissions_total)),
                ("rejected_submissions_total", "Submissions rejected at intake.", str(self.rejected_submissions_total)),
                ("retries_total", "Same-channel retry jobs scheduled.", str(self.retries_total)),
                ("failovers_total", "Next-channel failover jobs scheduled.", str(self.failovers_total)),
                ("delivered_total", "Requests delivered on some channel.", str(self.delivered_total)),
                ("exhausted_total", "Requests that exhausted every channel.", str(self.exhausted_total)),
                ("cancelled_total", "Requests cancelled before sending.", str(self.cancelled_total)),
                ("misconfigured_total", "Jobs naming an unregistered channel.", str(self.misconfigured_total)),
                ("skipped_jobs_total", "Jobs acked without sending.", str(self.skipped_jobs_total)),
                ("sweeper_requeued_total", "Jobs re-created by the retry sweeper.", str(self.sweeper_requeued_total)),
                ("infrastructure_failures_total", "Worker iterations failed on queue or store errors.", str(self.infrastructure_failures_total)),
                ("send_latency_ms_sum", "Sum of channel send latency in milliseconds.", f"{self.send_latency_ms_sum:.3f}"),
                ("send_latency_ms_count", "Number of send latency observations.", str(self.send_latency_ms_count)),
            ]
            attempts = dict(self.attempts_total)

        lines: list[str] = []
        for name, help_text, value in counters:
            metric = f"{self._prefix}_{name}"
            lines.extend(
                [
                    f"# HELP {metric} {help_text}",
                    f"# TYPE {metric} counter",
                    f"{metric} {value}",
                ]
            )

        metric = f"{self._prefix}_attempts_total"
        lines.extend([f"# HELP {metric} Channel send attempts by outcome.", f"# TYPE {metric} counter"])
        for outcome in OUTCOMES:
            lines.append(f'{metric}{{outcome="{outcome}"}} {attempts.get(outcome, 0)}')
        return "\n".join(lines) + "\n"
