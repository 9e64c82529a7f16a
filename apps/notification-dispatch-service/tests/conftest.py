"""Shared fixtures for notification dispatch tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys
from threading import Lock
import time
from typing import Any, Callable

import pytest

ROOT = Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT / "src"))

from notification_dispatch.adapters import Outcome  # noqa: E402
from notification_dispatch.config import Settings  # noqa: E402
from notification_dispatch.engine import DispatchResult  # noqa: E402
from notification_dispatch.runtime import DispatchRuntime, build_runtime  # noqa: E402


START = datetime(2026, 2, 14, 4, 0, tzinfo=timezone.utc)
CHANNELS = ("email", "sms", "push", "webhook", "in_app")


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class ScriptedAdapter:
    """Returns queued outcomes in order, then `default` forever."""

    def __init__(
        self,
        *outcomes: Outcome,
        default: Outcome | None = None,
        delay_seconds: float = 0.0,
        raises: Exception | None = None,
    ) -> None:
        self.outcomes = list(outcomes)
        self.default = default or Outcome.success()
        self.delay_seconds = delay_seconds
        self.raises = raises
        self._lock = Lock()
        self.calls: list[tuple[str, dict[str, Any], float]] = []

    def send(self, target: str, payload: dict[str, Any], timeout: float) -> Outcome:
        with self._lock:
            self.calls.append((target, dict(payload), timeout))
            outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        if self.raises is not None:
            raise self.raises
        return outcome


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "enabled_channels_csv": ",".join(CHANNELS),
        "channel_overrides": {},
        "default_max_attempts": 3,
        "default_timeout_seconds": 2.0,
        "default_backoff_base_seconds": 1.0,
        "default_backoff_multiplier": 2.0,
        "default_backoff_cap_seconds": 60.0,
        "queue_driver": "memory",
        "worker_count": 2,
        "worker_poll_interval_seconds": 0.05,
        "workers_autostart": False,
        "sweeper_enabled": False,
        "sweeper_staleness_seconds": 120.0,
        "infra_retry_delay_seconds": 0.0,
    }
    values.update(overrides)
    return Settings(**values)


RuntimeFactory = Callable[..., DispatchRuntime]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def adapters() -> dict[str, ScriptedAdapter]:
    return {channel: ScriptedAdapter() for channel in CHANNELS}


@pytest.fixture
def runtime_factory(clock: FakeClock, adapters: dict[str, ScriptedAdapter]):
    built: list[DispatchRuntime] = []

    def factory(**settings_overrides: Any) -> DispatchRuntime:
        runtime = build_runtime(make_settings(**settings_overrides), adapters=adapters, clock=clock)
        built.append(runtime)
        return runtime

    yield factory
    for runtime in built:
        runtime.close()


@pytest.fixture
def runtime(runtime_factory: RuntimeFactory) -> DispatchRuntime:
    return runtime_factory()


def run_until_idle(runtime: DispatchRuntime, clock: FakeClock, *, max_steps: int = 100) -> list[DispatchResult]:
    """Handle every job, jumping the clock past backoff delays when nothing is due."""

    results: list[DispatchResult] = []
    for _ in range(max_steps):
        lease = runtime.queue.dequeue(timeout=0)
        if lease is None:
            if runtime.queue.pending_count() == 0:
                return results
            clock.advance(600)
            continue
        results.append(runtime.dispatcher.handle(lease))
    raise AssertionError("queue did not drain")
