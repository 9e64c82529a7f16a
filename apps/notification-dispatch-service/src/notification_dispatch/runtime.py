"""Composition root wiring settings, registry, store, queue and workers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from .adapters import ChannelAdapter, default_adapters
from .config import Settings, get_settings
from .engine import Dispatcher, RequestClaims
from .observability import DispatchMetrics
from .queue import Clock, DispatchQueue, build_queue, utc_now
from .registry import ChannelRegistry, build_channel_registry
from .scheduler import NotificationScheduler
from .store import DeliveryReportStore, build_store
from .sweeper import RetrySweeper
from .workers import WorkerPool


@dataclass(frozen=True)
class DispatchRuntime:
    """Every long-lived collaborator of one dispatch process."""

    settings: Settings
    registry: ChannelRegistry
    store: DeliveryReportStore
    queue: DispatchQueue
    metrics: DispatchMetrics
    dispatcher: Dispatcher
    scheduler: NotificationScheduler
    sweeper: RetrySweeper
    workers: WorkerPool
    claims: RequestClaims

    def close(self) -> None:
        self.workers.stop(drain=False, timeout=0.0)
        self.dispatcher.close()


def build_runtime(
    settings: Settings | None = None,
    *,
    adapters: Mapping[str, ChannelAdapter] | None = None,
    store: DeliveryReportStore | None = None,
    queue: DispatchQueue | None = None,
    clock: Clock = utc_now,
) -> DispatchRuntime:
    """Construct the runtime once at process start.

    Raises `QueueUnavailableError` or `StoreUnavailableError` when the
    configured queue or report directory cannot be opened.
    """

    settings = settings or get_settings()
    if adapters is None:
        adapters = default_adapters(settings.enabled_channels, webhook_url=settings.webhook_url)
    registry = build_channel_registry(settings, adapters)
    store = store if store is not None else build_store(settings)
    queue = queue if queue is not None else build_queue(settings, clock=clock)
    metrics = DispatchMetrics()
    claims = RequestClaims()

    dispatcher = Dispatcher(
        settings=settings,
        registry=registry,
        store=store,
        queue=queue,
        metrics=metrics,
        clock=clock,
        claims=claims,
    )
    scheduler = NotificationScheduler(
        settings=settings,
        registry=registry,
        store=store,
        queue=queue,
        metrics=metrics,
        clock=clock,
        claims=claims,
    )
    sweeper = RetrySweeper(
        settings=settings,
        registry=registry,
        store=store,
        queue=queue,
        metrics=metrics,
        clock=clock,
        claims=claims,
    )
    workers = WorkerPool(settings=settings, queue=queue, dispatcher=dispatcher, metrics=metrics)

    return DispatchRuntime(
        settings=settings,
        registry=registry,
        store=store,
        queue=queue,
        metrics=metrics,
        dispatcher=dispatcher,
        scheduler=scheduler,
        sweeper=sweeper,
        workers=workers,
        claims=claims,
    )
