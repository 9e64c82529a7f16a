"""FastAPI app for notification dispatch service."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI

from .observability import configure_logging, log_event
from .routes import router
from .runtime import DispatchRuntime, build_runtime

logger = logging.getLogger("notification_dispatch")


def create_app(runtime: DispatchRuntime | None = None) -> FastAPI:
    """Build the HTTP app around an explicitly constructed runtime."""

    runtime = runtime or build_runtime()
    settings = runtime.settings
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper_task: asyncio.Task | None = None
        if settings.workers_autostart:
            runtime.workers.start()
        if settings.sweeper_enabled:
            sweeper_task = asyncio.create_task(runtime.sweeper.run_forever())
        log_event(logger, "notification_dispatch_started", queue_driver=settings.queue_driver)
        try:
            yield
        finally:
            if sweeper_task is not None:
                sweeper_task.cancel()
                try:
                    await sweeper_task
                except asyncio.CancelledError:
                    pass
            drained = await asyncio.to_thread(runtime.workers.stop, drain=True, timeout=10.0)
            runtime.dispatcher.close()
            log_event(logger, "notification_dispatch_stopped", drained=drained)

    app = FastAPI(title=settings.service_name, version=settings.service_version, lifespan=lifespan)
    app.state.runtime = runtime
    app.include_router(router)
    return app
