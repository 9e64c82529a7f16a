"""Command line entrypoint: batch dispatch, one-off sweep, or HTTP server."""

from __future__ import annotations

import argparse
import logging
import sys

from pydantic import ValidationError

from .config import get_settings
from .errors import InfrastructureError
from .observability import configure_logging, log_event
from .runtime import build_runtime


EXIT_OK = 0
EXIT_STARTUP_FAILURE = 2

logger = logging.getLogger("notification_dispatch.cli")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="notification-dispatch", description="Notification dispatch engine")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Dispatch queued jobs until the queue drains, then exit")
    run.add_argument("--workers", type=int, default=None, help="Worker threads (defaults to settings)")
    run.add_argument("--drain-timeout", type=float, default=300.0, help="Seconds to wait for the queue to drain")
    run.add_argument("--no-sweep", action="store_true", help="Skip the startup sweeper pass")

    subparsers.add_parser("sweep", help="Run one retry sweeper pass and exit")

    serve = subparsers.add_parser("serve", help="Run the HTTP API with background workers")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8201)

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        settings = get_settings()
        if getattr(args, "workers", None):
            settings = settings.model_copy(update={"worker_count": args.workers})
        configure_logging(settings.log_level)
        runtime = build_runtime(settings)
    except (InfrastructureError, ValidationError, ValueError) as exc:
        logging.basicConfig(level=logging.ERROR, format="%(message)s")
        log_event(logger, "notification_dispatch_startup_failed", level=logging.ERROR, error=str(exc))
        return EXIT_STARTUP_FAILURE

    if args.command == "sweep":
        requeued = runtime.sweeper.sweep()
        log_event(logger, "notification_sweep_completed", requeued=len(requeued))
        runtime.close()
        return EXIT_OK

    if args.command == "serve":
        import uvicorn

        from .main import create_app

        uvicorn.run(create_app(runtime), host=args.host, port=args.port)
        return EXIT_OK

    if runtime.workers.paused:
        log_event(logger, "notification_dispatch_batch_skipped", reason="dispatch disabled", pending_jobs=runtime.queue.pending_count())
        runtime.close()
        return EXIT_OK

    if not args.no_sweep:
        runtime.sweeper.sweep()
    runtime.workers.start()
    try:
        drained = runtime.workers.stop(drain=True, timeout=args.drain_timeout)
    except KeyboardInterrupt:
        drained = runtime.workers.stop(drain=False, timeout=5.0)
    runtime.dispatcher.close()
    log_event(
        logger,
        "notification_dispatch_batch_finished",
        drained=drained,
        pending_jobs=runtime.queue.pending_count(),
    )
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
