"""Compatibility entrypoint for notification dispatch service."""

try:
    from .notification_dispatch.main import create_app
except ImportError:  # pragma: no cover
    from notification_dispatch.main import create_app

app = create_app()

__all__ = ["app", "create_app"]
