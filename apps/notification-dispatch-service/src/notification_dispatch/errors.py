"""Error types shared by the dispatch runtime."""

from __future__ import annotations


class DispatchError(Exception):
    """Base error for the notification dispatch service."""


class InfrastructureError(DispatchError):
    """Raised when a queue or store collaborator cannot serve a call.

    Workers nack the current job and keep running; these are never turned
    into channel outcomes.
    """


class QueueUnavailableError(InfrastructureError):
    """Raised when the dispatch queue cannot be reached or written."""


class StoreUnavailableError(InfrastructureError):
    """Raised when the delivery report store rejects a read or write."""


class UnknownRequestError(DispatchError, KeyError):
    """Raised when a request id has no record in the store."""

    def __init__(self, request_id: str) -> None:
        super().__init__(request_id)
        self.request_id = request_id

    def __str__(self) -> str:
        return f"unknown request: {self.request_id}"
