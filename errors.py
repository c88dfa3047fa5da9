"""Queue error taxonomy.

Each error carries the HTTP status the API answers with and a short
machine-readable code, so the FastAPI handler in ``main`` can stay generic.
"""

from __future__ import annotations


class QueueError(Exception):
    status_code = 400
    code = "queue_error"


class UnknownService(QueueError):
    status_code = 404
    code = "unknown_service"


class UnknownTicket(QueueError):
    status_code = 404
    code = "unknown_ticket"


class UnknownCounter(QueueError):
    status_code = 404
    code = "unknown_counter"


class StaleTicket(QueueError):
    """The ticket changed status between read and conditional update."""

    status_code = 409
    code = "stale_ticket"


class InvalidTransition(QueueError):
    status_code = 409
    code = "invalid_transition"


class AllocationExhausted(QueueError):
    status_code = 503
    code = "allocation_exhausted"


class QueueClosed(QueueError):
    status_code = 403
    code = "queue_closed"


class StoreUnavailable(QueueError):
    status_code = 503
    code = "store_unavailable"
