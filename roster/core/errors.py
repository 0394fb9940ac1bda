# roster/core/errors.py
"""
Typed domain errors for the crewing workflow and notification delivery.

Each error maps to an HTTP status code.  The transport layer catches
``CrewingError`` subtypes and converts them to JSON responses without
embedding business logic in the route handlers.

An unmatched reply is not an error: it is ``ReplyClass.UNKNOWN``.
"""
from __future__ import annotations


class CrewingError(Exception):
    """Base class for all workflow domain errors."""

    status_code: int = 500

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


class ValidationError(CrewingError):
    """Invalid request payload (400)."""

    status_code = 400


class NotFoundError(CrewingError):
    """Referenced position, candidate, attempt or call sheet is missing (404)."""

    status_code = 404


class ConflictError(CrewingError):
    """An active contact attempt already exists for the candidate/position pair (409).

    Callers must not retry blindly.
    """

    status_code = 409


class DeliveryError(CrewingError):
    """A single recipient's send failed (502).

    Captured and counted by the delivery pipeline, never propagated past it.
    """

    status_code = 502

    def __init__(self, detail: str, *, channel: str = "", recipient: str = ""):
        self.channel = channel
        self.recipient = recipient  # masked
        super().__init__(detail)


class NonRetriableError(Exception):
    """A workflow step failed in a way a retry cannot fix.

    The job worker marks the job failed immediately and sends one
    operational alert naming ``entity``.
    """

    def __init__(self, message: str, *, entity: str = ""):
        self.entity = entity
        super().__init__(message)
