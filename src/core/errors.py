"""Error taxonomy shared by the core and its adapters.

Every error carries a short human-readable message that callers can show as
is. Only upstream failures are worth retrying; everything else is final for
the attempted action.
"""

from __future__ import annotations

from typing import Optional


class HelpmateError(Exception):
    """Base class for all lifecycle errors."""

    retryable = False
    default_message = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)
        self.user_message = message or self.default_message


class AlreadyClaimed(HelpmateError):
    """Lost a race on a guarded transition (usually Accept)."""

    default_message = "This request was just taken by someone else."


class Forbidden(HelpmateError):
    """The actor is not entitled to the operation."""

    default_message = "You are not allowed to do that."


class NotFound(HelpmateError):
    """The referenced request or match does not exist or is no longer available."""

    default_message = "Request not found or no longer available."


class UpstreamUnavailable(HelpmateError):
    """Store, storage or network failure."""

    retryable = True
    default_message = "Service temporarily unavailable. Please try again."


class ValidationFailed(HelpmateError):
    """Malformed input."""

    default_message = "Some of the details are invalid."


class PartialCommit(HelpmateError):
    """The status flip of an accept landed but the match record could not be stored."""

    default_message = "Your claim was only partly saved. Please contact support."

    def __init__(self, request_id: str, message: Optional[str] = None) -> None:
        super().__init__(message)
        self.request_id = request_id
