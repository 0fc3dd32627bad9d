from __future__ import annotations

from enum import Enum
from typing import Optional


class FailureCause(str, Enum):
    TRANSPORT = "transport"
    RATE_LIMITED = "rate_limited"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    GENERIC = "generic"


DEFAULT_MESSAGES = {
    FailureCause.TRANSPORT: "Sorry, I couldn't reach the advisor service. Please check your connection and try again.",
    FailureCause.RATE_LIMITED: "Rate limit exceeded. Please wait and try again.",
    FailureCause.UPSTREAM_UNAVAILABLE: "AI service temporarily unavailable.",
    FailureCause.GENERIC: "Failed to get response",
}

UNAVAILABLE_STATUSES = {402, 502, 503, 504}


class AdvisorError(Exception):
    """Base class for engine errors."""


class TurnInProgressError(AdvisorError):
    """A turn was submitted while another one is still running."""


class TurnFailure(AdvisorError):
    """A failure that ends the turn and is shown in place of the assistant reply."""

    cause = FailureCause.GENERIC

    def __init__(self, message: Optional[str] = None) -> None:
        self.user_message = message or DEFAULT_MESSAGES[self.cause]
        super().__init__(self.user_message)


class TransportError(TurnFailure):
    """Network failure: no connection, no body, or the body read broke off."""

    cause = FailureCause.TRANSPORT


class UpstreamStatusError(TurnFailure):
    """The completion endpoint answered with a non-2xx status."""

    def __init__(self, status_code: int, message: Optional[str] = None) -> None:
        self.status_code = status_code
        self.cause = classify_status(status_code)
        super().__init__(message)


class FramingAnomaly(AdvisorError):
    """A stream line that could not be decoded; always recovered inside the decoder."""


class PersistenceWriteFailure(AdvisorError):
    """A conversation store write failed; logged and never surfaced to the user."""

    def __init__(self, operation: str, original: BaseException) -> None:
        self.operation = operation
        self.original = original
        super().__init__(f"{operation} failed: {original}")


def classify_status(status_code: int) -> FailureCause:
    if status_code == 429:
        return FailureCause.RATE_LIMITED
    if status_code in UNAVAILABLE_STATUSES:
        return FailureCause.UPSTREAM_UNAVAILABLE
    return FailureCause.GENERIC
