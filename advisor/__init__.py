"""
PropertyX advisor engine.

Streams advisor replies from the completion relay into a live transcript,
offers a human handoff when the user asks for one or the answer is unsure,
and records each turn in the conversation store.
"""

from .errors import FailureCause, TransportError, TurnInProgressError, UpstreamStatusError
from .handoff import HandoffReason, detect_handoff_trigger, should_trigger_low_confidence
from .session import ChatSession, SessionContext, SessionState, TurnResult

__all__ = [
    "ChatSession",
    "FailureCause",
    "HandoffReason",
    "SessionContext",
    "SessionState",
    "TransportError",
    "TurnInProgressError",
    "TurnResult",
    "UpstreamStatusError",
    "detect_handoff_trigger",
    "should_trigger_low_confidence",
]
