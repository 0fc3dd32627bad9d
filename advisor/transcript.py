from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from telemetry.logging_utils import get_logger

from .handoff import HandoffReason

logger = get_logger(__name__)


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class TranscriptEventKind(str, Enum):
    GREETING = "greeting"
    USER = "user"
    ASSISTANT_STARTED = "assistant_started"
    DELTA = "delta"
    REPLACED = "replaced"
    FINALIZED = "finalized"
    HANDOFF_OFFER = "handoff_offer"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


@dataclass
class Message:
    id: str
    role: Role
    content: str = ""
    created_at: datetime = field(default_factory=_now)
    handoff_trigger: Optional[HandoffReason] = None
    finalized: bool = False
    is_greeting: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "handoff_trigger": self.handoff_trigger.value if self.handoff_trigger else None,
            "finalized": self.finalized,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class TranscriptEvent:
    kind: TranscriptEventKind
    message: Message
    fragment: str = ""


TranscriptListener = Callable[[TranscriptEvent], None]


class MessageAssembler:
    """
    Owns the live transcript of one conversation.

    Only the assistant message opened by :meth:`begin_assistant_turn` is
    mutable, and only until :meth:`finalize`. Listeners receive a copy of the
    message after every change, so they never see a half-applied edit.
    """

    def __init__(self, listener: Optional[TranscriptListener] = None) -> None:
        self.messages: List[Message] = []
        self._index: Dict[str, Message] = {}
        self._in_flight: Optional[str] = None
        self._listeners: List[TranscriptListener] = [listener] if listener else []

    @property
    def in_flight_id(self) -> Optional[str]:
        return self._in_flight

    def subscribe(self, listener: TranscriptListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def get(self, message_id: str) -> Message:
        try:
            return self._index[message_id]
        except KeyError:
            raise KeyError(f"Unknown message id: {message_id}") from None

    def add_greeting(self, text: str) -> Message:
        message = Message(id=_new_id("welcome"), role=Role.ASSISTANT, content=text, finalized=True, is_greeting=True)
        self._push(message, TranscriptEventKind.GREETING)
        return message

    def append_user(self, text: str) -> Message:
        message = Message(id=_new_id("user"), role=Role.USER, content=text, finalized=True)
        self._push(message, TranscriptEventKind.USER)
        return message

    def begin_assistant_turn(self) -> str:
        if self._in_flight is not None:
            raise RuntimeError(f"Assistant message {self._in_flight} is still streaming")
        message = Message(id=_new_id("assistant"), role=Role.ASSISTANT)
        self._in_flight = message.id
        self._push(message, TranscriptEventKind.ASSISTANT_STARTED)
        return message.id

    def apply_delta(self, message_id: str, fragment: str) -> Message:
        message = self._mutable(message_id)
        if not fragment:
            return message
        message.content = message.content + fragment
        self._notify(TranscriptEventKind.DELTA, message, fragment)
        return message

    def replace_content(self, message_id: str, text: str) -> Message:
        message = self._mutable(message_id)
        message.content = text
        self._notify(TranscriptEventKind.REPLACED, message)
        return message

    def fail(self, message_id: str, text: str, cause: str) -> Message:
        """Show ``text`` in place of the reply and close the message."""
        message = self._mutable(message_id)
        message.metadata["error"] = cause
        self.replace_content(message_id, text)
        return self.finalize(message_id)

    def finalize(self, message_id: str) -> Message:
        message = self._mutable(message_id)
        message.finalized = True
        self._in_flight = None
        self._notify(TranscriptEventKind.FINALIZED, message)
        return message

    def append_handoff_offer(self, reason: HandoffReason) -> Message:
        message = Message(
            id=_new_id("handoff-cta"),
            role=Role.ASSISTANT,
            handoff_trigger=reason,
            finalized=True,
        )
        self._push(message, TranscriptEventKind.HANDOFF_OFFER)
        return message

    def history(self) -> List[Dict[str, str]]:
        """Role/content pairs sent upstream: no greeting, offers, failed turns or anything still streaming."""
        return [
            {"role": m.role.value, "content": m.content}
            for m in self.messages
            if m.finalized and not m.is_greeting and m.handoff_trigger is None and not m.metadata.get("error")
        ]

    def snapshot(self) -> List[Dict[str, Any]]:
        return [m.to_dict() for m in self.messages]

    def _mutable(self, message_id: str) -> Message:
        message = self.get(message_id)
        if message.finalized:
            raise RuntimeError(f"Message {message_id} is finalized")
        return message

    def _push(self, message: Message, kind: TranscriptEventKind) -> None:
        self.messages.append(message)
        self._index[message.id] = message
        self._notify(kind, message)

    def _notify(self, kind: TranscriptEventKind, message: Message, fragment: str = "") -> None:
        if not self._listeners:
            return
        event = TranscriptEvent(kind=kind, message=replace(message, metadata=dict(message.metadata)), fragment=fragment)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("transcript_listener_failed", extra={"event_kind": kind.value})
