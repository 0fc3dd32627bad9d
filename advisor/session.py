"""Turn orchestration for one advisor conversation."""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from telemetry.logging_utils import get_logger, turn_context
from telemetry.metrics import StreamTimer, start_timer

from .analysis import extract_property_analysis
from .client import CompletionClient
from .config import EngineSettings
from .decoder import FrameDecoder, iter_frames
from .errors import FailureCause, TurnFailure, TurnInProgressError
from .frames import FrameKind
from .handoff import (
    HandoffContext,
    HandoffReason,
    choose_offer,
    detect_handoff_trigger,
    extract_confidence_score,
    should_trigger_low_confidence,
)
from .leads import HandoffOutcome, HandoffRequest, initiate_handoff
from .persistence import PersistenceGateway
from .transcript import MessageAssembler, Role, TranscriptListener

logger = get_logger(__name__)

STREAM_COMPONENT = "advisor_stream"


class SessionState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    ERRORED = "errored"


@dataclass
class SessionContext:
    """Who is talking and about what; fixed for the life of a session."""

    user_id: Optional[str] = None
    conversation_id: Optional[str] = None
    subject: Optional[Dict[str, Any]] = None
    user_preferences: Optional[Dict[str, Any]] = None
    analysis_mode: Optional[str] = None
    greeting: Optional[str] = None

    @property
    def property_id(self) -> Optional[str]:
        return (self.subject or {}).get("id")

    def snapshot(self) -> Dict[str, Any]:
        return {"property": self.subject, "userPreferences": self.user_preferences}


@dataclass
class TurnResult:
    turn: int
    message_id: str
    reply: str
    handoff: Optional[HandoffReason] = None
    error: Optional[FailureCause] = None
    confidence: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "turn": self.turn,
            "message_id": self.message_id,
            "reply": self.reply,
            "handoff": self.handoff.value if self.handoff else None,
            "error": self.error.value if self.error else None,
            "confidence": self.confidence,
        }


@dataclass
class _TurnStats:
    timer: StreamTimer
    anomalies: int = 0
    stale_deltas: int = 0
    extras: Dict[str, Any] = field(default_factory=dict)


class ChatSession:
    """
    Runs one turn at a time against the completion relay.

    ``send`` moves through SENDING, STREAMING and FINALIZING and always ends
    back in IDLE; a failed request passes through ERRORED on the way. The
    assistant placeholder is added before the request goes out and every
    delta is applied to it as it arrives, so listeners see the reply grow.
    """

    def __init__(
        self,
        context: Optional[SessionContext] = None,
        *,
        client: Optional[CompletionClient] = None,
        store: Any = None,
        persistence: Optional[PersistenceGateway] = None,
        settings: Optional[EngineSettings] = None,
        listener: Optional[TranscriptListener] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.context = context or SessionContext()
        self.settings = settings or EngineSettings.from_env()
        self._owns_client = client is None
        self.client = client or CompletionClient(self.settings)
        self.store = store
        self.persistence = persistence or (PersistenceGateway(store) if store is not None else None)
        self.transcript = MessageAssembler(listener)
        self.state = SessionState.IDLE
        self.transitions: Deque[SessionState] = deque(maxlen=64)
        self.last_confidence: Optional[float] = None
        self._generation = 0
        self._sleep = sleep
        if self.context.greeting:
            self.transcript.add_greeting(self.context.greeting)

    @property
    def conversation_id(self) -> Optional[str]:
        return self.context.conversation_id

    @property
    def generation(self) -> int:
        return self._generation

    async def send(self, text: str) -> TurnResult:
        """Submit one user message and return once the assistant turn is closed."""
        user_input = (text or "").strip()
        if not user_input:
            raise ValueError("Message must not be empty.")
        if self.state is not SessionState.IDLE:
            raise TurnInProgressError(f"A turn is already {self.state.value}")

        self._generation += 1
        generation = self._generation
        self._set_state(SessionState.SENDING)
        with turn_context(conversation_id=self.conversation_id, turn=generation):
            try:
                return await self._run_turn(user_input, generation)
            finally:
                self._set_state(SessionState.IDLE)

    async def _run_turn(self, user_input: str, generation: int) -> TurnResult:
        trigger = detect_handoff_trigger(user_input)
        self.transcript.append_user(user_input)
        await self._ensure_conversation()
        self._persist(Role.USER, user_input)

        history = self.transcript.history()
        message_id = self.transcript.begin_assistant_turn()
        stats = _TurnStats(timer=start_timer(STREAM_COMPONENT, self.settings.model_label, self.conversation_id))
        logger.info("turn_started", extra={"history_len": len(history), "user_trigger": trigger.value if trigger else None})

        try:
            await self._stream_reply(generation, message_id, history, stats)
        except TurnFailure as exc:
            return self._fail_turn(generation, message_id, exc, stats)
        except BaseException:
            if self.transcript.in_flight_id == message_id:
                self.transcript.fail(message_id, TurnFailure().user_message, FailureCause.GENERIC.value)
            stats.timer.done(outcome="aborted")
            raise

        if generation != self._generation:
            logger.warning("stale_turn_finalization_dropped", extra={"stale_turn": generation})
            return TurnResult(turn=generation, message_id=message_id, reply="")
        return await self._finish_turn(generation, message_id, trigger, stats)

    async def _stream_reply(self, generation: int, message_id: str, history: list, stats: _TurnStats) -> None:
        decoder = FrameDecoder(max_buffered_chars=self.settings.max_buffered_chars)
        try:
            async with self.client.open_stream(
                history,
                property_context=self.context.subject,
                user_preferences=self.context.user_preferences,
                analysis_mode=self.context.analysis_mode,
            ) as chunks:
                self._set_state(SessionState.STREAMING)
                async for frame in iter_frames(chunks, decoder):
                    if frame.kind is FrameKind.DELTA and frame.text:
                        self._on_delta(generation, message_id, frame.text, stats)
        finally:
            stats.anomalies = decoder.anomalies

    def _on_delta(self, generation: int, message_id: str, fragment: str, stats: _TurnStats) -> None:
        if generation != self._generation:
            stats.stale_deltas += 1
            return
        stats.timer.record_delta(fragment)
        self.transcript.apply_delta(message_id, fragment)

    async def _finish_turn(
        self, generation: int, message_id: str, trigger: Optional[HandoffReason], stats: _TurnStats
    ) -> TurnResult:
        self._set_state(SessionState.FINALIZING)
        message = self.transcript.finalize(message_id)
        reply = message.content
        self._persist(Role.ASSISTANT, reply, metadata={"turn": generation})
        self._save_analysis(reply)

        confidence = extract_confidence_score(reply)
        if confidence is not None:
            self.last_confidence = confidence
        low = should_trigger_low_confidence(confidence, threshold=self.settings.low_confidence_threshold)
        reason = choose_offer(trigger, low)

        metric = stats.timer.done(outcome="ok")
        logger.info(
            "stream_turn_complete",
            extra={
                "deltas": stats.timer.deltas,
                "chars_out": stats.timer.chars_out,
                "first_delta_ms": metric.get("first_delta_ms"),
                "latency_ms": metric.get("latency_ms"),
                "framing_anomalies": stats.anomalies,
                "stale_deltas": stats.stale_deltas,
                "handoff": reason.value if reason else None,
            },
        )

        if reason is not None:
            if self.settings.handoff_offer_delay > 0:
                await self._sleep(self.settings.handoff_offer_delay)
            self.transcript.append_handoff_offer(reason)
            logger.info("handoff_offered", extra={"reason": reason.value})
        return TurnResult(
            turn=generation, message_id=message_id, reply=reply, handoff=reason, confidence=confidence
        )

    def _fail_turn(self, generation: int, message_id: str, exc: TurnFailure, stats: _TurnStats) -> TurnResult:
        self._set_state(SessionState.ERRORED)
        message = self.transcript.fail(message_id, exc.user_message, exc.cause.value)
        stats.timer.done(outcome=exc.cause.value)
        logger.warning(
            "turn_failed",
            extra={
                "cause": exc.cause.value,
                "status_code": getattr(exc, "status_code", None),
                "deltas": stats.timer.deltas,
            },
        )
        return TurnResult(turn=generation, message_id=message_id, reply=message.content, error=exc.cause)

    async def _ensure_conversation(self) -> None:
        if self.context.conversation_id or not self.context.user_id or self.persistence is None:
            return
        self.context.conversation_id = await self.persistence.create_conversation(
            self.context.user_id, self.context.snapshot()
        )

    def _persist(self, role: Role, content: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        if self.persistence is None or not self.context.conversation_id:
            return
        self.persistence.append_message(self.context.conversation_id, role=role.value, content=content, metadata=metadata)

    def _save_analysis(self, reply: str) -> None:
        if self.persistence is None:
            return
        payload = extract_property_analysis(reply, property_id=self.context.property_id, user_id=self.context.user_id)
        if payload is not None:
            self.persistence.save_property_analysis(payload)
            logger.info("property_analysis_extracted", extra={"property_id": payload["property_id"]})

    def _set_state(self, state: SessionState) -> None:
        self.state = state
        self.transitions.append(state)
        logger.debug("session_state", extra={"state": state.value})

    def handoff_context(self) -> HandoffContext:
        subject = self.context.subject or {}
        return HandoffContext(
            conversation_history=self.transcript.history(),
            property_id=subject.get("id"),
            property_title=subject.get("title"),
            property_location=subject.get("location"),
            confidence_score=self.last_confidence,
        )

    async def request_handoff(
        self, request: HandoffRequest, reason: HandoffReason = HandoffReason.USER_REQUESTED
    ) -> HandoffOutcome:
        """Create a lead for the accepted offer; needs a store."""
        if self.store is None:
            return HandoffOutcome(success=False, error="Handoff is unavailable without a store.")
        subject = self.context.subject or {}
        return await asyncio.to_thread(
            initiate_handoff,
            self.store,
            user_id=self.context.user_id,
            request=request,
            context=self.handoff_context(),
            reason=reason,
            property_type=subject.get("type") or subject.get("property_type"),
        )

    async def flush(self) -> None:
        if self.persistence is not None:
            await self.persistence.flush()

    async def aclose(self) -> None:
        """Flush pending writes; a client handed in by the caller stays open."""
        await self.flush()
        if self._owns_client:
            await self.client.aclose()
