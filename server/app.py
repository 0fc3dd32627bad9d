from __future__ import annotations

import asyncio
import json
import uuid
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set, Tuple

import httpx
from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from starlette.background import BackgroundTask

from advisor import config
from advisor.client import CompletionClient
from advisor.config import EngineSettings
from advisor.handoff import HandoffContext, HandoffReason, handoff_offer_for
from advisor.leads import HandoffRequest, initiate_handoff
from advisor.persistence import default_store
from advisor.prompts import build_contextual_prompt
from advisor.session import ChatSession, SessionContext, SessionState
from advisor.transcript import TranscriptEvent, TranscriptEventKind
from telemetry.logging_utils import get_logger
from telemetry.metrics import fetch_metrics, summarize_metrics

logger = get_logger(__name__)

RELAY_ERRORS = {
    429: "Rate limit exceeded. Please wait a moment and try again.",
    402: "AI service temporarily unavailable. Please try again later.",
}
RELAY_FALLBACK_ERROR = "Failed to get AI response"

ClientFactory = Callable[[EngineSettings], CompletionClient]


class ChatbotPayload(BaseModel):
    messages: List[Dict[str, Any]]
    propertyContext: Optional[Dict[str, Any]] = None
    userPreferences: Optional[Dict[str, Any]] = None
    analysisMode: Optional[str] = None


class CreateSessionPayload(BaseModel):
    user_id: Optional[str] = None
    property: Optional[Dict[str, Any]] = None
    user_preferences: Optional[Dict[str, Any]] = None
    analysis_mode: Optional[str] = None
    greeting: Optional[str] = None


class StreamPayload(BaseModel):
    message: str


class HandoffPayload(BaseModel):
    name: str
    email: str
    phone: str
    preferred_time: str
    preferred_channel: str = "phone"
    message: Optional[str] = None
    trigger: Optional[str] = None
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    property_id: Optional[str] = None
    property_title: Optional[str] = None
    property_location: Optional[str] = None
    property_type: Optional[str] = None
    confidence_score: Optional[float] = None
    conversation_history: List[Dict[str, str]] = []


def _sse(kind: str, data: Any) -> str:
    return f"event:{kind}\ndata:{json.dumps(data)}\n\n"


def _parse_reason(value: Optional[str]) -> HandoffReason:
    try:
        return HandoffReason(value) if value else HandoffReason.USER_REQUESTED
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown handoff trigger: {value}")


def _public_session(session_id: str, session: ChatSession) -> Dict[str, Any]:
    return {
        "session_id": session_id,
        "conversation_id": session.conversation_id,
        "state": session.state.value,
        "property": session.context.subject,
        "analysis_mode": session.context.analysis_mode,
        "messages": session.transcript.snapshot(),
    }


def create_app(
    *,
    store: Any = None,
    engine_settings: Optional[EngineSettings] = None,
    client_factory: Optional[ClientFactory] = None,
    upstream_transport: Optional[httpx.AsyncBaseTransport] = None,
    gateway_url: Optional[str] = None,
    gateway_key: Optional[str] = None,
    model: Optional[str] = None,
    max_sessions: Optional[int] = None,
) -> FastAPI:
    """Build the relay and session API.

    ``client_factory`` and ``upstream_transport`` let tests replace the two
    outbound HTTP hops: engine -> relay and relay -> completion endpoint.
    Sessions share one engine client. Once ``max_sessions`` are open, the
    least recently used idle session is closed to make room.
    """
    store = store if store is not None else default_store()
    settings = engine_settings or EngineSettings.from_env()
    make_client: ClientFactory = client_factory or (lambda s: CompletionClient(s))
    gateway_url = gateway_url or config.AI_GATEWAY_URL
    gateway_key = config.AI_GATEWAY_API_KEY if gateway_key is None else gateway_key
    model = model or config.AI_MODEL
    max_sessions = max_sessions or config.MAX_SESSIONS

    sessions: "OrderedDict[str, ChatSession]" = OrderedDict()
    in_flight: Set[str] = set()
    upstream = httpx.AsyncClient(
        transport=upstream_transport,
        timeout=httpx.Timeout(settings.connect_timeout, read=None),
    )
    engine_client = make_client(settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        for session in list(sessions.values()):
            await session.aclose()
        sessions.clear()
        await engine_client.aclose()
        await upstream.aclose()

    app = FastAPI(lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.store = store
    app.state.sessions = sessions

    def _get_session(session_id: str) -> ChatSession:
        session = sessions.get(session_id)
        if session is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found.")
        sessions.move_to_end(session_id)
        return session

    def _is_busy(session_id: str) -> bool:
        return session_id in in_flight or sessions[session_id].state is not SessionState.IDLE

    async def _close_session(session_id: str, reason: str) -> None:
        session = sessions.pop(session_id)
        await session.aclose()
        logger.info("session_closed", extra={"session_id": session_id, "reason": reason})

    async def _make_room() -> None:
        while len(sessions) >= max_sessions:
            idle = next((sid for sid in sessions if not _is_busy(sid)), None)
            if idle is None:
                raise HTTPException(
                    status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Too many conversations in progress."
                )
            await _close_session(idle, "evicted")

    @app.post("/api/chatbot")
    async def chatbot(payload: ChatbotPayload):
        if not gateway_key:
            logger.error("relay_key_missing")
            return JSONResponse({"error": "AI gateway key is not configured"}, status_code=500)

        prompt = build_contextual_prompt(payload.propertyContext, payload.analysisMode, payload.userPreferences)
        body = {
            "model": model,
            "messages": [{"role": "system", "content": prompt}, *payload.messages],
            "stream": True,
        }
        logger.info(
            "relay_request",
            extra={"has_property_context": bool(payload.propertyContext), "analysis_mode": payload.analysisMode},
        )
        request = upstream.build_request(
            "POST",
            gateway_url,
            json=body,
            headers={"Authorization": f"Bearer {gateway_key}", "Content-Type": "application/json"},
        )
        try:
            response = await upstream.send(request, stream=True)
        except httpx.TransportError as exc:
            logger.error("relay_upstream_unreachable", extra={"error_type": type(exc).__name__})
            return JSONResponse({"error": str(exc) or "Unknown error"}, status_code=500)

        if not response.is_success:
            await response.aread()
            await response.aclose()
            logger.warning("relay_upstream_error", extra={"status_code": response.status_code})
            if response.status_code in RELAY_ERRORS:
                return JSONResponse({"error": RELAY_ERRORS[response.status_code]}, status_code=response.status_code)
            return JSONResponse({"error": RELAY_FALLBACK_ERROR}, status_code=500)

        return StreamingResponse(
            response.aiter_bytes(),
            media_type="text/event-stream",
            background=BackgroundTask(response.aclose),
        )

    @app.post("/api/chat/conversations")
    async def create_conversation(payload: CreateSessionPayload):
        context = SessionContext(
            user_id=payload.user_id,
            subject=payload.property,
            user_preferences=payload.user_preferences,
            analysis_mode=payload.analysis_mode,
            greeting=payload.greeting,
        )
        await _make_room()
        session = ChatSession(context, client=engine_client, store=store, settings=settings)
        session_id = uuid.uuid4().hex
        sessions[session_id] = session
        logger.info("session_created", extra={"session_id": session_id, "has_property": bool(payload.property)})
        return {"session_id": session_id, "conversation": _public_session(session_id, session)}

    @app.get("/api/chat/conversations/{session_id}")
    def get_conversation(session_id: str):
        return {"conversation": _public_session(session_id, _get_session(session_id))}

    @app.delete("/api/chat/conversations/{session_id}")
    async def delete_conversation(session_id: str):
        _get_session(session_id)
        if _is_busy(session_id):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A reply is still streaming.")
        await _close_session(session_id, "deleted")
        return {"deleted": True, "session_id": session_id}

    @app.post("/api/chat/conversations/{session_id}/stream")
    async def chat_stream(session_id: str, payload: StreamPayload):
        session = _get_session(session_id)
        text = (payload.message or "").strip()
        if not text:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Message must not be empty.")
        if _is_busy(session_id):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A reply is still streaming.")
        in_flight.add(session_id)

        queue: "asyncio.Queue[Tuple[str, Any]]" = asyncio.Queue()

        def on_event(event: TranscriptEvent) -> None:
            if event.kind is TranscriptEventKind.DELTA:
                queue.put_nowait(("token", event.fragment))
            elif event.kind is TranscriptEventKind.HANDOFF_OFFER:
                offer = handoff_offer_for(event.message.handoff_trigger)
                queue.put_nowait(("handoff", {"message_id": event.message.id, **offer}))

        async def run_turn() -> None:
            unsubscribe = session.transcript.subscribe(on_event)
            try:
                result = await session.send(text)
                kind = "final" if result.ok else "error"
                data: Dict[str, Any] = {"result": result.to_dict(), "messages": session.transcript.snapshot()}
                if not result.ok:
                    data["error"] = result.reply
                queue.put_nowait((kind, data))
            except Exception as exc:
                logger.exception("stream_turn_crashed", extra={"session_id": session_id})
                queue.put_nowait(("error", {"error": str(exc)}))
            finally:
                unsubscribe()
                in_flight.discard(session_id)

        task = asyncio.create_task(run_turn())

        async def generate():
            yield _sse("start", {"session_id": session_id})
            while True:
                kind, data = await queue.get()
                yield _sse(kind, data)
                if kind in ("final", "error"):
                    break
            await task

        return StreamingResponse(generate(), media_type="text/event-stream")

    @app.post("/api/handoff")
    async def handoff(payload: HandoffPayload):
        reason = _parse_reason(payload.trigger)
        try:
            request = HandoffRequest(
                name=payload.name,
                email=payload.email,
                phone=payload.phone,
                preferred_time=payload.preferred_time,
                preferred_channel=payload.preferred_channel,
                message=payload.message,
            )
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

        if payload.session_id:
            outcome = await _get_session(payload.session_id).request_handoff(request, reason)
        else:
            context = HandoffContext(
                conversation_history=payload.conversation_history,
                property_id=payload.property_id,
                property_title=payload.property_title,
                property_location=payload.property_location,
                confidence_score=payload.confidence_score,
            )
            outcome = await asyncio.to_thread(
                initiate_handoff,
                store,
                user_id=payload.user_id,
                request=request,
                context=context,
                reason=reason,
                property_type=payload.property_type,
            )
        code = status.HTTP_200_OK if outcome.success else status.HTTP_400_BAD_REQUEST
        return JSONResponse(outcome.to_dict(), status_code=code)

    @app.get("/api/metrics")
    def metrics(limit: int = 500):
        return summarize_metrics(fetch_metrics(limit))

    @app.get("/api/health")
    def health():
        try:
            ok = bool(store.ping())
        except Exception:
            logger.warning("store_ping_failed", exc_info=True)
            ok = False
        return {"ok": ok, "sessions": len(sessions)}

    return app


app = create_app()
