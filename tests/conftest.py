import asyncio
import json
from pathlib import Path
from typing import Callable, Iterable, List, Optional

import httpx
import pytest

from advisor.client import CompletionClient
from advisor.config import EngineSettings
from storage.memory_store import InMemoryStore
from telemetry import metrics

FIXTURES = Path(__file__).resolve().parent / "fixtures"


def load_fixture_bytes(name: str) -> bytes:
    return (FIXTURES / name).read_bytes()


def sse_body(*fragments: str, done: bool = True) -> bytes:
    lines = [f"data: {json.dumps({'choices': [{'delta': {'content': f}}]})}\n\n" for f in fragments]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


class ChunkStream(httpx.AsyncByteStream):
    """Response body delivered chunk by chunk, optionally pausing or breaking off."""

    def __init__(
        self,
        chunks: Iterable[bytes],
        *,
        fail_at: Optional[int] = None,
        gate: Optional[asyncio.Event] = None,
    ) -> None:
        self.chunks = list(chunks)
        self.fail_at = fail_at
        self.gate = gate
        self.served = 0

    async def __aiter__(self):
        for index, chunk in enumerate(self.chunks):
            if self.fail_at is not None and index == self.fail_at:
                raise httpx.ReadError("connection reset by peer")
            if self.gate is not None and index == 1:
                await self.gate.wait()
            self.served += 1
            yield chunk

    async def aclose(self) -> None:
        return None


@pytest.fixture(autouse=True)
def isolated_metrics(tmp_path, monkeypatch):
    monkeypatch.setattr(metrics, "CSV_PATH", tmp_path / "stream_turns.csv")
    monkeypatch.setattr(metrics, "_supabase_client", None)
    monkeypatch.delenv("SUPABASE_URL", raising=False)
    monkeypatch.delenv("SUPABASE_SERVICE_ROLE_KEY", raising=False)
    return tmp_path / "stream_turns.csv"


@pytest.fixture()
def settings() -> EngineSettings:
    return EngineSettings(
        chat_url="http://advisor.test/api/chatbot",
        chat_key="test-key",
        connect_timeout=1.0,
        max_buffered_chars=1024 * 1024,
        low_confidence_threshold=0.65,
        handoff_offer_delay=0.0,
        model_label="test-model",
    )


@pytest.fixture()
def store() -> InMemoryStore:
    return InMemoryStore(
        agents=[
            {"id": "agent-mumbai", "areas_served": ["Mumbai", "Thane"], "specialization": ["apartment"], "verified": True},
            {"id": "agent-pune", "areas_served": ["Pune"], "specialization": ["villa"], "verified": True},
            {"id": "agent-unverified", "areas_served": ["Bandra"], "specialization": [], "verified": False},
        ]
    )


@pytest.fixture()
def make_client(settings) -> Callable[[Callable[[httpx.Request], httpx.Response]], CompletionClient]:
    def _make(handler: Callable[[httpx.Request], httpx.Response]) -> CompletionClient:
        return CompletionClient(settings, transport=httpx.MockTransport(handler))

    return _make


@pytest.fixture()
def scripted_replies() -> Callable[..., Callable[[httpx.Request], httpx.Response]]:
    """Handler that answers successive requests with successive SSE bodies and records the requests."""

    def _build(*bodies: bytes, requests: Optional[List[httpx.Request]] = None):
        queue = list(bodies)

        def handler(request: httpx.Request) -> httpx.Response:
            if requests is not None:
                requests.append(request)
            body = queue.pop(0) if queue else sse_body()
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body)

        return handler

    return _build
