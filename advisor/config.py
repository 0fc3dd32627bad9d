"""Environment-driven settings for the advisor engine, relay and stores."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


# Engine -> relay (the endpoint the session streams from).
CHAT_URL = os.getenv("ADVISOR_CHAT_URL", "http://localhost:8000/api/chatbot")
CHAT_KEY = os.getenv("ADVISOR_CHAT_KEY", "")
CONNECT_TIMEOUT_SECONDS = _env_float("ADVISOR_CONNECT_TIMEOUT", 10.0)

# Relay -> OpenAI-compatible completion endpoint.
AI_GATEWAY_URL = os.getenv("AI_GATEWAY_URL", "https://api.openai.com/v1/chat/completions")
AI_GATEWAY_API_KEY = os.getenv("AI_GATEWAY_API_KEY") or os.getenv("OPENAI_API_KEY", "")
AI_MODEL = os.getenv("AI_MODEL", "gpt-4o-mini")

# Decoder bound for an unterminated line or a pending (unparsed) data line.
STREAM_MAX_BUFFERED_CHARS = _env_int("STREAM_MAX_BUFFERED_CHARS", 1024 * 1024)

LOW_CONFIDENCE_THRESHOLD = _env_float("LOW_CONFIDENCE_THRESHOLD", 0.65)
HANDOFF_OFFER_DELAY_SECONDS = _env_float("HANDOFF_OFFER_DELAY_SECONDS", 0.5)

# Server: live sessions kept before the least recently used idle one is closed.
MAX_SESSIONS = _env_int("ADVISOR_MAX_SESSIONS", 500)

STORE_MAX_RETRIES = _env_int("STORE_MAX_RETRIES", 3)
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY")


@dataclass(frozen=True)
class EngineSettings:
    chat_url: str = CHAT_URL
    chat_key: str = CHAT_KEY
    connect_timeout: float = CONNECT_TIMEOUT_SECONDS
    max_buffered_chars: int = STREAM_MAX_BUFFERED_CHARS
    low_confidence_threshold: float = LOW_CONFIDENCE_THRESHOLD
    handoff_offer_delay: float = HANDOFF_OFFER_DELAY_SECONDS
    model_label: Optional[str] = AI_MODEL

    @classmethod
    def from_env(cls) -> "EngineSettings":
        return cls(
            chat_url=os.getenv("ADVISOR_CHAT_URL", CHAT_URL),
            chat_key=os.getenv("ADVISOR_CHAT_KEY", CHAT_KEY),
            connect_timeout=_env_float("ADVISOR_CONNECT_TIMEOUT", CONNECT_TIMEOUT_SECONDS),
            max_buffered_chars=_env_int("STREAM_MAX_BUFFERED_CHARS", STREAM_MAX_BUFFERED_CHARS),
            low_confidence_threshold=_env_float("LOW_CONFIDENCE_THRESHOLD", LOW_CONFIDENCE_THRESHOLD),
            handoff_offer_delay=_env_float("HANDOFF_OFFER_DELAY_SECONDS", HANDOFF_OFFER_DELAY_SECONDS),
            model_label=os.getenv("AI_MODEL", AI_MODEL),
        )
