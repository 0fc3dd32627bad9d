from __future__ import annotations

import hashlib
import re
from typing import Any, Dict

# Basic detectors for high-risk PII patterns.
EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
# Phone-like numbers: optional country code and separators, at least 9 digits overall.
PHONE_RE = re.compile(r"\+?\d[\d\s().-]{8,}\d")
# National ID shapes (SSN-like 3-2-4, PAN-like 5 letters/4 digits/1 letter).
GOV_ID_RE = re.compile(r"\b(?:\d{3}-\d{2}-\d{4}|[A-Z]{5}\d{4}[A-Z])\b")

MAX_LOGGED_TEXT = 500

# Keys whose values are user or model text and never logged verbatim.
SENSITIVE_FIELDS = {
    "content",
    "delta",
    "fragment",
    "reply",
    "text",
    "messages",
    "transcript",
    "history",
    "conversation_history",
    "ai_summary",
    "notes",
    "raw_line",
    "pending_line",
}

# Keys holding contact details; hashed so the same person stays correlatable.
CONTACT_FIELDS = {"email", "phone", "name"}


def _hash_token(text: str) -> str:
    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()[:12]
    return f"[HASH:{digest}]"


def scrub_text(text: str) -> str:
    """Redact or hash obvious PII tokens from free text."""
    if not text:
        return text

    def _replace(match: re.Match, label: str) -> str:
        return f"[{label}_{_hash_token(match.group(0))}]"

    scrubbed = EMAIL_RE.sub(lambda m: _replace(m, "EMAIL"), text)
    scrubbed = GOV_ID_RE.sub(lambda m: _replace(m, "ID"), scrubbed)
    scrubbed = PHONE_RE.sub(lambda m: _replace(m, "PHONE"), scrubbed)
    return scrubbed


def summarize_text(value: Any) -> Dict[str, Any]:
    """Describe a piece of chat text by size only."""
    if isinstance(value, str):
        return {"redacted": True, "chars": len(value)}
    length = len(value) if hasattr(value, "__len__") else None
    return {"redacted": True, "items": length}


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    if lowered in SENSITIVE_FIELDS:
        return True
    return "transcript" in lowered or lowered.endswith("_messages") or lowered.endswith("_content")


def _scrub_collection(value: Any) -> Any:
    if isinstance(value, dict):
        return sanitize_log_payload(value)
    if isinstance(value, list):
        # Lists of chat turns are summarised, never expanded.
        if any(isinstance(item, dict) and "content" in item for item in value):
            return summarize_text(value)
        return [scrub_value(item) for item in value]
    if isinstance(value, tuple):
        return tuple(scrub_value(item) for item in value)
    return value


def scrub_value(value: Any) -> Any:
    """Scrub a generic value for PII before logging."""
    if isinstance(value, str):
        cleaned = scrub_text(value)
        if len(cleaned) > MAX_LOGGED_TEXT:
            return _hash_token(cleaned)
        return cleaned
    if isinstance(value, (dict, list, tuple)):
        return _scrub_collection(value)
    return value


def sanitize_log_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Strip or hash PII-heavy fields from a log payload."""
    if not isinstance(payload, dict):
        return {}

    cleaned: Dict[str, Any] = {}
    for key, value in payload.items():
        name = str(key)
        if value is None:
            cleaned[key] = value
        elif _is_sensitive_key(name):
            cleaned[key] = summarize_text(value)
        elif name.lower() in CONTACT_FIELDS and isinstance(value, str):
            cleaned[key] = _hash_token(value.strip().lower())
        else:
            cleaned[key] = scrub_value(value)
    return cleaned
