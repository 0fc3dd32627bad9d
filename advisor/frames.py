"""
Classification of single event-stream lines.

A completion stream is a sequence of lines such as::

    : keep-alive
    data: {"choices":[{"delta":{"content":"Hel"}}]}
    data: [DONE]

Each complete line maps to one :class:`StreamFrame`. A ``data:`` line whose
JSON does not parse is reported as ``INCOMPLETE`` so the decoder can hold it
and retry once more bytes have arrived.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import FramingAnomaly

COMMENT_MARKER = ":"
DATA_PREFIX = "data: "
TERMINATOR_SENTINEL = "[DONE]"


class FrameKind(str, Enum):
    COMMENT = "comment"
    DELTA = "delta"
    TERMINATOR = "terminator"
    MALFORMED = "malformed"
    INCOMPLETE = "incomplete"


@dataclass(frozen=True)
class StreamFrame:
    kind: FrameKind
    text: str = ""
    raw: str = ""


def extract_delta_text(event: Any) -> str:
    """Return ``choices[0].delta.content`` or an empty string when the path is absent."""
    if not isinstance(event, dict):
        return ""
    choices = event.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first = choices[0]
    if not isinstance(first, dict):
        return ""
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return ""
    content = delta.get("content")
    return content if isinstance(content, str) else ""


def parse_delta_payload(payload: str, *, strict: bool = True) -> str:
    """Parse one ``data:`` payload; raises :class:`FramingAnomaly` if it is not valid JSON."""
    try:
        event = json.loads(payload, strict=strict)
    except ValueError as exc:
        raise FramingAnomaly(f"unparseable data payload: {exc.msg}") from exc
    return extract_delta_text(event)


def data_payload(line: str) -> str:
    return line[len(DATA_PREFIX):].strip()


def classify_line(line: str) -> StreamFrame:
    if line.endswith("\r"):
        line = line[:-1]
    if line.startswith(COMMENT_MARKER) or line.strip() == "":
        return StreamFrame(FrameKind.COMMENT, raw=line)
    if not line.startswith(DATA_PREFIX):
        return StreamFrame(FrameKind.MALFORMED, raw=line)
    payload = data_payload(line)
    if payload == TERMINATOR_SENTINEL:
        return StreamFrame(FrameKind.TERMINATOR, raw=line)
    try:
        text = parse_delta_payload(payload)
    except FramingAnomaly:
        return StreamFrame(FrameKind.INCOMPLETE, raw=line)
    return StreamFrame(FrameKind.DELTA, text=text, raw=line)
