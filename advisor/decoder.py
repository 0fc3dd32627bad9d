"""
Incremental decoding of a chunked completion stream into frames.

The transport hands over byte chunks that may split a line anywhere,
including inside a multi-byte character. :class:`FrameDecoder` keeps the
unterminated tail between calls and only classifies complete lines.

A ``data:`` line that looks complete but holds unparseable JSON is kept in
``pending_line`` instead of being dropped: the newline that ended it may have
been an artifact of upstream framing. Every later line is first tried as a
continuation of the pending one; a line that is a well-formed frame by itself
replaces it.
"""

from __future__ import annotations

import codecs
from typing import AsyncIterable, AsyncIterator, Iterable, List, Optional

from telemetry.logging_utils import get_logger

from .config import STREAM_MAX_BUFFERED_CHARS
from .errors import FramingAnomaly
from .frames import FrameKind, StreamFrame, classify_line, data_payload, parse_delta_payload

logger = get_logger(__name__)


class FrameDecoder:
    def __init__(self, *, encoding: str = "utf-8", max_buffered_chars: int = STREAM_MAX_BUFFERED_CHARS) -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self._pending_parts: List[str] = []
        self._skip_to_newline = False
        self.max_buffered_chars = max_buffered_chars
        self.terminated = False
        self.closed = False
        self.anomalies = 0

    @property
    def pending_line(self) -> Optional[str]:
        if not self._pending_parts:
            return None
        return "\n".join(self._pending_parts)

    def feed(self, chunk: bytes) -> List[StreamFrame]:
        """Decode one chunk and return the frames completed by it.

        Stops at the terminator: lines after it, in this chunk or later ones,
        are never classified.
        """
        if self.terminated or self.closed:
            return []
        self._buffer += self._decoder.decode(chunk)
        if self._skip_to_newline and not self._drop_through_newline():
            return []

        frames: List[StreamFrame] = []
        while True:
            newline_index = self._buffer.find("\n")
            if newline_index == -1:
                break
            line = self._buffer[:newline_index]
            self._buffer = self._buffer[newline_index + 1:]
            frame = self._on_line(line)
            if frame is None:
                continue
            frames.append(frame)
            if frame.kind is FrameKind.TERMINATOR:
                self.terminated = True
                self._buffer = ""
                self._pending_parts = []
                return frames

        if len(self._buffer) > self.max_buffered_chars:
            self._anomaly("line_too_long", len(self._buffer))
            self._buffer = ""
            self._skip_to_newline = True
        return frames

    def close(self) -> None:
        """End of stream: discard whatever never formed a complete frame."""
        if self.closed:
            return
        self.closed = True
        leftover = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        if self.terminated:
            return
        if leftover.strip():
            logger.info("stream_closed_with_partial_line", extra={"chars": len(leftover)})
        if self._pending_parts:
            self._anomaly("pending_line_discarded", sum(len(p) for p in self._pending_parts))
            self._pending_parts = []

    def _drop_through_newline(self) -> bool:
        newline_index = self._buffer.find("\n")
        if newline_index == -1:
            self._buffer = ""
            return False
        self._buffer = self._buffer[newline_index + 1:]
        self._skip_to_newline = False
        return True

    def _on_line(self, line: str) -> Optional[StreamFrame]:
        if line.endswith("\r"):
            line = line[:-1]
        if self._pending_parts:
            return self._continue_pending(line)
        frame = classify_line(line)
        if frame.kind is FrameKind.INCOMPLETE:
            self._pending_parts = [line]
            return None
        if frame.kind is FrameKind.MALFORMED:
            self._anomaly("unrecognised_line", len(line))
        return frame

    def _continue_pending(self, line: str) -> Optional[StreamFrame]:
        parts = self._pending_parts + [line]
        for joined, strict in (("".join(parts), True), ("\n".join(parts), False)):
            try:
                text = parse_delta_payload(data_payload(joined), strict=strict)
            except FramingAnomaly:
                continue
            self._pending_parts = []
            return StreamFrame(FrameKind.DELTA, text=text, raw=joined)

        frame = classify_line(line)
        if frame.kind in (FrameKind.DELTA, FrameKind.TERMINATOR):
            self._anomaly("pending_line_superseded", sum(len(p) for p in self._pending_parts))
            self._pending_parts = []
            return frame
        if frame.kind is FrameKind.INCOMPLETE:
            self._anomaly("pending_line_superseded", sum(len(p) for p in self._pending_parts))
            self._pending_parts = [line]
            return None
        if frame.kind is FrameKind.COMMENT and line.strip():
            return frame

        self._pending_parts = parts
        pending_chars = sum(len(p) for p in parts)
        if pending_chars > self.max_buffered_chars:
            self._anomaly("pending_line_too_long", pending_chars)
            self._pending_parts = []
        return None

    def _anomaly(self, reason: str, chars: int) -> None:
        self.anomalies += 1
        logger.warning("stream_framing_anomaly", extra={"reason": reason, "chars": chars})


def decode_chunks(chunks: Iterable[bytes], decoder: Optional[FrameDecoder] = None) -> List[StreamFrame]:
    """Decode a finite chunk sequence; mainly for replaying captured streams."""
    decoder = decoder or FrameDecoder()
    frames: List[StreamFrame] = []
    for chunk in chunks:
        frames.extend(decoder.feed(chunk))
        if decoder.terminated:
            break
    decoder.close()
    return frames


async def iter_frames(
    chunks: AsyncIterable[bytes], decoder: Optional[FrameDecoder] = None
) -> AsyncIterator[StreamFrame]:
    """Yield frames as chunks arrive; returns without reading further once the terminator is seen."""
    decoder = decoder or FrameDecoder()
    try:
        async for chunk in chunks:
            for frame in decoder.feed(chunk):
                yield frame
            if decoder.terminated:
                return
    finally:
        decoder.close()
