"""
Server-sent event codec for the chat stream.

Each logical event travels as a `data: <json>` line followed by a blank line.
The decoder buffers across arbitrary chunk boundaries and turns every complete
frame into one typed event. Malformed frames are reported through the warning
side channel and skipped; they never abort the stream.
"""
from __future__ import annotations

import codecs
import json
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any, Callable

from .events import (
    CitationAdded,
    Completed,
    Created,
    DecodeWarning,
    ErrorEvent,
    StatusUpdate,
    StreamEvent,
    TextDelta,
    UsageReported,
    is_terminal,
)
from .models import Citation, Usage
from .observability import get_logger

logger = get_logger(__name__)

# Wire discriminators carried in the `type` field of every frame.
EVENT_CREATED = "created"
EVENT_DELTA = "delta"
EVENT_CITATION = "citation"
EVENT_STATUS = "status"
EVENT_USAGE = "usage"
EVENT_COMPLETE = "complete"
EVENT_ERROR = "error"

DONE_SENTINEL = "[DONE]"
_FRAME_EXCERPT_CHARS = 200

WarningHandler = Callable[[DecodeWarning], None]


class _FrameError(ValueError):
    """Raised by payload builders when a frame lacks a required field."""


def encode_frame(payload: dict[str, Any]) -> str:
    """Serializes one event payload as a complete SSE frame."""
    return f"data: {json.dumps(payload, ensure_ascii=False, default=str)}\n\n"


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------

def _first(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None:
            return value
    return None


def _require_str(payload: dict[str, Any], *keys: str, allow_empty: bool = False) -> str:
    value = _first(payload, *keys)
    if not isinstance(value, str) or (not allow_empty and not value):
        raise _FrameError(f"missing field '{keys[0]}'")
    return value


def _coerce_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return 0


def _parse_usage(raw: Any) -> Usage | None:
    if not isinstance(raw, dict):
        return None
    input_tokens = _coerce_int(_first(raw, "input_tokens", "tokensIn", "prompt_tokens"))
    output_tokens = _coerce_int(_first(raw, "output_tokens", "tokensOut", "completion_tokens"))
    total_tokens = _coerce_int(raw.get("total_tokens")) or (input_tokens + output_tokens)
    return Usage(input_tokens=input_tokens, output_tokens=output_tokens, total_tokens=total_tokens)


def _parse_citation(raw: Any) -> Citation:
    if not isinstance(raw, dict):
        raise _FrameError("citation is not an object")
    source_id = _first(raw, "file_id", "sourceId", "source_id")
    if not isinstance(source_id, str) or not source_id:
        raise _FrameError("missing field 'file_id'")
    display_name = _first(raw, "filename", "displayName", "display_name")
    return Citation(source_id=source_id, display_name=str(display_name or source_id))


def _build_created(payload: dict[str, Any]) -> StreamEvent:
    return Created(turn_id=_require_str(payload, "responseId", "turnId", "id"))


def _build_delta(payload: dict[str, Any]) -> StreamEvent:
    return TextDelta(text=_require_str(payload, "content", "delta", "text", allow_empty=True))


def _build_citation(payload: dict[str, Any]) -> StreamEvent:
    raw = payload.get("citation")
    return CitationAdded(citation=_parse_citation(raw if isinstance(raw, dict) else payload))


def _build_status(payload: dict[str, Any]) -> StreamEvent:
    return StatusUpdate(message=_require_str(payload, "message"))


def _build_usage(payload: dict[str, Any]) -> StreamEvent:
    usage = _parse_usage(payload.get("usage", payload))
    if usage is None:
        raise _FrameError("usage is not an object")
    return UsageReported(usage=usage)


def _build_complete(payload: dict[str, Any]) -> StreamEvent:
    raw_citations = payload.get("citations") or []
    if not isinstance(raw_citations, list):
        raise _FrameError("citations is not a list")
    turn_id = _first(payload, "responseId", "turnId", "id")
    full_text = _first(payload, "response", "fullText", "text")
    return Completed(
        full_text=full_text if isinstance(full_text, str) else "",
        citations=tuple(_parse_citation(item) for item in raw_citations),
        turn_id=turn_id if isinstance(turn_id, str) and turn_id else None,
        usage=_parse_usage(payload.get("usage")),
    )


def _build_error(payload: dict[str, Any]) -> StreamEvent:
    raw = _first(payload, "error", "message")
    if isinstance(raw, dict):
        raw = _first(raw, "message", "code")
    message = str(raw).strip() if raw is not None else ""
    return ErrorEvent(message=message or "The service reported an error.")


_BUILDERS: dict[str, Callable[[dict[str, Any]], StreamEvent]] = {
    EVENT_CREATED: _build_created,
    EVENT_DELTA: _build_delta,
    EVENT_CITATION: _build_citation,
    EVENT_STATUS: _build_status,
    EVENT_USAGE: _build_usage,
    EVENT_COMPLETE: _build_complete,
    EVENT_ERROR: _build_error,
}


# ---------------------------------------------------------------------------
# Decoder
# ---------------------------------------------------------------------------

class StreamDecoder:
    """Incremental SSE frame decoder; one instance per stream."""

    def __init__(self, on_warning: WarningHandler | None = None):
        self._text_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._pending_cr = False
        self._on_warning = on_warning
        self.warnings: list[DecodeWarning] = []

    def feed(self, chunk: bytes | str) -> list[StreamEvent]:
        """Buffers a raw chunk and returns the events completed by it."""
        text = chunk if isinstance(chunk, str) else self._text_decoder.decode(chunk)
        return self._consume_text(text)

    def flush(self) -> list[StreamEvent]:
        """Drains buffered bytes at end of stream, parsing an unterminated last frame."""
        events = self._consume_text(self._text_decoder.decode(b"", final=True))
        if self._pending_cr:
            self._pending_cr = False
            self._buffer += "\n"
        remainder, self._buffer = self._buffer, ""
        if remainder.strip():
            event = self._parse_frame(remainder)
            if event is not None:
                events.append(event)
        return events

    async def decode(self, chunks: AsyncIterable[bytes | str]) -> AsyncIterator[StreamEvent]:
        """Yields typed events from a chunk stream, stopping after the first terminal event."""
        async for chunk in chunks:
            for event in self.feed(chunk):
                yield event
                if is_terminal(event):
                    return
        for event in self.flush():
            yield event
            if is_terminal(event):
                return

    def _consume_text(self, text: str) -> list[StreamEvent]:
        if not text:
            return []
        if self._pending_cr:
            text = "\r" + text
            self._pending_cr = False
        # A trailing CR may be the first half of a CRLF split across reads.
        if text.endswith("\r"):
            text = text[:-1]
            self._pending_cr = True
        self._buffer += text.replace("\r\n", "\n").replace("\r", "\n")

        events: list[StreamEvent] = []
        while True:
            boundary = self._buffer.find("\n\n")
            if boundary < 0:
                break
            frame = self._buffer[:boundary]
            self._buffer = self._buffer[boundary + 2:]
            event = self._parse_frame(frame)
            if event is not None:
                events.append(event)
        return events

    def _parse_frame(self, frame: str) -> StreamEvent | None:
        data_lines: list[str] = []
        for line in frame.split("\n"):
            if not line or line.startswith(":"):
                continue
            field_name, _, value = line.partition(":")
            if field_name != "data":
                continue
            data_lines.append(value[1:] if value.startswith(" ") else value)

        if not data_lines:
            return None
        data = "\n".join(data_lines)
        if data.strip() == DONE_SENTINEL:
            return None

        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            return self._skip("invalid_json", frame)
        if not isinstance(payload, dict):
            return self._skip("payload_not_object", frame)

        event_type = payload.get("type")
        if not isinstance(event_type, str) or not event_type:
            return self._skip("missing_event_type", frame)
        builder = _BUILDERS.get(event_type)
        if builder is None:
            return self._skip(f"unrecognized_event_type:{event_type}", frame)
        try:
            return builder(payload)
        except _FrameError as exc:
            return self._skip(f"{event_type}:{exc}", frame)

    def _skip(self, reason: str, frame: str) -> None:
        warning = DecodeWarning(reason=reason, frame=frame[:_FRAME_EXCERPT_CHARS])
        self.warnings.append(warning)
        logger.warning("stream_frame_skipped", reason=reason, frame=warning.frame)
        if self._on_warning is not None:
            self._on_warning(warning)
        return None
