"""
Translation of the OpenAI Responses streaming API into chat stream frames.

Only the events a chat client needs are forwarded; everything else is logged
and dropped. The relay always ends a forwarded stream with either a `complete`
or an `error` frame unless the upstream stream itself stops early.
"""
from __future__ import annotations

from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

import openai

from .config import SEARCH_STATUS_MESSAGE
from .observability import get_logger
from .stream_decoder import (
    EVENT_CITATION,
    EVENT_COMPLETE,
    EVENT_CREATED,
    EVENT_DELTA,
    EVENT_ERROR,
    EVENT_STATUS,
    EVENT_USAGE,
    encode_frame,
)

logger = get_logger(__name__)

GENERIC_STREAM_ERROR = "Failed to generate response"
_ANNOTATION_EVENTS = {
    "response.output_text.annotation.added",
    "response.output_text_annotation.added",
}
_LOGGED_ONLY_EVENTS = {
    "response.file_search_call.searching",
    "response.file_search_call.completed",
}


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Reads an attribute from SDK objects and plain dicts alike."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _usage_payload(usage: Any) -> dict[str, int] | None:
    if usage is None:
        return None
    input_tokens = int(_field(usage, "input_tokens", 0) or 0)
    output_tokens = int(_field(usage, "output_tokens", 0) or 0)
    total_tokens = int(_field(usage, "total_tokens", 0) or 0) or (input_tokens + output_tokens)
    return {
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "total_tokens": total_tokens,
    }


class ResponseRelay:
    """Per-request relay state; iterate `frames()` once."""

    def __init__(self):
        self.response_id: str | None = None
        self.text_parts: list[str] = []
        self.citations: list[dict[str, str]] = []
        self.usage: dict[str, int] | None = None
        self.completed = False
        self.failed = False
        self.event_count = 0

    @property
    def text(self) -> str:
        return "".join(self.text_parts)

    async def frames(self, upstream: AsyncIterable[Any]) -> AsyncIterator[str]:
        try:
            async for event in upstream:
                self.event_count += 1
                frame = self._translate(event)
                if frame:
                    yield frame
                if self.completed or self.failed:
                    return
        except openai.OpenAIError as exc:
            logger.error("relay_upstream_error", error=str(exc), error_type=type(exc).__name__)
            self.failed = True
            yield encode_frame({"type": EVENT_ERROR, "error": GENERIC_STREAM_ERROR})
            return
        if not (self.completed or self.failed):
            logger.warning("relay_upstream_ended_early", events=self.event_count, chars=len(self.text))

    def _translate(self, event: Any) -> str | None:
        event_type = str(_field(event, "type", "") or "")

        if event_type == "response.created":
            response = _field(event, "response")
            self.response_id = _field(response, "id") or _field(event, "response_id")
            if not self.response_id:
                return None
            return encode_frame({"type": EVENT_CREATED, "responseId": self.response_id})

        if event_type == "response.output_text.delta":
            delta = _field(event, "delta", "")
            if not delta:
                return None
            self.text_parts.append(str(delta))
            return encode_frame({"type": EVENT_DELTA, "content": str(delta)})

        if event_type in _ANNOTATION_EVENTS:
            annotation = _field(event, "annotation")
            if _field(annotation, "type") != "file_citation":
                return None
            citation = {
                "file_id": str(_field(annotation, "file_id", "") or ""),
                "filename": str(_field(annotation, "filename", "") or ""),
            }
            if not citation["file_id"]:
                return None
            self.citations.append(citation)
            return encode_frame({"type": EVENT_CITATION, **citation})

        if event_type == "response.file_search_call.in_progress":
            logger.info("relay_file_search_started")
            return encode_frame({"type": EVENT_STATUS, "message": SEARCH_STATUS_MESSAGE})

        if event_type in _LOGGED_ONLY_EVENTS:
            logger.info("relay_file_search_progress", event_type=event_type)
            return None

        if event_type == "response.completed":
            response = _field(event, "response")
            self.response_id = _field(response, "id") or self.response_id
            self.usage = _usage_payload(_field(response, "usage"))
            self.completed = True
            frames = []
            if self.usage is not None:
                frames.append(encode_frame({"type": EVENT_USAGE, "usage": self.usage}))
            frames.append(
                encode_frame(
                    {
                        "type": EVENT_COMPLETE,
                        "response": self.text,
                        "citations": self.citations,
                        "responseId": self.response_id,
                        "usage": self.usage,
                    }
                )
            )
            return "".join(frames)

        if event_type in {"response.failed", "response.incomplete"}:
            response = _field(event, "response")
            error = _field(response, "error")
            details = _field(response, "incomplete_details")
            message = _field(error, "message") or _field(details, "reason") or GENERIC_STREAM_ERROR
            self.failed = True
            logger.error("relay_response_failed", event_type=event_type, error=str(message))
            return encode_frame({"type": EVENT_ERROR, "error": str(message)})

        if event_type == "error":
            message = _field(event, "message") or _field(_field(event, "error"), "message") or GENERIC_STREAM_ERROR
            self.failed = True
            logger.error("relay_stream_error", error=str(message))
            return encode_frame({"type": EVENT_ERROR, "error": str(message)})

        return None
