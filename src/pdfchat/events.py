"""
Typed stream events produced by the decoder.

The union below is closed: anything the remote service sends that does not map
onto one of these variants is dropped by the decoder before it reaches a session.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

from .models import Citation, Usage


@dataclass(frozen=True)
class Created:
    turn_id: str


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class CitationAdded:
    citation: Citation


@dataclass(frozen=True)
class StatusUpdate:
    message: str


@dataclass(frozen=True)
class UsageReported:
    usage: Usage


@dataclass(frozen=True)
class Completed:
    full_text: str = ""
    citations: tuple[Citation, ...] = field(default_factory=tuple)
    turn_id: str | None = None
    usage: Usage | None = None


@dataclass(frozen=True)
class ErrorEvent:
    message: str


StreamEvent = Union[Created, TextDelta, CitationAdded, StatusUpdate, UsageReported, Completed, ErrorEvent]

TERMINAL_EVENT_TYPES = (Completed, ErrorEvent)


def is_terminal(event: StreamEvent) -> bool:
    return isinstance(event, TERMINAL_EVENT_TYPES)


@dataclass(frozen=True)
class DecodeWarning:
    """A frame that could not be turned into an event and was skipped."""

    reason: str
    frame: str
