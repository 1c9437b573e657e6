"""
Conversation data model: citations, messages, turn requests and UI snapshots.
All models are frozen; a message never changes after it enters the transcript.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Citation(BaseModel):
    """Reference to a retrieved source fragment backing part of an answer."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    source_id: str = Field(..., alias="file_id")
    display_name: str = Field("", alias="filename")


class Usage(BaseModel):
    model_config = ConfigDict(frozen=True)

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    role: Role
    text: str
    timestamp: datetime = Field(default_factory=_utcnow)
    citations: tuple[Citation, ...] = ()
    continuation_token: str | None = None
    usage: Usage | None = None


class TurnRequest(BaseModel):
    """Outbound request that opens one streamed turn against a corpus."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    user_text: str = Field(..., min_length=1, alias="userText")
    corpus_handle: str = Field(..., min_length=1, alias="corpusHandle")
    continuation_token: str | None = Field(default=None, alias="continuationToken")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class RegisteredDocument(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    corpus_handle: str = Field(..., alias="corpusHandle")
    file_id: str = Field(..., alias="fileId")
    file_name: str = Field(..., alias="fileName")
    page_count: int = Field(0, alias="pageCount")


class SessionSnapshot(BaseModel):
    """Read model handed to the presentation layer after every state change."""

    model_config = ConfigDict(frozen=True)

    corpus_handle: str | None = None
    transcript: tuple[Message, ...] = ()
    live_answer_text: str | None = None
    live_status: str | None = None
    is_turn_in_flight: bool = False
    last_error: str | None = None
    # Partial text of the last failed turn; never part of the transcript.
    incomplete_answer_text: str | None = None
