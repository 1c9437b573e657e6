"""Exception taxonomy shared by the conversation core, the client and the relay service."""
from __future__ import annotations

from typing import Any


class PdfChatError(Exception):
    """Base exception for conversation and registration failures."""

    def __init__(self, message: str, *, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details


# ---------------------------------------------------------------------------
# Turn failures
# ---------------------------------------------------------------------------

class TransportFailure(PdfChatError):
    """Opening or reading the turn stream failed."""

    def __init__(self, message: str, status_code: int | None = None, *, details: Any = None):
        super().__init__(message, details=details)
        self.status_code = status_code


class TurnTimeout(TransportFailure):
    """No stream event arrived within the inactivity window."""


class ProtocolError(PdfChatError):
    """The remote service reported an explicit error event."""


class PrematureTermination(PdfChatError):
    """The stream closed before a terminal event was received."""

    def __init__(self, message: str = "Incomplete response: the stream ended before the answer finished."):
        super().__init__(message)


# ---------------------------------------------------------------------------
# Document registration failures
# ---------------------------------------------------------------------------

class DocumentRegistrationError(PdfChatError):
    """Base class for failures while turning a PDF into a corpus handle."""


class UnsupportedDocumentType(DocumentRegistrationError):
    pass


class DocumentTooLarge(DocumentRegistrationError):
    def __init__(self, message: str, *, size_bytes: int = 0, limit_bytes: int = 0):
        super().__init__(message, details={"size_bytes": size_bytes, "limit_bytes": limit_bytes})
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes


class TransientUploadFailure(DocumentRegistrationError):
    pass
