"""PDF chat service client.

Talks to the relay service over HTTP: registers documents and opens streamed turns.

Usage:
    from pdfchat.client import RagServiceClient

    async with RagServiceClient() as client:
        document = await client.register_document(pdf_bytes, "paper.pdf")
        async with client.open_turn_stream(request) as chunks:
            async for chunk in chunks:
                ...
"""
from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, Protocol

import httpx

from .config import RAG_SERVICE_URL, REQUEST_TIMEOUT_S
from .errors import (
    DocumentTooLarge,
    TransientUploadFailure,
    TransportFailure,
    UnsupportedDocumentType,
)
from .models import RegisteredDocument, TurnRequest
from .observability import get_logger

logger = get_logger(__name__)

CHAT_PATH = "/api/chat"
UPLOAD_PATH = "/api/upload"
HEALTH_PATH = "/api/health"


class TurnTransport(Protocol):
    """Anything that can open the raw byte stream for one turn."""

    def open_turn_stream(self, request: TurnRequest) -> AsyncContextManager[AsyncIterator[bytes]]:
        ...


def _error_message(response: httpx.Response, fallback: str) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or fallback
    if isinstance(data, dict):
        detail = data.get("detail") or data.get("error")
        if isinstance(detail, dict):
            detail = detail.get("message")
        if detail:
            return str(detail)
    return fallback


class RagServiceClient:
    """Async client for the PDF chat relay service.

    Attributes:
        base_url: Base URL of the relay service
    """

    def __init__(
        self,
        base_url: str = RAG_SERVICE_URL,
        timeout: float = REQUEST_TIMEOUT_S,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        # Reads stay unbounded; the session enforces its own inactivity window.
        self._client = http_client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, read=None),
        )

    async def __aenter__(self) -> "RagServiceClient":
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    @asynccontextmanager
    async def open_turn_stream(self, request: TurnRequest) -> AsyncIterator[AsyncIterator[bytes]]:
        """Opens the streamed response for one turn and yields its raw byte chunks."""
        try:
            async with self._client.stream(
                "POST",
                CHAT_PATH,
                headers={"Accept": "text/event-stream"},
                json=request.to_wire(),
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise TransportFailure(
                        _error_message(response, "Failed to get response"),
                        status_code=response.status_code,
                    )
                yield self._iter_bytes(response)
        except httpx.HTTPError as exc:
            logger.warning("turn_stream_transport_error", error=str(exc), error_type=type(exc).__name__)
            raise TransportFailure(f"Connection to the chat service failed: {exc}") from exc

    async def _iter_bytes(self, response: httpx.Response) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes():
                yield chunk
        except httpx.HTTPError as exc:
            raise TransportFailure(f"Chat stream interrupted: {exc}") from exc

    async def register_document(
        self,
        data: bytes,
        name: str,
        content_type: str = "application/pdf",
    ) -> RegisteredDocument:
        """Uploads a document and returns the corpus handle it was indexed under."""
        try:
            response = await self._client.post(
                UPLOAD_PATH,
                files={"file": (name, data, content_type)},
            )
        except httpx.HTTPError as exc:
            raise TransientUploadFailure(f"Upload failed: {exc}") from exc

        if response.status_code == 415:
            raise UnsupportedDocumentType(_error_message(response, "Only PDF files are allowed"))
        if response.status_code == 413:
            raise DocumentTooLarge(_error_message(response, "Document is too large"), size_bytes=len(data))
        if response.status_code >= 400:
            raise TransientUploadFailure(
                _error_message(response, "Failed to process PDF file"),
                details={"status_code": response.status_code},
            )

        document = RegisteredDocument.model_validate(response.json())
        logger.info(
            "document_registered",
            corpus_handle=document.corpus_handle,
            file_id=document.file_id,
            pages=document.page_count,
            bytes=len(data),
        )
        return document

    async def check_health(self) -> dict[str, Any]:
        """Asks the service to verify its upstream credentials."""
        try:
            response = await self._client.get(HEALTH_PATH)
        except httpx.HTTPError as exc:
            raise TransportFailure(f"Chat service unreachable: {exc}") from exc
        if response.status_code >= 400:
            raise TransportFailure(
                _error_message(response, "Health check failed"),
                status_code=response.status_code,
            )
        return response.json()
