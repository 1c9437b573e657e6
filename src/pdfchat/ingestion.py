# /pdfchat/ingestion.py
"""
Handles PDF validation and registration with the remote retrieval index.
A registered document is identified by its corpus handle (vector store id).
"""
from __future__ import annotations

import asyncio
from contextlib import closing
from pathlib import Path

import fitz
import openai

from .config import (
    INDEXING_TIMEOUT_S,
    MAX_UPLOAD_BYTES,
    OPENAI_VECTOR_STORE_ID,
    UPLOAD_TIMEOUT_S,
)
from .errors import DocumentTooLarge, TransientUploadFailure, UnsupportedDocumentType
from .models import RegisteredDocument
from .observability import get_logger

PDF_MAGIC = b"%PDF-"
# The PDF header may be preceded by junk bytes; readers scan the first KiB.
PDF_HEADER_SCAN_BYTES = 1024
logger = get_logger(__name__)


def inspect_pdf(data: bytes, name: str, max_bytes: int = MAX_UPLOAD_BYTES) -> int:
    """Validates a PDF payload and returns its page count."""
    size = len(data or b"")
    if size == 0:
        raise UnsupportedDocumentType(f"'{name}' is empty.")
    if size > max_bytes:
        raise DocumentTooLarge(
            f"'{name}' is {size / (1024 * 1024):.1f} MB; the limit is {max_bytes / (1024 * 1024):.0f} MB.",
            size_bytes=size,
            limit_bytes=max_bytes,
        )
    if PDF_MAGIC not in data[:PDF_HEADER_SCAN_BYTES]:
        raise UnsupportedDocumentType("Only PDF files are allowed")

    try:
        with closing(fitz.open(stream=data, filetype="pdf")) as doc:
            if doc.needs_pass:
                raise UnsupportedDocumentType(f"'{name}' is password protected.")
            page_count = int(doc.page_count)
    except UnsupportedDocumentType:
        raise
    except (RuntimeError, ValueError) as exc:
        raise UnsupportedDocumentType(f"'{name}' is not a readable PDF ({exc}).") from exc

    if page_count < 1:
        raise UnsupportedDocumentType(f"'{name}' has no pages.")
    return page_count


class DocumentRegistrar:
    """Uploads validated PDFs to OpenAI Files and indexes them in a vector store."""

    def __init__(
        self,
        client: openai.AsyncOpenAI,
        *,
        vector_store_id: str | None = OPENAI_VECTOR_STORE_ID,
        max_bytes: int = MAX_UPLOAD_BYTES,
        upload_timeout_s: float = UPLOAD_TIMEOUT_S,
        indexing_timeout_s: float = INDEXING_TIMEOUT_S,
    ):
        self._client = client
        self.vector_store_id = vector_store_id or None
        self.max_bytes = int(max_bytes)
        self.upload_timeout_s = float(upload_timeout_s)
        self.indexing_timeout_s = float(indexing_timeout_s)

    async def register_document(self, data: bytes, name: str) -> RegisteredDocument:
        """Validates, uploads and indexes a PDF; returns its corpus handle."""
        file_name = Path(str(name or "document.pdf")).name
        page_count = inspect_pdf(data, file_name, self.max_bytes)
        logger.info("document_validated", file_name=file_name, bytes=len(data), pages=page_count)

        try:
            uploaded = await asyncio.wait_for(
                self._client.files.create(
                    file=(file_name, data, "application/pdf"),
                    purpose="user_data",
                ),
                timeout=self.upload_timeout_s,
            )
        except asyncio.TimeoutError as exc:
            logger.error("document_upload_timeout", file_name=file_name, timeout_s=self.upload_timeout_s)
            raise TransientUploadFailure(
                f"Upload timeout after {self.upload_timeout_s:.0f} seconds"
            ) from exc
        except openai.OpenAIError as exc:
            logger.error("document_upload_failed", file_name=file_name, error=str(exc))
            raise TransientUploadFailure(f"Upload failed: {exc}") from exc

        corpus_handle = await self._index_file(uploaded.id, file_name)
        logger.info(
            "document_registered",
            corpus_handle=corpus_handle,
            file_id=uploaded.id,
            file_name=file_name,
            pages=page_count,
        )
        return RegisteredDocument(
            corpus_handle=corpus_handle,
            file_id=uploaded.id,
            file_name=file_name,
            page_count=page_count,
        )

    async def _index_file(self, file_id: str, file_name: str) -> str:
        try:
            vector_store_id = self.vector_store_id
            if vector_store_id is None:
                store = await self._client.vector_stores.create(name=file_name)
                vector_store_id = store.id
            indexed = await asyncio.wait_for(
                self._client.vector_stores.files.create_and_poll(
                    vector_store_id=vector_store_id,
                    file_id=file_id,
                ),
                timeout=self.indexing_timeout_s,
            )
        except asyncio.TimeoutError as exc:
            logger.error("document_indexing_timeout", file_id=file_id, timeout_s=self.indexing_timeout_s)
            raise TransientUploadFailure("Indexing the document timed out") from exc
        except openai.OpenAIError as exc:
            logger.error("document_indexing_failed", file_id=file_id, error=str(exc))
            raise TransientUploadFailure(f"Failed to index document: {exc}") from exc

        status = str(getattr(indexed, "status", "completed") or "completed")
        if status != "completed":
            last_error = getattr(indexed, "last_error", None)
            reason = getattr(last_error, "message", None) or status
            logger.error("document_indexing_incomplete", file_id=file_id, status=status, reason=str(reason))
            raise TransientUploadFailure(f"Document indexing did not complete: {reason}")
        return vector_store_id
