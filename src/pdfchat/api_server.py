"""
FastAPI relay service for the PDF chat client.

Registers uploaded PDFs with an OpenAI vector store and streams grounded answers
from the Responses API (file_search tool) as server-sent events.
Exposes POST /api/chat, POST /api/upload, GET /api/health and GET /metrics.

Run with:
    uvicorn pdfchat.api_server:app --host 0.0.0.0 --port 8000
"""
from __future__ import annotations

import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import openai
from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.responses import StreamingResponse

from .config import OPENAI_API_KEY, OPENAI_MODEL_NAME, REQUEST_TIMEOUT_S
from .errors import DocumentTooLarge, TransientUploadFailure, UnsupportedDocumentType
from .ingestion import DocumentRegistrar
from .metrics import metrics_collector
from .models import TurnRequest
from .observability import get_logger
from .relay import GENERIC_STREAM_ERROR, ResponseRelay
from .stream_decoder import EVENT_ERROR, encode_frame

logger = get_logger(__name__)

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


# ---------------------------------------------------------------------------
# Application state populated at startup
# ---------------------------------------------------------------------------

_state: dict[str, Any] = {}


# ---------------------------------------------------------------------------
# Lifespan (startup / shutdown)
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the OpenAI client once at startup; close it on shutdown."""
    client = None
    if OPENAI_API_KEY:
        client = openai.AsyncOpenAI(api_key=OPENAI_API_KEY, timeout=REQUEST_TIMEOUT_S)
        _state["openai"] = client
        _state["registrar"] = DocumentRegistrar(client)
    else:
        logger.warning("openai_not_configured", detail="OPENAI_API_KEY is not set; chat and upload return 503")

    yield  # Application is running.

    if client is not None:
        await client.close()
    _state.clear()


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="PDF Chat API",
    description="Streams retrieval-grounded answers about uploaded PDFs",
    version="1.0.0",
    lifespan=lifespan,
)


def _require(key: str) -> Any:
    value = _state.get(key)
    if value is None:
        raise HTTPException(
            status_code=503,
            detail="OpenAI client is not configured. Set OPENAI_API_KEY and restart the service.",
        )
    return value


# ---------------------------------------------------------------------------
# Chat streaming
# ---------------------------------------------------------------------------

def _build_response_request(turn: TurnRequest) -> dict[str, Any]:
    params: dict[str, Any] = {
        "model": OPENAI_MODEL_NAME,
        "input": [
            {
                "role": "user",
                "content": [{"type": "input_text", "text": turn.user_text}],
            }
        ],
        "tools": [{"type": "file_search", "vector_store_ids": [turn.corpus_handle]}],
        "store": True,
        "stream": True,
    }
    if turn.continuation_token:
        params["previous_response_id"] = turn.continuation_token
    return params


async def _stream_turn(client: Any, turn: TurnRequest) -> AsyncIterator[str]:
    start = time.perf_counter()
    first_token_ms = None
    relay = ResponseRelay()
    try:
        upstream = await client.responses.create(**_build_response_request(turn))
        frames = relay.frames(upstream)
        try:
            async for frame in frames:
                if first_token_ms is None and relay.text_parts:
                    first_token_ms = (time.perf_counter() - start) * 1000.0
                yield frame
        finally:
            # Releases the upstream HTTP response on completion and on client disconnect.
            await frames.aclose()
            await upstream.close()
    except openai.OpenAIError as exc:
        logger.error("chat_upstream_open_failed", error=str(exc), error_type=type(exc).__name__)
        relay.failed = True
        yield encode_frame({"type": EVENT_ERROR, "error": GENERIC_STREAM_ERROR})
    finally:
        latency_ms = (time.perf_counter() - start) * 1000.0
        usage = relay.usage or {}
        metrics_collector.record_request(
            latency_ms,
            success=relay.completed,
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
            model=OPENAI_MODEL_NAME,
            first_token_ms=first_token_ms,
            outcome="completed" if relay.completed else ("protocol_error" if relay.failed else "premature_termination"),
            source="relay",
        )
        logger.info(
            "chat_stream_closed",
            response_id=relay.response_id,
            completed=relay.completed,
            events=relay.event_count,
            citations=len(relay.citations),
            latency_ms=round(latency_ms, 2),
        )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.post("/api/chat")
async def chat_endpoint(request: TurnRequest):
    """Stream an answer grounded in the corpus, continuing the given turn if any."""
    client = _require("openai")
    logger.info(
        "chat_request",
        corpus_handle=request.corpus_handle,
        has_continuation=request.continuation_token is not None,
        chars=len(request.user_text),
    )
    return StreamingResponse(
        _stream_turn(client, request),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )


@app.post("/api/upload")
async def upload_endpoint(file: UploadFile = File(...)):
    """Register an uploaded PDF and return its corpus handle."""
    registrar: DocumentRegistrar = _require("registrar")
    if file.content_type and file.content_type not in {"application/pdf", "application/octet-stream"}:
        raise HTTPException(status_code=415, detail="Only PDF files are allowed")

    # Read one byte past the limit so oversize uploads are rejected without buffering them whole.
    data = await file.read(registrar.max_bytes + 1)
    try:
        document = await registrar.register_document(data, file.filename or "document.pdf")
    except UnsupportedDocumentType as exc:
        raise HTTPException(status_code=415, detail=exc.message) from exc
    except DocumentTooLarge as exc:
        raise HTTPException(status_code=413, detail=exc.message) from exc
    except TransientUploadFailure as exc:
        raise HTTPException(status_code=502, detail=exc.message) from exc
    finally:
        await file.close()
    return document.model_dump(by_alias=True)


@app.get("/api/health")
async def health_endpoint():
    """Verify the OpenAI API key by listing models."""
    client = _require("openai")
    try:
        models = await client.models.list()
    except openai.OpenAIError as exc:
        logger.error("health_check_failed", error=str(exc))
        raise HTTPException(status_code=503, detail=f"API key test failed: {exc}") from exc
    data = list(getattr(models, "data", []) or [])
    return {
        "success": True,
        "message": "API key is valid",
        "modelCount": len(data),
        "firstModel": getattr(data[0], "id", None) if data else None,
        "chatModel": OPENAI_MODEL_NAME,
    }


@app.get("/metrics")
async def metrics_endpoint():
    """Return aggregated service metrics."""
    return metrics_collector.get_summary()


def run():
    """Console entry point for the relay service."""
    import uvicorn

    from .config import API_HOST, API_PORT, API_RELOAD

    uvicorn.run("pdfchat.api_server:app", host=API_HOST, port=API_PORT, reload=API_RELOAD)
