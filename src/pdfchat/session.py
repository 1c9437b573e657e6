"""
Conversation session: drives one chat turn at a time against a corpus.

A session owns the transcript, the continuation token of the last completed
turn and at most one live TurnState. Stream events are folded into the live
state in arrival order; every change is published as an immutable snapshot so
presentation code never touches turn internals.

Failure of any kind (transport, protocol error, premature close, inactivity
timeout, cancellation) discards the live turn: no assistant message is
appended and the continuation token keeps its pre-turn value.
"""
from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, TypeVar

from .client import TurnTransport
from .config import OPENAI_MODEL_NAME, STREAM_IDLE_TIMEOUT_S
from .errors import PrematureTermination, ProtocolError, TransportFailure, TurnTimeout
from .events import (
    CitationAdded,
    Completed,
    Created,
    ErrorEvent,
    StatusUpdate,
    StreamEvent,
    TextDelta,
    UsageReported,
)
from .metrics import MetricsCollector, metrics_collector
from .models import Citation, Message, Role, SessionSnapshot, TurnRequest, Usage
from .observability import get_logger
from .stream_decoder import StreamDecoder

logger = get_logger(__name__)

SnapshotListener = Callable[[SessionSnapshot], None]
T = TypeVar("T")


class TurnPhase(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


class OutcomeKind(str, Enum):
    COMPLETED = "completed"
    TRANSPORT_FAILURE = "transport_failure"
    PROTOCOL_ERROR = "protocol_error"
    PREMATURE_TERMINATION = "premature_termination"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass
class TurnState:
    """Transient state of the single in-flight turn."""

    user_text: str
    accumulated_text: str = ""
    citations: list[Citation] = field(default_factory=list)
    turn_id: str | None = None
    usage: Usage | None = None
    status: str | None = None
    phase: TurnPhase = TurnPhase.PENDING
    started_at: float = field(default_factory=time.perf_counter)
    first_delta_at: float | None = None


@dataclass(frozen=True)
class TurnOutcome:
    kind: OutcomeKind
    message: Message | None = None
    error: str | None = None
    partial_text: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.kind is OutcomeKind.COMPLETED


class ConversationSession:
    """Multi-turn conversation over one corpus handle."""

    def __init__(
        self,
        transport: TurnTransport,
        corpus_handle: str | None = None,
        *,
        idle_timeout_s: float = STREAM_IDLE_TIMEOUT_S,
        decoder_factory: Callable[[], StreamDecoder] = StreamDecoder,
        metrics: MetricsCollector | None = metrics_collector,
        model_name: str = OPENAI_MODEL_NAME,
    ):
        self._transport = transport
        self._corpus_handle = corpus_handle or None
        self._idle_timeout_s = float(idle_timeout_s or 0.0)
        self._decoder_factory = decoder_factory
        self._metrics = metrics
        self._model_name = model_name

        self._transcript: list[Message] = []
        self._continuation_token: str | None = None
        self._turn: TurnState | None = None
        self._task: asyncio.Task | None = None
        self._last_error: str | None = None
        self._incomplete_answer_text: str | None = None
        self._listeners: list[SnapshotListener] = []

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def corpus_handle(self) -> str | None:
        return self._corpus_handle

    @property
    def continuation_token(self) -> str | None:
        return self._continuation_token

    @property
    def transcript(self) -> tuple[Message, ...]:
        return tuple(self._transcript)

    @property
    def is_turn_in_flight(self) -> bool:
        return self._turn is not None

    def snapshot(self) -> SessionSnapshot:
        turn = self._turn
        return SessionSnapshot(
            corpus_handle=self._corpus_handle,
            transcript=tuple(self._transcript),
            live_answer_text=turn.accumulated_text if turn is not None else None,
            live_status=turn.status if turn is not None else None,
            is_turn_in_flight=turn is not None,
            last_error=self._last_error,
            incomplete_answer_text=self._incomplete_answer_text,
        )

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Registers a push listener; returns a callable that removes it."""
        self._listeners.append(listener)

        def _unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def snapshots(self) -> AsyncIterator[SessionSnapshot]:
        """Pull-based view of the snapshot stream, starting with the current state."""
        queue: asyncio.Queue[SessionSnapshot] = asyncio.Queue()
        unsubscribe = self.subscribe(queue.put_nowait)
        try:
            yield self.snapshot()
            while True:
                yield await queue.get()
        finally:
            unsubscribe()

    def _publish(self):
        if not self._listeners:
            return
        snap = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snap)
            except Exception as exc:
                logger.error("snapshot_listener_failed", error=str(exc), error_type=type(exc).__name__)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def start_turn(self, user_text: str) -> asyncio.Task | None:
        """Starts a turn and returns the task driving it, or None when the submission is rejected."""
        text = str(user_text or "").strip()
        reason = None
        if not text:
            reason = "empty_input"
        elif not self._corpus_handle:
            reason = "missing_corpus_handle"
        elif self.is_turn_in_flight:
            reason = "turn_in_flight"
        if reason:
            logger.info("turn_rejected", reason=reason)
            return None

        loop = asyncio.get_running_loop()
        request = TurnRequest(
            user_text=text,
            corpus_handle=self._corpus_handle,
            continuation_token=self._continuation_token,
        )
        self._transcript.append(Message(role=Role.USER, text=text))
        turn = TurnState(user_text=text)
        self._turn = turn
        self._last_error = None
        self._incomplete_answer_text = None
        self._task = loop.create_task(self._run_turn(turn, request))
        logger.info(
            "turn_started",
            corpus_handle=self._corpus_handle,
            has_continuation=self._continuation_token is not None,
            chars=len(text),
        )
        self._publish()
        return self._task

    async def send(self, user_text: str) -> TurnOutcome | None:
        """Starts a turn and waits for it to finish."""
        task = self.start_turn(user_text)
        if task is None:
            return None
        try:
            return await task
        except asyncio.CancelledError:
            if _cancelled_by_session(task):
                return TurnOutcome(kind=OutcomeKind.CANCELLED)
            raise

    async def wait_for_turn(self) -> TurnOutcome | None:
        """Waits for the in-flight turn, if any, without cancelling it when the waiter is cancelled."""
        task = self._task
        if task is None or task.done():
            return None
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if _cancelled_by_session(task):
                return TurnOutcome(kind=OutcomeKind.CANCELLED)
            raise

    def cancel_turn(self) -> bool:
        """Abandons the in-flight turn. The continuation token and transcript are kept."""
        if not self._abandon_turn("cancelled"):
            return False
        self._publish()
        return True

    def reset_for_new_corpus(self, corpus_handle: str | None):
        """Cancels any in-flight turn and starts an empty conversation on a new corpus."""
        self._abandon_turn("corpus_changed")
        self._transcript = []
        self._continuation_token = None
        self._last_error = None
        self._incomplete_answer_text = None
        self._corpus_handle = corpus_handle or None
        logger.info("session_reset", corpus_handle=self._corpus_handle)
        self._publish()

    def _abandon_turn(self, reason: str) -> bool:
        turn, task = self._turn, self._task
        if turn is None:
            return False
        self._detach(turn, reason)
        if task is not None and not task.done():
            task.cancel()
        return True

    def _detach(self, turn: TurnState, reason: str):
        self._turn = None
        self._task = None
        turn.phase = TurnPhase.FAILED
        self._record_metrics(turn, OutcomeKind.CANCELLED)
        logger.info("turn_cancelled", reason=reason, partial_chars=len(turn.accumulated_text))

    # ------------------------------------------------------------------
    # Turn driver
    # ------------------------------------------------------------------

    async def _run_turn(self, turn: TurnState, request: TurnRequest) -> TurnOutcome:
        try:
            async with AsyncExitStack() as stack:
                # Opening the stream counts against the same inactivity window as each event.
                chunks = await self._within_window(
                    stack.enter_async_context(self._transport.open_turn_stream(request))
                )
                events = self._decoder_factory().decode(chunks)
                stack.push_async_callback(events.aclose)
                outcome = await self._consume(turn, events)
        except asyncio.CancelledError:
            # Cancelled from outside the session (e.g. the awaiting task was cancelled).
            if self._turn is turn:
                self._detach(turn, "task_cancelled")
                self._publish()
            raise
        except ProtocolError as exc:
            outcome = self._failure(turn, OutcomeKind.PROTOCOL_ERROR, exc.message)
        except TurnTimeout as exc:
            outcome = self._failure(turn, OutcomeKind.TIMEOUT, exc.message)
        except TransportFailure as exc:
            outcome = self._failure(turn, OutcomeKind.TRANSPORT_FAILURE, exc.message)
        except Exception as exc:
            logger.exception("turn_stream_unexpected_error", error=str(exc))
            outcome = self._failure(turn, OutcomeKind.TRANSPORT_FAILURE, f"Unexpected stream failure: {exc}")
        self._finish(turn, outcome)
        return outcome

    async def _within_window(self, awaitable: Awaitable[T]) -> T:
        timeout = self._idle_timeout_s if self._idle_timeout_s > 0.0 else None
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError:
            raise TurnTimeout(
                f"No response from the chat service for {self._idle_timeout_s:g} seconds."
            ) from None

    async def _consume(self, turn: TurnState, events: AsyncIterator[StreamEvent]) -> TurnOutcome:
        while True:
            try:
                event = await self._within_window(events.__anext__())
            except StopAsyncIteration:
                return self._failure(turn, OutcomeKind.PREMATURE_TERMINATION, PrematureTermination().message)
            outcome = self._apply(turn, event)
            if outcome is not None:
                return outcome

    def _apply(self, turn: TurnState, event: StreamEvent) -> TurnOutcome | None:
        """Folds one event into the live turn; returns the outcome of a completion.

        An error event raises ProtocolError.
        """
        if self._turn is not turn:
            return None
        if isinstance(event, Created):
            turn.phase = TurnPhase.STREAMING
            turn.turn_id = event.turn_id
        elif isinstance(event, TextDelta):
            turn.phase = TurnPhase.STREAMING
            if turn.first_delta_at is None:
                turn.first_delta_at = time.perf_counter()
            turn.accumulated_text += event.text
        elif isinstance(event, CitationAdded):
            turn.citations.append(event.citation)
        elif isinstance(event, StatusUpdate):
            turn.status = event.message
        elif isinstance(event, UsageReported):
            turn.usage = event.usage
            return None
        elif isinstance(event, Completed):
            return self._completion(turn, event)
        elif isinstance(event, ErrorEvent):
            raise ProtocolError(event.message)
        else:
            logger.warning("stream_event_ignored", event_type=type(event).__name__)
            return None
        self._publish()
        return None

    def _completion(self, turn: TurnState, event: Completed) -> TurnOutcome:
        turn.phase = TurnPhase.COMPLETED
        text = turn.accumulated_text or event.full_text
        citations = tuple(turn.citations) if turn.citations else tuple(event.citations)
        turn_id = event.turn_id or turn.turn_id
        usage = event.usage or turn.usage
        turn.turn_id = turn_id
        turn.usage = usage
        message = Message(
            role=Role.ASSISTANT,
            text=text,
            citations=citations,
            continuation_token=turn_id,
            usage=usage,
        )
        return TurnOutcome(kind=OutcomeKind.COMPLETED, message=message)

    def _failure(self, turn: TurnState, kind: OutcomeKind, error: str) -> TurnOutcome:
        turn.phase = TurnPhase.FAILED
        return TurnOutcome(kind=kind, error=error, partial_text=turn.accumulated_text or None)

    def _finish(self, turn: TurnState, outcome: TurnOutcome):
        # Only the live turn may touch the transcript or the token.
        if self._turn is not turn:
            return
        self._turn = None
        self._task = None

        if outcome.succeeded and outcome.message is not None:
            self._transcript.append(outcome.message)
            if outcome.message.continuation_token:
                self._continuation_token = outcome.message.continuation_token
            else:
                logger.warning("turn_completed_without_id", corpus_handle=self._corpus_handle)
            logger.info(
                "turn_completed",
                turn_id=outcome.message.continuation_token,
                chars=len(outcome.message.text),
                citations=len(outcome.message.citations),
                latency_s=round(time.perf_counter() - turn.started_at, 4),
            )
        else:
            self._last_error = outcome.error
            self._incomplete_answer_text = outcome.partial_text
            logger.warning(
                "turn_failed",
                kind=outcome.kind.value,
                error=outcome.error,
                partial_chars=len(outcome.partial_text or ""),
            )
        self._record_metrics(turn, outcome.kind)
        self._publish()

    def _record_metrics(self, turn: TurnState, kind: OutcomeKind):
        if self._metrics is None:
            return
        now = time.perf_counter()
        usage = turn.usage or Usage()
        first_token_ms = (turn.first_delta_at - turn.started_at) * 1000.0 if turn.first_delta_at else None
        self._metrics.record_request(
            (now - turn.started_at) * 1000.0,
            success=kind is OutcomeKind.COMPLETED,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            model=self._model_name,
            first_token_ms=first_token_ms,
            outcome=kind.value,
            source="session",
        )


def _cancelled_by_session(task: asyncio.Task) -> bool:
    """True when the turn task was cancelled while the awaiting task itself was not."""
    current = asyncio.current_task()
    return task.cancelled() and (current is None or not current.cancelling())
