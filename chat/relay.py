# chat/relay.py
"""
One relay per user turn: call the completion service, forward chunks to the
browser as they arrive, and commit the turn exactly once however it ends.

    IDLE -> INVOKING -> STREAMING -> FINALIZING -> DONE
                  \\________________________________-> FAILED

The per-event bookkeeping lives in ``advance`` so the state machine can be
driven without a network.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterator, Optional, Tuple

from django.http import StreamingHttpResponse
from prometheus_client import Counter

from .completion import CompletionClient, CompletionDocument, CompletionUnavailable
from .finalizer import finalize_turn
from .models import Chat, Message
from .normalize import TurnOutcome, normalize, normalize_document
from .sse import ChunkEvent, CompletionEvent, decode_events, encode_frame

logger = logging.getLogger(__name__)

RELAY_TURNS = Counter(
    "querychat_relay_turns_total",
    "Chat turns relayed to the completion service, by outcome.",
    ["outcome"],
)

FAILURE_TEMPLATE = (
    "Sorry, I encountered an error while processing your request: {detail}"
    "\n\nPlease make sure the completion service is running at the configured URL."
)


def failure_text(detail: str) -> str:
    return FAILURE_TEMPLATE.format(detail=detail)


class Phase(str, Enum):
    IDLE = "idle"
    INVOKING = "invoking"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class RelayState:
    phase: Phase = Phase.IDLE
    parts: Tuple[str, ...] = ()
    outcome: Optional[TurnOutcome] = None

    @property
    def text(self) -> str:
        return " ".join(self.parts)


def advance(state: RelayState, event) -> Tuple[RelayState, Optional[dict]]:
    """Apply one decoded event; return the new state and the frame to forward, if any."""
    if isinstance(event, ChunkEvent):
        if not event.text.strip():
            return state, None
        return replace(state, parts=state.parts + (event.text,)), {"chunk": event.text}

    if isinstance(event, CompletionEvent):
        outcome = normalize(event.payload).with_text(state.text)
        return replace(state, phase=Phase.FINALIZING, outcome=outcome), None

    return state, None


def end_of_stream(state: RelayState) -> RelayState:
    """Upstream ran dry; treat it as a terminal event with what we have."""
    if state.outcome is not None:
        return replace(state, phase=Phase.FINALIZING)
    return replace(state, phase=Phase.FINALIZING, outcome=TurnOutcome(assistant_text=state.text))


class TurnLogger(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        extra = dict(kwargs.get("extra") or {})
        extra.update(self.extra)
        kwargs["extra"] = extra
        return f"turn={self.extra['turn_id']} {msg}", kwargs


class TurnRelay:
    def __init__(self, chat: Chat, message: Message, client: Optional[CompletionClient] = None):
        self.chat = chat
        self.message = message
        self.client = client or CompletionClient()
        self.state = RelayState()
        self.log = TurnLogger(logger, {"turn_id": str(message.pk), "chat_id": str(chat.pk)})
        self._finalized = False
        self._stream = None
        self._events: Optional[Iterator] = None

    @property
    def finalized(self) -> bool:
        return self._finalized

    # ---- downstream ----

    def frames(self) -> Iterator[str]:
        """Downstream SSE frames; the terminal frame is always last."""
        try:
            yield from self._run()
        except Exception as e:
            self.log.exception("relay crashed in phase %s", self.state.phase.value)
            if self._finalized:
                raise
            diagnostic = self._fail(f"internal error: {e}")
            yield encode_frame({"chunk": diagnostic})
            yield self._terminal_frame()

    def ensure_finalized(self) -> None:
        """
        Finish the turn without a downstream (client went away, or the
        response was closed before streaming started). Upstream is drained
        within the same deadline; no-op once the turn is committed.
        """
        if self._finalized:
            return
        self.log.info("downstream closed in phase %s; finishing turn detached", self.state.phase.value)
        try:
            for _ in self._run():
                pass
        except Exception as e:
            self.log.exception("detached relay failed")
            if not self._finalized:
                self._fail(f"internal error: {e}")

    def streaming_response(self) -> "TurnStreamingResponse":
        return TurnStreamingResponse(self)

    # ---- state machine ----

    def _enter(self, phase: Phase) -> None:
        self.log.info("%s -> %s", self.state.phase.value, phase.value)
        self.state = replace(self.state, phase=phase)

    def _run(self) -> Iterator[str]:
        try:
            if self._events is None:
                self._enter(Phase.INVOKING)
                reply = self.client.request(
                    str(self.chat.pk), list(self.chat.database_ids or []), self.message.user_message
                )
                if isinstance(reply, CompletionDocument):
                    outcome = normalize_document(reply.data)
                    self.state = replace(self.state, phase=Phase.FINALIZING, outcome=outcome)
                    self._commit(outcome, title_source=self.message.user_message)
                    yield encode_frame({"chunk": outcome.assistant_text})
                    yield self._terminal_frame()
                    return

                self._stream = reply
                self._events = decode_events(reply.iter_bytes(), framing=reply.framing, log=self.log)
                self._enter(Phase.STREAMING)

            for event in self._events:
                self.state, frame = advance(self.state, event)
                if frame is not None:
                    yield encode_frame(frame)
                if self.state.phase is Phase.FINALIZING:
                    break
        except CompletionUnavailable as e:
            diagnostic = self._fail(e.detail)
            yield encode_frame({"chunk": diagnostic})
            yield self._terminal_frame()
            return

        self.state = end_of_stream(self.state)
        outcome = self.state.outcome
        self._commit(outcome, title_source=outcome.assistant_text, title_from_answer=True)
        yield self._terminal_frame()

    def _commit(self, outcome: TurnOutcome, **title) -> None:
        self._close_stream()
        finalize_turn(self.message, outcome, **title)
        self._finalized = True
        self._enter(Phase.DONE)
        RELAY_TURNS.labels(outcome="done").inc()

    def _fail(self, detail: str) -> str:
        self.log.warning("completion unavailable: %s", detail)
        self._close_stream()
        diagnostic = failure_text(detail)
        outcome = TurnOutcome(assistant_text=diagnostic)
        self.state = replace(self.state, outcome=outcome)
        finalize_turn(
            self.message,
            outcome,
            title_source=self.message.user_message,
            failed=True,
            error=detail,
        )
        self._finalized = True
        self._enter(Phase.FAILED)
        RELAY_TURNS.labels(outcome="failed").inc()
        return diagnostic

    def _terminal_frame(self) -> str:
        outcome = self.state.outcome or TurnOutcome()
        if self.state.phase is Phase.FAILED:
            sql_query, results = "", []
        else:
            sql_query, results = outcome.sql_query, outcome.query_results
        return encode_frame({
            "is_complete": True,
            "messageId": str(self.message.pk),
            "sqlQuery": sql_query or "",
            "queryResults": results or [],
        })

    def _close_stream(self) -> None:
        if self._stream is not None:
            self._stream.close()


class TurnStreamingResponse(StreamingHttpResponse):
    """Event-stream response whose close() always leaves the turn committed."""

    def __init__(self, relay: TurnRelay):
        self._frames = relay.frames()
        super().__init__(self._frames, content_type="text/event-stream")
        self.relay = relay
        self["Cache-Control"] = "no-cache"
        self["X-Accel-Buffering"] = "no"

    def close(self):
        # commit before request_finished fires in super().close()
        try:
            self._frames.close()
            self.relay.ensure_finalized()
        finally:
            super().close()
