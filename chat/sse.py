"""
Server-sent-event framing for the relay.

Upstream: raw body bytes -> lines -> typed events (``decode_events``).
Downstream: payload dicts -> ``data: <json>\\n\\n`` frames (``encode_frame``).
"""
import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, List, Optional

from .completion import EVENT_STREAM, NDJSON

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"


@dataclass(frozen=True)
class ChunkEvent:
    text: str


@dataclass(frozen=True)
class CompletionEvent:
    payload: dict


@dataclass(frozen=True)
class UnknownEvent:
    payload: Any


def iter_lines(byte_chunks: Iterable[bytes]) -> Iterator[str]:
    """Split a byte stream on newlines without buffering the whole body."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    pending = ""
    for chunk in byte_chunks:
        pending += decoder.decode(chunk)
        *lines, pending = pending.split("\n")
        for line in lines:
            yield line.rstrip("\r")
    pending += decoder.decode(b"", final=True)
    if pending:
        yield pending.rstrip("\r")


def parse_line(line: str, framing: str = EVENT_STREAM) -> Optional[Any]:
    """
    Return the JSON payload carried by ``line``, or None when the line
    carries nothing (blank, comment, non-data field).
    Raises ValueError on malformed JSON.
    """
    if framing == NDJSON:
        raw = line.strip()
        return json.loads(raw) if raw else None

    stripped = line.strip()
    if not stripped.startswith(DATA_PREFIX):
        return None
    raw = stripped[len(DATA_PREFIX):].strip()
    if not raw:
        return None
    return json.loads(raw)


def classify(payload: Any) -> List[Any]:
    if not isinstance(payload, dict):
        return [UnknownEvent(payload)]

    events: List[Any] = []
    chunk = payload.get("chunk")
    if isinstance(chunk, str) and chunk.strip():
        events.append(ChunkEvent(chunk))
    if payload.get("is_complete") or payload.get("done"):
        events.append(CompletionEvent(payload))
    if not events:
        events.append(UnknownEvent(payload))
    return events


def decode_events(
    byte_chunks: Iterable[bytes],
    framing: str = EVENT_STREAM,
    log: Any = None,
) -> Iterator[Any]:
    """
    Lazily turn upstream bytes into ChunkEvent / CompletionEvent / UnknownEvent.

    Stops after the first CompletionEvent. Malformed lines are logged and
    skipped; they never end the sequence.
    """
    log = log or logger
    for line in iter_lines(byte_chunks):
        try:
            payload = parse_line(line, framing)
        except ValueError:
            log.warning("malformed stream line skipped: %r", line[:200])
            continue
        if payload is None:
            continue
        for event in classify(payload):
            yield event
            if isinstance(event, CompletionEvent):
                return


def encode_frame(payload: dict) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False, default=str)}\n\n"
