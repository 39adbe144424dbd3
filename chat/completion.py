# chat/completion.py

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional, Sequence
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FUTimeout

import requests
from django.conf import settings

logger = logging.getLogger(__name__)


# ===== Exceptions =====

class CompletionError(RuntimeError):
    ...


class CompletionUnavailable(CompletionError):
    """Network failure, non-2xx status or timeout. ``detail`` is user-facing."""

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class CompletionConfigError(CompletionError):
    ...


# ===== Base config =====

DEFAULT_TIMEOUT_S = 100
DEFAULT_CONNECT_TIMEOUT_S = 10
MAX_ERROR_BODY_CHARS = 1000

EVENT_STREAM = "event-stream"
NDJSON = "ndjson"

_STREAM_CONTENT_TYPES = {
    "text/event-stream": EVENT_STREAM,
    "application/x-ndjson": NDJSON,
    "application/ndjson": NDJSON,
    "application/jsonl": NDJSON,
    "application/x-jsonlines": NDJSON,
}

PAYLOAD_STYLES = ("both", "query", "chat")


def _content_type(response) -> str:
    raw = (response.headers or {}).get("Content-Type", "") or ""
    return raw.split(";")[0].strip().lower()


def _is_stream(response) -> bool:
    return 200 <= response.status_code < 300 and _content_type(response) in _STREAM_CONTENT_TYPES


# ===== Replies =====

@dataclass
class CompletionDocument:
    """The service answered with a single JSON document."""
    data: Any


@dataclass
class CompletionStream:
    """
    A streamed reply, read incrementally.

    The wall-clock deadline of the originating call keeps applying while the
    body is read: a watchdog closes the response when it expires, which
    unblocks a stalled read.
    """
    framing: str
    response: Any
    deadline: float
    timeout_s: float
    clock: Callable[[], float] = time.monotonic
    _expired: bool = field(default=False, init=False, repr=False)
    _closed: bool = field(default=False, init=False, repr=False)

    def _timeout_error(self) -> CompletionUnavailable:
        return CompletionUnavailable(f"completion service timed out after {self.timeout_s:g}s")

    def _expire(self) -> None:
        self._expired = True
        logger.warning("completion_stream_deadline_expired")
        self.close()

    def iter_bytes(self) -> Iterator[bytes]:
        remaining = max(0.0, self.deadline - self.clock())
        watchdog = threading.Timer(remaining, self._expire)
        watchdog.daemon = True
        watchdog.start()
        try:
            for chunk in self.response.iter_content(chunk_size=None):
                if self._expired or self.clock() > self.deadline:
                    raise self._timeout_error()
                if chunk:
                    yield chunk
        except CompletionUnavailable:
            raise
        except Exception as e:
            if self._expired:
                raise self._timeout_error() from e
            if isinstance(e, requests.RequestException):
                raise CompletionUnavailable(f"completion stream interrupted: {e}") from e
            raise
        finally:
            watchdog.cancel()
            self.close()
        if self._expired:
            raise self._timeout_error()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.response.close()
        except Exception:
            logger.debug("completion_stream_close_failed", exc_info=True)


# ===== Client =====

class CompletionClient:
    """
    Issues one POST per user turn to the external completion service.

    ``request`` returns a CompletionStream or CompletionDocument, or raises
    CompletionUnavailable. Every failure mode (network error, non-2xx,
    timeout) maps to that one exception.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        endpoint: Optional[str] = None,
        timeout_s: Optional[float] = None,
        connect_timeout_s: Optional[float] = None,
        payload_style: Optional[str] = None,
        session_factory: Callable[[], requests.Session] = requests.Session,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_url = (base_url or getattr(settings, "COMPLETION_SERVICE_URL", "") or "").rstrip("/")
        self.endpoint = endpoint or getattr(settings, "COMPLETION_ENDPOINT", "/chat/completion")
        self.timeout_s = float(timeout_s or getattr(settings, "COMPLETION_TIMEOUT_S", DEFAULT_TIMEOUT_S))
        self.connect_timeout_s = float(
            connect_timeout_s or getattr(settings, "COMPLETION_CONNECT_TIMEOUT_S", DEFAULT_CONNECT_TIMEOUT_S)
        )
        self.payload_style = payload_style or getattr(settings, "COMPLETION_PAYLOAD_STYLE", "both")
        self.session_factory = session_factory
        self.clock = clock

        if not self.base_url:
            raise CompletionConfigError("COMPLETION_SERVICE_URL missing")
        if self.payload_style not in PAYLOAD_STYLES:
            raise CompletionConfigError(f"unknown payload style: {self.payload_style}")

    @property
    def url(self) -> str:
        return f"{self.base_url}/{self.endpoint.lstrip('/')}"

    def build_payload(self, chat_id: str, database_ids: Sequence[str], message: str) -> dict:
        """
        Both request shapes have been served by the completion service;
        "both" sends their union so either contract is satisfied.
        """
        ids = [str(x) for x in database_ids]
        payload = {}
        if self.payload_style in ("both", "query"):
            payload.update({"database_ids": ids, "query": message})
        if self.payload_style in ("both", "chat"):
            payload.update({
                "chatId": str(chat_id),
                "databaseIds": ids,
                "message": message,
                "stream": True,
            })
        return payload

    def request(self, chat_id: str, database_ids: Sequence[str], message: str):
        payload = self.build_payload(chat_id, database_ids, message)
        deadline = self.clock() + self.timeout_s
        session = self.session_factory()
        inflight = []

        def _call():
            response = session.post(
                self.url,
                json=payload,
                headers={
                    "Accept": "text/event-stream, application/json",
                    "Content-Type": "application/json",
                },
                timeout=(self.connect_timeout_s, self.timeout_s),
                stream=True,
            )
            inflight.append(response)
            if not _is_stream(response):
                # whole-body replies are read under the same deadline
                response.content
            return response

        response = self._call_with_deadline(_call, session, inflight)
        return self._classify(response, deadline)

    def _call_with_deadline(self, fn: Callable[[], Any], session, inflight: list) -> Any:
        abandoned = threading.Event()

        def _close_late(f):
            if not abandoned.is_set() or f.cancelled() or f.exception() is not None:
                return
            late = f.result()
            if late is not None:
                late.close()

        ex = ThreadPoolExecutor(max_workers=1)
        fut = ex.submit(fn)
        fut.add_done_callback(_close_late)
        try:
            return fut.result(timeout=self.timeout_s)
        except FUTimeout:
            abandoned.set()
            logger.warning("completion_app_timeout url=%s after=%ss", self.url, self.timeout_s)
            # closing the session and any half-read response aborts the in-flight connection
            for response in list(inflight):
                response.close()
            session.close()
            if fut.done():
                _close_late(fut)
            raise CompletionUnavailable(f"completion service timed out after {self.timeout_s:g}s")
        except requests.RequestException as e:
            logger.warning("completion_request_failed url=%s err=%s", self.url, e)
            raise CompletionUnavailable(f"could not reach completion service: {e}") from e
        finally:
            ex.shutdown(wait=False, cancel_futures=True)

    def _classify(self, response, deadline: float):
        status = response.status_code
        if not 200 <= status < 300:
            try:
                body = (response.text or "").strip()
            except requests.RequestException:
                body = ""
            finally:
                response.close()
            logger.warning("completion_bad_status status=%s body=%s", status, body[:300])
            raise CompletionUnavailable(
                f"completion service returned {status}: {body[:MAX_ERROR_BODY_CHARS]}"
            )

        framing = _STREAM_CONTENT_TYPES.get(_content_type(response))
        if framing:
            return CompletionStream(
                framing=framing,
                response=response,
                deadline=deadline,
                timeout_s=self.timeout_s,
                clock=self.clock,
            )

        try:
            return CompletionDocument(data=response.json())
        except ValueError as e:
            raise CompletionUnavailable(f"completion service sent invalid JSON: {e}") from e
        except requests.RequestException as e:
            raise CompletionUnavailable(f"completion service response interrupted: {e}") from e
        finally:
            response.close()
