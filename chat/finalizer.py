# chat/finalizer.py
from __future__ import annotations

import logging
import re

from django.db import transaction
from django.db.models import Case, F, Value, When
from django.utils import timezone

from .models import Chat, Message, UNTITLED_TITLE
from .normalize import TurnOutcome

log = logging.getLogger(__name__)

TITLE_MAX_CHARS = 50


class TurnAlreadyFinalized(RuntimeError):
    ...


def derive_title(text: str, *, first_sentence: bool = True) -> str:
    """
    Chat title from an answer (its first sentence) or from a question
    (as typed). Cut at TITLE_MAX_CHARS with a trailing "...".
    """
    t = re.sub(r"\s+", " ", (text or "")).strip()
    if first_sentence:
        t = t.split(".")[0].strip()
    if len(t) > TITLE_MAX_CHARS:
        return t[:TITLE_MAX_CHARS] + "..."
    return t


def _pick_title(message: Message, title_source: str, from_answer: bool) -> str:
    title = derive_title(title_source, first_sentence=from_answer) if title_source else ""
    if not title or title == UNTITLED_TITLE:
        title = derive_title(message.user_message, first_sentence=False)
    return title


def finalize_turn(
    message: Message,
    outcome: TurnOutcome,
    *,
    title_source: str = "",
    title_from_answer: bool = False,
    failed: bool = False,
    error: str = "",
) -> None:
    """
    Commit a turn: one write to the stub Message, one write to its Chat
    (activity timestamp plus the title, only while it is still untitled).

    The Message write is conditional on the row still being a stub, so a
    second call for the same turn raises TurnAlreadyFinalized instead of
    overwriting the answer.
    """
    now = timezone.now()
    metadata = dict(message.metadata or {})
    if outcome.file_path:
        metadata["file_path"] = outcome.file_path
    if failed:
        metadata["failed"] = True
        metadata["error"] = error

    title = _pick_title(message, title_source, title_from_answer)

    with transaction.atomic():
        updated = Message.objects.filter(pk=message.pk, finalized_at__isnull=True).update(
            assistant_message=outcome.assistant_text,
            sql_query=outcome.sql_query or "",
            query_results=list(outcome.query_results or []),
            metadata=metadata,
            finalized_at=now,
            updated_at=now,
        )
        if updated != 1:
            raise TurnAlreadyFinalized(f"message {message.pk} is already finalized")

        chat_fields = {"last_message_at": now, "updated_at": now}
        if title and title != UNTITLED_TITLE:
            chat_fields["title"] = Case(
                When(title=UNTITLED_TITLE, then=Value(title)),
                default=F("title"),
            )
        Chat.objects.filter(pk=message.chat_id).update(**chat_fields)

    message.assistant_message = outcome.assistant_text
    message.sql_query = outcome.sql_query or ""
    message.query_results = list(outcome.query_results or [])
    message.metadata = metadata
    message.finalized_at = now
    message.updated_at = now

    log.info(
        "turn finalized message=%s chat=%s failed=%s chars=%d",
        message.pk, message.chat_id, failed, len(outcome.assistant_text),
    )
