# chat/normalize.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Sequence

log = logging.getLogger(__name__)

NO_RESPONSE_TEXT = "No response from AI"

TEXT_KEYS = ("response", "message", "formatted_result")
QUERY_KEYS = ("sql_query", "sqlQuery")
RESULT_KEYS = ("queryResults", "results", "query_results")


@dataclass(frozen=True)
class TurnOutcome:
    """What one turn produced, whatever shape the service answered in."""
    assistant_text: str = ""
    sql_query: str = ""
    query_results: List[Dict[str, Any]] = field(default_factory=list)
    file_path: str = ""

    def with_text(self, text: str) -> "TurnOutcome":
        return replace(self, assistant_text=text)


def _first_present(d: dict, keys: Sequence[str]) -> Any:
    for k in keys:
        if d.get(k) is not None:
            return d[k]
    return None


def _first_nonempty(d: dict, keys: Sequence[str]) -> str:
    for k in keys:
        v = d.get(k)
        if isinstance(v, str) and v.strip():
            return v
    return ""


def _as_text(v: Any) -> str:
    if v is None:
        return ""
    return v if isinstance(v, str) else str(v)


def normalize_results(raw: Any) -> List[Dict[str, Any]]:
    """
    Coerce an upstream result list into dicts that always carry
    status / result / file_path / formatted_result.
    """
    if raw is None:
        return []
    if isinstance(raw, dict):
        raw = [raw]
    if not isinstance(raw, list):
        log.warning("query results ignored, expected a list: %r", type(raw).__name__)
        return []

    out = []
    for item in raw:
        if not isinstance(item, dict):
            log.warning("dropping non-object query result: %r", item)
            continue
        entry = dict(item)
        entry.setdefault("status", "unknown")
        entry.setdefault("result", None)
        entry.setdefault("file_path", None)
        entry.setdefault("formatted_result", "")
        out.append(entry)
    return out


def normalize(source: Any) -> TurnOutcome:
    """
    Single normalization for every upstream shape: a terminal stream event,
    a JSON object document, or a JSON array of per-query results.
    """
    if isinstance(source, list):
        first = source[0] if source and isinstance(source[0], dict) else {}
        return TurnOutcome(
            assistant_text=_as_text(first.get("formatted_result")),
            sql_query=_as_text(first.get("sql_generated")),
            query_results=normalize_results(source),
            file_path=_as_text(first.get("file_path")),
        )

    if isinstance(source, dict):
        return TurnOutcome(
            assistant_text=_as_text(_first_present(source, TEXT_KEYS)),
            sql_query=_first_nonempty(source, QUERY_KEYS),
            query_results=normalize_results(_first_present(source, RESULT_KEYS)),
            file_path=_as_text(source.get("file_path")),
        )

    if isinstance(source, str):
        return TurnOutcome(assistant_text=source)

    return TurnOutcome()


def normalize_document(doc: Any) -> TurnOutcome:
    """Whole-document replies always yield some assistant text."""
    outcome = normalize(doc)
    if not outcome.assistant_text.strip():
        outcome = outcome.with_text(NO_RESPONSE_TEXT)
    return outcome
