"""Shared utility functions used across ranking modules."""
from __future__ import annotations

import json
import re
import unicodedata
from datetime import UTC, datetime
from typing import Any

_MISSING = object()


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def normalize_name(value: str) -> str:
    """Fold a person name to a comparison key (accents, case, punctuation)."""
    normalized = unicodedata.normalize("NFKD", value)
    normalized = "".join(ch for ch in normalized if not unicodedata.combining(ch))
    normalized = normalized.casefold()
    normalized = re.sub(r"[^a-z0-9]+", " ", normalized)
    return re.sub(r"\s+", " ", normalized).strip()


def to_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def normalize_sport(value: str) -> str:
    """Canonical sport key: whitespace collapsed, casefolded."""
    return " ".join(value.split()).casefold()
