from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any, cast


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def row_int(row: sqlite3.Row, column: str) -> int:
    """Integer column value; NULL counts and aggregates read as 0."""
    value = row[column]
    return int(value) if value is not None else 0


def optional_text(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


# JSON text columns: videos.tags_json holds a string list, job_queue.options_json
# an object. Malformed stored values decode to empty rather than failing reads.


def encode_string_list(values: Iterable[str]) -> str:
    return json.dumps(list(values))


def decode_string_list(raw_value: object) -> tuple[str, ...]:
    parsed = _loads(raw_value)
    if not isinstance(parsed, list):
        return ()
    return tuple(item for item in cast(list[object], parsed) if isinstance(item, str))


def encode_object(values: Mapping[str, Any] | None) -> str:
    return json.dumps(dict(values or {}), sort_keys=True)


def decode_object(raw_value: object) -> dict[str, Any]:
    parsed = _loads(raw_value)
    if not isinstance(parsed, dict):
        return {}
    raw_dict = cast(dict[object, object], parsed)
    return {key: value for key, value in raw_dict.items() if isinstance(key, str)}


def _loads(raw_value: object) -> object:
    if not isinstance(raw_value, str):
        return None
    try:
        return cast(object, json.loads(raw_value))
    except json.JSONDecodeError:
        return None
