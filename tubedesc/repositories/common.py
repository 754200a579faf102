from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any, cast


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def to_utc_iso(value: datetime) -> str:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC).isoformat()
    return value.astimezone(UTC).isoformat()


def parse_iso_datetime(value: object) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def optional_str(value: object) -> str | None:
    if value is None:
        return None
    return str(value)


def load_str_list(raw: object) -> list[str]:
    if not isinstance(raw, str):
        return []
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return []
    if not isinstance(parsed, list):
        return []
    return [item for item in cast(list[object], parsed) if isinstance(item, str)]


def load_object_dict(raw: object) -> dict[str, Any]:
    if not isinstance(raw, str):
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    if not isinstance(parsed, dict):
        return {}
    output: dict[str, Any] = {}
    for key, value in cast(dict[object, object], parsed).items():
        if isinstance(key, str):
            output[key] = value
    return output
