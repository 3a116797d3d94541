from __future__ import annotations

import hashlib
import json
from datetime import UTC, date, datetime
from typing import Any


def canonical_json_bytes(payload: Any) -> bytes:
    return json.dumps(
        payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def canonical_json(payload: Any) -> str:
    return canonical_json_bytes(payload).decode("utf-8")


def sha256_hex(data: bytes | str) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def canonical_hash(payload: Any) -> str:
    return sha256_hex(canonical_json_bytes(payload))


def utcnow() -> datetime:
    return datetime.now(UTC)


def normalize_utc(ts: datetime) -> datetime:
    """
    SQLite hands back naive datetimes even when aware ones were stored.
    Naive => assume UTC, aware => convert to UTC.
    """
    if ts.tzinfo is None:
        return ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


def isoz(ts: datetime | None) -> str | None:
    if ts is None:
        return None
    return normalize_utc(ts).isoformat().replace("+00:00", "Z")


def utc_iso8601_z_now() -> str:
    return isoz(utcnow())  # type: ignore[return-value]


def parse_utc_iso8601_z(value: str) -> str:
    if not isinstance(value, str) or not value.endswith("Z"):
        raise ValueError("timestamp must end with Z")
    datetime.fromisoformat(value.replace("Z", "+00:00"))
    return value


def parse_date(value: Any) -> date | None:
    """Accept YYYY-MM-DD or a full ISO timestamp; return None when unparseable."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        if "T" in text:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        return date.fromisoformat(text)
    except ValueError:
        return None
