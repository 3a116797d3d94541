from __future__ import annotations

from datetime import UTC, date, datetime, timedelta, timezone

import pytest

from services.canonical import (
    canonical_hash,
    canonical_json,
    isoz,
    normalize_utc,
    parse_date,
    parse_utc_iso8601_z,
    sha256_hex,
)


def test_canonical_json_sorted_and_compact():
    assert canonical_json({"b": 1, "a": {"d": [1, 2], "c": None}}) == (
        '{"a":{"c":null,"d":[1,2]},"b":1}'
    )


def test_canonical_json_keeps_unicode():
    assert canonical_json({"name": "Müller"}) == '{"name":"Müller"}'


def test_sha256_known_vector():
    assert sha256_hex("abc") == (
        "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    )
    assert sha256_hex(b"abc") == sha256_hex("abc")


def test_canonical_hash_is_key_order_independent():
    assert canonical_hash({"b": 1, "a": 2}) == canonical_hash({"a": 2, "b": 1})
    assert canonical_hash({"a": 2, "b": 1}) == sha256_hex('{"a":2,"b":1}')


def test_normalize_and_isoz():
    naive = datetime(2026, 1, 2, 3, 4, 5)
    assert normalize_utc(naive).tzinfo is UTC
    cet = datetime(2026, 1, 2, 4, 4, 5, tzinfo=timezone(timedelta(hours=1)))
    assert isoz(cet) == "2026-01-02T03:04:05Z"
    assert isoz(None) is None


@pytest.mark.parametrize(
    "value,expected",
    [
        ("2026-05-01", date(2026, 5, 1)),
        ("2026-05-01T10:00:00Z", date(2026, 5, 1)),
        (date(2026, 5, 1), date(2026, 5, 1)),
        (datetime(2026, 5, 1, 23, 0), date(2026, 5, 1)),
        ("01/05/2026", None),
        ("", None),
        (None, None),
        (20260501, None),
    ],
)
def test_parse_date(value, expected):
    assert parse_date(value) == expected


def test_parse_utc_iso8601_z():
    assert parse_utc_iso8601_z("2026-01-01T00:00:00Z") == "2026-01-01T00:00:00Z"
    with pytest.raises(ValueError):
        parse_utc_iso8601_z("2026-01-01T00:00:00+00:00")
