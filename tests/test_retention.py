from __future__ import annotations

from datetime import UTC, datetime

import pytest

from services.evidence_kernel.sealing import compute_retention_end, display_id_for


@pytest.mark.parametrize(
    "policy,years", [("STANDARD_1_YEAR", 1), ("3_YEARS", 3), ("7_YEARS", 7)]
)
def test_fixed_policies_use_calendar_years(policy, years):
    sealed = datetime(2026, 6, 15, 12, 30, tzinfo=UTC)
    end = compute_retention_end(sealed, policy)
    assert end == sealed.replace(year=2026 + years)


def test_leap_day_rolls_back_to_feb_28():
    sealed = datetime(2028, 2, 29, 9, 0, tzinfo=UTC)
    assert compute_retention_end(sealed, "STANDARD_1_YEAR") == datetime(
        2029, 2, 28, 9, 0, tzinfo=UTC
    )
    assert compute_retention_end(sealed, "3_YEARS") == datetime(
        2031, 2, 28, 9, 0, tzinfo=UTC
    )


def test_custom_days():
    sealed = datetime(2026, 12, 30, tzinfo=UTC)
    assert compute_retention_end(sealed, "CUSTOM", 3) == datetime(
        2027, 1, 2, tzinfo=UTC
    )


def test_custom_without_days_is_an_error():
    with pytest.raises(ValueError):
        compute_retention_end(datetime(2026, 1, 1, tzinfo=UTC), "CUSTOM", None)


def test_unknown_policy_is_an_error():
    with pytest.raises(ValueError):
        compute_retention_end(datetime(2026, 1, 1, tzinfo=UTC), "FOREVER")


def test_display_id_format():
    assert display_id_for("abcdef0123" + "0" * 54, 42) == "EV-ABCDEF01-000042"
