from __future__ import annotations

from datetime import UTC, date, datetime

import pytest

from adpilot.domain.marketplace import local_day, timezone_for, timezone_name_for


@pytest.mark.parametrize(
    ("marketplace", "expected"),
    [
        ("US", "America/Los_Angeles"),
        (" de ", "Europe/Berlin"),
        ("JP", "Asia/Tokyo"),
        ("XX", "America/Los_Angeles"),
        (None, "America/Los_Angeles"),
    ],
)
def test_timezone_name_for(marketplace, expected) -> None:
    assert timezone_name_for(marketplace) == expected


def test_local_day_crosses_midnight_by_marketplace() -> None:
    now = datetime(2024, 3, 15, 17, 0, tzinfo=UTC)

    assert local_day(now, timezone_for("US")) == date(2024, 3, 15)
    assert local_day(now, timezone_for("JP")) == date(2024, 3, 16)


def test_local_day_treats_naive_as_utc() -> None:
    assert local_day(datetime(2024, 1, 1, 3, 0), timezone_for("US")) == date(2023, 12, 31)
