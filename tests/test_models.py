from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest

from agent_bridge.models import TimeFrame, calculate_due_date

pytestmark = [
    allure.epic("State Engine"),
    allure.feature("Goals & Tasks"),
]

# 2026-03-04 is a Wednesday
_WEDNESDAY = datetime(2026, 3, 4, 10, 30, tzinfo=UTC)


def test_today_ends_at_last_millisecond_of_the_day() -> None:
    due = calculate_due_date(TimeFrame.TODAY, now=_WEDNESDAY)

    assert due == datetime(2026, 3, 4, 23, 59, 59, 999_000, tzinfo=UTC)


def test_tomorrow_and_next_week_are_relative_offsets() -> None:
    assert calculate_due_date(TimeFrame.TOMORROW, now=_WEDNESDAY) == _WEDNESDAY + timedelta(days=1)
    assert calculate_due_date(TimeFrame.NEXT_WEEK, now=_WEDNESDAY) == _WEDNESDAY + timedelta(
        days=7,
    )


@pytest.mark.parametrize(
    ("now", "days"),
    [
        (_WEDNESDAY, 2),
        (datetime(2026, 3, 1, 9, 0, tzinfo=UTC), 5),
        (datetime(2026, 3, 6, 9, 0, tzinfo=UTC), 7),
        (datetime(2026, 3, 7, 9, 0, tzinfo=UTC), 7),
    ],
)
def test_this_week_lands_on_friday(now: datetime, days: int) -> None:
    assert calculate_due_date(TimeFrame.THIS_WEEK, now=now) == now + timedelta(days=days)


def test_no_rush_has_no_due_date() -> None:
    assert calculate_due_date(TimeFrame.NO_RUSH, now=_WEDNESDAY) is None
