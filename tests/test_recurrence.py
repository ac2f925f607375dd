from datetime import datetime, time, timedelta, timezone

import pytest

from app.services.recurrence import RecurrenceConfigError, next_occurrence, validate_rule

UTC = timezone.utc


def test_daily_next_day_when_time_passed():
    ref = datetime(2024, 1, 1, 10, 0, tzinfo=UTC)
    assert next_occurrence("daily", time(9, 0), "UTC", ref) == datetime(2024, 1, 2, 9, 0, tzinfo=UTC)


def test_daily_same_day_when_still_ahead():
    ref = datetime(2024, 1, 1, 8, 0, tzinfo=UTC)
    assert next_occurrence("daily", time(9, 0), "UTC", ref) == datetime(2024, 1, 1, 9, 0, tzinfo=UTC)


def test_result_is_strictly_after_reference():
    ref = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)
    assert next_occurrence("daily", time(9, 0), "UTC", ref) == datetime(2024, 1, 2, 9, 0, tzinfo=UTC)


def test_weekdays_skip_weekend():
    friday = datetime(2024, 1, 5, 10, 0, tzinfo=UTC)
    assert next_occurrence("weekdays", time(9, 0), "UTC", friday) == datetime(2024, 1, 8, 9, 0, tzinfo=UTC)


def test_weekly_picks_next_listed_day():
    tuesday = datetime(2024, 1, 2, 12, 0, tzinfo=UTC)
    nxt = next_occurrence("weekly", time(9, 0), "UTC", tuesday, days=["monday", "thursday"])
    assert nxt == datetime(2024, 1, 4, 9, 0, tzinfo=UTC)


def test_custom_wraps_to_next_week():
    thursday_late = datetime(2024, 1, 4, 23, 0, tzinfo=UTC)
    nxt = next_occurrence("custom", time(9, 0), "UTC", thursday_late, days=["thursday"])
    assert nxt == datetime(2024, 1, 11, 9, 0, tzinfo=UTC)


def test_weekday_evaluated_in_local_zone():
    # 2024-01-06 03:00Z is still Friday evening in Los Angeles.
    ref = datetime(2024, 1, 6, 3, 0, tzinfo=UTC)
    nxt = next_occurrence("weekdays", time(20, 0), "America/Los_Angeles", ref)
    assert nxt == datetime(2024, 1, 6, 4, 0, tzinfo=UTC)


def test_empty_day_set_is_config_error():
    with pytest.raises(RecurrenceConfigError):
        next_occurrence("custom", time(9, 0), "UTC", datetime(2024, 1, 1, tzinfo=UTC), days=[])


def test_unknown_timezone_is_config_error():
    with pytest.raises(RecurrenceConfigError):
        validate_rule("daily", "Mars/Olympus_Mons")


def test_naive_reference_rejected():
    with pytest.raises(ValueError):
        next_occurrence("daily", time(9, 0), "UTC", datetime(2024, 1, 1))


def test_one_time_future_and_past():
    at = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)
    assert next_occurrence("one_time", time(0, 0), "UTC", at - timedelta(hours=1), at=at) == at
    assert next_occurrence("one_time", time(0, 0), "UTC", at, at=at) is None


def test_spring_forward_fires_once_per_day():
    # 02:30 does not exist in New York on 2024-03-10; it resolves forward.
    ref = datetime(2024, 3, 9, 12, 0, tzinfo=UTC)
    first = next_occurrence("daily", time(2, 30), "America/New_York", ref)
    second = next_occurrence("daily", time(2, 30), "America/New_York", first)
    assert first == datetime(2024, 3, 10, 7, 30, tzinfo=UTC)
    assert second == datetime(2024, 3, 11, 6, 30, tzinfo=UTC)


def test_fall_back_does_not_double_fire():
    # 01:30 happens twice in New York on 2024-11-03; only the first counts.
    ref = datetime(2024, 11, 2, 12, 0, tzinfo=UTC)
    first = next_occurrence("daily", time(1, 30), "America/New_York", ref)
    second = next_occurrence("daily", time(1, 30), "America/New_York", first)
    assert first == datetime(2024, 11, 3, 5, 30, tzinfo=UTC)
    assert second == datetime(2024, 11, 4, 6, 30, tzinfo=UTC)
