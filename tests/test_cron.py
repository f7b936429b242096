from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from cronkeeper import cron
from cronkeeper.errors import CronValidationError

UTC = timezone.utc


@pytest.mark.parametrize(
    "expression",
    [
        "* * * * *",
        "*/5 * * * *",
        "0 9 * * mon-fri",
        "30 17 * * 5",
        "0 0 1 jan *",
        "0-30/5 8-18 * * 1,3,5",
        "0 0 * * 7",
        "*/10 * * * * *",
        "0 30 6 * * sunday",
    ],
)
def test_valid_expressions_accepted(expression: str) -> None:
    assert cron.validate(expression) is True


@pytest.mark.parametrize(
    "expression",
    [
        "",
        "   ",
        "not-a-cron",
        "* * * *",
        "* * * * * * *",
        "60 * * * *",
        "* 24 * * *",
        "* * 0 * *",
        "* * * 13 *",
        "* * * * 8",
        "a b c d e",
        "*/0 * * * *",
        "5-1 * * * *",
        "1,,2 * * * *",
        "@daily",
        "* * * foo *",
        "61 * * * * *",
    ],
)
def test_malformed_expressions_rejected(expression: str) -> None:
    assert cron.validate(expression) is False


def test_validate_rejects_non_string() -> None:
    assert cron.validate(None) is False  # type: ignore[arg-type]


def test_check_expression_reports_reason() -> None:
    with pytest.raises(CronValidationError, match="expected 5 or 6 fields"):
        cron.check_expression("* * * *")
    with pytest.raises(CronValidationError, match="out of bounds 0-23 in hour"):
        cron.check_expression("0 25 * * *")


def test_seconds_field_moves_to_end_for_engine() -> None:
    parsed = cron.check_expression("15 */5 * * * *")
    assert parsed.has_seconds is True
    assert parsed.croniter_expr == "*/5 * * * * 15"


def test_weekday_seven_normalized_to_sunday() -> None:
    assert cron.check_expression("0 0 * * 5-7").croniter_expr == "0 0 * * 0,5,6"
    assert cron.check_expression("0 0 * * 7").croniter_expr == "0 0 * * 0"


def test_next_fire_after_weekly() -> None:
    # 2026-01-01 is a Thursday.
    nxt = cron.next_fire_after("30 17 * * 5", datetime(2026, 1, 1, 0, 0, tzinfo=UTC))
    assert nxt == datetime(2026, 1, 2, 17, 30, tzinfo=UTC)


def test_next_fire_after_is_strictly_in_future() -> None:
    now = datetime(2026, 2, 23, 6, 0, 0, tzinfo=UTC)
    nxt = cron.next_fire_after("0 6 * * *", now)
    assert nxt == datetime(2026, 2, 24, 6, 0, tzinfo=UTC)


def test_next_fire_after_with_seconds() -> None:
    nxt = cron.next_fire_after("*/15 * * * * *", datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC))
    assert nxt == datetime(2026, 3, 1, 12, 0, 15, tzinfo=UTC)


def test_next_fire_after_sunday_as_seven() -> None:
    nxt = cron.next_fire_after("0 0 * * 7", datetime(2026, 1, 1, 0, 0, tzinfo=UTC))
    assert nxt == datetime(2026, 1, 4, 0, 0, tzinfo=UTC)


def test_next_fire_after_respects_timezone() -> None:
    berlin = ZoneInfo("Europe/Berlin")
    nxt = cron.next_fire_after("0 9 * * *", datetime(2026, 1, 1, 0, 0, tzinfo=UTC), tz=berlin)
    assert nxt == datetime(2026, 1, 1, 8, 0, tzinfo=UTC)


def test_next_fire_after_naive_input_treated_as_utc() -> None:
    nxt = cron.next_fire_after("0 * * * *", datetime(2026, 1, 1, 10, 30))
    assert nxt == datetime(2026, 1, 1, 11, 0, tzinfo=UTC)


def test_next_fire_times_are_increasing() -> None:
    runs = cron.next_fire_times("*/20 * * * *", 4, now=datetime(2026, 1, 1, 0, 5, tzinfo=UTC))
    assert [run.strftime("%H:%M") for run in runs] == ["00:20", "00:40", "01:00", "01:20"]


def test_next_fire_after_invalid_expression_raises() -> None:
    with pytest.raises(CronValidationError):
        cron.next_fire_after("not-a-cron", datetime(2026, 1, 1, tzinfo=UTC))
