"""
Cron expression validation and fire-time computation.

Accepted syntax:
- 5 fields: minute hour day-of-month month day-of-week
- 6 fields: second minute hour day-of-month month day-of-week

Each field may hold "*", numbers, ranges ("1-5"), steps ("*/15", "0-30/5")
and comma lists. Month and weekday fields also take names ("jan", "monday").
Weekday 7 is Sunday, like 0.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Dict, List, Optional, Tuple

from croniter import croniter
from croniter.croniter import CroniterError

from cronkeeper.errors import CronValidationError

UTC = timezone.utc

DAY_NAME_TO_CRON = {
    "sun": 0,
    "mon": 1,
    "tue": 2,
    "wed": 3,
    "thu": 4,
    "fri": 5,
    "sat": 6,
    "sunday": 0,
    "monday": 1,
    "tuesday": 2,
    "wednesday": 3,
    "thursday": 4,
    "friday": 5,
    "saturday": 6,
}
MONTH_NAME_TO_NUM = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
    "january": 1,
    "february": 2,
    "march": 3,
    "april": 4,
    "june": 6,
    "july": 7,
    "august": 8,
    "september": 9,
    "october": 10,
    "november": 11,
    "december": 12,
}

# (name, min, max, name mapping)
MINUTE_FIELDS: List[Tuple[str, int, int, Optional[Dict[str, int]]]] = [
    ("minute", 0, 59, None),
    ("hour", 0, 23, None),
    ("day_of_month", 1, 31, None),
    ("month", 1, 12, MONTH_NAME_TO_NUM),
    ("day_of_week", 0, 7, DAY_NAME_TO_CRON),
]
SECOND_FIELD: Tuple[str, int, int, Optional[Dict[str, int]]] = ("second", 0, 59, None)

CRON_FIELD_RE = re.compile(r"^[0-9*,/\-]+$")


@dataclass(frozen=True)
class CronExpression:
    raw: str
    fields: Tuple[str, ...]
    has_seconds: bool

    @property
    def croniter_expr(self) -> str:
        # croniter expects seconds as the trailing field.
        if self.has_seconds:
            return " ".join((*self.fields[1:], self.fields[0]))
        return " ".join(self.fields)


def replace_named_tokens(raw: str, mapping: Optional[Dict[str, int]], expression: str, field_name: str) -> str:
    def repl(match: re.Match[str]) -> str:
        token = match.group(0).lower()
        if mapping is None or token not in mapping:
            raise CronValidationError(expression, f'invalid token "{match.group(0)}" in {field_name}')
        return str(mapping[token])

    return re.sub(r"[A-Za-z]+", repl, raw)


def _validate_range_or_single(token: str, expression: str, field_name: str, min_value: int, max_value: int) -> None:
    if token == "*":
        return
    if "-" in token:
        left, right = token.split("-", 1)
        if not left.isdigit() or not right.isdigit():
            raise CronValidationError(expression, f'invalid range "{token}" in {field_name}')
        start = int(left)
        end = int(right)
        if start > end:
            raise CronValidationError(expression, f'invalid range "{token}" in {field_name}')
        if start < min_value or end > max_value:
            raise CronValidationError(
                expression, f'range "{token}" out of bounds {min_value}-{max_value} in {field_name}'
            )
        return
    if not token.isdigit():
        raise CronValidationError(expression, f'invalid token "{token}" in {field_name}')
    value = int(token)
    if value < min_value or value > max_value:
        raise CronValidationError(
            expression, f'value "{value}" out of bounds {min_value}-{max_value} in {field_name}'
        )


def validate_cron_token(raw: str, expression: str, field_name: str, min_value: int, max_value: int) -> str:
    token = raw.strip()
    if not token:
        raise CronValidationError(expression, f"{field_name} cannot be empty")
    if not CRON_FIELD_RE.match(token):
        raise CronValidationError(expression, f'invalid token "{token}" in {field_name}')

    for part in token.split(","):
        if not part:
            raise CronValidationError(expression, f'invalid token "{token}" in {field_name}')
        if "/" in part:
            base, step_str = part.split("/", 1)
            if not step_str.isdigit() or int(step_str) <= 0:
                raise CronValidationError(expression, f'invalid step "{part}" in {field_name}')
            step = int(step_str)
            if base == "*":
                continue
            _validate_range_or_single(base, expression, field_name, min_value, max_value)
            if step > (max_value - min_value + 1):
                raise CronValidationError(expression, f'step "{step}" too large in {field_name}')
            continue
        _validate_range_or_single(part, expression, field_name, min_value, max_value)
    return token


def _normalize_weekday(token: str) -> str:
    """Rewrite parts that mention 7 so croniter only ever sees 0-6."""
    parts: List[str] = []
    for part in token.split(","):
        base, _, step_str = part.partition("/")
        if "7" not in base.split("-"):
            parts.append(part)
            continue
        step = int(step_str) if step_str else 1
        if "-" in base:
            left, right = (int(chunk) for chunk in base.split("-", 1))
        else:
            left = right = int(base)
            if step_str:
                right = 7
        values = sorted({0 if value == 7 else value for value in range(left, right + 1, step)})
        parts.append(",".join(str(value) for value in values))
    return ",".join(parts)


def check_expression(expression: str) -> CronExpression:
    """Parse and validate a cron expression, raising CronValidationError."""
    if not isinstance(expression, str) or not expression.strip():
        raise CronValidationError(str(expression), "expression must be a non-empty string")

    raw_fields = expression.split()
    if len(raw_fields) == 5:
        layout = MINUTE_FIELDS
    elif len(raw_fields) == 6:
        layout = [SECOND_FIELD, *MINUTE_FIELDS]
    else:
        raise CronValidationError(expression, f"expected 5 or 6 fields, got {len(raw_fields)}")

    fields: List[str] = []
    for raw, (field_name, min_value, max_value, names) in zip(raw_fields, layout):
        token = replace_named_tokens(raw, names, expression, field_name)
        token = validate_cron_token(token, expression, field_name, min_value, max_value)
        if field_name == "day_of_week":
            token = _normalize_weekday(token)
        fields.append(token)

    parsed = CronExpression(raw=expression, fields=tuple(fields), has_seconds=len(fields) == 6)
    if not croniter.is_valid(parsed.croniter_expr):
        raise CronValidationError(expression, "rejected by cron engine")
    return parsed


def validate(expression: str) -> bool:
    try:
        check_expression(expression)
    except CronValidationError:
        return False
    return True


def _ensure_aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def next_fire_after(expression: str, after: datetime, tz: tzinfo = UTC) -> Optional[datetime]:
    """
    Next fire time strictly after `after`, evaluated in `tz`, returned in UTC.

    Returns None when the expression can never match (e.g. "0 0 31 2 *").
    """
    parsed = check_expression(expression)
    local_after = _ensure_aware_utc(after).astimezone(tz)
    try:
        nxt = croniter(parsed.croniter_expr, local_after).get_next(datetime)
    except (CroniterError, ValueError):
        return None
    if nxt.tzinfo is None:
        nxt = nxt.replace(tzinfo=tz)
    return nxt.astimezone(UTC)


def next_fire_times(
    expression: str,
    count: int,
    now: Optional[datetime] = None,
    tz: tzinfo = UTC,
) -> List[datetime]:
    cursor = _ensure_aware_utc(now or datetime.now(tz=UTC))
    runs: List[datetime] = []
    while len(runs) < count:
        nxt = next_fire_after(expression, cursor, tz)
        if nxt is None:
            break
        runs.append(nxt)
        cursor = nxt + timedelta(microseconds=1)
    return runs
