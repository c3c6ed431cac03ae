"""
Rule schedule evaluation - decides whether a rule is active at a given instant.

Pure predicate, re-evaluated on every rule fetch. Anything that cannot be
evaluated (bad cron field, unknown timezone, malformed window) makes the rule
inactive and is logged; nothing here raises.
"""

from datetime import datetime, timedelta, timezone
from typing import List, Optional, Set
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .schema import Rule, TimeWindow, SCHEDULE_ALWAYS, SCHEDULE_TIME_WINDOWS, SCHEDULE_CRON
from ..util.logging import log_schedule_error

DEFAULT_TIMEZONE = "UTC"

# (name, min, max) for the five cron fields
CRON_FIELDS = [
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day_of_month", 1, 31),
    ("month", 1, 12),
    ("day_of_week", 0, 6),
]


def is_rule_active(rule: Rule, now: Optional[datetime] = None) -> bool:
    """Check if a rule is currently active based on its enabled flag and schedule."""
    if not rule.enabled:
        return False

    schedule = rule.schedule
    if not schedule or not schedule.type or schedule.type == SCHEDULE_ALWAYS:
        return True

    now = _as_aware(now)

    try:
        if schedule.type == SCHEDULE_TIME_WINDOWS:
            return is_within_time_windows(schedule.windows, now, schedule.timezone)

        if schedule.type == SCHEDULE_CRON:
            if not schedule.cron_expression:
                log_schedule_error(rule.id, "cron schedule without expression")
                return False
            return matches_cron_expression(schedule.cron_expression, now, schedule.timezone)
    except (ValueError, TypeError, ZoneInfoNotFoundError) as e:
        log_schedule_error(rule.id, f"unable to evaluate {schedule.type} schedule", [e])
        return False

    log_schedule_error(rule.id, f"unknown schedule type {schedule.type!r}")
    return False


def is_within_time_windows(windows: List[TimeWindow], now: datetime,
                           default_timezone: Optional[str] = None) -> bool:
    """Check if now falls inside any of the windows."""
    return any(is_within_time_window(w, now, default_timezone) for w in windows or [])


def is_within_time_window(window: TimeWindow, now: datetime,
                          default_timezone: Optional[str] = None) -> bool:
    """
    Check a single window, bounds inclusive.

    A window whose end is before its start wraps around midnight within
    day_of_week itself: it covers 00:00..end and start..23:59 of that day.
    """
    _check_window(window)

    local = _as_aware(now).astimezone(_zone(window.timezone or default_timezone))
    day = _cron_weekday(local)
    current = local.hour * 60 + local.minute
    start = window.start_hour * 60 + window.start_minute
    end = window.end_hour * 60 + window.end_minute

    if day != window.day_of_week:
        return False
    if end >= start:
        return start <= current <= end
    return current >= start or current <= end


def matches_cron_expression(expression: str, now: datetime, tz: Optional[str] = None) -> bool:
    """
    Check a 5-field cron expression against the minute containing now.

    Raises ValueError for malformed expressions; is_rule_active() turns
    that into an inactive rule.
    """
    parts = expression.strip().split()
    if len(parts) != 5:
        raise ValueError(f"Invalid cron expression: {expression!r} (expected 5 parts)")

    local = _as_aware(now).astimezone(_zone(tz))
    values = [local.minute, local.hour, local.day, local.month, _cron_weekday(local)]

    for part, (name, low, high), value in zip(parts, CRON_FIELDS, values):
        allowed = parse_cron_field(part, low, high, allow_sunday_7=(name == "day_of_week"))
        if value not in allowed:
            return False
    return True


def parse_cron_field(expr: str, low: int, high: int, allow_sunday_7: bool = False) -> Set[int]:
    """
    Expand one cron field into the set of values it allows.

    Supports *, a-b, */n, a-b/n, a/n, literals and comma lists of those.
    """
    if not expr:
        raise ValueError("empty cron field")

    allowed: Set[int] = set()
    for term in expr.split(","):
        term = term.strip()
        if not term:
            raise ValueError(f"empty term in cron field {expr!r}")

        step = 1
        has_step = "/" in term
        if has_step:
            term, step_str = term.split("/", 1)
            step = _parse_int(step_str, expr)
            if step <= 0:
                raise ValueError(f"cron step must be positive in {expr!r}")

        if term == "*":
            start, end = low, high
        elif "-" in term:
            start_str, end_str = term.split("-", 1)
            start, end = _parse_int(start_str, expr), _parse_int(end_str, expr)
        else:
            start = _parse_int(term, expr)
            # a/n runs from a to the top of the range
            end = high if has_step else start

        top = 7 if allow_sunday_7 else high
        if start < low or end > top or start > end:
            raise ValueError(f"cron value out of range in {expr!r} (allowed {low}-{high})")

        if term == "*" and has_step:
            # */n keeps values divisible by n, whatever the field's lower bound
            allowed.update(value for value in range(low, high + 1) if value % step == 0)
            continue

        for value in range(start, end + 1, step):
            allowed.add(0 if allow_sunday_7 and value == 7 else value)

    return allowed


def _parse_int(text: str, expr: str) -> int:
    text = text.strip()
    if not text.isdigit():
        raise ValueError(f"invalid number {text!r} in cron field {expr!r}")
    return int(text)


def _check_window(window: TimeWindow):
    if not 0 <= window.day_of_week <= 6:
        raise ValueError(f"day_of_week out of range: {window.day_of_week}")
    for hour in (window.start_hour, window.end_hour):
        if not 0 <= hour <= 23:
            raise ValueError(f"hour out of range: {hour}")
    for minute in (window.start_minute, window.end_minute):
        if not 0 <= minute <= 59:
            raise ValueError(f"minute out of range: {minute}")


def _zone(name: Optional[str]) -> ZoneInfo:
    return ZoneInfo(name or DEFAULT_TIMEZONE)


def _as_aware(now: Optional[datetime]) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def _cron_weekday(dt: datetime) -> int:
    """Day of week with Sunday=0, as cron and the rule windows count it."""
    return (dt.weekday() + 1) % 7


def from_epoch_ms(ms: int) -> datetime:
    """Convert stored millisecond timestamps to aware UTC datetimes."""
    return datetime(1970, 1, 1, tzinfo=timezone.utc) + timedelta(milliseconds=ms)


def to_epoch_ms(now: Optional[datetime] = None) -> int:
    """Millisecond timestamp for now (naive values are UTC)."""
    return int(_as_aware(now).timestamp() * 1000)
