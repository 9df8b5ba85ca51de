import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

# numeric timestamps below this are unix seconds, at or above it unix millis
_MILLIS_THRESHOLD = 1e12

_MS_PER_UNIT: "dict[str, int]" = {
    "SECOND": 1000,
    "MINUTE": 60 * 1000,
    "HOUR": 60 * 60 * 1000,
    "DAY": 24 * 60 * 60 * 1000,
}

HOUR_MS = 60 * 60 * 1000
SESSION_PERIOD_MS = 5 * HOUR_MS
WEEKLY_PERIOD_MS = 7 * 24 * HOUR_MS


def read_number(value: "Any") -> "float | None":
    """
    coerces ints, floats and numeric strings to a finite float.
    Anything else (including booleans) is None.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def format_iso(moment: "datetime") -> "str":
    """
    renders an aware datetime as ISO 8601 UTC with millisecond
    precision, e.g. 2026-01-01T12:00:00.000Z.
    """
    utc = moment.astimezone(timezone.utc)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def parse_iso(value: "str") -> "datetime | None":
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_datetime(value: "Any") -> "datetime | None":
    """
    converts unix seconds, unix millis or an ISO string to an aware
    UTC datetime.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        if not math.isfinite(value) or value <= 0:
            return None
        seconds = value / 1000 if value >= _MILLIS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if isinstance(value, str):
        number = read_number(value)
        if number is not None:
            return to_datetime(number)
        return parse_iso(value)

    return None


def to_iso(value: "Any") -> "str | None":
    moment = to_datetime(value)
    if moment is None:
        return None
    return format_iso(moment)


def parse_period_ms(window: "Mapping[str, Any] | None") -> "int | None":
    """
    reads a {"duration": 300, "timeUnit": "TIME_UNIT_MINUTE"} style
    window into milliseconds. Unknown units or durations give None.
    """
    if not isinstance(window, Mapping):
        return None

    duration = read_number(window.get("duration"))
    if duration is None or duration <= 0:
        return None

    unit = str(window.get("timeUnit") or window.get("time_unit") or "").upper()
    for name, ms in _MS_PER_UNIT.items():
        if name in unit:
            return int(duration * ms)
    return None


@dataclass(frozen=True, slots=True)
class Quota:
    used: "float"
    limit: "float"
    resets_at: "str | None" = None


_RESET_KEYS = ("resetTime", "reset_at", "resetAt", "reset_time")


def quota_from_row(row: "Mapping[str, Any] | None") -> "Quota | None":
    """
    reads an absolute quota row. A row reporting only remaining units
    is converted with used = limit - remaining.
    """
    if not isinstance(row, Mapping):
        return None

    limit = read_number(row.get("limit"))
    if limit is None or limit <= 0:
        return None

    used = read_number(row.get("used"))
    if used is None:
        remaining = read_number(row.get("remaining"))
        if remaining is not None:
            used = limit - remaining
    if used is None:
        return None

    reset = next((row[k] for k in _RESET_KEYS if row.get(k) is not None), None)
    return Quota(used=used, limit=limit, resets_at=to_iso(reset))


def to_percent_quota(quota: "Quota") -> "Quota | None":
    """
    rescales an absolute quota to percent (limit 100), rounded to one
    decimal and clamped at zero.
    """
    if quota.limit <= 0:
        return None
    percent = quota.used / quota.limit * 100
    if not math.isfinite(percent):
        return None
    return Quota(
        used=round(max(0.0, percent), 1),
        limit=100,
        resets_at=quota.resets_at,
    )


def title_case(value: "str") -> "str":
    return re.sub(r"\b[a-z]", lambda m: m.group(0).upper(), value.strip().lower())


def format_plan_label(raw: "Any") -> "str | None":
    """
    turns raw tier identifiers into display labels:
    "LEVEL_PREMIUM" -> "Premium", "max_plus" -> "Max Plus".
    """
    if not isinstance(raw, str) or not raw:
        return None
    cleaned = re.sub(r"^LEVEL_", "", raw.strip()).replace("_", " ")
    return title_case(cleaned) or None
