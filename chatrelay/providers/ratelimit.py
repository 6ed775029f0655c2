"""Rate-limit reset time resolution from provider response headers."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime

from chatrelay.core.timeutils import ensure_utc

DEFAULT_RATE_LIMIT_COOLDOWN = timedelta(hours=1)
DEFAULT_RESET_HEADERS = ("x-ratelimit-reset",)
RETRY_AFTER_HEADER = "retry-after"

# Ten digits is the width of a Unix timestamp in seconds; no sane relative
# delay is that long.
UNIX_SECONDS_MIN_DIGITS = 10
UNIX_MILLIS_MIN_DIGITS = 13

_NUMERIC = re.compile(r"^\d+(\.\d+)?$")
_DURATION = re.compile(r"^(?:(\d+(?:\.\d+)?)h)?(?:(\d+(?:\.\d+)?)m(?!s))?(?:(\d+(?:\.\d+)?)s)?(?:(\d+(?:\.\d+)?)ms)?$")


def _parse_numeric(value: str, now: datetime) -> datetime | None:
    digits = len(value.split(".", 1)[0])
    number = float(value)
    try:
        if digits >= UNIX_MILLIS_MIN_DIGITS:
            return datetime.fromtimestamp(number / 1000, tz=timezone.utc)
        if digits >= UNIX_SECONDS_MIN_DIGITS:
            return datetime.fromtimestamp(number, tz=timezone.utc)
        return now + timedelta(seconds=number)
    except (OverflowError, OSError, ValueError):
        return None


def _parse_duration(value: str, now: datetime) -> datetime | None:
    match = _DURATION.match(value)
    if not match or not any(match.groups()):
        return None
    hours, minutes, seconds, millis = (float(group) if group else 0.0 for group in match.groups())
    try:
        return now + timedelta(hours=hours, minutes=minutes, seconds=seconds, milliseconds=millis)
    except OverflowError:
        return None


def parse_reset_value(value: str | None, now: datetime) -> datetime | None:
    """Interpret one header value as an absolute reset time.

    Accepts Unix timestamps (seconds or milliseconds), relative seconds,
    Go-style durations such as ``6m0s``, ISO-8601 and HTTP dates.
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    if _NUMERIC.match(value):
        return _parse_numeric(value, now)

    parsed = _parse_duration(value, now)
    if parsed is not None:
        return parsed

    try:
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        pass

    try:
        return ensure_utc(parsedate_to_datetime(value))
    except (TypeError, ValueError, IndexError):
        return None


def resolve_reset_at(
    headers: Mapping[str, str] | None,
    now: datetime,
    *,
    reset_headers: Iterable[str] = DEFAULT_RESET_HEADERS,
    declared_delay_seconds: float | None = None,
    default_cooldown: timedelta = DEFAULT_RATE_LIMIT_COOLDOWN,
) -> datetime:
    """Derive when a rate-limited key may be used again.

    Priority: a reset timestamp header, then ``retry-after``, then a delay
    declared in the response body, then the default cool-down. The result
    is never earlier than ``now``.
    """
    lowered = {str(name).lower(): str(value) for name, value in (headers or {}).items()}

    candidates = [lowered.get(name.lower()) for name in reset_headers]
    candidates.append(lowered.get(RETRY_AFTER_HEADER))
    for raw in candidates:
        reset_at = parse_reset_value(raw, now)
        if reset_at is not None:
            return max(reset_at, now)

    if declared_delay_seconds is not None and declared_delay_seconds >= 0:
        return now + timedelta(seconds=declared_delay_seconds)

    return now + default_cooldown


__all__ = [
    "DEFAULT_RATE_LIMIT_COOLDOWN",
    "parse_reset_value",
    "resolve_reset_at",
]
