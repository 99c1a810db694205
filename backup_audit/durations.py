"""
ISO-8601 duration parsing and cadence normalization.

Only the constrained grammar ``P[nD][T[nH][nM][nS]]`` is accepted; week,
month and year units are rejected. Parsing never raises: anything outside the
grammar yields ``None``.

Policy-derived cadences carry scheduling jitter, and operators reason in whole
hours, so normalization snaps values within 20 minutes of a canonical hour
count onto that count.
"""
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Union

from .constants import (
    CADENCE_SNAP_TOLERANCE_MINUTES,
    CANONICAL_CADENCE_HOURS,
    SECONDS_PER_DAY,
    SECONDS_PER_HOUR,
    SECONDS_PER_MINUTE,
)

_DURATION_RE = re.compile(
    r'^P(?:(?P<days>\d+)D)?'
    r'(?P<time>T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+(?:\.\d+)?)S)?)?$',
    re.IGNORECASE,
)


@dataclass(frozen=True)
class IsoDuration:
    """Structured ``P[nD][T[nH][nM][nS]]`` duration."""
    days: int = 0
    hours: int = 0
    minutes: int = 0
    seconds: float = 0.0

    @property
    def total_seconds(self) -> float:
        return (self.days * SECONDS_PER_DAY + self.hours * SECONDS_PER_HOUR
                + self.minutes * SECONDS_PER_MINUTE + self.seconds)

    def to_timedelta(self) -> timedelta:
        return timedelta(seconds=self.total_seconds)

    def isoformat(self) -> str:
        """Render back into the accepted grammar."""
        text = "P"
        if self.days:
            text += f"{self.days}D"
        time_part = ""
        if self.hours:
            time_part += f"{self.hours}H"
        if self.minutes:
            time_part += f"{self.minutes}M"
        if self.seconds:
            time_part += f"{_format_number(self.seconds)}S"
        if time_part:
            text += f"T{time_part}"
        if text == "P":
            text = "PT0S"
        return text


def parse_duration(text: Optional[str]) -> Optional[IsoDuration]:
    """
    Parse a ``P[nD][T[nH][nM][nS]]`` duration.

    Returns None for empty input, unsupported units, a bare ``P`` or a ``T``
    with no time components.
    """
    if not text or not isinstance(text, str):
        return None

    match = _DURATION_RE.match(text.strip())
    if not match:
        return None

    days, hours, minutes, seconds = (
        match.group('days'), match.group('hours'), match.group('minutes'), match.group('seconds')
    )
    if days is None and hours is None and minutes is None and seconds is None:
        return None
    if match.group('time') and hours is None and minutes is None and seconds is None:
        return None

    return IsoDuration(
        days=int(days or 0),
        hours=int(hours or 0),
        minutes=int(minutes or 0),
        seconds=float(seconds or 0),
    )


def _format_number(value: float) -> str:
    """Render 4.0 as '4' and 1.5 as '1.5'."""
    value = round(value, 2)
    return str(int(value)) if value == int(value) else str(value)


def _to_seconds(value: Union[float, int, timedelta]) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def snap_cadence_hours(value: Union[float, int, timedelta]) -> Optional[float]:
    """
    Snap a cadence (seconds or timedelta) onto whole hours where it is close.

    Canonical counts {1,2,3,4,6,8,12,24} win first, then the nearest whole
    hour; otherwise hours rounded to two decimals.
    """
    seconds = _to_seconds(value)
    if seconds <= 0:
        return None

    hours = seconds / SECONDS_PER_HOUR
    # Compared in seconds so the 20-minute boundary is exact
    tolerance = CADENCE_SNAP_TOLERANCE_MINUTES * SECONDS_PER_MINUTE

    for canonical in CANONICAL_CADENCE_HOURS:
        if abs(seconds - canonical * SECONDS_PER_HOUR) <= tolerance:
            return float(canonical)

    nearest = round(hours)
    if nearest >= 1 and abs(seconds - nearest * SECONDS_PER_HOUR) <= tolerance:
        return float(nearest)

    return round(hours, 2)


def describe_cadence(value: Union[float, int, timedelta]) -> Optional[str]:
    """
    Human-readable cadence text, e.g. ``"Every 4 hour(s)"``.

    Values that do not snap to a whole hour fall back to hours, then minutes,
    then seconds, each rounded to two decimals.
    """
    seconds = _to_seconds(value)
    if seconds <= 0:
        return None

    hours = seconds / SECONDS_PER_HOUR
    snapped = snap_cadence_hours(seconds)
    if snapped is not None and snapped == int(snapped) and snapped >= 1:
        return f"Every {int(snapped)} hour(s)"

    if hours >= 1:
        return f"Every {_format_number(hours)} hour(s)"

    minutes = seconds / SECONDS_PER_MINUTE
    if minutes >= 1:
        return f"Every {_format_number(minutes)} minute(s)"

    return f"Every {_format_number(seconds)} second(s)"
