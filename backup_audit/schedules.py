"""
Policy Schedule Extractor.

Backup policies come in several incompatible shapes depending on API version
and workload. Each shape is detected from a fixed, case-tolerant field-name
precedence list and handed to exactly one adapter, which produces a
canonical ``ScheduleInfo``:

- ``enhanced_hourly``: SimpleSchedulePolicyV2 (``hourlySchedule`` /
  ``dailySchedule`` / ``weeklySchedule`` sub-objects)
- ``classic_simple``: SimpleSchedulePolicy with run times / run days
- ``workload_multi``: ``subProtectionPolicy`` list with Full/Differential/Log
- ``data_protection_rules``: Backup-vault ``policyRules`` with ISO-8601
  repeating intervals
- ``unknown``: anything else; extraction yields None, never an error

Daily and weekly schedules without an explicit interval get a cadence equal
to the largest gap between consecutive runs (wrapping at midnight or at the
week boundary). That is an upper bound on the worst-case gap between runs,
not a run count.
"""
import logging
import re
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .constants import (
    DAYS_PER_WEEK,
    SCHEDULE_KIND_DIFFERENTIAL,
    SCHEDULE_KIND_FULL,
    SCHEDULE_KIND_LOG,
)
from .durations import parse_duration
from .models import ScheduleInfo
from .utils import ci_get

logger = logging.getLogger(__name__)


class PolicyShape(str, Enum):
    ENHANCED_HOURLY = "enhanced_hourly"
    CLASSIC_SIMPLE = "classic_simple"
    WORKLOAD_MULTI = "workload_multi"
    DATA_PROTECTION_RULES = "data_protection_rules"
    UNKNOWN = "unknown"


# First field present decides the shape
SHAPE_PRECEDENCE = [
    ('subProtectionPolicy', PolicyShape.WORKLOAD_MULTI),
    ('policyRules', PolicyShape.DATA_PROTECTION_RULES),
    ('schedulePolicy.hourlySchedule', PolicyShape.ENHANCED_HOURLY),
    ('schedulePolicy.dailySchedule', PolicyShape.ENHANCED_HOURLY),
    ('schedulePolicy.weeklySchedule', PolicyShape.ENHANCED_HOURLY),
    ('schedulePolicy.scheduleRunFrequency', PolicyShape.CLASSIC_SIMPLE),
    ('schedulePolicy.scheduleRunTimes', PolicyShape.CLASSIC_SIMPLE),
    ('schedulePolicy.scheduleFrequencyInMins', PolicyShape.CLASSIC_SIMPLE),
]

WINDOW_DURATION_FIELDS = [
    'hourlySchedule.scheduleWindowDuration',
    'scheduleWindowDuration',
    'hourlyWindowDuration',
]
WINDOW_START_FIELDS = [
    'hourlySchedule.scheduleWindowStartTime',
    'scheduleWindowStartTime',
]

WEEKDAY_INDEX = {
    'sunday': 0, 'monday': 1, 'tuesday': 2, 'wednesday': 3,
    'thursday': 4, 'friday': 5, 'saturday': 6,
}

SUB_POLICY_KINDS = {
    'full': SCHEDULE_KIND_FULL,
    'differential': SCHEDULE_KIND_DIFFERENTIAL,
    'log': SCHEDULE_KIND_LOG,
    'copyonlyfull': 'CopyOnly',
    'incremental': 'Incremental',
}

_TIME_OF_DAY_RE = re.compile(r'(?:T|^)(\d{1,2}):(\d{2})')
_WEEKS_RE = re.compile(r'^P(\d+)W$', re.IGNORECASE)


def _policy_properties(policy: Dict[str, Any]) -> Dict[str, Any]:
    """Accept either a full policy resource or its ``properties`` bag."""
    props = ci_get(policy, 'properties')
    return props if isinstance(props, dict) else policy


def detect_policy_shape(policy: Optional[Dict[str, Any]]) -> PolicyShape:
    """Detect the policy shape from the field-name precedence list."""
    if not isinstance(policy, dict):
        return PolicyShape.UNKNOWN

    props = _policy_properties(policy)
    schedule_type = str(ci_get(props, 'schedulePolicy.schedulePolicyType') or '').lower()
    if schedule_type == 'simpleschedulepolicyv2':
        return PolicyShape.ENHANCED_HOURLY

    for field_path, shape in SHAPE_PRECEDENCE:
        if ci_get(props, field_path) is not None:
            return shape
    return PolicyShape.UNKNOWN


# =============================================================================
# Gap Derivation
# =============================================================================

def _minutes_of_day(value: Any) -> Optional[int]:
    match = _TIME_OF_DAY_RE.search(str(value))
    if not match:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        return None
    return hours * 60 + minutes


def max_daily_gap(run_times: List[Any]) -> Optional[timedelta]:
    """Largest gap between sorted times of day, wrapping at midnight."""
    minutes = sorted({m for m in (_minutes_of_day(t) for t in run_times or []) if m is not None})
    if not minutes:
        return None
    gaps = [b - a for a, b in zip(minutes, minutes[1:])]
    gaps.append(minutes[0] + 24 * 60 - minutes[-1])
    return timedelta(minutes=max(gaps))


def max_weekly_gap(run_days: List[Any]) -> Optional[timedelta]:
    """Largest gap between sorted weekday indices, wrapping at the week boundary."""
    indices = sorted({WEEKDAY_INDEX[d.lower()] for d in run_days or []
                      if isinstance(d, str) and d.lower() in WEEKDAY_INDEX})
    if not indices:
        return None
    gaps = [b - a for a, b in zip(indices, indices[1:])]
    gaps.append(indices[0] + DAYS_PER_WEEK - indices[-1])
    return timedelta(days=max(gaps))


def _interval_duration(text: Any) -> Optional[timedelta]:
    """Trailing duration of a repeating interval such as ``R/<start>/PT4H``."""
    if not isinstance(text, str) or not text:
        return None
    duration_text = text.rsplit('/', 1)[-1].strip()
    weeks = _WEEKS_RE.match(duration_text)
    if weeks:
        duration_text = f"P{int(weeks.group(1)) * DAYS_PER_WEEK}D"
    parsed = parse_duration(duration_text)
    return parsed.to_timedelta() if parsed else None


def _window(schedule_policy: Dict[str, Any]) -> Optional[timedelta]:
    raw = ci_get(schedule_policy, *WINDOW_DURATION_FIELDS)
    if raw is None:
        return None
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return timedelta(hours=raw) if raw > 0 else None
    parsed = parse_duration(str(raw))
    if parsed:
        return parsed.to_timedelta()
    try:
        return timedelta(hours=float(raw))
    except (TypeError, ValueError):
        logger.debug(f"Unrecognized schedule window value: {raw!r}")
        return None


# =============================================================================
# Adapters
# =============================================================================

def _schedule_from_simple(schedule_policy: Dict[str, Any]) -> ScheduleInfo:
    """
    Cadence for one schedule-policy object (classic, V2 or log).

    Precedence: log frequency in minutes, hourly interval, explicit ISO
    interval, weekly run days, daily run times.
    """
    frequency = ci_get(schedule_policy, 'scheduleRunFrequency')
    frequency_lower = str(frequency or '').lower()
    cadence: Optional[timedelta] = None

    minutes = ci_get(schedule_policy, 'scheduleFrequencyInMins')
    if minutes:
        cadence = timedelta(minutes=float(minutes))
        frequency = frequency or 'Log'

    if cadence is None and frequency_lower in ('hourly', ''):
        interval = ci_get(schedule_policy, 'hourlySchedule.interval')
        if interval:
            cadence = timedelta(hours=float(interval))
            frequency = frequency or 'Hourly'

    if cadence is None:
        cadence = _interval_duration(ci_get(schedule_policy, 'scheduleInterval', 'interval'))

    if cadence is None and frequency_lower in ('weekly', ''):
        run_days = ci_get(schedule_policy, 'weeklySchedule.scheduleRunDays', 'scheduleRunDays')
        cadence = max_weekly_gap(run_days) if frequency_lower == 'weekly' or run_days else None
        if cadence and not frequency:
            frequency = 'Weekly'

    if cadence is None and frequency_lower in ('daily', ''):
        run_times = ci_get(schedule_policy, 'dailySchedule.scheduleRunTimes', 'scheduleRunTimes')
        cadence = max_daily_gap(run_times)
        if cadence and not frequency:
            frequency = 'Daily'

    return ScheduleInfo(
        cadence=cadence,
        window=_window(schedule_policy),
        frequency=frequency,
        window_start=ci_get(schedule_policy, *WINDOW_START_FIELDS),
    )


def _adapt_single(props: Dict[str, Any]) -> Optional[ScheduleInfo]:
    schedule_policy = ci_get(props, 'schedulePolicy')
    if not isinstance(schedule_policy, dict):
        return None
    return _schedule_from_simple(schedule_policy)


def _adapt_workload(props: Dict[str, Any]) -> Optional[ScheduleInfo]:
    variants: Dict[str, ScheduleInfo] = {}
    for sub_policy in ci_get(props, 'subProtectionPolicy') or []:
        if not isinstance(sub_policy, dict):
            continue
        kind = SUB_POLICY_KINDS.get(str(ci_get(sub_policy, 'policyType') or '').lower())
        schedule_policy = ci_get(sub_policy, 'schedulePolicy')
        if not kind or not isinstance(schedule_policy, dict):
            continue
        variants.setdefault(kind, _schedule_from_simple(schedule_policy))

    if not variants:
        return None

    full = variants.get(SCHEDULE_KIND_FULL)
    return ScheduleInfo(
        cadence=full.cadence if full else None,
        window=full.window if full else None,
        frequency=full.frequency if full else None,
        window_start=full.window_start if full else None,
        variants=variants,
    )


def _adapt_data_protection(props: Dict[str, Any]) -> Optional[ScheduleInfo]:
    variants: Dict[str, ScheduleInfo] = {}
    cadences: List[timedelta] = []
    for rule in ci_get(props, 'policyRules') or []:
        if not isinstance(rule, dict):
            continue
        intervals = ci_get(rule, 'trigger.schedule.repeatingTimeIntervals')
        if not intervals:
            continue
        cadence = _interval_duration(intervals[0])
        if cadence is None:
            continue
        cadences.append(cadence)
        backup_type = str(ci_get(rule, 'backupParameters.backupType') or '').lower()
        kind = SUB_POLICY_KINDS.get(backup_type)
        if kind:
            variants.setdefault(kind, ScheduleInfo(cadence=cadence, frequency=backup_type.capitalize()))

    if not cadences:
        return None
    return ScheduleInfo(cadence=min(cadences), variants=variants)


_ADAPTERS: Dict[PolicyShape, Callable[[Dict[str, Any]], Optional[ScheduleInfo]]] = {
    PolicyShape.ENHANCED_HOURLY: _adapt_single,
    PolicyShape.CLASSIC_SIMPLE: _adapt_single,
    PolicyShape.WORKLOAD_MULTI: _adapt_workload,
    PolicyShape.DATA_PROTECTION_RULES: _adapt_data_protection,
}


def extract_schedule(policy: Optional[Dict[str, Any]]) -> Optional[ScheduleInfo]:
    """
    Extract a canonical schedule from a backup policy of any known shape.

    Returns None for an unrecognized shape or when nothing resolved.
    """
    shape = detect_policy_shape(policy)
    adapter = _ADAPTERS.get(shape)
    if adapter is None:
        if policy:
            logger.debug(f"Unrecognized policy shape for {ci_get(policy, 'id', 'name', default='<unnamed>')}")
        return None

    try:
        schedule = adapter(_policy_properties(policy))  # type: ignore[arg-type]
    except (TypeError, ValueError, AttributeError) as e:
        logger.debug(f"Failed to extract {shape.value} schedule: {e}")
        return None

    if schedule is None or (schedule.effective_cadence is None and schedule.window is None):
        return None
    return schedule
