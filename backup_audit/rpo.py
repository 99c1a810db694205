"""
RPO Inference Engine.

Two paths:

- Path A (policy-derived): the schedule extractor resolved a cadence, which
  is reported with source ``Policy``.
- Path B (empirical): recovery points (or SQL restore points) are pulled and
  the cadence is estimated from the gap between the two most recent points.

Observed RPO is always ``now - latest qualifying point`` regardless of path,
falling back to the item's own last-success marker when no points were
pulled. Database items prefer the most recent point of the highest-ranked
kind present (Log, Differential, CopyOnly, Full, AppConsistent); managed SQL
databases only count continuous point-in-time restore points.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .arm import ArmClient
from .constants import (
    DATABASE_POINT_PREFERENCE,
    POINT_KIND_APP_CONSISTENT,
    POINT_KIND_CONTINUOUS,
    POINT_KIND_COPY_ONLY,
    POINT_KIND_CRASH_CONSISTENT,
    POINT_KIND_DIFFERENTIAL,
    POINT_KIND_FILE_SYSTEM_CONSISTENT,
    POINT_KIND_FULL,
    POINT_KIND_INCREMENTAL,
    POINT_KIND_LOG,
    POINT_KIND_UNKNOWN,
    RS_BACKUP_API_VERSION,
    SQL_RESTORE_POINTS_API_VERSION,
    WORKLOAD_DATABASE,
    WORKLOAD_MANAGED_DATABASE,
)
from .durations import snap_cadence_hours
from .models import RecoveryPoint, RpoSource, ScheduleInfo
from .pagination import walk_continuation, walk_next_links
from .utils import ci_get, elapsed_hours, parse_timestamp

logger = logging.getLogger(__name__)

_KIND_ALIASES = {
    'log': POINT_KIND_LOG,
    'transactionlog': POINT_KIND_LOG,
    'differential': POINT_KIND_DIFFERENTIAL,
    'copyonlyfull': POINT_KIND_COPY_ONLY,
    'copyonly': POINT_KIND_COPY_ONLY,
    'full': POINT_KIND_FULL,
    'appconsistent': POINT_KIND_APP_CONSISTENT,
    'crashconsistent': POINT_KIND_CRASH_CONSISTENT,
    'filesystemconsistent': POINT_KIND_FILE_SYSTEM_CONSISTENT,
    'incremental': POINT_KIND_INCREMENTAL,
    'continuous': POINT_KIND_CONTINUOUS,
}

POINT_TIME_FIELDS = [
    'recoveryPointTimeInUTC',
    'recoveryPointTime',
    'restorePointCreationDate',
]


@dataclass(frozen=True)
class RpoResult:
    """Outcome of cadence/RPO inference for one protected item."""
    source: RpoSource = RpoSource.NONE
    configured_cadence: Optional[timedelta] = None
    inferred_cadence_hours: Optional[float] = None
    observed_rpo_hours: Optional[float] = None
    latest_point: Optional[RecoveryPoint] = None
    point_count: int = 0


# =============================================================================
# Point Parsing
# =============================================================================

def classify_point_kind(properties: Dict[str, Any]) -> str:
    """Map a recovery/restore point's type fields onto a point kind."""
    object_type = str(ci_get(properties, 'objectType') or '').lower()
    if 'pointintime' in object_type:
        return POINT_KIND_LOG

    raw_kind = ci_get(properties, 'type', 'recoveryPointType', 'restorePointType')
    return _KIND_ALIASES.get(str(raw_kind or '').lower(), POINT_KIND_UNKNOWN)


def _latest_range_end(properties: Dict[str, Any]) -> Optional[datetime]:
    ends = [parse_timestamp(ci_get(r, 'endTime')) for r in ci_get(properties, 'timeRanges') or []
            if isinstance(r, dict)]
    ends = [e for e in ends if e]
    return max(ends) if ends else None


def parse_recovery_point(raw: Dict[str, Any]) -> Optional[RecoveryPoint]:
    """
    Parse one recovery or restore point into a RecoveryPoint.

    Log point-in-time points use the latest ``timeRanges[].endTime``.
    Returns None when no timestamp can be read.
    """
    if not isinstance(raw, dict):
        return None
    properties = ci_get(raw, 'properties')
    if not isinstance(properties, dict):
        properties = raw

    kind = classify_point_kind(properties)
    point_time = _latest_range_end(properties) if kind == POINT_KIND_LOG else None
    if point_time is None:
        point_time = parse_timestamp(ci_get(properties, *POINT_TIME_FIELDS))
    if point_time is None:
        logger.debug(f"Could not parse recovery point time for {ci_get(raw, 'id', 'name')}")
        return None

    return RecoveryPoint(time=point_time, kind=kind, point_id=str(ci_get(raw, 'id', 'name') or ''))


def _count_timestamped(raw_points: List[Dict[str, Any]]) -> int:
    return sum(1 for r in raw_points if parse_recovery_point(r))


def _parse_points(raw_points: List[Dict[str, Any]]) -> List[RecoveryPoint]:
    points = [p for p in (parse_recovery_point(r) for r in raw_points) if p]
    return sorted(points, key=lambda p: p.time, reverse=True)


# =============================================================================
# Fetching
# =============================================================================

def fetch_recovery_points(
    client: ArmClient,
    item_id: str,
    api_version: str = RS_BACKUP_API_VERSION,
    limit: Optional[int] = None,
    next_link: bool = False,
) -> Optional[List[RecoveryPoint]]:
    """
    Pull recovery points for a protected item or backup instance.

    Args:
        item_id: full ARM id of the protected item / backup instance
        limit: stop paging once this many timestamped points were collected
        next_link: page with ``nextLink`` instead of the continuation header

    Returns:
        Points sorted newest first, or None when the first page failed.
    """
    target = f"{item_id.rstrip('/')}/recoveryPoints"
    params = {'api-version': api_version}

    if next_link:
        raw_points = walk_next_links(client, target, params=params)
    else:
        enough = (lambda items: _count_timestamped(items) >= limit) if limit else None
        raw_points = walk_continuation(client, target, params=params, enough=enough)

    if raw_points is None:
        return None
    return _parse_points(raw_points)


def fetch_restore_points(client: ArmClient, database_id: str) -> Optional[Dict[str, Any]]:
    """
    Pull continuous point-in-time restore points for a managed SQL database.

    ``earliestRestoreDate`` marks the oldest restorable moment, not the
    newest, so it never becomes a point time. A continuous point without a
    creation date still counts toward ``continuous_count``.

    Returns:
        ``{'points': [...], 'continuous_count': int,
        'earliest_restore_time': datetime|None}``, or None when the
        restore-points endpoint could not be read.
    """
    raw_points = walk_next_links(
        client,
        f"{database_id.rstrip('/')}/restorePoints",
        params={'api-version': SQL_RESTORE_POINTS_API_VERSION},
    )
    if raw_points is None:
        return None

    continuous = [r for r in raw_points if classify_point_kind(ci_get(r, 'properties') or r) == POINT_KIND_CONTINUOUS]
    earliest_dates = [parse_timestamp(ci_get(r, 'properties.earliestRestoreDate', 'earliestRestoreDate'))
                      for r in continuous]
    earliest_dates = [d for d in earliest_dates if d]

    return {
        'points': _parse_points(continuous),
        'continuous_count': len(continuous),
        'earliest_restore_time': min(earliest_dates) if earliest_dates else None,
    }


# =============================================================================
# Inference
# =============================================================================

def usable_points(points: List[RecoveryPoint], workload_class: str) -> List[RecoveryPoint]:
    """Points that count for the workload class, newest first."""
    if workload_class == WORKLOAD_MANAGED_DATABASE:
        points = [p for p in points if p.kind == POINT_KIND_CONTINUOUS]
    return sorted(points, key=lambda p: p.time, reverse=True)


def select_latest_point(points: List[RecoveryPoint], workload_class: str) -> Optional[RecoveryPoint]:
    """
    Most recent qualifying point.

    Databases take the newest point of the highest-ranked kind present, so
    a Log point an hour old beats a Full point ten hours old.
    """
    candidates = usable_points(points, workload_class)
    if not candidates:
        return None

    if workload_class == WORKLOAD_DATABASE:
        for kind in DATABASE_POINT_PREFERENCE:
            of_kind = [p for p in candidates if p.kind == kind]
            if of_kind:
                return of_kind[0]

    return candidates[0]


def estimate_cadence_hours(points: List[RecoveryPoint]) -> Optional[float]:
    """Gap between the two most recent points, snapped to whole hours where close."""
    ordered = sorted(points, key=lambda p: p.time, reverse=True)
    if len(ordered) < 2:
        return None
    gap = ordered[0].time - ordered[1].time
    return snap_cadence_hours(gap) if gap.total_seconds() > 0 else None


def infer_rpo(
    workload_class: str,
    now: datetime,
    schedule: Optional[ScheduleInfo] = None,
    points: Optional[List[RecoveryPoint]] = None,
    last_success: Optional[datetime] = None,
    continuous_restore: bool = False,
) -> RpoResult:
    """
    Resolve cadence source and observed RPO for one item.

    Args:
        workload_class: vm, database or managed_database
        now: evaluation instant (timezone-aware)
        schedule: extracted policy schedule, if any
        points: recovery/restore points, any order; None when not pulled
        last_success: item-level last backup marker
        continuous_restore: the database reported a continuous restore
            point, even one without a readable creation time

    Example:
        >>> infer_rpo('vm', now, points=[p_26h_ago, p_2h_ago]).observed_rpo_hours
        2.0
    """
    configured = schedule.effective_cadence if schedule else None
    candidates = usable_points(points or [], workload_class)
    latest = select_latest_point(candidates, workload_class)

    same_kind = [p for p in candidates if latest and p.kind == latest.kind]
    inferred = estimate_cadence_hours(same_kind if len(same_kind) >= 2 else candidates)

    if configured:
        source = RpoSource.POLICY
    elif workload_class == WORKLOAD_MANAGED_DATABASE and (candidates or continuous_restore):
        source = RpoSource.PITR
    elif len(candidates) >= 2:
        source = RpoSource.RECOVERY_POINTS
    else:
        source = RpoSource.NONE

    reference = latest.time if latest else last_success
    observed = elapsed_hours(reference, now) if reference else None

    return RpoResult(
        source=source,
        configured_cadence=configured,
        inferred_cadence_hours=inferred,
        observed_rpo_hours=observed,
        latest_point=latest,
        point_count=len(candidates),
    )
