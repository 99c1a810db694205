"""
Data models for the backup audit core.

All entities are scoped to a single run and immutable after creation. Each
exposes ``to_dict()`` producing a flat, serializable row for an exporter.
"""
import hashlib
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .constants import (
    DEFAULT_RPO_THRESHOLDS,
    MODULE_CODE,
    SCHEDULE_KIND_ORDER,
    SOFT_DELETE_ALWAYS_ON,
    SOFT_DELETE_ENABLED,
)
from .durations import describe_cadence, snap_cadence_hours


class SecurityLevel(str, Enum):
    ENHANCED = "Enhanced"
    STANDARD = "Standard"


class RpoSource(str, Enum):
    POLICY = "Policy"
    RECOVERY_POINTS = "RecoveryPoints"
    PITR = "PITR"
    NONE = "None"


class Severity(str, Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat().replace('+00:00', 'Z') if value else None


# =============================================================================
# Vault Posture
# =============================================================================

@dataclass(frozen=True)
class VaultPosture:
    """
    Normalized security/configuration state of one backup vault.

    ``security_level`` is always derived from the resolved fields and is never
    merged from a source endpoint.
    """
    vault_id: str
    name: str
    family: str
    subscription_id: Optional[str] = None
    resource_group: Optional[str] = None
    location: Optional[str] = None
    storage_redundancy: Optional[str] = None
    cross_region_restore: Optional[bool] = None
    cross_subscription_restore: Optional[str] = None
    soft_delete_state: Optional[str] = None
    soft_delete_retention_days: Optional[int] = None
    enhanced_security_state: Optional[str] = None
    multi_user_auth: Optional[bool] = None
    immutability_state: Optional[str] = None
    sources: Tuple[str, ...] = ()

    @property
    def hybrid_security_enabled(self) -> bool:
        return (self.enhanced_security_state or '').lower() == 'enabled'

    @property
    def security_level(self) -> SecurityLevel:
        if (self.hybrid_security_enabled
                or self.multi_user_auth
                or self.soft_delete_state in (SOFT_DELETE_ENABLED, SOFT_DELETE_ALWAYS_ON)):
            return SecurityLevel.ENHANCED
        return SecurityLevel.STANDARD

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a flat dictionary for JSON/CSV serialization."""
        row = asdict(self)
        row['sources'] = ';'.join(self.sources)
        row['security_level'] = self.security_level.value
        return row


# =============================================================================
# Schedules
# =============================================================================

@dataclass(frozen=True)
class ScheduleInfo:
    """
    Cadence and optional backup window extracted from a policy.

    Database policies carry per-kind variants (Full/Differential/Log); the
    human-readable cadence text is always derived from ``cadence``.
    """
    cadence: Optional[timedelta] = None
    window: Optional[timedelta] = None
    frequency: Optional[str] = None
    window_start: Optional[str] = None
    variants: Dict[str, 'ScheduleInfo'] = field(default_factory=dict)

    def variant(self, kind: str) -> Optional['ScheduleInfo']:
        return self.variants.get(kind)

    @property
    def effective_cadence(self) -> Optional[timedelta]:
        """Cadence used for RPO: log, then differential, then full, then own."""
        for kind in SCHEDULE_KIND_ORDER:
            info = self.variants.get(kind)
            if info and info.cadence:
                return info.cadence
        return self.cadence

    @property
    def cadence_hours(self) -> Optional[float]:
        cadence = self.effective_cadence
        return snap_cadence_hours(cadence.total_seconds()) if cadence else None

    @property
    def cadence_text(self) -> Optional[str]:
        cadence = self.effective_cadence
        return describe_cadence(cadence.total_seconds()) if cadence else None

    @property
    def window_hours(self) -> Optional[float]:
        return round(self.window.total_seconds() / 3600, 2) if self.window else None


# =============================================================================
# Recovery Points
# =============================================================================

@dataclass(frozen=True)
class RecoveryPoint:
    """A timestamped, vault-retained artifact enabling restoration."""
    time: datetime
    kind: str
    point_id: str = ""


# =============================================================================
# Protected Items
# =============================================================================

@dataclass(frozen=True)
class DiscoveredItem:
    """
    Common shape for a protected item, regardless of discovering strategy.
    """
    item_id: str
    name: str
    vault_id: str
    source_resource_id: Optional[str] = None
    policy_id: Optional[str] = None
    policy_name: Optional[str] = None
    last_backup_time: Optional[datetime] = None
    last_recovery_point: Optional[datetime] = None
    last_backup_status: Optional[str] = None
    protection_state: Optional[str] = None
    health_status: Optional[str] = None
    workload_type: Optional[str] = None
    backup_management_type: Optional[str] = None
    container_name: Optional[str] = None
    discovered_by: str = ""

    @property
    def last_success(self) -> Optional[datetime]:
        """Most recent success marker from the item itself."""
        markers = [t for t in (self.last_recovery_point, self.last_backup_time) if t]
        return max(markers) if markers else None


@dataclass(frozen=True)
class ProtectedItem:
    """
    One protected VM or database with its resolved cadence and RPO.

    ``rpo_source`` is Policy only when a policy-derived cadence resolved;
    RecoveryPoints/PITR when two or more timestamped artifacts were seen;
    otherwise None.
    """
    item_id: str
    name: str
    source_resource_id: Optional[str]
    workload_class: str
    vault_id: Optional[str] = None
    vault_name: Optional[str] = None
    subscription_id: Optional[str] = None
    resource_group: Optional[str] = None
    workload_type: Optional[str] = None
    policy_id: Optional[str] = None
    policy_name: Optional[str] = None
    protection_state: Optional[str] = None
    health_status: Optional[str] = None
    last_success_time: Optional[datetime] = None
    configured_cadence: Optional[str] = None
    configured_cadence_hours: Optional[float] = None
    backup_window_hours: Optional[float] = None
    full_cadence: Optional[str] = None
    differential_cadence: Optional[str] = None
    log_cadence: Optional[str] = None
    inferred_cadence_hours: Optional[float] = None
    observed_rpo_hours: Optional[float] = None
    latest_point_time: Optional[datetime] = None
    latest_point_kind: Optional[str] = None
    earliest_restore_time: Optional[datetime] = None
    rpo_source: RpoSource = RpoSource.NONE
    discovered_by: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a flat dictionary for JSON/CSV serialization."""
        row = asdict(self)
        row['rpo_source'] = self.rpo_source.value
        for key in ('last_success_time', 'latest_point_time', 'earliest_restore_time'):
            row[key] = _iso(getattr(self, key))
        return row


# =============================================================================
# Inventory & Coverage
# =============================================================================

@dataclass(frozen=True)
class InventoryRecord:
    """Flat inventory record supplied by an external inventory source."""
    resource_id: str
    name: str
    resource_group: Optional[str] = None
    location: Optional[str] = None
    power_state: Optional[str] = None
    resource_type: str = ""
    subscription_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], resource_type: str = "") -> 'InventoryRecord':
        """Build from a flat dict, tolerating camelCase or snake_case keys."""
        lowered = {k.lower().replace('_', ''): v for k, v in data.items()}
        return cls(
            resource_id=lowered.get('id') or lowered.get('resourceid') or '',
            name=lowered.get('name') or '',
            resource_group=lowered.get('resourcegroup'),
            location=lowered.get('location'),
            power_state=lowered.get('powerstate'),
            resource_type=lowered.get('resourcetype') or resource_type,
            subscription_id=lowered.get('subscriptionid'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CoverageRecord:
    """Inventory resource crossed with protection status."""
    resource_id: str
    name: str
    resource_type: str
    protected: bool
    method: Optional[str] = None
    resource_group: Optional[str] = None
    location: Optional[str] = None
    power_state: Optional[str] = None
    subscription_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# Findings
# =============================================================================

@dataclass(frozen=True)
class Finding:
    """
    Severity x category x detail projection of an evaluation.

    ``hash`` is stable across runs so the same issue can be matched between
    assessments.
    """
    severity: Severity
    category: str
    finding_text: str
    resource_id: Optional[str] = None
    resource_name: Optional[str] = None
    resource_type: Optional[str] = None
    resource_group: Optional[str] = None
    subscription_id: Optional[str] = None
    recommendation: Optional[str] = None
    module_code: str = MODULE_CODE
    hash: str = field(init=False, default="")

    def __post_init__(self):
        basis = f"{self.module_code}|{self.category}|{(self.resource_id or '').lower()}|{self.finding_text}"
        object.__setattr__(self, 'hash', hashlib.sha256(basis.encode()).hexdigest()[:16])

    def to_dict(self) -> Dict[str, Any]:
        row = asdict(self)
        row['severity'] = self.severity.value
        return row


# =============================================================================
# Thresholds
# =============================================================================

@dataclass(frozen=True)
class RpoThreshold:
    """Warning/critical observed-RPO limits in hours (inclusive)."""
    warning_hours: float
    critical_hours: float


@dataclass(frozen=True)
class Thresholds:
    """Per-workload-class RPO thresholds."""
    by_class: Dict[str, RpoThreshold] = field(default_factory=dict)

    def for_class(self, workload_class: str) -> Optional[RpoThreshold]:
        return self.by_class.get(workload_class)

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None) -> 'Thresholds':
        """Build from a ``thresholds`` config section, filling gaps with defaults."""
        config = config or {}
        by_class = {}
        for workload_class, defaults in DEFAULT_RPO_THRESHOLDS.items():
            overrides = config.get(workload_class) or {}
            by_class[workload_class] = RpoThreshold(
                warning_hours=float(overrides.get('warning_hours', defaults['warning_hours'])),
                critical_hours=float(overrides.get('critical_hours', defaults['critical_hours'])),
            )
        return cls(by_class=by_class)
