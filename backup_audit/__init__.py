"""
Azure Backup audit core.
"""
# Import constants module for easy access
from . import constants
from .arm import ArmClient, ArmResponse
from .audit import AuditContext, AuditResult, audit_subscription, run_audit
from .constants import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RPO_THRESHOLDS,
    RETRYABLE_STATUS_CODES,
    VAULT_FAMILY_DATA_PROTECTION,
    VAULT_FAMILY_RECOVERY_SERVICES,
    WORKLOAD_DATABASE,
    WORKLOAD_MANAGED_DATABASE,
    WORKLOAD_VM,
)
from .discovery import ProtectedIdSet, discover_protected_items, extract_resource_id
from .durations import IsoDuration, describe_cadence, parse_duration, snap_cadence_hours
from .evaluation import classify_rpo, evaluate_coverage, evaluate_posture, evaluate_rpo
from .models import (
    CoverageRecord,
    Finding,
    InventoryRecord,
    ProtectedItem,
    RecoveryPoint,
    RpoSource,
    ScheduleInfo,
    SecurityLevel,
    Severity,
    Thresholds,
    VaultPosture,
)
from .pagination import walk_continuation, walk_next_links
from .posture import resolve_vault_posture
from .rpo import fetch_recovery_points, fetch_restore_points, infer_rpo
from .schedules import PolicyShape, detect_policy_shape, extract_schedule
from .utils import AuthError, setup_logging, write_csv, write_json

__all__ = [
    # Constants
    'constants',
    'DEFAULT_MAX_ATTEMPTS',
    'DEFAULT_RPO_THRESHOLDS',
    'RETRYABLE_STATUS_CODES',
    'VAULT_FAMILY_DATA_PROTECTION',
    'VAULT_FAMILY_RECOVERY_SERVICES',
    'WORKLOAD_DATABASE',
    'WORKLOAD_MANAGED_DATABASE',
    'WORKLOAD_VM',
    # Models
    'CoverageRecord',
    'Finding',
    'InventoryRecord',
    'ProtectedItem',
    'RecoveryPoint',
    'RpoSource',
    'ScheduleInfo',
    'SecurityLevel',
    'Severity',
    'Thresholds',
    'VaultPosture',
    # HTTP & pagination
    'ArmClient',
    'ArmResponse',
    'walk_continuation',
    'walk_next_links',
    # Durations & schedules
    'IsoDuration',
    'parse_duration',
    'snap_cadence_hours',
    'describe_cadence',
    'PolicyShape',
    'detect_policy_shape',
    'extract_schedule',
    # RPO, posture, discovery
    'fetch_recovery_points',
    'fetch_restore_points',
    'infer_rpo',
    'resolve_vault_posture',
    'ProtectedIdSet',
    'discover_protected_items',
    'extract_resource_id',
    # Evaluation & orchestration
    'classify_rpo',
    'evaluate_coverage',
    'evaluate_posture',
    'evaluate_rpo',
    'AuditContext',
    'AuditResult',
    'audit_subscription',
    'run_audit',
    # Utils
    'AuthError',
    'setup_logging',
    'write_csv',
    'write_json',
]
