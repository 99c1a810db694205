"""
Coverage & Threshold Evaluator.

Pure projections from resolved posture, coverage and RPO rows to findings.
Nothing here performs I/O or keeps state between calls.
"""
import logging
from typing import Iterable, List, Optional

from .constants import (
    CATEGORY_COVERAGE,
    CATEGORY_PROTECTION_HEALTH,
    CATEGORY_RPO,
    CATEGORY_VAULT_POSTURE,
    CATEGORY_VAULT_REDUNDANCY,
    SOFT_DELETE_DISABLED,
    UNHEALTHY_PROTECTION_STATES,
)
from .discovery import ProtectedIdSet
from .models import (
    CoverageRecord,
    Finding,
    InventoryRecord,
    ProtectedItem,
    RpoThreshold,
    SecurityLevel,
    Severity,
    Thresholds,
    VaultPosture,
)

logger = logging.getLogger(__name__)

_RUNNING_STATES = ('running', 'online')
_LOCAL_REDUNDANCY = ('locallyredundant', 'lrs')


# =============================================================================
# Coverage
# =============================================================================

def evaluate_coverage(inventory: Iterable[InventoryRecord], protected_ids: ProtectedIdSet) -> List[CoverageRecord]:
    """Cross inventory with the protected-id set (case-insensitive)."""
    records = []
    for resource in inventory:
        protected = resource.resource_id in protected_ids
        records.append(CoverageRecord(
            resource_id=resource.resource_id,
            name=resource.name,
            resource_type=resource.resource_type,
            protected=protected,
            method=protected_ids.method_for(resource.resource_id) if protected else None,
            resource_group=resource.resource_group,
            location=resource.location,
            power_state=resource.power_state,
            subscription_id=resource.subscription_id,
        ))
    return records


def _is_running(power_state: Optional[str]) -> bool:
    state = (power_state or '').lower()
    return any(word in state for word in _RUNNING_STATES)


def evaluate_coverage_findings(coverage: Iterable[CoverageRecord]) -> List[Finding]:
    """One finding per uncovered resource; running resources rank High."""
    findings = []
    for record in coverage:
        if record.protected:
            continue
        findings.append(Finding(
            severity=Severity.HIGH if _is_running(record.power_state) else Severity.MEDIUM,
            category=CATEGORY_COVERAGE,
            finding_text=f"{record.name} is not protected by any backup vault or point-in-time restore",
            resource_id=record.resource_id,
            resource_name=record.name,
            resource_type=record.resource_type,
            resource_group=record.resource_group,
            subscription_id=record.subscription_id,
            recommendation="Enable Azure Backup for this resource or document the exclusion",
        ))
    return findings


# =============================================================================
# RPO Thresholds
# =============================================================================

def classify_rpo(observed_hours: Optional[float], threshold: Optional[RpoThreshold]) -> Optional[Severity]:
    """
    Severity for an observed RPO; both boundaries are inclusive.

    >= critical is High, >= warning is Medium, anything lower is None.
    """
    if observed_hours is None or threshold is None:
        return None
    if observed_hours >= threshold.critical_hours:
        return Severity.HIGH
    if observed_hours >= threshold.warning_hours:
        return Severity.MEDIUM
    return None


def evaluate_rpo(items: Iterable[ProtectedItem], thresholds: Thresholds) -> List[Finding]:
    """RPO threshold findings per workload class."""
    findings = []
    for item in items:
        threshold = thresholds.for_class(item.workload_class)
        severity = classify_rpo(item.observed_rpo_hours, threshold)
        if severity is None or threshold is None:
            continue
        limit = threshold.critical_hours if severity == Severity.HIGH else threshold.warning_hours
        findings.append(Finding(
            severity=severity,
            category=CATEGORY_RPO,
            finding_text=(f"Last recovery point for {item.name} is {item.observed_rpo_hours:.2f}h old "
                          f"(threshold {limit:g}h)"),
            resource_id=item.source_resource_id or item.item_id,
            resource_name=item.name,
            resource_type=item.workload_class,
            resource_group=item.resource_group,
            subscription_id=item.subscription_id,
            recommendation="Investigate failed or skipped backup jobs and confirm the policy schedule",
        ))
    return findings


# =============================================================================
# Protection Health
# =============================================================================

def evaluate_protection_health(items: Iterable[ProtectedItem]) -> List[Finding]:
    """Items enrolled in a vault whose protection is stopped or failing."""
    findings = []
    for item in items:
        state = (item.protection_state or '').lower()
        if state not in UNHEALTHY_PROTECTION_STATES:
            continue
        findings.append(Finding(
            severity=Severity.MEDIUM,
            category=CATEGORY_PROTECTION_HEALTH,
            finding_text=f"Protection for {item.name} is in state {item.protection_state}",
            resource_id=item.source_resource_id or item.item_id,
            resource_name=item.name,
            resource_type=item.workload_class,
            resource_group=item.resource_group,
            subscription_id=item.subscription_id,
            recommendation="Resume protection or remove the stale protected item",
        ))
    return findings


# =============================================================================
# Vault Posture
# =============================================================================

def _posture_finding(posture: VaultPosture, severity: Severity, category: str, text: str,
                     recommendation: str) -> Finding:
    return Finding(
        severity=severity,
        category=category,
        finding_text=text,
        resource_id=posture.vault_id,
        resource_name=posture.name,
        resource_type=posture.family,
        resource_group=posture.resource_group,
        subscription_id=posture.subscription_id,
        recommendation=recommendation,
    )


def evaluate_posture(posture: VaultPosture) -> List[Finding]:
    """Findings for one vault's resolved posture. Unresolved fields raise nothing."""
    findings = []

    if posture.soft_delete_state == SOFT_DELETE_DISABLED:
        findings.append(_posture_finding(
            posture, Severity.HIGH, CATEGORY_VAULT_POSTURE,
            f"Soft delete is disabled on vault {posture.name}",
            "Enable soft delete (preferably always-on) to retain deleted backup data",
        ))

    # An unreadable vault has no sources and is not judged Standard
    if posture.sources and posture.security_level == SecurityLevel.STANDARD:
        findings.append(_posture_finding(
            posture, Severity.MEDIUM, CATEGORY_VAULT_POSTURE,
            f"Vault {posture.name} has Standard security level",
            "Enable enhanced security or multi-user authorization",
        ))

    if (posture.storage_redundancy or '').lower() in _LOCAL_REDUNDANCY:
        findings.append(_posture_finding(
            posture, Severity.MEDIUM, CATEGORY_VAULT_REDUNDANCY,
            f"Vault {posture.name} uses locally-redundant storage",
            "Use geo- or zone-redundant storage for backup data",
        ))

    if posture.immutability_state is not None and posture.immutability_state.lower() not in ('locked', 'unlocked'):
        findings.append(_posture_finding(
            posture, Severity.LOW, CATEGORY_VAULT_POSTURE,
            f"Immutability is not enabled on vault {posture.name}",
            "Enable vault immutability",
        ))

    if (posture.cross_subscription_restore or '').lower() == 'enabled':
        findings.append(_posture_finding(
            posture, Severity.LOW, CATEGORY_VAULT_POSTURE,
            f"Cross-subscription restore is enabled on vault {posture.name}",
            "Disable cross-subscription restore unless it is required",
        ))

    return findings
