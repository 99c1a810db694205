"""
Run orchestration for the backup audit.

Per subscription: list vaults (both families), resolve each vault's posture,
discover its protected items, then for every item extract the policy
schedule and fall back to recovery points for cadence/RPO. Managed SQL
databases from inventory are checked for continuous point-in-time restore.
Coverage is evaluated once, after every subscription has contributed to the
run-scoped protected-id set.

Failures degrade to null fields rather than dropped rows; only
``AuthError`` escapes.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .arm import ArmClient
from .constants import (
    AZURE_SQL_DATABASE,
    DP_API_VERSION,
    RS_BACKUP_API_VERSION,
    RS_VAULT_API_VERSION,
    SCHEDULE_KIND_DIFFERENTIAL,
    SCHEDULE_KIND_FULL,
    SCHEDULE_KIND_LOG,
    VAULT_FAMILY_DATA_PROTECTION,
    WORKLOAD_DATABASE,
    WORKLOAD_MANAGED_DATABASE,
    WORKLOAD_VM,
)
from .discovery import DiscoveryContext, ProtectedIdSet, classify_workload, discover_protected_items
from .evaluation import (
    evaluate_coverage,
    evaluate_coverage_findings,
    evaluate_posture,
    evaluate_protection_health,
    evaluate_rpo,
)
from .models import (
    CoverageRecord,
    DiscoveredItem,
    Finding,
    InventoryRecord,
    ProtectedItem,
    ScheduleInfo,
    Thresholds,
    VaultPosture,
)
from .pagination import walk_next_links
from .posture import resolve_vault_posture, vault_family
from .rpo import fetch_recovery_points, fetch_restore_points, infer_rpo
from .schedules import extract_schedule
from .utils import AuthError, check_and_raise_auth_error, extract_resource_group, extract_subscription_id

logger = logging.getLogger(__name__)

# Points needed to estimate cadence from the two most recent
VM_POINT_LIMIT = 2


@dataclass
class AuditContext:
    """
    Run-scoped state threaded through every stage.

    ``protected_ids`` and ``findings`` are the only shared accumulators.
    """
    client: ArmClient
    thresholds: Thresholds = field(default_factory=Thresholds.from_config)
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    vault_client_factory: Optional[Callable[[str], Any]] = None
    backup_client_factory: Optional[Callable[[str], Any]] = None
    protected_ids: ProtectedIdSet = field(default_factory=ProtectedIdSet)
    findings: List[Finding] = field(default_factory=list)
    policy_cache: Dict[str, Optional[Dict[str, Any]]] = field(default_factory=dict)


@dataclass
class AuditResult:
    """Flat output rows for an external exporter."""
    postures: List[VaultPosture] = field(default_factory=list)
    items: List[ProtectedItem] = field(default_factory=list)
    coverage: List[CoverageRecord] = field(default_factory=list)
    findings: List[Finding] = field(default_factory=list)
    failed_subscriptions: List[str] = field(default_factory=list)

    def extend(self, other: 'AuditResult') -> None:
        self.postures.extend(other.postures)
        self.items.extend(other.items)
        self.coverage.extend(other.coverage)
        self.findings.extend(other.findings)
        self.failed_subscriptions.extend(other.failed_subscriptions)

    def to_rows(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            'vault_posture': [p.to_dict() for p in self.postures],
            'protected_items': [i.to_dict() for i in self.items],
            'coverage': [c.to_dict() for c in self.coverage],
            'findings': [f.to_dict() for f in self.findings],
        }


# =============================================================================
# Vault Listing
# =============================================================================

def _list_rs_vaults(ctx: AuditContext, subscription_id: str) -> List[Dict[str, Any]]:
    if ctx.vault_client_factory is not None:
        try:
            rs_client = ctx.vault_client_factory(subscription_id)
            return [v.serialize(keep_readonly=True) for v in rs_client.vaults.list_by_subscription_id()]
        except Exception as e:
            check_and_raise_auth_error(e, "list Recovery Services vaults", "azure")
            logger.warning(f"SDK vault listing failed for {subscription_id}, falling back to REST: {e}")

    vaults = walk_next_links(
        ctx.client,
        f"/subscriptions/{subscription_id}/providers/Microsoft.RecoveryServices/vaults",
        params={'api-version': RS_VAULT_API_VERSION},
    )
    if vaults is None:
        logger.error(f"Failed to list Recovery Services vaults in {subscription_id}")
        return []
    return vaults


def _list_dp_vaults(ctx: AuditContext, subscription_id: str) -> List[Dict[str, Any]]:
    vaults = walk_next_links(
        ctx.client,
        f"/subscriptions/{subscription_id}/providers/Microsoft.DataProtection/backupVaults",
        params={'api-version': DP_API_VERSION},
    )
    if vaults is None:
        logger.error(f"Failed to list Backup vaults in {subscription_id}")
        return []
    return vaults


def list_vaults(ctx: AuditContext, subscription_id: str) -> List[Dict[str, Any]]:
    """Recovery Services vaults followed by Backup vaults."""
    vaults = [v for v in _list_rs_vaults(ctx, subscription_id) + _list_dp_vaults(ctx, subscription_id)
              if v.get('id')]
    logger.info(f"Found {len(vaults)} backup vaults in subscription {subscription_id}")
    return vaults


# =============================================================================
# Per-Item Resolution
# =============================================================================

def get_policy(ctx: AuditContext, policy_id: Optional[str], family: str) -> Optional[Dict[str, Any]]:
    """Fetch a backup policy once per run."""
    if not policy_id:
        return None
    key = policy_id.lower()
    if key not in ctx.policy_cache:
        api_version = DP_API_VERSION if family == VAULT_FAMILY_DATA_PROTECTION else RS_BACKUP_API_VERSION
        response = ctx.client.get(policy_id, params={'api-version': api_version})
        ctx.policy_cache[key] = response.body if response else None
    return ctx.policy_cache[key]


def _variant_text(schedule: Optional[ScheduleInfo], kind: str) -> Optional[str]:
    variant = schedule.variant(kind) if schedule else None
    return variant.cadence_text if variant else None


def _base_item(item: DiscoveredItem, vault: Dict[str, Any], workload_class: str) -> Dict[str, Any]:
    return dict(
        item_id=item.item_id,
        name=item.name,
        source_resource_id=item.source_resource_id,
        workload_class=workload_class,
        vault_id=item.vault_id,
        vault_name=vault.get('name'),
        subscription_id=extract_subscription_id(item.source_resource_id or item.item_id),
        resource_group=extract_resource_group(item.source_resource_id or item.item_id),
        workload_type=item.workload_type,
        policy_id=item.policy_id,
        policy_name=item.policy_name,
        protection_state=item.protection_state,
        health_status=item.health_status,
        last_success_time=item.last_success,
        discovered_by=item.discovered_by,
    )


def resolve_protected_item(ctx: AuditContext, item: DiscoveredItem, vault: Dict[str, Any]) -> ProtectedItem:
    """
    Resolve schedule, cadence and observed RPO for one discovered item.

    Any failure other than authentication yields the row with null
    cadence/RPO fields.
    """
    workload_class = classify_workload(item)
    base = _base_item(item, vault, workload_class)
    family = vault_family(vault)

    try:
        schedule = extract_schedule(get_policy(ctx, item.policy_id, family))
        has_cadence = bool(schedule and schedule.effective_cadence)

        points = None
        if workload_class == WORKLOAD_DATABASE or not (has_cadence and item.last_success):
            points = fetch_recovery_points(
                ctx.client,
                item.item_id,
                api_version=DP_API_VERSION if family == VAULT_FAMILY_DATA_PROTECTION else RS_BACKUP_API_VERSION,
                limit=None if workload_class == WORKLOAD_DATABASE else VM_POINT_LIMIT,
                next_link=family == VAULT_FAMILY_DATA_PROTECTION,
            )

        result = infer_rpo(workload_class, ctx.now, schedule=schedule, points=points,
                           last_success=item.last_success)
    except AuthError:
        raise
    except Exception as e:
        check_and_raise_auth_error(e, f"resolve RPO for {item.name}", "azure")
        logger.warning(f"Failed to resolve cadence/RPO for {item.name}: {e}")
        return ProtectedItem(**base)

    return ProtectedItem(
        configured_cadence=schedule.cadence_text if has_cadence else None,
        configured_cadence_hours=schedule.cadence_hours if has_cadence else None,
        backup_window_hours=schedule.window_hours if schedule else None,
        full_cadence=_variant_text(schedule, SCHEDULE_KIND_FULL),
        differential_cadence=_variant_text(schedule, SCHEDULE_KIND_DIFFERENTIAL),
        log_cadence=_variant_text(schedule, SCHEDULE_KIND_LOG),
        inferred_cadence_hours=result.inferred_cadence_hours,
        observed_rpo_hours=result.observed_rpo_hours,
        latest_point_time=result.latest_point.time if result.latest_point else None,
        latest_point_kind=result.latest_point.kind if result.latest_point else None,
        rpo_source=result.source,
        **base,
    )


def resolve_managed_database(ctx: AuditContext, database: InventoryRecord) -> Optional[ProtectedItem]:
    """
    Point-in-time restore coverage for a managed SQL database.

    Returns None when the restore-points endpoint could not be read or
    holds no continuous points.
    """
    restore = fetch_restore_points(ctx.client, database.resource_id)
    if not restore or not restore['continuous_count']:
        logger.debug(f"No continuous restore points for {database.name}")
        return None

    ctx.protected_ids.add(database.resource_id, 'pitr')
    result = infer_rpo(WORKLOAD_MANAGED_DATABASE, ctx.now, points=restore['points'], continuous_restore=True)
    return ProtectedItem(
        item_id=database.resource_id,
        name=database.name,
        source_resource_id=database.resource_id,
        workload_class=WORKLOAD_MANAGED_DATABASE,
        subscription_id=database.subscription_id or extract_subscription_id(database.resource_id),
        resource_group=database.resource_group,
        workload_type='SQLDatabase',
        inferred_cadence_hours=result.inferred_cadence_hours,
        observed_rpo_hours=result.observed_rpo_hours,
        latest_point_time=result.latest_point.time if result.latest_point else None,
        latest_point_kind=result.latest_point.kind if result.latest_point else None,
        earliest_restore_time=restore['earliest_restore_time'],
        rpo_source=result.source,
        discovered_by='pitr',
    )


# =============================================================================
# Subscription & Run
# =============================================================================

def audit_vault(ctx: AuditContext, vault: Dict[str, Any], backup_client: Any = None) -> AuditResult:
    """Posture, discovery and per-item resolution for one vault."""
    result = AuditResult()
    family = vault_family(vault)
    vault_name = vault.get('name', vault['id'])

    try:
        posture = resolve_vault_posture(ctx.client, vault)
    except AuthError:
        raise
    except Exception as e:
        check_and_raise_auth_error(e, f"resolve posture for vault {vault_name}", "azure")
        logger.warning(f"Failed to resolve posture for vault {vault_name}: {e}")
        posture = VaultPosture(
            vault_id=vault['id'], name=vault_name, family=family,
            subscription_id=extract_subscription_id(vault['id']),
            resource_group=extract_resource_group(vault['id']),
            location=vault.get('location'),
        )
    result.postures.append(posture)
    result.findings.extend(evaluate_posture(posture))

    discovery_ctx = DiscoveryContext(client=ctx.client, vault=vault, backup_client=backup_client)
    for item in discover_protected_items(discovery_ctx, family, ctx.protected_ids):
        result.items.append(resolve_protected_item(ctx, item, vault))

    return result


def audit_subscription(
    ctx: AuditContext,
    subscription_id: str,
    inventory: Optional[List[InventoryRecord]] = None,
    progress=None,
) -> AuditResult:
    """
    Audit every vault in a subscription plus its managed SQL databases.

    Coverage is not evaluated here; see ``run_audit``.
    """
    result = AuditResult()
    backup_client = ctx.backup_client_factory(subscription_id) if ctx.backup_client_factory else None

    vaults = list_vaults(ctx, subscription_id)
    if progress:
        progress.add_vaults(len(vaults))

    for vault in vaults:
        vault_result = audit_vault(ctx, vault, backup_client)
        if progress:
            progress.add_items(len(vault_result.items), len(vault_result.findings))
        result.extend(vault_result)

    for database in inventory or []:
        if database.resource_type != AZURE_SQL_DATABASE:
            continue
        item = resolve_managed_database(ctx, database)
        if item:
            result.items.append(item)

    result.findings.extend(evaluate_protection_health(
        [i for i in result.items if i.workload_class in (WORKLOAD_VM, WORKLOAD_DATABASE)]
    ))
    result.findings.extend(evaluate_rpo(result.items, ctx.thresholds))
    ctx.findings.extend(result.findings)
    return result


def run_audit(
    ctx: AuditContext,
    subscription_ids: List[str],
    inventory: Optional[Dict[str, List[InventoryRecord]]] = None,
    progress=None,
) -> AuditResult:
    """
    Audit every subscription, then evaluate coverage across the whole run.

    A subscription that fails for any reason other than authentication is
    recorded in ``failed_subscriptions`` and the run continues.
    """
    inventory = inventory or {}
    result = AuditResult()

    for subscription_id in subscription_ids:
        if progress:
            progress.start_subscription(subscription_id)
        try:
            result.extend(audit_subscription(ctx, subscription_id, inventory.get(subscription_id), progress))
        except AuthError:
            raise
        except Exception as e:
            check_and_raise_auth_error(e, f"audit subscription {subscription_id}", "azure")
            logger.error(f"Failed to audit subscription {subscription_id}: {e}")
            result.failed_subscriptions.append(subscription_id)
        if progress:
            progress.complete_subscription()

    all_inventory = [record for records in inventory.values() for record in records]
    result.coverage = evaluate_coverage(all_inventory, ctx.protected_ids)
    coverage_findings = evaluate_coverage_findings(result.coverage)
    result.findings.extend(coverage_findings)
    ctx.findings.extend(coverage_findings)

    logger.info(f"Audit complete: {len(result.postures)} vaults, {len(result.items)} protected items, "
                f"{len(result.findings)} findings")
    return result
