"""
Tests for run orchestration.

Drives the whole audit against a routed ARM stub: vault listing, posture,
discovery, cadence/RPO resolution, managed SQL point-in-time restore and
run-level coverage.
"""
import os
import sys
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from backup_audit.arm import ArmResponse
from backup_audit.audit import AuditContext, audit_vault, get_policy, run_audit
from backup_audit.models import InventoryRecord, RpoSource
from backup_audit.utils import AuthError

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
SUB_ID = "sub123"
SUB = f"/subscriptions/{SUB_ID}"
VAULT_ID = f"{SUB}/resourceGroups/rg-backup/providers/Microsoft.RecoveryServices/vaults/vault1"
VM1_ID = f"{SUB}/resourceGroups/rg-app/providers/Microsoft.Compute/virtualMachines/vm1"
VM2_ID = f"{SUB}/resourceGroups/rg-app/providers/Microsoft.Compute/virtualMachines/vm2"
SQLVM_ID = f"{SUB}/resourceGroups/rg-data/providers/Microsoft.Compute/virtualMachines/sqlvm1"
DB_ID = f"{SUB}/resourceGroups/rg-data/providers/Microsoft.Sql/servers/srv1/databases/orders"
CONTAINER = f"{VAULT_ID}/backupFabrics/Azure/protectionContainers/iaasvmcontainerv2;rg-app;vm1"
VM_ITEM_ID = f"{CONTAINER}/protectedItems/vm;iaasvmcontainerv2;rg-app;vm1"
SQL_ITEM_ID = (f"{VAULT_ID}/backupFabrics/Azure/protectionContainers/vmappcontainer;compute;rg-data;sqlvm1"
               f"/protectedItems/sqldatabase;mssqlserver;salesdb")
POLICY_ID = f"{VAULT_ID}/backupPolicies/EnhancedPolicy"
RS_VAULTS = f"{SUB}/providers/Microsoft.RecoveryServices/vaults"
DP_VAULTS = f"{SUB}/providers/Microsoft.DataProtection/backupVaults"
PROTECTED_ITEMS = f"{VAULT_ID}/backupProtectedItems"


# =============================================================================
# Helper Functions
# =============================================================================

class RoutedClient:
    """
    ARM client stub answering by path (optionally by path and api-version).

    A route value that is an exception instance is raised; missing routes
    behave like a terminal HTTP failure and return None.
    """

    def __init__(self, routes=None):
        self.routes = routes or {}
        self.calls = []

    def get(self, target, params=None):
        api_version = (params or {}).get('api-version')
        self.calls.append(target)
        body = self.routes.get((target, api_version), self.routes.get(target))
        if isinstance(body, Exception):
            raise body
        return ArmResponse(200, body) if body is not None else None


def iso(hours_ago):
    return (NOW - timedelta(hours=hours_ago)).isoformat().replace('+00:00', 'Z')


def vault():
    return {
        "id": VAULT_ID,
        "name": "vault1",
        "type": "Microsoft.RecoveryServices/vaults",
        "location": "eastus",
        "properties": {
            "securitySettings": {"softDeleteSettings": {
                "softDeleteState": "AlwaysON", "softDeleteRetentionPeriodInDays": 14}},
            "redundancySettings": {"standardTierStorageRedundancy": "GeoRedundant"},
            "restoreSettings": {"crossSubscriptionRestoreSettings": {"crossSubscriptionRestoreState": "Disabled"}},
        },
    }


def vm_item(policy_id=None, last_backup=None):
    properties = {
        "friendlyName": "vm1",
        "sourceResourceId": VM1_ID,
        "workloadType": "VM",
        "backupManagementType": "AzureIaasVM",
        "protectionState": "Protected",
    }
    if policy_id:
        properties["policyId"] = policy_id
    if last_backup:
        properties["lastBackupTime"] = last_backup
    return {"id": VM_ITEM_ID, "name": "vm;iaasvmcontainerv2;rg-app;vm1", "properties": properties}


def sql_item():
    return {"id": SQL_ITEM_ID, "properties": {
        "friendlyName": "salesdb",
        "sourceResourceId": SQLVM_ID,
        "workloadType": "SQLDataBase",
        "backupManagementType": "AzureWorkload",
        "protectionState": "Protected",
    }}


def point(hours_ago, kind="CrashConsistent", **extra):
    properties = {"recoveryPointType": kind, "recoveryPointTime": iso(hours_ago)}
    properties.update(extra)
    return {"id": f"rp-{hours_ago}", "properties": properties}


def inventory_vm(resource_id, power_state="VM running"):
    return InventoryRecord(resource_id=resource_id, name=resource_id.rsplit('/', 1)[-1],
                           resource_group="rg-app", power_state=power_state,
                           resource_type="azure:vm", subscription_id=SUB_ID)


def base_routes(*items):
    return {
        RS_VAULTS: {"value": [vault()]},
        DP_VAULTS: {"value": []},
        PROTECTED_ITEMS: {"value": list(items)},
    }


def make_ctx(client, **kwargs):
    return AuditContext(client=client, now=NOW, **kwargs)


# =============================================================================
# End-to-End Tests
# =============================================================================

class TestEndToEnd:
    """Full runs against the routed stub."""

    def test_vm_without_policy_uses_recovery_points(self):
        """One VM, no policy, points at T-26h and T-2h."""
        routes = base_routes(vm_item())
        routes[f"{VM_ITEM_ID}/recoveryPoints"] = {"value": [point(2), point(26)]}
        ctx = make_ctx(RoutedClient(routes))

        result = run_audit(ctx, [SUB_ID])

        assert len(result.items) == 1
        item = result.items[0]
        assert item.configured_cadence is None
        assert item.rpo_source == RpoSource.RECOVERY_POINTS
        assert item.observed_rpo_hours == 2.0
        assert item.inferred_cadence_hours == 24.0
        assert not [f for f in result.findings if f.category == "Recovery Point Objective"]
        assert result.to_rows()["protected_items"][0]["rpo_source"] == "RecoveryPoints"

    def test_policy_cadence_skips_recovery_points(self):
        routes = base_routes(vm_item(policy_id=POLICY_ID, last_backup=iso(3)))
        routes[POLICY_ID] = {"id": POLICY_ID, "properties": {"schedulePolicy": {
            "schedulePolicyType": "SimpleSchedulePolicyV2",
            "scheduleRunFrequency": "Hourly",
            "hourlySchedule": {"interval": 4, "scheduleWindowDuration": 12,
                               "scheduleWindowStartTime": "2024-01-01T08:00:00Z"},
        }}}
        client = RoutedClient(routes)

        result = run_audit(make_ctx(client), [SUB_ID])

        item = result.items[0]
        assert item.rpo_source == RpoSource.POLICY
        assert item.configured_cadence == "Every 4 hour(s)"
        assert item.configured_cadence_hours == 4.0
        assert item.backup_window_hours == 12.0
        assert item.observed_rpo_hours == 3.0
        assert f"{VM_ITEM_ID}/recoveryPoints" not in client.calls

    def test_database_reports_log_freshness(self):
        routes = base_routes(sql_item())
        routes[f"{SQL_ITEM_ID}/recoveryPoints"] = {"value": [
            {"id": "full", "properties": {"objectType": "AzureWorkloadSQLRecoveryPoint", "type": "Full",
                                          "recoveryPointTimeInUTC": iso(10)}},
            {"id": "log", "properties": {"objectType": "AzureWorkloadSQLPointInTimeRecoveryPoint", "type": "Log",
                                         "timeRanges": [{"startTime": iso(10), "endTime": iso(1)}]}},
        ]}

        result = run_audit(make_ctx(RoutedClient(routes)), [SUB_ID])

        item = result.items[0]
        assert item.workload_class == "database"
        assert item.latest_point_kind == "Log"
        assert item.observed_rpo_hours == 1.0

    def test_coverage_across_run(self):
        routes = base_routes(vm_item())
        routes[f"{VM_ITEM_ID}/recoveryPoints"] = {"value": [point(2)]}
        inventory = {SUB_ID: [inventory_vm(VM1_ID.upper()), inventory_vm(VM2_ID)]}

        result = run_audit(make_ctx(RoutedClient(routes)), [SUB_ID], inventory)

        assert [(c.name.lower(), c.protected) for c in result.coverage] == [("vm1", True), ("vm2", False)]
        coverage_findings = [f for f in result.findings if f.category == "Backup Coverage"]
        assert [f.resource_id for f in coverage_findings] == [VM2_ID]

    def test_total_network_failure_still_reports_coverage(self):
        """Every GET failing yields coverage rows and no exception."""
        inventory = {SUB_ID: [inventory_vm(VM1_ID), inventory_vm(VM2_ID, "VM deallocated")]}

        result = run_audit(make_ctx(RoutedClient()), [SUB_ID], inventory)

        assert result.postures == []
        assert result.items == []
        assert len(result.coverage) == 2
        assert not any(c.protected for c in result.coverage)
        assert result.failed_subscriptions == []

    def test_managed_database_pitr(self):
        routes = {f"{DB_ID}/restorePoints": {"value": [{"id": f"{DB_ID}/restorePoints/continuous", "properties": {
            "restorePointType": "CONTINUOUS",
            "earliestRestoreDate": iso(168),
            "restorePointCreationDate": iso(0.5),
        }}]}}
        database = InventoryRecord(resource_id=DB_ID, name="orders", resource_group="rg-data",
                                   power_state="Online", resource_type="azure:sql:database", subscription_id=SUB_ID)

        result = run_audit(make_ctx(RoutedClient(routes)), [SUB_ID], {SUB_ID: [database]})

        assert len(result.items) == 1
        item = result.items[0]
        assert item.workload_class == "managed_database"
        assert item.observed_rpo_hours == 0.5
        assert item.earliest_restore_time == NOW - timedelta(hours=168)
        assert result.coverage[0].protected is True
        assert result.coverage[0].method == "pitr"

    def test_managed_database_pitr_without_creation_date(self):
        """Retention age from earliestRestoreDate never becomes the observed RPO."""
        routes = {f"{DB_ID}/restorePoints": {"value": [{"id": f"{DB_ID}/restorePoints/continuous", "properties": {
            "restorePointType": "CONTINUOUS",
            "earliestRestoreDate": iso(168),
        }}]}}
        database = InventoryRecord(resource_id=DB_ID, name="orders", resource_group="rg-data",
                                   power_state="Online", resource_type="azure:sql:database", subscription_id=SUB_ID)

        result = run_audit(make_ctx(RoutedClient(routes)), [SUB_ID], {SUB_ID: [database]})

        item = result.items[0]
        assert item.observed_rpo_hours is None
        assert item.rpo_source == RpoSource.PITR
        assert item.earliest_restore_time == NOW - timedelta(hours=168)
        assert result.coverage[0].protected is True
        assert [f for f in result.findings if f.category == "Recovery Point Objective"] == []

    def test_rpo_threshold_finding(self):
        routes = base_routes(vm_item())
        routes[f"{VM_ITEM_ID}/recoveryPoints"] = {"value": [point(50), point(74)]}

        result = run_audit(make_ctx(RoutedClient(routes)), [SUB_ID])

        rpo_findings = [f for f in result.findings if f.category == "Recovery Point Objective"]
        assert len(rpo_findings) == 1
        assert rpo_findings[0].severity.value == "High"
        assert rpo_findings[0].resource_id == VM1_ID


# =============================================================================
# Failure Handling Tests
# =============================================================================

class TestFailureHandling:
    """Tests for degradation and error propagation."""

    def test_item_failure_yields_null_row(self):
        routes = base_routes(vm_item())
        routes[f"{VM_ITEM_ID}/recoveryPoints"] = ValueError("malformed page")

        result = run_audit(make_ctx(RoutedClient(routes)), [SUB_ID])

        item = result.items[0]
        assert item.name == "vm1"
        assert item.observed_rpo_hours is None
        assert item.rpo_source == RpoSource.NONE

    def test_subscription_failure_recorded(self):
        routes = base_routes(vm_item())
        routes["/subscriptions/bad/providers/Microsoft.RecoveryServices/vaults"] = RuntimeError("boom")
        routes[f"{VM_ITEM_ID}/recoveryPoints"] = {"value": [point(2)]}

        result = run_audit(make_ctx(RoutedClient(routes)), ["bad", SUB_ID])

        assert result.failed_subscriptions == ["bad"]
        assert len(result.items) == 1

    def test_auth_error_propagates(self):
        routes = {RS_VAULTS: AuthError("token expired", "azure")}

        with pytest.raises(AuthError):
            run_audit(make_ctx(RoutedClient(routes)), [SUB_ID])

    def test_progress_reported(self):
        routes = base_routes(vm_item())
        progress = Mock()

        run_audit(make_ctx(RoutedClient(routes)), [SUB_ID], progress=progress)

        progress.start_subscription.assert_called_once_with(SUB_ID)
        progress.add_vaults.assert_called_once_with(1)
        progress.complete_subscription.assert_called_once()


# =============================================================================
# SDK Path & Caching Tests
# =============================================================================

class TestSdkAndCache:
    """Tests for SDK vault listing and policy caching."""

    def test_sdk_vault_listing(self):
        model = Mock()
        model.serialize.return_value = vault()
        rs_client = Mock()
        rs_client.vaults.list_by_subscription_id.return_value = [model]
        routes = {DP_VAULTS: {"value": []}}
        client = RoutedClient(routes)

        result = run_audit(make_ctx(client, vault_client_factory=lambda sub: rs_client), [SUB_ID])

        assert [p.name for p in result.postures] == ["vault1"]
        assert RS_VAULTS not in client.calls
        model.serialize.assert_called_once_with(keep_readonly=True)

    def test_policy_fetched_once(self):
        client = RoutedClient({POLICY_ID: {"properties": {}}})
        ctx = make_ctx(client)

        get_policy(ctx, POLICY_ID, "RecoveryServices")
        get_policy(ctx, POLICY_ID.upper(), "RecoveryServices")

        assert client.calls == [POLICY_ID]

    def test_unreadable_posture_still_discovers(self):
        """A vault whose posture fails still has its items resolved."""
        routes = {
            PROTECTED_ITEMS: {"value": [vm_item()]},
            f"{VM_ITEM_ID}/recoveryPoints": {"value": [point(2)]},
        }
        ctx = make_ctx(RoutedClient(routes))

        result = audit_vault(ctx, {"id": VAULT_ID, "name": "vault1"})

        assert result.postures[0].soft_delete_state is None
        assert len(result.items) == 1
        assert VM1_ID in ctx.protected_ids
