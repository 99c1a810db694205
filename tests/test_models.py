"""
Tests for data models and their flat row serialization.
"""
import os
import sys
from datetime import datetime, timedelta, timezone

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from backup_audit.models import (
    DiscoveredItem,
    Finding,
    InventoryRecord,
    ProtectedItem,
    RpoSource,
    ScheduleInfo,
    Severity,
    VaultPosture,
)

VM_ID = "/subscriptions/sub123/resourceGroups/rg-app/providers/Microsoft.Compute/virtualMachines/vm1"


class TestRowSerialization:
    """Tests for to_dict on output models."""

    def test_protected_item_row(self):
        item = ProtectedItem(
            item_id="item1", name="vm1", source_resource_id=VM_ID, workload_class="vm",
            latest_point_time=datetime(2024, 6, 1, 10, 0, tzinfo=timezone.utc),
            rpo_source=RpoSource.PITR,
        )

        row = item.to_dict()

        assert row["latest_point_time"] == "2024-06-01T10:00:00Z"
        assert row["last_success_time"] is None
        assert row["rpo_source"] == "PITR"

    def test_vault_posture_row(self):
        posture = VaultPosture(vault_id="v", name="vault1", family="RecoveryServices",
                               soft_delete_state="AlwaysOn", sources=("vault", "backupstorageconfig"))

        row = posture.to_dict()

        assert row["sources"] == "vault;backupstorageconfig"
        assert row["security_level"] == "Enhanced"

    def test_finding_hash_ignores_resource_id_case(self):
        first = Finding(Severity.HIGH, "Backup Coverage", "vm1 is not protected", resource_id=VM_ID)
        second = Finding(Severity.HIGH, "Backup Coverage", "vm1 is not protected", resource_id=VM_ID.upper())
        other = Finding(Severity.HIGH, "Backup Coverage", "vm2 is not protected", resource_id=VM_ID)

        assert first.hash == second.hash
        assert first.hash != other.hash
        assert first.to_dict()["module_code"] == "BACKUP"


class TestInventoryRecord:
    """Tests for InventoryRecord.from_dict."""

    def test_camel_and_snake_keys(self):
        camel = InventoryRecord.from_dict({"id": VM_ID, "name": "vm1", "resourceGroup": "rg-app",
                                           "powerState": "running"}, resource_type="azure:vm")
        snake = InventoryRecord.from_dict({"resource_id": VM_ID, "name": "vm1", "resource_group": "rg-app",
                                           "power_state": "running", "resource_type": "azure:vm"})

        assert camel == snake


class TestScheduleAndItem:
    """Tests for derived properties."""

    def test_schedule_without_cadence(self):
        schedule = ScheduleInfo(window=timedelta(hours=8))

        assert schedule.effective_cadence is None
        assert schedule.cadence_text is None
        assert schedule.window_hours == 8.0

    def test_last_success_takes_latest_marker(self):
        item = DiscoveredItem(
            item_id="i", name="vm1", vault_id="v",
            last_backup_time=datetime(2024, 6, 1, 2, 0, tzinfo=timezone.utc),
            last_recovery_point=datetime(2024, 6, 1, 1, 0, tzinfo=timezone.utc),
        )
        assert item.last_success.hour == 2

    def test_last_success_none(self):
        assert DiscoveredItem(item_id="i", name="vm1", vault_id="v").last_success is None
