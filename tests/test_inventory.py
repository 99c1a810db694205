"""
Tests for VM and SQL database inventory collection using unittest.mock.
"""
import os
import sys
from unittest.mock import Mock, patch

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from backup_audit.inventory import collect_inventory, collect_sql_databases, collect_vms

# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def mock_credential():
    """Create a mock Azure credential."""
    return Mock()


@pytest.fixture
def subscription_id():
    """Test subscription ID."""
    return "12345678-1234-1234-1234-123456789012"


# =============================================================================
# Helper Functions
# =============================================================================

def create_mock_vm(name: str, power_state: str = "running", location: str = "eastus"):
    """Create a mock Azure VM with an instance view."""
    vm = Mock()
    vm.id = f"/subscriptions/sub123/resourceGroups/rg-test/providers/Microsoft.Compute/virtualMachines/{name}"
    vm.name = name
    vm.location = location

    provisioning = Mock()
    provisioning.code = "ProvisioningState/succeeded"
    power = Mock()
    power.code = f"PowerState/{power_state}"
    vm.instance_view = Mock()
    vm.instance_view.statuses = [provisioning, power]
    return vm


def create_mock_database(name: str, server: str = "sqlserver1", status: str = "Online"):
    db = Mock()
    db.id = f"/subscriptions/sub123/resourceGroups/rg-data/providers/Microsoft.Sql/servers/{server}/databases/{name}"
    db.name = name
    db.location = "eastus"
    db.status = status
    return db


def create_mock_server(name: str = "sqlserver1"):
    server = Mock()
    server.id = f"/subscriptions/sub123/resourceGroups/rg-data/providers/Microsoft.Sql/servers/{name}"
    server.name = name
    return server


# =============================================================================
# VM Inventory Tests
# =============================================================================

class TestCollectVms:
    """Tests for collect_vms."""

    def test_power_state(self, mock_credential, subscription_id):
        with patch('backup_audit.inventory.ComputeManagementClient') as mock_client_class:
            mock_client = Mock()
            mock_client_class.return_value = mock_client
            mock_client.virtual_machines.list_all.return_value = [
                create_mock_vm("web-01"),
                create_mock_vm("batch-01", power_state="deallocated"),
            ]

            records = collect_vms(mock_credential, subscription_id)

        assert [r.power_state for r in records] == ["running", "deallocated"]
        assert records[0].resource_group == "rg-test"
        assert records[0].resource_type == "azure:vm"
        assert records[0].subscription_id == subscription_id
        mock_client.virtual_machines.list_all.assert_called_once_with(status_only="true")

    def test_missing_instance_view(self, mock_credential, subscription_id):
        vm = create_mock_vm("web-01")
        vm.instance_view = None
        with patch('backup_audit.inventory.ComputeManagementClient') as mock_client_class:
            mock_client_class.return_value.virtual_machines.list_all.return_value = [vm]

            records = collect_vms(mock_credential, subscription_id)

        assert records[0].power_state is None

    def test_api_error_returns_empty(self, mock_credential, subscription_id):
        with patch('backup_audit.inventory.ComputeManagementClient') as mock_client_class:
            mock_client_class.return_value.virtual_machines.list_all.side_effect = Exception("API Error")

            assert collect_vms(mock_credential, subscription_id) == []


# =============================================================================
# SQL Inventory Tests
# =============================================================================

class TestCollectSqlDatabases:
    """Tests for collect_sql_databases."""

    def test_skips_master(self, mock_credential, subscription_id):
        with patch('backup_audit.inventory.SqlManagementClient') as mock_client_class:
            mock_client = Mock()
            mock_client_class.return_value = mock_client
            mock_client.servers.list.return_value = [create_mock_server()]
            mock_client.databases.list_by_server.return_value = [
                create_mock_database("master"),
                create_mock_database("orders"),
            ]

            records = collect_sql_databases(mock_credential, subscription_id)

        assert [r.name for r in records] == ["orders"]
        assert records[0].power_state == "Online"
        assert records[0].resource_type == "azure:sql:database"
        mock_client.databases.list_by_server.assert_called_once_with("rg-data", "sqlserver1")

    def test_server_failure_continues(self, mock_credential, subscription_id):
        with patch('backup_audit.inventory.SqlManagementClient') as mock_client_class:
            mock_client = Mock()
            mock_client_class.return_value = mock_client
            mock_client.servers.list.return_value = [create_mock_server("broken"), create_mock_server("ok")]
            mock_client.databases.list_by_server.side_effect = [
                Exception("Server unavailable"),
                [create_mock_database("orders", server="ok")],
            ]

            records = collect_sql_databases(mock_credential, subscription_id)

        assert [r.name for r in records] == ["orders"]


class TestCollectInventory:
    """Tests for collect_inventory."""

    def test_vms_then_databases(self, mock_credential, subscription_id):
        with patch('backup_audit.inventory.ComputeManagementClient') as compute_class, \
                patch('backup_audit.inventory.SqlManagementClient') as sql_class:
            compute_class.return_value.virtual_machines.list_all.return_value = [create_mock_vm("web-01")]
            sql_class.return_value.servers.list.return_value = [create_mock_server()]
            sql_class.return_value.databases.list_by_server.return_value = [create_mock_database("orders")]

            records = collect_inventory(mock_credential, subscription_id)

        assert [r.resource_type for r in records] == ["azure:vm", "azure:sql:database"]
