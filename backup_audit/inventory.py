"""
Inventory collection for coverage evaluation.

VMs (with power state) and Azure SQL databases, flattened into
``InventoryRecord`` rows.
"""
import logging
from typing import List, Optional

from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.sql import SqlManagementClient

from .constants import AZURE_SQL_DATABASE, AZURE_VM
from .models import InventoryRecord
from .utils import check_and_raise_auth_error, extract_resource_group, retry_with_backoff

logger = logging.getLogger(__name__)

_POWER_STATE_PREFIX = 'powerstate/'


def _power_state(vm) -> Optional[str]:
    """``running`` from a ``PowerState/running`` instance-view status."""
    instance_view = getattr(vm, 'instance_view', None)
    for status in getattr(instance_view, 'statuses', None) or []:
        code = (getattr(status, 'code', '') or '').lower()
        if code.startswith(_POWER_STATE_PREFIX):
            return code[len(_POWER_STATE_PREFIX):]
    return None


@retry_with_backoff(max_attempts=3)
def collect_vms(credential, subscription_id: str) -> List[InventoryRecord]:
    """Collect Azure Virtual Machines with their power state."""
    records = []
    try:
        compute_client = ComputeManagementClient(credential, subscription_id)

        for vm in compute_client.virtual_machines.list_all(status_only="true"):
            if not vm.id:
                continue
            records.append(InventoryRecord(
                resource_id=vm.id,
                name=vm.name,
                resource_group=extract_resource_group(vm.id),
                location=vm.location,
                power_state=_power_state(vm),
                resource_type=AZURE_VM,
                subscription_id=subscription_id,
            ))

        logger.info(f"Found {len(records)} Azure VMs")
    except Exception as e:
        check_and_raise_auth_error(e, "collect VMs", "azure")
        logger.error(f"Failed to collect VMs: {e}")

    return records


def collect_sql_databases(credential, subscription_id: str) -> List[InventoryRecord]:
    """Collect Azure SQL databases, skipping ``master``."""
    records = []
    try:
        sql_client = SqlManagementClient(credential, subscription_id)

        for server in sql_client.servers.list():
            server_id = getattr(server, 'id', None)
            server_name = getattr(server, 'name', '')
            if not server_id:
                continue

            rg = extract_resource_group(server_id)
            try:
                for db in sql_client.databases.list_by_server(rg, server_name):
                    db_name = getattr(db, 'name', '')
                    if db_name == 'master':
                        continue
                    records.append(InventoryRecord(
                        resource_id=getattr(db, 'id', ''),
                        name=db_name,
                        resource_group=rg,
                        location=getattr(db, 'location', None),
                        power_state=getattr(db, 'status', None),
                        resource_type=AZURE_SQL_DATABASE,
                        subscription_id=subscription_id,
                    ))
            except Exception as e:
                check_and_raise_auth_error(e, f"list databases for server {server_name}", "azure")
                logger.warning(f"Failed to list databases for server {server_name}: {e}")

        logger.info(f"Found {len(records)} Azure SQL Databases")
    except Exception as e:
        check_and_raise_auth_error(e, "collect SQL Servers", "azure")
        logger.error(f"Failed to collect SQL Servers: {e}")

    return records


def collect_inventory(credential, subscription_id: str) -> List[InventoryRecord]:
    """VMs followed by SQL databases for one subscription."""
    return collect_vms(credential, subscription_id) + collect_sql_databases(credential, subscription_id)
