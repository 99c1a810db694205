#!/usr/bin/env python3
"""
Azure Backup Audit

Audits Azure Backup across subscriptions: vault security posture, protected
item coverage against VM/SQL inventory, configured backup cadence and
observed recovery point objective (RPO).

Usage:
    python3 azure_backup_audit.py
    python3 azure_backup_audit.py --subscription <subscription-id>
    python3 azure_backup_audit.py --config backup-audit.yaml --output ./audit
    python3 azure_backup_audit.py --output https://mystorageaccount.blob.core.windows.net/audits/
"""
import argparse
import logging
import sys
from datetime import datetime, timezone
from typing import Dict, List

from azure.identity import DefaultAzureCredential
from azure.mgmt.recoveryservices import RecoveryServicesClient
from azure.mgmt.recoveryservicesbackup import RecoveryServicesBackupClient
from azure.mgmt.subscription import SubscriptionClient

from backup_audit.arm import ArmClient
from backup_audit.audit import AuditContext, run_audit
from backup_audit.config import generate_sample_config, get_nested, load_config
from backup_audit.constants import DEFAULT_MAX_ATTEMPTS
from backup_audit.inventory import collect_inventory
from backup_audit.models import InventoryRecord, Thresholds
from backup_audit.utils import (
    AuthError,
    ProgressTracker,
    generate_run_id,
    get_timestamp,
    redact_sensitive_data,
    setup_logging,
    write_csv,
    write_json,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Authentication & Subscriptions
# =============================================================================

def get_credential():
    """DefaultAzureCredential, which resolves to the managed identity inside Cloud Shell."""
    return DefaultAzureCredential()


def get_subscriptions(credential) -> List[Dict]:
    """Every subscription the credential can list, with its state."""
    subscription_client = SubscriptionClient(credential)
    subscriptions = []

    for sub in subscription_client.subscriptions.list():
        subscriptions.append({
            'id': sub.subscription_id,
            'name': sub.display_name,
            'state': sub.state
        })

    return subscriptions


def select_subscriptions(all_subscriptions: List[Dict], requested: List[str]) -> List[Dict]:
    """Requested subscriptions if any, else every enabled one."""
    if requested:
        wanted = {s.lower() for s in requested}
        return [s for s in all_subscriptions if (s['id'] or '').lower() in wanted]
    return [s for s in all_subscriptions if s['state'] == 'Enabled']


# =============================================================================
# Output
# =============================================================================

def write_outputs(rows: Dict[str, List[Dict]], output_base: str, run_id: str, subscription_ids: List[str],
                  failed_subscriptions: List[str]) -> None:
    """Write one JSON document plus one CSV per row family."""
    output_base = output_base.rstrip('/')
    if output_base.startswith('https://') and '.blob.core.windows.net' in output_base:
        output_base = f"{output_base}/{run_id}"

    file_ts = datetime.now(timezone.utc).strftime('%H%M%S')
    write_json({
        'run_id': run_id,
        'timestamp': get_timestamp(),
        'provider': 'azure',
        'subscriptions': subscription_ids,
        'failed_subscriptions': failed_subscriptions,
        **rows,
    }, f"{output_base}/backup_audit_{file_ts}.json")

    for name, family_rows in rows.items():
        write_csv(family_rows, f"{output_base}/backup_audit_{name}_{file_ts}.csv")


def main():
    parser = argparse.ArgumentParser(description='Azure Backup Audit - posture, coverage and RPO')
    parser.add_argument('--config', help='YAML config file (default: ./backup-audit.yaml if present)')
    parser.add_argument('--subscription', help='Comma-separated subscription IDs (default: all enabled)')
    parser.add_argument('--output', help='Output directory or blob URL')
    parser.add_argument('--log-level', help='Logging level')
    parser.add_argument('--max-attempts', type=int, help=f'Attempts per API request (default: {DEFAULT_MAX_ATTEMPTS})')
    parser.add_argument(
        '--include-resource-ids',
        action='store_true',
        help='Include full resource IDs in output (default: redact for privacy)'
    )
    parser.add_argument(
        '--skip-inventory',
        action='store_true',
        help='Skip VM/SQL inventory collection (no coverage rows or PITR checks)'
    )
    parser.add_argument('--generate-config', action='store_true', help='Print a sample config file and exit')

    args = parser.parse_args()

    if args.generate_config:
        print(generate_sample_config())
        return

    config = load_config(args)
    output = config.get('output') or '.'
    setup_logging(config.get('log_level') or 'INFO', output_dir=output)

    try:
        credential = get_credential()
    except Exception as e:
        logger.error(f"Failed to authenticate with Azure: {e}")
        logger.error("Check your Azure credentials are configured correctly.")
        sys.exit(1)

    try:
        all_subscriptions = get_subscriptions(credential)
    except Exception as e:
        logger.error(f"Failed to list Azure subscriptions: {e}")
        logger.error("Check your credentials have subscription read access.")
        sys.exit(1)

    subscriptions = select_subscriptions(all_subscriptions, config.get('subscriptions') or [])
    if not subscriptions:
        logger.error("No Azure subscriptions to audit. Check permissions or --subscription.")
        sys.exit(1)

    logger.info(f"Found {len(subscriptions)} subscription(s) to audit")
    subscription_ids = [s['id'] for s in subscriptions]

    ctx = AuditContext(
        client=ArmClient(credential, max_attempts=get_nested(config, 'http.max_attempts', DEFAULT_MAX_ATTEMPTS)),
        thresholds=Thresholds.from_config(config.get('thresholds')),
        vault_client_factory=lambda sub_id: RecoveryServicesClient(credential, sub_id),
        backup_client_factory=lambda sub_id: RecoveryServicesBackupClient(credential, sub_id),
    )

    try:
        inventory: Dict[str, List[InventoryRecord]] = {}
        if not args.skip_inventory:
            for sub in subscriptions:
                inventory[sub['id']] = collect_inventory(credential, sub['id'])

        with ProgressTracker("Azure Backup", total_subscriptions=len(subscriptions)) as tracker:
            result = run_audit(ctx, subscription_ids, inventory, progress=tracker)
    except AuthError as e:
        logger.error(f"Authentication/authorization error: {e}")
        logger.error("Check that you have Reader and Backup Reader access on every subscription.")
        sys.exit(1)

    if result.failed_subscriptions:
        logger.warning(f"Audit failed for {len(result.failed_subscriptions)} subscription(s)")

    rows = result.to_rows()
    listed_ids, failed_ids = subscription_ids, result.failed_subscriptions
    if not config.get('include_resource_ids'):
        rows = redact_sensitive_data(rows)
        listed_ids, failed_ids = redact_sensitive_data(listed_ids), redact_sensitive_data(failed_ids)

    write_outputs(rows, output, generate_run_id(), listed_ids, failed_ids)
    logger.info(f"Wrote {sum(len(r) for r in rows.values())} rows across {len(rows)} files "
                f"({ctx.client.request_count} management API requests)")


if __name__ == '__main__':
    main()
