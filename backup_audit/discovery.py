"""
Protected-Resource Set Builder.

Discovers the protected items of a vault with ordered strategies, stopping
at the first one that returns anything:

1. ``list_by_type``: SDK ``backup_protected_items.list`` filtered by
   management type (AzureIaasVM, AzureWorkload)
2. ``containers``: SDK ``backup_protection_containers.list`` then the
   container's ``protectedItems`` over REST
3. ``rest_fallback``: ``{vault}/backupProtectedItems`` across API versions
   and filters, unioned within a version, first non-empty version wins

Backup (DataProtection) vaults have a single ``backup_instances`` strategy.

A failing strategy moves on to the next one; only authentication errors
escape. Every item, whichever strategy found it, goes through one dict
normalizer so SDK models are serialized to their REST shape first.
"""
import logging
import re
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from .arm import ArmClient
from .constants import (
    DATABASE_DATASOURCE_PREFIXES,
    DATABASE_WORKLOAD_TYPES,
    DISCOVERY_MANAGEMENT_TYPES,
    DP_API_VERSION,
    PROTECTED_ITEM_FILTERS,
    RS_BACKUP_API_VERSION,
    RS_PROTECTED_ITEM_API_VERSIONS,
    VAULT_FAMILY_DATA_PROTECTION,
    WORKLOAD_DATABASE,
    WORKLOAD_VM,
)
from .models import DiscoveredItem
from .pagination import walk_next_links
from .utils import check_and_raise_auth_error, ci_get, extract_resource_group, parse_timestamp

logger = logging.getLogger(__name__)

# Resource group + provider namespace + one or more type/name pairs
_RESOURCE_ID_RE = re.compile(
    r'(/subscriptions/[^/\s]+/resourceGroups/[^/\s]+/providers/[^/\s]+(?:/[^/?#\s]+/[^/?#\s]+)+)',
    re.IGNORECASE,
)

SOURCE_ID_FIELDS = [
    'sourceResourceId',
    'virtualMachineId',
    'dataSourceInfo.resourceID',
    'dataSourceInfo.resourceId',
]


def extract_resource_id(value: Optional[str]) -> Optional[str]:
    """
    Pull a well-formed ARM resource id out of a source-resource field.

    Tolerates casing differences, leading prefixes and trailing slashes or
    query strings.
    """
    if not value:
        return None
    match = _RESOURCE_ID_RE.search(str(value))
    return match.group(1).rstrip('/') if match else None


# =============================================================================
# Protected-ID Set
# =============================================================================

class ProtectedIdSet:
    """
    Case-insensitive set of protected source-resource ids.

    Records which method first protected each id. Safe to share across
    threads.
    """

    def __init__(self, ids: Optional[Iterable[str]] = None, method: str = ""):
        self._methods: Dict[str, str] = {}
        self._lock = threading.Lock()
        for resource_id in ids or []:
            self.add(resource_id, method)

    @staticmethod
    def _key(resource_id: str) -> str:
        return resource_id.strip().rstrip('/').lower()

    def add(self, resource_id: Optional[str], method: str) -> bool:
        """Add an id; returns False when it was already present."""
        if not resource_id:
            return False
        key = self._key(resource_id)
        with self._lock:
            if key in self._methods:
                return False
            self._methods[key] = method
            return True

    def method_for(self, resource_id: Optional[str]) -> Optional[str]:
        if not resource_id:
            return None
        return self._methods.get(self._key(resource_id))

    def __contains__(self, resource_id: object) -> bool:
        return isinstance(resource_id, str) and self._key(resource_id) in self._methods

    def __len__(self) -> int:
        return len(self._methods)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._methods))


# =============================================================================
# Normalization
# =============================================================================

def _serialize(model: Any) -> Dict[str, Any]:
    """SDK model -> REST-shaped dict; dicts pass through."""
    if isinstance(model, dict):
        return model
    return model.serialize(keep_readonly=True)


def normalize_protected_item(raw: Dict[str, Any], vault_id: str, method: str) -> Optional[DiscoveredItem]:
    """
    Normalize a protected item or backup instance into a DiscoveredItem.

    Returns None for entries without an id.
    """
    item_id = ci_get(raw, 'id')
    if not item_id:
        return None
    props = ci_get(raw, 'properties') or {}

    policy_id = ci_get(props, 'policyId', 'policyInfo.policyId')
    health = ci_get(props, 'healthStatus')
    protection_status = ci_get(props, 'protectionStatus')
    if isinstance(protection_status, dict):
        health = health or ci_get(protection_status, 'status')
    elif health is None:
        health = protection_status

    return DiscoveredItem(
        item_id=item_id,
        name=ci_get(props, 'friendlyName') or ci_get(raw, 'name') or item_id.rsplit('/', 1)[-1],
        vault_id=vault_id,
        source_resource_id=extract_resource_id(ci_get(props, *SOURCE_ID_FIELDS)),
        policy_id=policy_id,
        policy_name=ci_get(props, 'policyName') or (policy_id.rsplit('/', 1)[-1] if policy_id else None),
        last_backup_time=parse_timestamp(ci_get(props, 'lastBackupTime')),
        last_recovery_point=parse_timestamp(ci_get(props, 'lastRecoveryPoint')),
        last_backup_status=ci_get(props, 'lastBackupStatus'),
        protection_state=ci_get(props, 'protectionState', 'currentProtectionState'),
        health_status=health,
        workload_type=ci_get(props, 'workloadType', 'dataSourceInfo.datasourceType'),
        backup_management_type=ci_get(props, 'backupManagementType'),
        container_name=ci_get(props, 'containerName'),
        discovered_by=method,
    )


def classify_workload(item: DiscoveredItem) -> str:
    """vm for VM-level items, database for in-guest and managed-server databases."""
    workload_type = (item.workload_type or '').lower()
    if workload_type in DATABASE_WORKLOAD_TYPES or workload_type.startswith(DATABASE_DATASOURCE_PREFIXES):
        return WORKLOAD_DATABASE
    return WORKLOAD_VM


def _normalize_all(raw_items: Iterable[Any], vault_id: str, method: str) -> List[DiscoveredItem]:
    items: List[DiscoveredItem] = []
    seen = set()
    for raw in raw_items:
        item = normalize_protected_item(_serialize(raw), vault_id, method)
        if item is None or item.item_id.lower() in seen:
            continue
        seen.add(item.item_id.lower())
        items.append(item)
    return items


# =============================================================================
# Strategies
# =============================================================================

@dataclass
class DiscoveryContext:
    """Per-vault inputs shared by every strategy."""
    client: ArmClient
    vault: Dict[str, Any]
    backup_client: Any = None

    @property
    def vault_id(self) -> str:
        return self.vault['id']

    @property
    def vault_name(self) -> str:
        return self.vault.get('name') or self.vault_id.rsplit('/', 1)[-1]

    @property
    def resource_group(self) -> Optional[str]:
        return extract_resource_group(self.vault_id)


Strategy = Callable[[DiscoveryContext], Optional[List[DiscoveredItem]]]


def _type_filter(management_type: str) -> str:
    return f"backupManagementType eq '{management_type}'"


def list_by_management_type(ctx: DiscoveryContext) -> Optional[List[DiscoveredItem]]:
    """Strategy 1: SDK list per backup management type."""
    if ctx.backup_client is None:
        return None
    raw_items: List[Any] = []
    for management_type in DISCOVERY_MANAGEMENT_TYPES:
        raw_items.extend(ctx.backup_client.backup_protected_items.list(
            ctx.vault_name, ctx.resource_group, filter=_type_filter(management_type)
        ))
    return _normalize_all(raw_items, ctx.vault_id, 'list_by_type')


def list_via_containers(ctx: DiscoveryContext) -> Optional[List[DiscoveredItem]]:
    """Strategy 2: registered containers, then each container's items over REST."""
    if ctx.backup_client is None:
        return None
    raw_items: List[Dict[str, Any]] = []
    for management_type in DISCOVERY_MANAGEMENT_TYPES:
        containers = ctx.backup_client.backup_protection_containers.list(
            ctx.vault_name, ctx.resource_group, filter=_type_filter(management_type)
        )
        for container in containers:
            container_id = _serialize(container).get('id')
            if not container_id:
                continue
            page = walk_next_links(
                ctx.client, f"{container_id}/protectedItems",
                params={'api-version': RS_BACKUP_API_VERSION},
            )
            if page is None:
                logger.debug(f"Could not list protected items for container {container_id}")
                continue
            raw_items.extend(page)
    return _normalize_all(raw_items, ctx.vault_id, 'containers')


def list_via_rest(ctx: DiscoveryContext) -> Optional[List[DiscoveredItem]]:
    """Strategy 3: REST protected-items list across API versions and filters."""
    target = f"{ctx.vault_id}/backupProtectedItems"
    for api_version in RS_PROTECTED_ITEM_API_VERSIONS:
        raw_items: List[Dict[str, Any]] = []
        for item_filter in PROTECTED_ITEM_FILTERS:
            params = {'api-version': api_version}
            if item_filter:
                params['$filter'] = item_filter
            page = walk_next_links(ctx.client, target, params=params)
            if page:
                raw_items.extend(page)
        items = _normalize_all(raw_items, ctx.vault_id, 'rest_fallback')
        if items:
            logger.debug(f"REST fallback found {len(items)} item(s) in {ctx.vault_name} at {api_version}")
            return items
    return None


def list_backup_instances(ctx: DiscoveryContext) -> Optional[List[DiscoveredItem]]:
    """Backup vault instances over REST."""
    page = walk_next_links(
        ctx.client, f"{ctx.vault_id}/backupInstances",
        params={'api-version': DP_API_VERSION},
    )
    if page is None:
        return None
    return _normalize_all(page, ctx.vault_id, 'backup_instances')


RS_STRATEGIES: List[Tuple[str, Strategy]] = [
    ('list_by_type', list_by_management_type),
    ('containers', list_via_containers),
    ('rest_fallback', list_via_rest),
]

DP_STRATEGIES: List[Tuple[str, Strategy]] = [
    ('backup_instances', list_backup_instances),
]


def first_non_empty_strategy(
    strategies: List[Tuple[str, Strategy]],
    ctx: DiscoveryContext,
) -> Tuple[Optional[str], List[DiscoveredItem]]:
    """Run strategies in order until one returns items."""
    for name, attempt in strategies:
        try:
            items = attempt(ctx)
        except Exception as e:
            check_and_raise_auth_error(e, f"discover protected items in {ctx.vault_name} via {name}", "azure")
            logger.warning(f"Discovery strategy {name} failed for vault {ctx.vault_name}: {e}")
            continue
        if items:
            return name, items
        logger.debug(f"Discovery strategy {name} found nothing in {ctx.vault_name}")
    return None, []


def discover_protected_items(
    ctx: DiscoveryContext,
    family: str,
    protected_ids: Optional[ProtectedIdSet] = None,
) -> List[DiscoveredItem]:
    """
    Discover a vault's protected items and record their source ids.

    Args:
        ctx: per-vault discovery context
        family: vault family (RecoveryServices or DataProtection)
        protected_ids: run-scoped accumulator to add source ids to

    Returns:
        Normalized items from the first strategy that found any.
    """
    strategies = DP_STRATEGIES if family == VAULT_FAMILY_DATA_PROTECTION else RS_STRATEGIES
    method, items = first_non_empty_strategy(strategies, ctx)

    if protected_ids is not None:
        for item in items:
            protected_ids.add(item.source_resource_id, item.discovered_by)

    if method:
        logger.info(f"Found {len(items)} protected items in vault {ctx.vault_name} via {method}")
    return items
