"""
Vault Posture Resolver.

Recovery Services vaults expose their security settings across several
endpoints whose shapes changed between API generations. They are merged in
a fixed order, first non-null wins, later sources only fill gaps:

1. vault root properties (newest, richest shape)
2. ``backupstorageconfig/vaultstorageconfig``
3. ``backupconfig/vaultconfig`` at the current API version
4. ``backupconfig/vaultconfig`` at the legacy API version

Resolution stops once soft-delete state, retention days, storage redundancy
and cross-subscription restore are all known. Backup (DataProtection) vaults
carry everything on the vault root.

``security_level`` is never merged; ``VaultPosture`` derives it from the
resolved fields.
"""
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from .arm import ArmClient
from .constants import (
    DP_API_VERSION,
    DP_VAULT_TYPE,
    RS_STORAGE_CONFIG_API_VERSION,
    RS_VAULT_API_VERSION,
    RS_VAULT_CONFIG_API_VERSIONS,
    SOFT_DELETE_VOCABULARY,
    VAULT_FAMILY_DATA_PROTECTION,
    VAULT_FAMILY_RECOVERY_SERVICES,
)
from .models import VaultPosture
from .utils import ci_get, extract_resource_group, extract_subscription_id

logger = logging.getLogger(__name__)

# Fields whose resolution ends the merge early
REQUIRED_FIELDS = (
    'soft_delete_state',
    'soft_delete_retention_days',
    'storage_redundancy',
    'cross_subscription_restore',
)

MERGED_FIELDS = REQUIRED_FIELDS + (
    'cross_region_restore',
    'enhanced_security_state',
    'multi_user_auth',
    'immutability_state',
)

_TRUE_WORDS = {'enabled', 'true', 'on', 'yes'}
_FALSE_WORDS = {'disabled', 'false', 'off', 'no', 'invalid'}

PostureSource = Callable[[ArmClient, Dict[str, Any]], Optional[Dict[str, Any]]]


# =============================================================================
# Normalization
# =============================================================================

def normalize_soft_delete_state(value: Any) -> Optional[str]:
    """Map On/Off, Enabled/Disabled and AlwaysON into one vocabulary."""
    if value is None or value == "":
        return None
    key = str(value).strip().replace(' ', '').replace('_', '').lower()
    return SOFT_DELETE_VOCABULARY.get(key, str(value))


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if value is None:
        return None
    word = str(value).strip().lower()
    if word in _TRUE_WORDS:
        return True
    if word in _FALSE_WORDS:
        return False
    return None


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None and value != "" else None
    except (TypeError, ValueError):
        logger.debug(f"Ignoring non-numeric retention value {value!r}")
        return None


def _state(value: Any) -> Optional[str]:
    return str(value) if value is not None and value != "" else None


# =============================================================================
# Source Extractors
# =============================================================================

def _rs_root_fields(body: Dict[str, Any]) -> Dict[str, Any]:
    props = ci_get(body, 'properties') or {}
    soft_delete = ci_get(props, 'securitySettings.softDeleteSettings') or {}
    return {
        'soft_delete_state': normalize_soft_delete_state(ci_get(soft_delete, 'softDeleteState')),
        'soft_delete_retention_days': _as_int(ci_get(soft_delete, 'softDeleteRetentionPeriodInDays')),
        'enhanced_security_state': _state(ci_get(soft_delete, 'enhancedSecurityState')),
        'storage_redundancy': _state(ci_get(props, 'redundancySettings.standardTierStorageRedundancy')),
        'cross_region_restore': _as_bool(ci_get(props, 'redundancySettings.crossRegionRestore')),
        'cross_subscription_restore': _state(ci_get(
            props, 'restoreSettings.crossSubscriptionRestoreSettings.crossSubscriptionRestoreState')),
        'immutability_state': _state(ci_get(props, 'securitySettings.immutabilitySettings.state')),
        'multi_user_auth': _as_bool(ci_get(props, 'securitySettings.multiUserAuthorization')),
    }


def _storage_config_fields(body: Dict[str, Any]) -> Dict[str, Any]:
    props = ci_get(body, 'properties') or {}
    return {
        'storage_redundancy': _state(ci_get(props, 'storageModelType', 'storageType')),
        'cross_region_restore': _as_bool(ci_get(props, 'crossRegionRestoreFlag')),
    }


def _vault_config_fields(body: Dict[str, Any]) -> Dict[str, Any]:
    props = ci_get(body, 'properties') or {}
    return {
        'soft_delete_state': normalize_soft_delete_state(ci_get(props, 'softDeleteFeatureState')),
        'soft_delete_retention_days': _as_int(ci_get(props, 'softDeleteRetentionPeriodInDays')),
        'enhanced_security_state': _state(ci_get(props, 'enhancedSecurityState')),
    }


def _dp_root_fields(body: Dict[str, Any]) -> Dict[str, Any]:
    props = ci_get(body, 'properties') or {}
    storage = ci_get(props, 'storageSettings') or []
    first_storage = storage[0] if isinstance(storage, list) and storage else {}
    return {
        'soft_delete_state': normalize_soft_delete_state(
            ci_get(props, 'securitySettings.softDeleteSettings.state')),
        'soft_delete_retention_days': _as_int(
            ci_get(props, 'securitySettings.softDeleteSettings.retentionDurationInDays')),
        'storage_redundancy': _state(ci_get(first_storage, 'type')),
        'cross_subscription_restore': _state(
            ci_get(props, 'featureSettings.crossSubscriptionRestoreSettings.state')),
        'cross_region_restore': _as_bool(ci_get(props, 'featureSettings.crossRegionRestoreSettings.state')),
        'immutability_state': _state(ci_get(props, 'securitySettings.immutabilitySettings.state')),
    }


def _root_body(client: ArmClient, vault: Dict[str, Any], api_version: str) -> Optional[Dict[str, Any]]:
    """Use the listed vault body when it carries properties, else GET it."""
    if isinstance(ci_get(vault, 'properties'), dict) and ci_get(vault, 'properties'):
        return vault
    response = client.get(vault['id'], params={'api-version': api_version})
    return response.body if response else None


def _rs_root(client: ArmClient, vault: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    body = _root_body(client, vault, RS_VAULT_API_VERSION)
    return _rs_root_fields(body) if body else None


def _rs_storage_config(client: ArmClient, vault: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    response = client.get(
        f"{vault['id']}/backupstorageconfig/vaultstorageconfig",
        params={'api-version': RS_STORAGE_CONFIG_API_VERSION},
    )
    return _storage_config_fields(response.body) if response else None


def _rs_vault_config(api_version: str) -> PostureSource:
    def source(client: ArmClient, vault: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        response = client.get(
            f"{vault['id']}/backupconfig/vaultconfig",
            params={'api-version': api_version},
        )
        return _vault_config_fields(response.body) if response else None
    return source


def _dp_root(client: ArmClient, vault: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    body = _root_body(client, vault, DP_API_VERSION)
    return _dp_root_fields(body) if body else None


RS_SOURCES: List[Tuple[str, PostureSource]] = [
    ('vault', _rs_root),
    ('backupstorageconfig', _rs_storage_config),
] + [(f'backupconfig@{v}', _rs_vault_config(v)) for v in RS_VAULT_CONFIG_API_VERSIONS]

DP_SOURCES: List[Tuple[str, PostureSource]] = [
    ('vault', _dp_root),
]


# =============================================================================
# Resolution
# =============================================================================

def vault_family(vault: Dict[str, Any]) -> str:
    """Recovery Services or DataProtection, from the vault's type or id."""
    marker = f"{ci_get(vault, 'type') or ''} {ci_get(vault, 'id') or ''}".lower()
    if DP_VAULT_TYPE.lower() in marker or '/microsoft.dataprotection/' in marker:
        return VAULT_FAMILY_DATA_PROTECTION
    return VAULT_FAMILY_RECOVERY_SERVICES


def merge_sources(
    client: ArmClient,
    vault: Dict[str, Any],
    sources: List[Tuple[str, PostureSource]],
) -> Tuple[Dict[str, Any], List[str]]:
    """
    Fold posture sources in order; first non-null value per field wins.

    Returns the merged fields and the names of sources that contributed.
    """
    merged: Dict[str, Any] = {name: None for name in MERGED_FIELDS}
    contributed: List[str] = []

    for source_name, source in sources:
        if all(merged[name] is not None for name in REQUIRED_FIELDS):
            logger.debug(f"Posture for {vault.get('name')} resolved before {source_name}")
            break
        try:
            fields = source(client, vault)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.debug(f"Could not read {source_name} posture for {vault.get('name')}: {e}")
            continue
        if not fields:
            continue

        filled = False
        for name, value in fields.items():
            if value is not None and merged.get(name) is None:
                merged[name] = value
                filled = True
        if filled:
            contributed.append(source_name)

    return merged, contributed


def resolve_vault_posture(client: ArmClient, vault: Dict[str, Any]) -> VaultPosture:
    """
    Resolve the merged posture of one Recovery Services or Backup vault.

    Args:
        client: ARM GET client
        vault: vault resource dict with at least ``id`` and ``name``

    Returns:
        VaultPosture; unresolved fields stay None.

    Raises:
        AuthError: propagated from the client
    """
    family = vault_family(vault)
    sources = DP_SOURCES if family == VAULT_FAMILY_DATA_PROTECTION else RS_SOURCES
    merged, contributed = merge_sources(client, vault, sources)

    vault_id = vault.get('id', '')
    return VaultPosture(
        vault_id=vault_id,
        name=vault.get('name') or vault_id.rsplit('/', 1)[-1],
        family=family,
        subscription_id=extract_subscription_id(vault_id),
        resource_group=extract_resource_group(vault_id),
        location=vault.get('location'),
        sources=tuple(contributed),
        **merged,
    )
