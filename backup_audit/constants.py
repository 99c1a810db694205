"""
Constants for the backup audit core.

This module defines all magic strings and numbers used across the codebase
to prevent typos, ensure consistency, and make maintenance easier.
"""

# =============================================================================
# Time Constants
# =============================================================================

SECONDS_PER_MINUTE = 60
SECONDS_PER_HOUR = 3600
SECONDS_PER_DAY = 86400
DAYS_PER_WEEK = 7

# =============================================================================
# Azure Resource Manager
# =============================================================================

ARM_ENDPOINT = "https://management.azure.com"
ARM_SCOPE = "https://management.azure.com/.default"

# Statuses retried by the GET client; anything else is terminal
RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

# Five attempts gives four backoff sleeps of 1, 2, 4 and 8 seconds
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BACKOFF_BASE = 2
DEFAULT_REQUEST_TIMEOUT = 30

# Continuation-token pagination
CONTINUATION_HEADER = "x-ms-continuation"
CONTINUATION_PARAM = "$skipToken"
NEXT_LINK_FIELD = "nextLink"

# =============================================================================
# API Versions (current first, legacy after)
# =============================================================================

RS_VAULT_API_VERSION = "2024-04-01"
RS_BACKUP_API_VERSION = "2024-04-01"
RS_STORAGE_CONFIG_API_VERSION = "2023-04-01"
RS_VAULT_CONFIG_API_VERSIONS = ["2023-04-01", "2019-05-13"]
RS_PROTECTED_ITEM_API_VERSIONS = ["2024-04-01", "2021-12-01", "2019-05-13"]
DP_API_VERSION = "2024-04-01"
SQL_RESTORE_POINTS_API_VERSION = "2021-11-01"

# =============================================================================
# Vault Families
# =============================================================================

VAULT_FAMILY_RECOVERY_SERVICES = "RecoveryServices"
VAULT_FAMILY_DATA_PROTECTION = "DataProtection"

RS_VAULT_TYPE = "Microsoft.RecoveryServices/vaults"
DP_VAULT_TYPE = "Microsoft.DataProtection/backupVaults"

# =============================================================================
# Backup Management Types
# =============================================================================

BACKUP_MANAGEMENT_IAAS_VM = "AzureIaasVM"
BACKUP_MANAGEMENT_WORKLOAD = "AzureWorkload"

DISCOVERY_MANAGEMENT_TYPES = [BACKUP_MANAGEMENT_IAAS_VM, BACKUP_MANAGEMENT_WORKLOAD]

# REST fallback filters, tried per API version and unioned
PROTECTED_ITEM_FILTERS = [
    "backupManagementType eq 'AzureIaasVM' and itemType eq 'VM'",
    "backupManagementType eq 'AzureWorkload'",
    None,
]

# =============================================================================
# Workload Classes
# =============================================================================

WORKLOAD_VM = "vm"
WORKLOAD_DATABASE = "database"
WORKLOAD_MANAGED_DATABASE = "managed_database"

WORKLOAD_CLASSES = [WORKLOAD_VM, WORKLOAD_DATABASE, WORKLOAD_MANAGED_DATABASE]

# Protected item workloadType values hosted in a VM but backed up as databases
DATABASE_WORKLOAD_TYPES = {
    'sqldatabase', 'saphanadatabase', 'saphanadbinstance', 'sapasedatabase',
}

# Backup vault datasourceType prefixes for managed database servers
DATABASE_DATASOURCE_PREFIXES = ('microsoft.dbforpostgresql/', 'microsoft.dbformysql/')

# =============================================================================
# Cadence Normalization
# =============================================================================

CANONICAL_CADENCE_HOURS = [1, 2, 3, 4, 6, 8, 12, 24]
CADENCE_SNAP_TOLERANCE_MINUTES = 20

# =============================================================================
# Recovery Point Kinds
# =============================================================================

POINT_KIND_LOG = "Log"
POINT_KIND_DIFFERENTIAL = "Differential"
POINT_KIND_COPY_ONLY = "CopyOnly"
POINT_KIND_FULL = "Full"
POINT_KIND_APP_CONSISTENT = "AppConsistent"
POINT_KIND_CRASH_CONSISTENT = "CrashConsistent"
POINT_KIND_FILE_SYSTEM_CONSISTENT = "FileSystemConsistent"
POINT_KIND_INCREMENTAL = "Incremental"
POINT_KIND_CONTINUOUS = "Continuous"
POINT_KIND_UNKNOWN = "Unknown"

# Highest-ranked kind first; the log point is the freshness signal
DATABASE_POINT_PREFERENCE = [
    POINT_KIND_LOG,
    POINT_KIND_DIFFERENTIAL,
    POINT_KIND_COPY_ONLY,
    POINT_KIND_FULL,
    POINT_KIND_APP_CONSISTENT,
]

# Variant keys for multi-cadence database schedules, in effective-cadence order
SCHEDULE_KIND_LOG = "Log"
SCHEDULE_KIND_DIFFERENTIAL = "Differential"
SCHEDULE_KIND_FULL = "Full"
SCHEDULE_KIND_ORDER = [SCHEDULE_KIND_LOG, SCHEDULE_KIND_DIFFERENTIAL, SCHEDULE_KIND_FULL]

# =============================================================================
# Soft Delete Vocabulary
# =============================================================================

SOFT_DELETE_ENABLED = "Enabled"
SOFT_DELETE_DISABLED = "Disabled"
SOFT_DELETE_ALWAYS_ON = "AlwaysOn"

SOFT_DELETE_VOCABULARY = {
    'on': SOFT_DELETE_ENABLED,
    'enabled': SOFT_DELETE_ENABLED,
    'off': SOFT_DELETE_DISABLED,
    'disabled': SOFT_DELETE_DISABLED,
    'alwayson': SOFT_DELETE_ALWAYS_ON,
}

# =============================================================================
# Threshold Defaults (hours)
# =============================================================================

DEFAULT_RPO_THRESHOLDS = {
    WORKLOAD_VM: {'warning_hours': 26.0, 'critical_hours': 48.0},
    WORKLOAD_DATABASE: {'warning_hours': 26.0, 'critical_hours': 48.0},
    WORKLOAD_MANAGED_DATABASE: {'warning_hours': 26.0, 'critical_hours': 48.0},
}

# =============================================================================
# Findings
# =============================================================================

MODULE_CODE = "BACKUP"

CATEGORY_VAULT_POSTURE = "Vault Security"
CATEGORY_VAULT_REDUNDANCY = "Vault Redundancy"
CATEGORY_COVERAGE = "Backup Coverage"
CATEGORY_PROTECTION_HEALTH = "Protection Health"
CATEGORY_RPO = "Recovery Point Objective"

# Protection states that indicate an item is enrolled but not being backed up
UNHEALTHY_PROTECTION_STATES = {
    'protectionstopped', 'protectionerror', 'protectionpaused', 'invalid',
}

# =============================================================================
# Inventory Resource Types
# =============================================================================

AZURE_VM = "azure:vm"
AZURE_SQL_DATABASE = "azure:sql:database"
AZURE_RECOVERY_VAULT = "azure:backup:vault"
AZURE_BACKUP_VAULT = "azure:dataprotection:vault"
AZURE_BACKUP_PROTECTED_ITEM = "azure:backup:protecteditem"

# =============================================================================
# Authentication Error Constants
# =============================================================================

AZURE_AUTH_STATUS_CODES = {401, 403}
