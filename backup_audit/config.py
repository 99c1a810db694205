"""
Backup Audit - Configuration Management

Settings are layered, each layer overriding the one before it:
BACKUP_AUDIT_* environment variables, then a YAML config file
(--config or a default location), then command-line arguments.

Config file example:
```yaml
output: "./audit"
log_level: INFO
subscriptions:
  - "00000000-0000-0000-0000-000000000000"

http:
  max_attempts: 5

thresholds:
  vm:
    warning_hours: 26
    critical_hours: 48
  database:
    warning_hours: ${DB_RPO_WARNING:-26}
    critical_hours: 48
```
"""
import logging
import os
import re
import stat
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .constants import DEFAULT_MAX_ATTEMPTS, DEFAULT_RPO_THRESHOLDS

logger = logging.getLogger(__name__)


# Default config file locations (checked in order)
DEFAULT_CONFIG_PATHS = [
    './backup-audit.yaml',
    './backup-audit.yml',
    '~/.backup-audit/config.yaml',
    '~/.backup-audit/config.yml',
]

ENV_PREFIX = 'BACKUP_AUDIT_'

# Mapping from config keys to env vars
ENV_VAR_MAPPING = {
    'output': 'BACKUP_AUDIT_OUTPUT',
    'log_level': 'BACKUP_AUDIT_LOG_LEVEL',
    'subscriptions': 'BACKUP_AUDIT_SUBSCRIPTIONS',
    'include_resource_ids': 'BACKUP_AUDIT_INCLUDE_RESOURCE_IDS',
    'http.max_attempts': 'BACKUP_AUDIT_HTTP_MAX_ATTEMPTS',
}
for _workload_class in DEFAULT_RPO_THRESHOLDS:
    for _bound in ('warning_hours', 'critical_hours'):
        ENV_VAR_MAPPING[f'thresholds.{_workload_class}.{_bound}'] = (
            f"{ENV_PREFIX}{_workload_class.upper()}_{_bound.upper()}"
        )

_LIST_KEYS = ('subscriptions',)
_BOOL_KEYS = ('include_resource_ids',)
_INT_KEYS = ('http.max_attempts',)


_ENV_REF = re.compile(r'\$\{([^}:]+)(?::-([^}]*))?\}')


def _substitute_env_vars(value: Any) -> Any:
    """Expand ``${VAR}`` and ``${VAR:-default}`` references throughout a parsed document."""
    if isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_substitute_env_vars(v) for v in value]
    if isinstance(value, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), m.group(2) or ''), value)
    return value


def get_nested(data: Dict, key_path: str, default: Any = None) -> Any:
    """Look up ``"a.b.c"`` in nested dicts, returning ``default`` on any miss."""
    value: Any = data
    for key in key_path.split('.'):
        if not isinstance(value, dict) or key not in value:
            return default
        value = value[key]
    return value


def _set_nested(data: Dict, key_path: str, value: Any) -> None:
    *parents, leaf = key_path.split('.')
    for key in parents:
        data = data.setdefault(key, {})
    data[leaf] = value


def _split_list(value: str) -> List[str]:
    return [part.strip() for part in value.split(',') if part.strip()]


def load_config_file(config_path: str) -> Dict[str, Any]:
    """
    Read a YAML config file and expand environment references in it.

    Raises FileNotFoundError when the path does not exist. An empty file
    yields an empty dict.
    """
    path = Path(config_path).expanduser()
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    if path.stat().st_mode & (stat.S_IRWXG | stat.S_IRWXO):
        logger.warning(f"Config file {config_path} has loose permissions. "
                       f"Consider: chmod 600 {config_path}")

    logger.info(f"Loading config from {path}")
    with open(path) as f:
        return _substitute_env_vars(yaml.safe_load(f) or {})


def find_default_config() -> Optional[str]:
    """First existing path from DEFAULT_CONFIG_PATHS, or None."""
    for candidate in DEFAULT_CONFIG_PATHS:
        path = Path(candidate).expanduser()
        if path.exists():
            return str(path)
    return None


def _coerce(config_key: str, value: str) -> Any:
    if config_key in _LIST_KEYS:
        return _split_list(value)
    if config_key in _BOOL_KEYS:
        return value.lower() in ('true', '1', 'yes')
    if config_key in _INT_KEYS:
        return int(value)
    if config_key.startswith('thresholds.'):
        return float(value)
    return value


def load_env_config() -> Dict[str, Any]:
    """Build a config dict from the BACKUP_AUDIT_* variables that are set."""
    config: Dict[str, Any] = {}
    for config_key, env_var in ENV_VAR_MAPPING.items():
        raw = os.environ.get(env_var)
        if raw is None:
            continue
        try:
            _set_nested(config, config_key, _coerce(config_key, raw))
        except ValueError:
            logger.warning(f"Ignoring invalid value for {env_var}: {raw!r}")
    return config


def merge_configs(*configs: Dict[str, Any]) -> Dict[str, Any]:
    """Deep-merge dicts left to right; None never overrides a value."""
    merged: Dict[str, Any] = {}
    for config in configs:
        for key, value in config.items():
            if value is None:
                continue
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = merge_configs(merged[key], value)
            else:
                merged[key] = value
    return merged


# argparse dest -> config key
_ARG_KEYS = {
    'output': 'output',
    'log_level': 'log_level',
    'subscription': 'subscriptions',
    'include_resource_ids': 'include_resource_ids',
    'max_attempts': 'http.max_attempts',
}


def args_to_config(args) -> Dict[str, Any]:
    """Map parsed CLI arguments onto config keys, skipping unset ones."""
    config: Dict[str, Any] = {}
    for dest, config_key in _ARG_KEYS.items():
        value = getattr(args, dest, None)
        # store_true flags only override when set
        if value is None or value is False:
            continue
        if dest == 'subscription' and isinstance(value, str):
            value = _split_list(value)
        _set_nested(config, config_key, value)
    return config


def load_config(args) -> Dict[str, Any]:
    """
    Resolve the effective configuration.

    Environment variables are the base, the config file (``--config`` or
    the first default location found) overrides them, and CLI arguments
    override both.
    """
    layers = []

    env_config = load_env_config()
    if env_config:
        logger.debug(f"Environment supplies: {', '.join(sorted(env_config))}")
        layers.append(env_config)

    config_path = getattr(args, 'config', None) or find_default_config()
    if config_path:
        layers.append(load_config_file(config_path))

    layers.append(args_to_config(args))
    return merge_configs(*layers)


_SAMPLE_HEADER = '''# Backup Audit Configuration
#
# Values may reference the environment:
#   ${NAME}            value of NAME, empty when unset
#   ${NAME:-fallback}  value of NAME, or fallback when unset

# Local directory or https://<account>.blob.core.windows.net/<container>/ URL
output: "./audit"

# DEBUG, INFO, WARNING or ERROR
log_level: INFO

# Defaults to every enabled subscription the identity can see
# subscriptions:
#   - "xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx"

# Emit raw resource ids instead of hashed ones
include_resource_ids: false

http:
  # Attempts per management API request (backoff 1, 2, 4, 8 seconds)
  max_attempts: %(max_attempts)d

# Observed RPO bounds in hours; a value equal to a bound already breaches it
thresholds:
'''


def generate_sample_config() -> str:
    """Sample YAML printed by ``--generate-config``."""
    lines = [(_SAMPLE_HEADER % {'max_attempts': DEFAULT_MAX_ATTEMPTS}).rstrip('\n')]
    for workload_class, bounds in DEFAULT_RPO_THRESHOLDS.items():
        lines.append(f"  {workload_class}:")
        for bound, hours in bounds.items():
            lines.append(f"    {bound}: {hours:g}")
    return '\n'.join(lines) + '\n'
