"""
Utility functions for the backup audit.

Logging Level Standards:
------------------------
- ERROR: Failures that stop an entire resource family or subscription
         "Failed to list Recovery Services vaults: {e}"
- WARNING: Partial failures (a vault, an endpoint, a page)
           "Failed to resolve posture for vault {name}: {e}"
- INFO: Progress messages, resource counts
        "Found 12 protected items in vault {name}"
- DEBUG: Per-item degradations that don't affect overall collection
         "Could not parse recovery point time for {id}"
"""
import csv
import hashlib
import io
import json
import logging
import os
import re
import sys
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple, TypeVar

from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table
from tenacity import before_sleep_log, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .constants import AZURE_AUTH_STATUS_CODES

if TYPE_CHECKING:
    from rich.progress import TaskID

logger = logging.getLogger(__name__)

# Type variable for generic function decorator
F = TypeVar('F', bound=Callable[..., Any])


def retry_with_backoff(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 60,
    exceptions: tuple = (Exception,)
) -> Callable[[F], F]:
    """
    Decorator for retrying SDK calls with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (default: 3)
        min_wait: Minimum wait time between retries in seconds (default: 1)
        max_wait: Maximum wait time between retries in seconds (default: 60)
        exceptions: Tuple of exception types to retry on (default: all Exceptions)

    Example:
        @retry_with_backoff(max_attempts=5, exceptions=(ConnectionError, TimeoutError))
        def list_vms():
            ...
    """
    def decorator(func: F) -> F:
        return retry(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
            retry=retry_if_exception_type(exceptions),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )(func)
    return decorator


# =============================================================================
# Progress Tracking
# =============================================================================

class ProgressTracker:
    """
    Progress tracker for audit runs with rich display.

    Falls back to simple print statements if stdout is not a TTY (e.g., when
    piping output).

    Usage:
        with ProgressTracker("Azure Backup", total_subscriptions=3) as tracker:
            for sub in subscriptions:
                tracker.start_subscription(sub['id'], sub['name'])
                tracker.add_vaults(2)
                tracker.add_items(14, findings=3)
                tracker.complete_subscription()
    """

    def __init__(self, label: str, total_subscriptions: int = 0, show_progress: bool = True):
        self.label = label
        self.total_subscriptions = total_subscriptions
        self.show_progress = show_progress and sys.stdout.isatty()

        # Counters
        self.completed_subscriptions = 0
        self.total_vaults = 0
        self.total_items = 0
        self.total_findings = 0
        self.current_subscription = ""

        self._console: Optional[Console] = None
        self._progress: Optional[Progress] = None
        self._main_task: Optional["TaskID"] = None

    def __enter__(self):
        if self.show_progress:
            self._console = Console()
            self._progress = Progress(
                SpinnerColumn(),
                TextColumn("[bold blue]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
                console=self._console,
                transient=False,
            )
            self._main_task = self._progress.add_task(
                f"{self.label} Audit", total=self.total_subscriptions or 1
            )
            self._progress.start()
        else:
            print(f"\n{'-'*60}\n{self.label} Audit Starting\n{'-'*60}")
            if self.total_subscriptions:
                print(f"Subscriptions to audit: {self.total_subscriptions}")
            print()

        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.show_progress:
            assert self._progress is not None
            assert self._console is not None
            self._progress.stop()
            self._console.print()
            self._print_summary_rich()
        else:
            self._print_summary_plain()
        return False

    def start_subscription(self, subscription_id: str, subscription_name: str = ""):
        """Mark the start of processing a subscription."""
        self.current_subscription = subscription_id
        display = f"{subscription_id} ({subscription_name})" if subscription_name else subscription_id
        if self.show_progress:
            assert self._progress is not None
            assert self._main_task is not None
            self._progress.update(self._main_task, description=f"{self.label} Subscription: {display}")
        else:
            print(f"\nSubscription: {display}")

    def add_vaults(self, count: int):
        self.total_vaults += count

    def add_items(self, count: int, findings: int = 0):
        self.total_items += count
        self.total_findings += findings

    def complete_subscription(self):
        """Mark a subscription as complete."""
        self.completed_subscriptions += 1
        if self.show_progress:
            assert self._progress is not None
            assert self._main_task is not None
            self._progress.update(self._main_task, advance=1)
        else:
            print(f"  Complete - Running total: {self.total_vaults:,} vaults, "
                  f"{self.total_items:,} protected items, {self.total_findings:,} findings")

    def summary_rows(self) -> List[Tuple[str, str]]:
        return [
            ("Subscriptions", f"{self.completed_subscriptions:,}"),
            ("Vaults", f"{self.total_vaults:,}"),
            ("Protected Items", f"{self.total_items:,}"),
            ("Findings", f"{self.total_findings:,}"),
        ]

    def _print_summary_rich(self):
        table = Table(title=f"{self.label} Audit Summary", show_header=False)
        table.add_column("Counter", style="cyan")
        table.add_column("Total", style="green", justify="right")
        for name, value in self.summary_rows():
            table.add_row(name, value)

        assert self._console is not None
        self._console.print(Panel(table, expand=False))

    def _print_summary_plain(self):
        print(f"\n{'-'*60}\n{self.label} Audit Complete\n{'-'*60}")
        for name, value in self.summary_rows():
            print(f"  {name + ':':<17}{value}")
        print()


def generate_run_id() -> str:
    """Generate a unique run ID."""
    return f"{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}-{str(uuid.uuid4())[:8]}"


def get_timestamp() -> str:
    """Get current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


# =============================================================================
# Timestamps & Field Access
# =============================================================================

_TIMESTAMP_RE = re.compile(
    r'^(\d{4}-\d{2}-\d{2})[T ](\d{2}:\d{2}(?::\d{2})?)(\.\d+)?\s*(Z|[+-]\d{2}:?\d{2})?$',
    re.IGNORECASE,
)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ARM timestamp into an aware UTC datetime.

    Handles the 7-digit fractional seconds ARM emits, a trailing ``Z`` and
    naive values (assumed UTC). Returns None for anything unparseable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        match = _TIMESTAMP_RE.match(str(value).strip())
        if not match:
            return None
        date_part, time_part, fraction, offset = match.groups()
        if time_part.count(':') == 1:
            time_part += ':00'
        fraction = fraction[:7].ljust(7, '0') if fraction else ''
        if not offset or offset.upper() == 'Z':
            offset = '+00:00'
        elif ':' not in offset:
            offset = f"{offset[:3]}:{offset[3:]}"
        try:
            parsed = datetime.fromisoformat(f"{date_part}T{time_part}{fraction}{offset}")
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def elapsed_hours(start: datetime, end: datetime) -> float:
    """Hours between two datetimes, rounded to two decimals."""
    return round((end - start).total_seconds() / 3600, 2)


def ci_get(data: Any, *names: str, default: Any = None) -> Any:
    """
    Case-tolerant lookup of the first present key in a dict.

    Names may be dotted paths (``"securitySettings.softDeleteSettings"``);
    the first path that resolves to a non-None value wins.
    """
    for name in names:
        value = data
        for part in name.split('.'):
            if not isinstance(value, dict):
                value = None
                break
            if part in value:
                value = value[part]
                continue
            lowered = part.lower()
            value = next((v for k, v in value.items() if isinstance(k, str) and k.lower() == lowered), None)
        if value is not None:
            return value
    return default


_SUBSCRIPTION_RE = re.compile(r'/subscriptions/([^/]+)', re.IGNORECASE)
_RESOURCE_GROUP_RE = re.compile(r'/resourceGroups/([^/]+)', re.IGNORECASE)


def extract_subscription_id(resource_id: Optional[str]) -> Optional[str]:
    """Subscription segment of an ARM id, matched case-insensitively."""
    match = _SUBSCRIPTION_RE.search(resource_id or '')
    return match.group(1) if match else None


def extract_resource_group(resource_id: Optional[str]) -> Optional[str]:
    """Resource group segment of an ARM id, matched case-insensitively."""
    match = _RESOURCE_GROUP_RE.search(resource_id or '')
    return match.group(1) if match else None


# =============================================================================
# Authentication Errors
# =============================================================================

class AuthError(Exception):
    """The management API rejected the caller's identity.

    The only failure class that aborts a run; everything else degrades to
    an empty or null result.
    """
    def __init__(self, message: str, provider: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.provider = provider
        self.original_error = original_error


def is_auth_error(exc: Exception) -> bool:
    """True for azure-identity token failures and SDK 401/403 responses."""
    if isinstance(exc, AuthError):
        return True

    kind = type(exc).__name__
    if kind == 'ClientAuthenticationError':
        return True
    if kind != 'HttpResponseError':
        return False

    if getattr(exc, 'status_code', None) in AZURE_AUTH_STATUS_CODES:
        return True
    text = str(exc).lower()
    return 'authorizationfailed' in text or 'authentication' in text


def check_and_raise_auth_error(exc: Exception, context: str, provider: str = "azure") -> None:
    """
    Re-raise ``exc`` as AuthError when it is one; otherwise return.

    Use at the top of an ``except`` block that would otherwise log and
    carry on.
    """
    if isinstance(exc, AuthError):
        raise exc
    if is_auth_error(exc):
        raise AuthError(f"Not authorized to {context}: {exc}", provider=provider, original_error=exc) from exc


# =============================================================================
# Redaction
# =============================================================================

def hash_sensitive_id(value: str, prefix: str = "") -> str:
    """Stable 8-hex-digit SHA256 stand-in for an identifier."""
    if not value:
        return value
    return prefix + hashlib.sha256(value.encode()).hexdigest()[:8]


_AZURE_RESOURCE_RE = re.compile(
    r'^(/subscriptions/)([0-9a-f-]{36})(/resourceGroups/)([^/]+)(/providers/.+)$', re.IGNORECASE
)
_AZURE_SUBSCRIPTION_RE = re.compile(r'^(/subscriptions/)([0-9a-f-]{36})$', re.IGNORECASE)
_GUID_RE = re.compile(r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$', re.IGNORECASE)


def _redact_value(value: str) -> Tuple[bool, str]:
    """Hash the subscription, group and leaf name of an ARM id, or a bare GUID."""
    resource = _AZURE_RESOURCE_RE.match(value)
    if resource:
        prefix, sub_id, rg_marker, rg_name, tail = resource.groups()
        parent, sep, leaf = tail.rpartition('/')
        if sep:
            tail = f"{parent}/{hash_sensitive_id(leaf.lower())}"
        return True, (
            f"{prefix}{hash_sensitive_id(sub_id.lower())}"
            f"{rg_marker}{hash_sensitive_id(rg_name.lower())}{tail}"
        )

    subscription = _AZURE_SUBSCRIPTION_RE.match(value)
    if subscription:
        return True, f"/subscriptions/{hash_sensitive_id(subscription.group(2).lower())}"

    if _GUID_RE.match(value):
        return True, f"id-{hash_sensitive_id(value.lower())}"

    return False, value


# Always hashed, even when the value is not an ARM path
_SENSITIVE_FIELD_NAMES = {
    'subscription_id', 'tenant_id', 'resource_id', 'source_resource_id',
    'vault_id', 'item_id', 'policy_id',
}


def _redact_field(key: str, value: str) -> str:
    changed, redacted = _redact_value(value)
    if changed or key.lower() not in _SENSITIVE_FIELD_NAMES:
        return redacted
    return hash_sensitive_id(value.lower(), f"{key.lower()[:3]}-")


def redact_sensitive_data(data: Any, _depth: int = 0) -> Any:
    """
    Return a copy of ``data`` with ARM ids, GUIDs and id-named fields hashed.

    Hashes are deterministic, so the same vault or item correlates across
    every row family of one output document.
    """
    if _depth > 50:
        return data
    if isinstance(data, dict):
        return {
            key: _redact_field(key, value) if isinstance(value, str) and value
            else redact_sensitive_data(value, _depth + 1)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [redact_sensitive_data(item, _depth + 1) for item in data]
    if isinstance(data, str):
        return _redact_value(data)[1]
    return data


_LOG_REDACT_PATTERNS = [
    # Azure resource paths - preserve structure; must come before the GUID pattern
    (re.compile(r'(/subscriptions/)([0-9a-f-]{36})(/resourceGroups/)([^/\s]+)', re.IGNORECASE),
     lambda m: f"{m.group(1)}{hash_sensitive_id(m.group(2).lower())}{m.group(3)}{hash_sensitive_id(m.group(4).lower())}"),
    (re.compile(r'(/subscriptions/)([0-9a-f-]{36})(?![/])', re.IGNORECASE),
     lambda m: f"{m.group(1)}{hash_sensitive_id(m.group(2).lower())}"),
    (re.compile(r'\b([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})\b', re.IGNORECASE),
     lambda m: f"id-{hash_sensitive_id(m.group(1).lower())}"),
]


def redact_log_message(message: str) -> str:
    """Redact subscription GUIDs and resource groups from a log message."""
    if not message:
        return message
    for pattern, replacer in _LOG_REDACT_PATTERNS:
        message = pattern.sub(replacer, message)
    return message


class RedactingFilter(logging.Filter):
    """
    Logging filter that redacts sensitive data from log messages.

    Uses consistent hashing so the same ID produces the same hash,
    allowing correlation between logs and redacted output files.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg:
            record.msg = redact_log_message(str(record.msg))
        if record.args:
            record.args = tuple(
                redact_log_message(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )
        return True


LOG_FORMAT = '%(asctime)s %(levelname)-8s %(name)s: %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(level: str = "INFO", output_dir: Optional[str] = None) -> logging.Logger:
    """
    Route root logging to stderr and, when ``output_dir`` is a local path,
    to a redacted ``backup_audit_log_<timestamp>.log`` file there.

    Unknown level names fall back to INFO. Calling again replaces the
    previous handlers.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(numeric_level)

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    log_file = None
    if output_dir and not _is_blob_url(output_dir):
        os.makedirs(output_dir, exist_ok=True)
        stamp = datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')
        log_file = os.path.join(output_dir, f"backup_audit_log_{stamp}.log")
        file_handler = logging.FileHandler(log_file, mode='w')
        # Persisted logs never carry raw subscription ids
        file_handler.addFilter(RedactingFilter())
        handlers.append(file_handler)

    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    if log_file:
        root_logger.info(f"Logging to: {log_file}")
    return logging.getLogger(__name__)


# =============================================================================
# Output Writers
# =============================================================================

def _is_blob_url(path: str) -> bool:
    return path.startswith("https://") and ".blob.core.windows.net" in path


def _write_private(body: str, filepath: str) -> None:
    # Owner read/write only, rows carry resource identities
    fd = os.open(filepath, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'w', newline='') as f:
        f.write(body)
    logger.info(f"Wrote {filepath}")


def _store(body: str, destination: str) -> None:
    if _is_blob_url(destination):
        write_to_blob(body, destination)
    else:
        _write_private(body, destination)


def write_json(data: Any, filepath: str) -> None:
    """Serialize ``data`` as indented JSON to a local path or blob URL."""
    _store(json.dumps(data, indent=2, default=str), filepath)


def write_csv(data: List[Dict], filepath: str, fieldnames: Optional[List[str]] = None) -> None:
    """Write rows as CSV; an empty row list writes nothing."""
    if not data:
        return
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=fieldnames or list(data[0].keys()))
    writer.writeheader()
    writer.writerows(data)
    _store(buffer.getvalue(), filepath)


def write_to_blob(body: str, blob_url: str) -> None:
    """Upload ``body`` to an Azure Blob URL, overwriting any existing blob."""
    from azure.identity import DefaultAzureCredential
    from azure.storage.blob import BlobClient

    try:
        BlobClient.from_blob_url(blob_url, credential=DefaultAzureCredential()).upload_blob(body, overwrite=True)
    except Exception as e:
        logger.error(f"Failed to write to Azure Blob ({blob_url}): {e}")
        raise
    logger.info(f"Wrote {blob_url}")
