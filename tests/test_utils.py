"""
Tests for backup_audit/utils.py utility functions.

Covers:
- generate_run_id format and uniqueness
- parse_timestamp (7-digit fractions, Z, naive values)
- ci_get case-tolerant dotted lookup
- extract_subscription_id / extract_resource_group
- write_json and write_csv (local files)
- retry_with_backoff decorator
- redact_sensitive_data and hash_sensitive_id
- AuthError and is_auth_error detection
- check_and_raise_auth_error
"""
import json
import os
import sys
import tempfile
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from backup_audit.utils import (
    AuthError,
    check_and_raise_auth_error,
    ci_get,
    elapsed_hours,
    extract_resource_group,
    extract_subscription_id,
    generate_run_id,
    get_timestamp,
    hash_sensitive_id,
    is_auth_error,
    parse_timestamp,
    redact_log_message,
    redact_sensitive_data,
    retry_with_backoff,
    setup_logging,
    write_csv,
    write_json,
)

SUB_GUID = "12345678-1234-1234-1234-123456789abc"

# =============================================================================
# generate_run_id / get_timestamp Tests
# =============================================================================

class TestGenerateRunId:
    """Tests for generate_run_id function."""

    def test_run_id_format(self):
        """Test run ID has correct format: YYYYMMDD-HHMMSS-xxxxxxxx"""
        parts = generate_run_id().split('-')

        assert len(parts) == 3
        assert len(parts[0]) == 8 and parts[0].isdigit()
        assert len(parts[1]) == 6 and parts[1].isdigit()
        assert len(parts[2]) == 8

    def test_run_id_uniqueness(self):
        ids = [generate_run_id() for _ in range(100)]
        assert len(set(ids)) == 100

    def test_timestamp_is_utc(self):
        assert get_timestamp().endswith('Z')


# =============================================================================
# Timestamp & Field Access Tests
# =============================================================================

class TestParseTimestamp:
    """Tests for parse_timestamp."""

    def test_seven_digit_fraction(self):
        parsed = parse_timestamp("2024-06-01T02:00:00.1234567Z")
        assert parsed == datetime(2024, 6, 1, 2, 0, 0, 123456, tzinfo=timezone.utc)

    def test_offset_converted_to_utc(self):
        parsed = parse_timestamp("2024-06-01T04:00:00+02:00")
        assert parsed == datetime(2024, 6, 1, 2, 0, 0, tzinfo=timezone.utc)

    def test_naive_assumed_utc(self):
        assert parse_timestamp("2024-06-01 02:00").tzinfo == timezone.utc

    def test_datetime_passthrough(self):
        naive = datetime(2024, 6, 1, 2, 0, 0)
        assert parse_timestamp(naive) == naive.replace(tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [None, "", "yesterday", "2024-13-45T99:00:00Z", 12345])
    def test_unparseable(self, value):
        assert parse_timestamp(value) is None

    def test_elapsed_hours(self):
        start = datetime(2024, 6, 1, 0, 0, tzinfo=timezone.utc)
        end = datetime(2024, 6, 1, 1, 20, tzinfo=timezone.utc)
        assert elapsed_hours(start, end) == 1.33


class TestCiGet:
    """Tests for case-tolerant lookups."""

    def test_exact_and_case_insensitive(self):
        data = {"Properties": {"SoftDeleteState": "On"}}
        assert ci_get(data, "properties.softDeleteState") == "On"

    def test_first_resolving_name_wins(self):
        data = {"b": 2, "c": 3}
        assert ci_get(data, "a", "b", "c") == 2

    def test_default(self):
        assert ci_get({"a": {"b": None}}, "a.b", default="x") == "x"
        assert ci_get("not a dict", "a") is None

    def test_falsy_values_returned(self):
        assert ci_get({"interval": 0}, "interval") == 0
        assert ci_get({"flag": False}, "flag") is False


class TestResourceIdParts:
    """Tests for extract_subscription_id and extract_resource_group."""

    def test_parts(self):
        resource_id = f"/subscriptions/{SUB_GUID}/resourcegroups/RG-App/providers/Microsoft.Compute/virtualMachines/vm1"
        assert extract_subscription_id(resource_id) == SUB_GUID
        assert extract_resource_group(resource_id) == "RG-App"

    def test_missing(self):
        assert extract_subscription_id(None) is None
        assert extract_resource_group(f"/subscriptions/{SUB_GUID}") is None


# =============================================================================
# Output Writer Tests
# =============================================================================

class TestWriteJson:
    """Tests for write_json function."""

    def test_write_local_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            filepath = os.path.join(tmpdir, "audit.json")
            data = {"protected_items": [{"name": "vm1", "observed_rpo_hours": 2.0}]}

            write_json(data, filepath)

            with open(filepath) as f:
                assert json.load(f) == data
            assert os.stat(filepath).st_mode & 0o777 == 0o600

    def test_datetime_serialized_as_string(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            filepath = os.path.join(tmpdir, "audit.json")

            write_json({"when": datetime(2024, 6, 1, tzinfo=timezone.utc)}, filepath)

            with open(filepath) as f:
                assert json.load(f)["when"].startswith("2024-06-01")


class TestWriteCsv:
    """Tests for write_csv function."""

    def test_write_local_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            filepath = os.path.join(tmpdir, "coverage.csv")
            data = [{"name": "vm1", "protected": True}, {"name": "vm2", "protected": False}]

            write_csv(data, filepath)

            with open(filepath) as f:
                lines = f.read().strip().splitlines()
            assert lines == ["name,protected", "vm1,True", "vm2,False"]

    def test_write_empty_data(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            filepath = os.path.join(tmpdir, "empty.csv")
            write_csv([], filepath)
            assert not os.path.exists(filepath)


# =============================================================================
# retry_with_backoff Tests
# =============================================================================

class TestRetryWithBackoff:
    """Tests for retry_with_backoff decorator."""

    def test_no_retry_on_success(self):
        mock_func = Mock(return_value="ok")
        decorated = retry_with_backoff(max_attempts=3, min_wait=0, max_wait=0)(mock_func)

        assert decorated() == "ok"
        assert mock_func.call_count == 1

    def test_retry_on_failure(self):
        mock_func = Mock(side_effect=[ConnectionError("reset"), "ok"])
        decorated = retry_with_backoff(max_attempts=3, min_wait=0, max_wait=0)(mock_func)

        assert decorated() == "ok"
        assert mock_func.call_count == 2

    def test_max_attempts_exceeded(self):
        mock_func = Mock(side_effect=ConnectionError("reset"))
        decorated = retry_with_backoff(max_attempts=2, min_wait=0, max_wait=0)(mock_func)

        with pytest.raises(ConnectionError):
            decorated()
        assert mock_func.call_count == 2

    def test_specific_exception_types(self):
        mock_func = Mock(side_effect=ValueError("bad"))
        decorated = retry_with_backoff(max_attempts=3, min_wait=0, max_wait=0,
                                       exceptions=(ConnectionError,))(mock_func)

        with pytest.raises(ValueError):
            decorated()
        assert mock_func.call_count == 1


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_level(self):
        import logging
        setup_logging("debug")
        assert logging.getLogger().level == logging.DEBUG
        setup_logging("WARNING")
        assert logging.getLogger().level == logging.WARNING

    def test_log_file_redacted(self):
        import logging
        with tempfile.TemporaryDirectory() as tmpdir:
            setup_logging("INFO", output_dir=tmpdir)
            logging.getLogger("backup_audit.test").info(f"Auditing /subscriptions/{SUB_GUID}")
            for handler in logging.getLogger().handlers:
                handler.close()
            logging.getLogger().handlers.clear()

            log_files = [f for f in os.listdir(tmpdir) if f.endswith('.log')]
            with open(os.path.join(tmpdir, log_files[0])) as f:
                content = f.read()

        assert SUB_GUID not in content
        assert f"/subscriptions/{hash_sensitive_id(SUB_GUID)}" in content


# =============================================================================
# Redaction Tests
# =============================================================================

class TestRedaction:
    """Tests for hash_sensitive_id and redact_sensitive_data."""

    def test_hash_consistency(self):
        assert hash_sensitive_id("vault1") == hash_sensitive_id("vault1")
        assert hash_sensitive_id("vault1", "v-").startswith("v-")
        assert len(hash_sensitive_id("vault1")) == 8

    def test_hash_empty(self):
        assert hash_sensitive_id("") == ""

    def test_redact_azure_resource_id(self):
        resource_id = f"/subscriptions/{SUB_GUID}/resourceGroups/rg-app/providers/Microsoft.Compute/virtualMachines/vm1"

        redacted = redact_sensitive_data({"source_resource_id": resource_id})["source_resource_id"]

        assert SUB_GUID not in redacted
        assert "rg-app" not in redacted
        assert "/providers/Microsoft.Compute/virtualMachines/" in redacted
        assert not redacted.endswith("/vm1")

    def test_sensitive_field_without_path_hashed(self):
        redacted = redact_sensitive_data({"policy_id": "DefaultPolicy"})
        assert redacted["policy_id"] == f"pol-{hash_sensitive_id('defaultpolicy')}"

    def test_nested_and_non_sensitive(self):
        data = {"rows": [{"name": "vm1", "subscription_id": SUB_GUID, "observed_rpo_hours": 2.0}]}

        row = redact_sensitive_data(data)["rows"][0]

        assert row["name"] == "vm1"
        assert row["observed_rpo_hours"] == 2.0
        assert row["subscription_id"] == f"id-{hash_sensitive_id(SUB_GUID)}"

    def test_consistency_across_rows(self):
        """The same id hashes identically so rows stay joinable."""
        rows = redact_sensitive_data([{"vault_id": "/subscriptions/x/v"}, {"vault_id": "/subscriptions/x/v"}])
        assert rows[0]["vault_id"] == rows[1]["vault_id"]

    def test_redact_log_message(self):
        message = redact_log_message(f"vault in /subscriptions/{SUB_GUID}/resourceGroups/rg-backup failed")
        assert SUB_GUID not in message
        assert "rg-backup" not in message


# =============================================================================
# Authentication Error Tests
# =============================================================================

class TestAuthError:
    """Tests for AuthError and auth error detection."""

    def test_auth_error_fields(self):
        original = ValueError("inner")
        error = AuthError("denied", "azure", original)

        assert str(error) == "denied"
        assert error.provider == "azure"
        assert error.original_error is original

    def test_client_authentication_error(self):
        from azure.core.exceptions import ClientAuthenticationError
        assert is_auth_error(ClientAuthenticationError(message="expired"))

    def test_http_response_error_by_status(self):
        from azure.core.exceptions import HttpResponseError
        error = HttpResponseError(message="Forbidden")
        error.status_code = 403
        assert is_auth_error(error)

    def test_http_response_error_by_message(self):
        from azure.core.exceptions import HttpResponseError
        assert is_auth_error(HttpResponseError(message="(AuthorizationFailed) no access"))
        assert not is_auth_error(HttpResponseError(message="(ResourceNotFound) missing"))

    def test_generic_exception(self):
        assert not is_auth_error(ValueError("nope"))

    def test_check_and_raise(self):
        from azure.core.exceptions import ClientAuthenticationError
        with pytest.raises(AuthError) as exc_info:
            check_and_raise_auth_error(ClientAuthenticationError(message="expired"), "list vaults")
        assert "list vaults" in str(exc_info.value)
        assert exc_info.value.provider == "azure"

    def test_check_and_raise_passes_through(self):
        check_and_raise_auth_error(ValueError("not auth"), "list vaults")

    def test_existing_auth_error_reraised(self):
        error = AuthError("denied", "azure")
        with pytest.raises(AuthError) as exc_info:
            check_and_raise_auth_error(error, "x")
        assert exc_info.value is error
