# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for value models and the error taxonomy."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from branch_migrator.core.errors import (
    ConfigurationError,
    ManualInterventionRequiredError,
    MigrationError,
    MigrationScriptError,
)
from branch_migrator.models.branch import ConnectionDescriptor, EngineKind
from branch_migrator.models.migration import (
    BranchMigrationStatus,
    BranchOperationResult,
    BulkOperationResult,
    MigrationStatus,
)
from branch_migrator.utils.datetime import utc_now


class TestConnectionDescriptor:
    """Tests for ConnectionDescriptor."""

    def test_embedded_descriptor_drops_credentials(self):
        """Verify credentials are not kept for the embedded engine."""
        descriptor = ConnectionDescriptor(engine="sqlite", username="admin", password="secret")

        assert descriptor.username is None
        assert descriptor.password is None
        assert descriptor.has_credentials is False

    def test_server_descriptor_requires_host(self):
        """Test a server engine without a host is rejected."""
        with pytest.raises(ValidationError):
            ConnectionDescriptor(engine=EngineKind.POSTGRESQL, database="branch")

    def test_port_range(self):
        """Test ports outside 1-65535 are rejected."""
        with pytest.raises(ValidationError):
            ConnectionDescriptor(engine=EngineKind.MYSQL, host="db", database="branch", port=70000)

    def test_fingerprint_tracks_secret_changes(self):
        """Test a password change alters the fingerprint."""
        fields = {"engine": EngineKind.POSTGRESQL, "host": "db", "database": "branch", "username": "u"}
        first = ConnectionDescriptor(**fields, password="one")
        same = ConnectionDescriptor(**fields, password="one")
        second = ConnectionDescriptor(**fields, password="two")

        assert first.fingerprint() == same.fingerprint()
        assert first.fingerprint() != second.fingerprint()

    def test_password_is_masked_in_repr(self):
        """Test the secret is not shown in repr."""
        descriptor = ConnectionDescriptor(
            engine=EngineKind.MSSQL, host="db", database="branch", username="sa", password="hunter2"
        )

        assert "hunter2" not in repr(descriptor)


class TestMigrationModels:
    """Tests for migration value types."""

    def test_status_lease_expiry(self):
        """Test an expired lease does not count as locked."""
        held = BranchMigrationStatus(
            branch_id="b-001", lock_owner="owner", lock_expires_at=utc_now() + timedelta(minutes=1)
        )
        expired = BranchMigrationStatus(
            branch_id="b-001", lock_owner="owner", lock_expires_at=utc_now() - timedelta(minutes=1)
        )

        assert held.is_locked is True
        assert expired.is_locked is False

    def test_status_to_dict(self):
        """Test the serialized status."""
        status = BranchMigrationStatus(branch_id="b-001", applied=["001", "002"])

        data = status.to_dict()

        assert data["last_applied"] == "002"
        assert data["status"] == MigrationStatus.PENDING.value

    def test_bulk_result_counts(self):
        """Test counts and overall success."""
        bulk = BulkOperationResult(
            results=[
                BranchOperationResult(branch_id="b-001", success=True),
                BranchOperationResult(branch_id="b-002", success=False, error_kind="ConnectivityError"),
            ]
        )

        assert bulk.processed == 2
        assert bulk.succeeded == 1
        assert bulk.failed == 1
        assert bulk.success is False
        assert len(bulk.to_dict()["results"]) == 2


class TestErrors:
    """Tests for the error taxonomy."""

    def test_kind_and_message(self):
        """Test error kinds and string forms."""
        error = MigrationScriptError("003", branch_id="b-001", original_error=RuntimeError("boom"))

        assert isinstance(error, MigrationError)
        assert error.kind == "MigrationScriptError"
        assert str(error) == "Migration 003 failed: boom"
        assert error.branch_id == "b-001"

    def test_plain_message(self):
        """Test errors without a cause print only their message."""
        assert str(ConfigurationError("bad descriptor")) == "bad descriptor"
        assert "b-001" in str(ManualInterventionRequiredError("b-001"))
