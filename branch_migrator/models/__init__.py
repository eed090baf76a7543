# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Value models shared across the routing and migration layers."""

from branch_migrator.models.branch import (
    Branch,
    ConnectionDescriptor,
    EngineKind,
    SslMode,
)
from branch_migrator.models.migration import (
    BranchMigrationStatus,
    BranchOperationResult,
    BulkOperationResult,
    DiscrepancyKind,
    MigrationHistory,
    MigrationStatus,
    MigrationUnit,
    PendingMigrations,
    SchemaDiscrepancy,
    ValidationResult,
)

__all__ = [
    # Branch
    "Branch",
    "ConnectionDescriptor",
    "EngineKind",
    "SslMode",
    # Migration
    "BranchMigrationStatus",
    "BranchOperationResult",
    "BulkOperationResult",
    "DiscrepancyKind",
    "MigrationHistory",
    "MigrationStatus",
    "MigrationUnit",
    "PendingMigrations",
    "SchemaDiscrepancy",
    "ValidationResult",
]
