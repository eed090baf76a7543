# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Migration domain package.

This package provides branch migration orchestration including:
- Migration catalog loading
- Pending migration resolution
- Central ledger (status store) with branch leases
- Schema validation
- MigrationService coordinating all of the above
"""

from branch_migrator.domains.migration.catalog import MigrationCatalog
from branch_migrator.domains.migration.resolver import pending_migrations
from branch_migrator.domains.migration.service import MigrationService
from branch_migrator.domains.migration.status_store import StatusStore
from branch_migrator.domains.migration.validator import SchemaValidator

__all__ = [
    "MigrationCatalog",
    "MigrationService",
    "SchemaValidator",
    "StatusStore",
    "pending_migrations",
]
