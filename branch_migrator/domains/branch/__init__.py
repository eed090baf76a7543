# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Branch domain package.

This package provides the tenant registry:
- BranchRegistry protocol consumed by the migration layer
- SQL-backed and in-memory registry implementations
"""

from branch_migrator.domains.branch.registry import (
    BranchRegistry,
    InMemoryBranchRegistry,
    SqlBranchRegistry,
)

__all__ = [
    "BranchRegistry",
    "InMemoryBranchRegistry",
    "SqlBranchRegistry",
]
