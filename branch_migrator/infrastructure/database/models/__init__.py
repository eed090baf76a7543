# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""SQLAlchemy models for the control database."""

from branch_migrator.infrastructure.database.models.base import Base, TimestampMixin
from branch_migrator.infrastructure.database.models.control import (
    BranchMigrationState,
    BranchRecord,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "BranchRecord",
    "BranchMigrationState",
]
