# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Pending migration resolution.

A pure, side-effect-free difference between the catalog and a branch's
applied list. Used by the orchestrator to know what to run and by
read-only status queries.
"""

from typing import Iterable

from branch_migrator.domains.migration.catalog import MigrationCatalog
from branch_migrator.models.migration import PendingMigrations


def pending_migrations(applied: Iterable[str], catalog: MigrationCatalog) -> PendingMigrations:
    """Units of the catalog not present in the applied list.

    Args:
        applied: Ids the branch has applied.
        catalog: Published catalog.

    Returns:
        Outstanding units in catalog order, plus applied ids the catalog
        does not know about.

    Example:
        >>> pending = pending_migrations(["001"], catalog)  # catalog: 001, 002, 003
        >>> pending.ids, pending.count
        (['002', '003'], 2)
    """
    applied_ids = list(applied)
    applied_set = set(applied_ids)

    return PendingMigrations(
        units=[unit for unit in catalog if unit.id not in applied_set],
        unknown_applied=[i for i in applied_ids if i not in catalog],
    )
