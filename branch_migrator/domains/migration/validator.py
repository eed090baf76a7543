# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Schema validation for branch databases.

Compares a branch's live schema with the schema the catalog's units are
authored to produce (the catalog's ``target_metadata``), using alembic's
autogenerate comparison. Read-only: the ledger is never touched.

Diff mapping:
- ``add_*``: object expected but missing from the branch
- ``remove_*``: object present in the branch but not expected
- ``modify_type``: column type differs

Nullability, default and comment differences are not reported.
"""

import asyncio
import logging
from typing import Any, Iterable

from alembic.autogenerate import compare_metadata
from alembic.runtime.migration import MigrationContext
from sqlalchemy import MetaData
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from branch_migrator.core.errors import ConfigurationError, ConnectivityError
from branch_migrator.domains.branch.registry import BranchRegistry
from branch_migrator.domains.migration.catalog import MigrationCatalog
from branch_migrator.infrastructure.database.router import ConnectionRouter
from branch_migrator.models.migration import (
    DiscrepancyKind,
    SchemaDiscrepancy,
    ValidationResult,
)

logger = logging.getLogger(__name__)

# Bookkeeping tables that never belong to the authored schema
EXCLUDED_TABLES = frozenset({"alembic_version", "branch_migration_states", "branches"})


def _object_name(diff: tuple[Any, ...]) -> str:
    """Dotted name of the schema object a single diff refers to."""
    op = diff[0]
    if op in ("add_column", "remove_column"):
        return f"{diff[2]}.{diff[3].name}"

    obj = diff[1]
    table = getattr(obj, "table", None)
    if op.endswith("_table"):
        return obj.name
    if op.endswith("_fk"):
        table = obj.parent
    name = getattr(obj, "name", None) or type(obj).__name__
    return f"{table.name}.{name}" if table is not None else name


def _to_discrepancies(diffs: Iterable[Any]) -> list[SchemaDiscrepancy]:
    discrepancies = []
    for diff in diffs:
        if isinstance(diff, list):
            for change in diff:
                if change[0] != "modify_type":
                    continue
                _, _, table_name, column_name, _, existing, expected = change
                discrepancies.append(
                    SchemaDiscrepancy(
                        kind=DiscrepancyKind.TYPE_MISMATCH,
                        object_name=f"{table_name}.{column_name}",
                        detail=f"expected {expected}, found {existing}",
                    )
                )
            continue

        op = diff[0]
        if "comment" in op:
            continue
        if op.startswith("add_"):
            kind = DiscrepancyKind.MISSING_OBJECT
        elif op.startswith("remove_"):
            kind = DiscrepancyKind.UNEXPECTED_OBJECT
        else:
            continue

        object_type = op.split("_", 1)[1]
        discrepancies.append(
            SchemaDiscrepancy(kind=kind, object_name=_object_name(diff), detail=object_type)
        )

    return sorted(discrepancies, key=lambda d: (d.kind.value, d.object_name))


def _compare_sync(
    connection: Connection,
    metadata: MetaData,
    excluded: frozenset[str],
) -> list[Any]:
    def include_name(name: str | None, type_: str, parent_names: dict[str, Any]) -> bool:
        if type_ == "table":
            return name not in excluded
        return True

    context = MigrationContext.configure(
        connection,
        opts={
            "compare_type": True,
            "include_name": include_name,
            "target_metadata": metadata,
        },
    )
    return compare_metadata(context, metadata)


class SchemaValidator:
    """Diagnoses schema drift between branches and the catalog.

    Example:
        >>> validator = SchemaValidator(registry, router, catalog)
        >>> result = await validator.validate("b-001")
        >>> result.is_valid
        True
    """

    def __init__(
        self,
        registry: BranchRegistry,
        router: ConnectionRouter,
        catalog: MigrationCatalog,
        excluded_tables: Iterable[str] = EXCLUDED_TABLES,
    ) -> None:
        self._registry = registry
        self._router = router
        self._catalog = catalog
        self._excluded = frozenset(excluded_tables)

    async def validate(self, branch_id: str) -> ValidationResult:
        """Compare a branch's live schema with the expected schema.

        Args:
            branch_id: Branch identifier.

        Returns:
            ValidationResult listing every discrepancy found.

        Raises:
            BranchNotFoundError: If the branch is unknown.
            ConfigurationError: If the catalog carries no target metadata or
                the branch descriptor is unusable.
            ConnectivityError: If the branch database cannot be reached.
        """
        metadata = self._catalog.target_metadata
        if metadata is None:
            raise ConfigurationError(
                "Migration catalog has no target metadata to validate against",
                branch_id=branch_id,
            )

        branch = await self._registry.get_branch(branch_id)
        handle = self._router.resolve(branch)

        try:
            async with handle.engine.connect() as conn:
                diffs = await conn.run_sync(_compare_sync, metadata, self._excluded)
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as e:
            raise ConnectivityError(
                f"Cannot read schema of branch {branch_id}",
                branch_id=branch_id,
                original_error=e,
            ) from e

        result = ValidationResult(branch_id=branch_id, discrepancies=_to_discrepancies(diffs))
        if result.is_valid:
            logger.info("Schema of branch %s matches the catalog", branch_id)
        else:
            logger.warning(
                "Schema of branch %s has %d discrepancies", branch_id, len(result.discrepancies)
            )
        return result
