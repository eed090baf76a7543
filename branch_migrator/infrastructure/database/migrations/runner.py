# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Migration script execution against a branch engine.

Forward and backward scripts are plain alembic-style functions
(``upgrade()`` / ``downgrade()``) that call ``alembic.op``. Each script runs
in its own transaction on the branch engine; a failing script rolls its
transaction back where the engine supports transactional DDL.

Example:
    from branch_migrator.infrastructure.database.migrations.runner import (
        check_connectivity,
        run_forward,
    )

    await check_connectivity(handle.engine, branch_id="b-001")
    await run_forward(handle.engine, unit, branch_id="b-001")
"""

import asyncio
import logging
from typing import Callable

from alembic.operations import Operations
from alembic.runtime.migration import MigrationContext
from sqlalchemy import text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import DBAPIError, InterfaceError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from branch_migrator.core.errors import (
    ConnectivityError,
    MigrationScriptError,
    RollbackScriptError,
)
from branch_migrator.models.migration import MigrationUnit

logger = logging.getLogger(__name__)


def _is_connectivity_failure(error: BaseException) -> bool:
    """Whether an error means the database was unreachable, not the script."""
    if isinstance(error, (InterfaceError, OSError, asyncio.TimeoutError)):
        return True
    return isinstance(error, DBAPIError) and error.connection_invalidated


async def check_connectivity(engine: AsyncEngine, branch_id: str) -> None:
    """Verify that the branch database accepts connections.

    Args:
        engine: Branch engine.
        branch_id: Branch identifier for error reporting.

    Raises:
        ConnectivityError: If the database cannot be reached.
    """
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError, asyncio.TimeoutError) as e:
        raise ConnectivityError(
            f"Cannot connect to database for branch {branch_id}",
            branch_id=branch_id,
            original_error=e,
        ) from e


def _run_script_sync(connection: Connection, script: Callable[[], None]) -> None:
    """Run a script in sync context with alembic operations bound.

    Alembic operations are sync and rely on a context-local Operations
    proxy, so the script runs inside ``run_sync``.
    """
    context = MigrationContext.configure(connection)

    with context.begin_transaction():
        with Operations.context(context):
            script()


async def _run_script(engine: AsyncEngine, script: Callable[[], None]) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(_run_script_sync, script)


async def run_forward(engine: AsyncEngine, unit: MigrationUnit, branch_id: str) -> None:
    """Apply one migration unit.

    Args:
        engine: Branch engine.
        unit: Unit whose forward script should run.
        branch_id: Branch identifier for error reporting.

    Raises:
        ConnectivityError: If the connection failed while running.
        MigrationScriptError: If the script itself failed.
    """
    logger.info("Applying migration %s (%s) to branch %s", unit.id, unit.name, branch_id)
    try:
        await _run_script(engine, unit.forward)
    except Exception as e:
        if _is_connectivity_failure(e):
            raise ConnectivityError(
                f"Lost connection to branch {branch_id} while applying {unit.id}",
                branch_id=branch_id,
                original_error=e,
            ) from e
        raise MigrationScriptError(unit.id, branch_id=branch_id, original_error=e) from e


async def run_backward(engine: AsyncEngine, unit: MigrationUnit, branch_id: str) -> None:
    """Revert one migration unit.

    Any failure once the script has started is reported as a rollback
    failure, since the branch may have been left part-way.

    Args:
        engine: Branch engine.
        unit: Unit whose backward script should run.
        branch_id: Branch identifier for error reporting.

    Raises:
        RollbackScriptError: If the script failed.
    """
    logger.info("Rolling back migration %s (%s) on branch %s", unit.id, unit.name, branch_id)
    try:
        await _run_script(engine, unit.backward)
    except Exception as e:
        raise RollbackScriptError(unit.id, branch_id=branch_id, original_error=e) from e
