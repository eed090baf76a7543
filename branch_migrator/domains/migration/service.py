# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Migration orchestration across branch databases.

This module provides the MigrationService that handles:
- Applying pending migrations to one branch or to every active branch
- Rolling back the last applied migration
- Status, pending and history queries backed by the central ledger
- Schema validation against the catalog's expected schema
- Operator actions: clearing manual intervention, force-removing ids

Guarantees:
- Units run strictly in catalog order, one at a time per branch. Each
  success is appended to the ledger before the next unit starts.
- The first failing unit stops the run; the branch is marked Failed and its
  retry count grows. Reaching the retry limit escalates the branch to
  RequiresManualIntervention.
- A failed rollback marks the branch RequiresManualIntervention. Automated
  operations refuse such a branch until resolve_manual_intervention().
- A branch is worked on by at most one operation: an asyncio.Lock per
  branch within the process and a ledger lease across processes. The lease
  is renewed after every unit; a lost lease stops the run.
- Bulk calls are bounded by a semaphore and isolated per branch; their
  result always lists every branch.
- A cancelled operation lets the running unit finish and records it before
  the cancellation propagates.

Example:
    >>> service = MigrationService(settings, registry, catalog, router, store)
    >>> result = await service.apply_migrations("b-001")
    >>> result.success, result.applied
    (True, ['001_initial', '002_add_units'])
    >>> bulk = await service.apply_migrations_all()
    >>> bulk.failed
    0
"""

import asyncio
import logging
import os
import socket
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncEngine

from branch_migrator.core.errors import (
    BranchLockedError,
    BranchNotFoundError,
    ConfigurationError,
    ConnectivityError,
    ManualInterventionRequiredError,
    MigrationError,
)
from branch_migrator.domains.branch.registry import BranchRegistry
from branch_migrator.domains.migration.catalog import MigrationCatalog
from branch_migrator.domains.migration.resolver import pending_migrations
from branch_migrator.domains.migration.status_store import StatusStore
from branch_migrator.domains.migration.validator import SchemaValidator
from branch_migrator.infrastructure.database.migrations.runner import (
    check_connectivity,
    run_backward,
    run_forward,
)
from branch_migrator.infrastructure.database.router import ConnectionRouter
from branch_migrator.infrastructure.events import EventBus, EventTypes
from branch_migrator.models.branch import Branch
from branch_migrator.models.migration import (
    BranchMigrationStatus,
    BranchOperationResult,
    BulkOperationResult,
    MigrationHistory,
    MigrationStatus,
    PendingMigrations,
    ValidationResult,
)
from branch_migrator.utils.datetime import utc_now
from branch_migrator.utils.logging import bind_context, unbind_context

if TYPE_CHECKING:
    from branch_migrator.core.config.settings import Settings

logger = logging.getLogger(__name__)

BranchOperation = Callable[[Branch, BranchMigrationStatus], Awaitable[BranchOperationResult]]


async def _run_to_completion(awaitable: Awaitable[None]) -> tuple[Optional[BaseException], bool]:
    """Run a script to completion even if the caller is cancelled meanwhile.

    Returns:
        Tuple of (the script's exception or None, whether a cancellation
        arrived while it ran).
    """
    task = asyncio.ensure_future(awaitable)
    interrupted = False
    while not task.done():
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            interrupted = True
    if task.cancelled():
        raise asyncio.CancelledError()
    return task.exception(), interrupted


class MigrationService:
    """Coordinates migrations, rollbacks and diagnostics for branches.

    Attributes:
        _settings: Application settings.
        _registry: Tenant registry.
        _catalog: Published migration units.
        _router: Connection router for branch engines.
        _store: Central migration ledger.
        _validator: Schema validator.
        _event_bus: Optional bus for migration events.
    """

    def __init__(
        self,
        settings: "Settings",
        registry: BranchRegistry,
        catalog: MigrationCatalog,
        router: ConnectionRouter,
        status_store: StatusStore,
        validator: Optional[SchemaValidator] = None,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        """Initialize the migration service.

        Args:
            settings: Application settings (migration section is used).
            registry: Tenant registry.
            catalog: Migration catalog.
            router: Connection router.
            status_store: Migration ledger.
            validator: Schema validator; built from the other parts if omitted.
            event_bus: Bus on which applied/rolled-back/failed events are published.
        """
        self._settings = settings
        self._registry = registry
        self._catalog = catalog
        self._router = router
        self._store = status_store
        self._validator = validator or SchemaValidator(registry, router, catalog)
        self._event_bus = event_bus
        self._locks: dict[str, asyncio.Lock] = {}
        self._semaphore = asyncio.Semaphore(settings.migration.max_concurrency)
        self._owner = f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"

    # =========================================================================
    # Apply
    # =========================================================================

    async def apply_migrations(self, branch_id: str) -> BranchOperationResult:
        """Apply every pending migration to one branch.

        Args:
            branch_id: Branch identifier.

        Returns:
            Result listing the units applied during this call.

        Raises:
            BranchNotFoundError: If the branch is unknown.
        """
        return await self._exclusive(branch_id, "apply", self._apply)

    async def apply_migrations_all(self) -> BulkOperationResult:
        """Apply pending migrations to every active branch.

        Returns:
            Itemized result covering every active branch.
        """
        return await self._for_each_branch("apply", self.apply_migrations)

    async def _apply(self, branch: Branch, status: BranchMigrationStatus) -> BranchOperationResult:
        if status.status is MigrationStatus.REQUIRES_MANUAL_INTERVENTION:
            raise ManualInterventionRequiredError(branch.id)

        pending = self._pending(status)
        if not pending.units:
            if status.status is not MigrationStatus.COMPLETED or status.last_error:
                status.status = MigrationStatus.COMPLETED
                status.retry_count = 0
                status.last_error = None
                await self._store.save(status)
            return BranchOperationResult(
                branch_id=branch.id,
                success=True,
                message="Schema is up to date",
                status=status.status,
            )

        try:
            handle = self._router.resolve(branch)
        except ConfigurationError as e:
            status.status = MigrationStatus.FAILED
            status.last_attempt_at = utc_now()
            status.last_error = str(e)
            await self._store.save(status)
            raise

        status.status = MigrationStatus.IN_PROGRESS
        status.last_attempt_at = utc_now()
        await self._store.save(status)
        logger.info("Applying %d pending migrations to branch %s", pending.count, branch.id)

        applied: list[str] = []
        try:
            failure, interrupted = await self._apply_units(handle.engine, branch, status, pending, applied)
        except asyncio.CancelledError:
            if status.status is MigrationStatus.IN_PROGRESS:
                status.status = MigrationStatus.PENDING
                await asyncio.shield(self._store.save(status))
            logger.warning("Migration of branch %s cancelled after %d units", branch.id, len(applied))
            raise

        if failure is not None:
            await self._record_apply_failure(status, failure)
        else:
            status.status = MigrationStatus.COMPLETED
            status.retry_count = 0
            status.last_error = None
            await self._store.save(status)
            logger.info("Branch %s is up to date at %s", branch.id, status.last_applied)

        if interrupted:
            raise asyncio.CancelledError()

        if failure is not None:
            return BranchOperationResult(
                branch_id=branch.id,
                success=False,
                message=str(failure),
                status=status.status,
                applied=applied,
                error_kind=failure.kind,
            )

        return BranchOperationResult(
            branch_id=branch.id,
            success=True,
            message=f"Applied {len(applied)} migrations",
            status=status.status,
            applied=applied,
        )

    async def _apply_units(
        self,
        engine: AsyncEngine,
        branch: Branch,
        status: BranchMigrationStatus,
        pending: PendingMigrations,
        applied: list[str],
    ) -> tuple[Optional[MigrationError], bool]:
        """Run pending units in order, persisting after each one.

        Returns:
            Tuple of (first failure or None, whether the run was cancelled).
        """
        try:
            await check_connectivity(engine, branch.id)
        except ConnectivityError as e:
            return e, False

        for unit in pending.units:
            error, interrupted = await _run_to_completion(run_forward(engine, unit, branch.id))
            if error is not None:
                if not isinstance(error, MigrationError):
                    raise error
                return error, interrupted

            status.applied.append(unit.id)
            applied.append(unit.id)
            await self._store.save(status)
            await self._publish(EventTypes.Migration.APPLIED, branch.id, migration_id=unit.id)

            if interrupted:
                if self._pending(status).units:
                    status.status = MigrationStatus.PENDING
                else:
                    status.status = MigrationStatus.COMPLETED
                    status.retry_count = 0
                    status.last_error = None
                await asyncio.shield(self._store.save(status))
                raise asyncio.CancelledError()

            ttl = self._settings.migration.lock_timeout_seconds
            if not await self._store.renew_lease(branch.id, self._owner, ttl):
                logger.error("Lease for branch %s was lost after %s, stopping", branch.id, unit.id)
                raise BranchLockedError(branch.id)

        return None, False

    async def _record_apply_failure(self, status: BranchMigrationStatus, error: MigrationError) -> None:
        status.retry_count += 1
        status.last_error = str(error)
        max_attempts = self._settings.migration.max_retry_attempts

        if status.retry_count >= max_attempts:
            status.status = MigrationStatus.REQUIRES_MANUAL_INTERVENTION
            logger.error(
                "Branch %s failed %d times, manual intervention required: %s",
                status.branch_id,
                status.retry_count,
                error,
            )
        else:
            status.status = MigrationStatus.FAILED
            logger.error(
                "Migration failed for branch %s (attempt %d/%d): %s",
                status.branch_id,
                status.retry_count,
                max_attempts,
                error,
            )

        await self._store.save(status)
        await self._publish(
            EventTypes.Migration.FAILED,
            status.branch_id,
            migration_id=getattr(error, "migration_id", None),
            error=str(error),
        )

    # =========================================================================
    # Rollback
    # =========================================================================

    async def rollback_last_migration(self, branch_id: str) -> BranchOperationResult:
        """Revert the most recently applied migration of one branch.

        Args:
            branch_id: Branch identifier.

        Returns:
            Result naming the reverted unit, if any.

        Raises:
            BranchNotFoundError: If the branch is unknown.
        """
        return await self._exclusive(branch_id, "rollback", self._rollback)

    async def rollback_last_migration_all(self) -> BulkOperationResult:
        """Revert the last applied migration on every active branch."""
        return await self._for_each_branch("rollback", self.rollback_last_migration)

    async def _rollback(self, branch: Branch, status: BranchMigrationStatus) -> BranchOperationResult:
        if status.status is MigrationStatus.REQUIRES_MANUAL_INTERVENTION:
            raise ManualInterventionRequiredError(branch.id)

        last = status.last_applied
        if last is None:
            return BranchOperationResult(
                branch_id=branch.id,
                success=True,
                message="No migrations to roll back",
                status=status.status,
            )

        unit = self._catalog.get(last)
        if unit is None:
            error = ConfigurationError(
                f"Applied migration {last} is not in the catalog and cannot be rolled back",
                branch_id=branch.id,
            )
            status.status = MigrationStatus.REQUIRES_MANUAL_INTERVENTION
            status.last_attempt_at = utc_now()
            status.last_error = str(error)
            await self._store.save(status)
            logger.error("Branch %s: %s", branch.id, error)
            raise error

        try:
            handle = self._router.resolve(branch)
            await check_connectivity(handle.engine, branch.id)
        except (ConfigurationError, ConnectivityError) as e:
            status.status = MigrationStatus.FAILED
            status.last_attempt_at = utc_now()
            status.last_error = str(e)
            await self._store.save(status)
            logger.error("Rollback of %s on branch %s could not start: %s", last, branch.id, e)
            await self._publish(EventTypes.Migration.FAILED, branch.id, migration_id=last, error=str(e))
            raise

        status.status = MigrationStatus.IN_PROGRESS
        status.last_attempt_at = utc_now()
        await self._store.save(status)

        error, interrupted = await _run_to_completion(run_backward(handle.engine, unit, branch.id))
        if error is not None:
            if not isinstance(error, MigrationError):
                raise error
            status.status = MigrationStatus.REQUIRES_MANUAL_INTERVENTION
            status.last_error = str(error)
            await asyncio.shield(self._store.save(status))
            logger.error("Rollback failed for branch %s, manual intervention required: %s", branch.id, error)
            await self._publish(EventTypes.Migration.FAILED, branch.id, migration_id=last, error=str(error))
            if interrupted:
                raise asyncio.CancelledError()
            raise error

        status.applied.pop()
        status.status = (
            MigrationStatus.PENDING if self._pending(status).units else MigrationStatus.COMPLETED
        )
        status.last_error = None
        await asyncio.shield(self._store.save(status))
        logger.info("Rolled back migration %s on branch %s", last, branch.id)
        await self._publish(EventTypes.Migration.ROLLED_BACK, branch.id, migration_id=last)

        if interrupted:
            raise asyncio.CancelledError()

        return BranchOperationResult(
            branch_id=branch.id,
            success=True,
            message=f"Rolled back {last}",
            status=status.status,
            rolled_back=last,
        )

    # =========================================================================
    # Operator actions
    # =========================================================================

    async def resolve_manual_intervention(self, branch_id: str) -> BranchOperationResult:
        """Clear a failure state after an operator has repaired the branch.

        Resets the retry count and last error and recomputes Pending or
        Completed from the applied list. No script is run.

        Raises:
            BranchNotFoundError: If the branch is unknown.
        """
        return await self._exclusive(branch_id, "resolve", self._resolve)

    async def _resolve(self, branch: Branch, status: BranchMigrationStatus) -> BranchOperationResult:
        previous = status.status
        status.retry_count = 0
        status.last_error = None
        status.status = (
            MigrationStatus.PENDING if self._pending(status).units else MigrationStatus.COMPLETED
        )
        await self._store.save(status)
        logger.info("Branch %s moved from %s to %s by operator", branch.id, previous.value, status.status.value)

        return BranchOperationResult(
            branch_id=branch.id,
            success=True,
            message=f"Status reset from {previous.value} to {status.status.value}",
            status=status.status,
        )

    async def force_remove_migration(self, branch_id: str, migration_id: str) -> BranchOperationResult:
        """Drop an id from a branch's applied list without running its rollback.

        For cleaning up units that were deleted from the catalog or whose
        effects were reverted by hand.

        Args:
            branch_id: Branch identifier.
            migration_id: Id to remove.

        Raises:
            BranchNotFoundError: If the branch is unknown.
        """

        async def remove(branch: Branch, status: BranchMigrationStatus) -> BranchOperationResult:
            if migration_id not in status.applied:
                return BranchOperationResult(
                    branch_id=branch.id,
                    success=False,
                    message=f"Migration {migration_id} is not applied",
                    status=status.status,
                )

            status.applied.remove(migration_id)
            if status.status is not MigrationStatus.REQUIRES_MANUAL_INTERVENTION:
                status.status = (
                    MigrationStatus.PENDING if self._pending(status).units else MigrationStatus.COMPLETED
                )
            await self._store.save(status)
            logger.warning("Force-removed migration %s from branch %s", migration_id, branch.id)

            return BranchOperationResult(
                branch_id=branch.id,
                success=True,
                message=f"Removed {migration_id} from applied list",
                status=status.status,
                rolled_back=migration_id,
            )

        return await self._exclusive(branch_id, "force_remove", remove)

    async def force_remove_migration_all(self, migration_id: str) -> BulkOperationResult:
        """Drop an id from the applied list of every active branch that has it."""

        async def remove(branch_id: str) -> BranchOperationResult:
            return await self.force_remove_migration(branch_id, migration_id)

        return await self._for_each_branch("force_remove", remove)

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_migration_status(self, branch_id: str) -> BranchMigrationStatus:
        """Get the ledger record of a branch, creating it if absent.

        Raises:
            BranchNotFoundError: If the branch is unknown.
        """
        await self._registry.get_branch(branch_id)
        return await self._store.get(branch_id)

    async def get_all_migration_status(self) -> list[BranchMigrationStatus]:
        """Ledger records of every active branch."""
        branch_ids = await self._registry.list_active_branch_ids()
        return [await self._store.get(branch_id) for branch_id in branch_ids]

    async def get_pending_migrations(self, branch_id: str) -> PendingMigrations:
        """Units the branch has not applied yet, in catalog order.

        Raises:
            BranchNotFoundError: If the branch is unknown.
        """
        status = await self.get_migration_status(branch_id)
        return self._pending(status)

    async def get_migration_history(self, branch_id: str) -> MigrationHistory:
        """Applied and outstanding units of a branch with its ledger state.

        Raises:
            BranchNotFoundError: If the branch is unknown.
        """
        status = await self.get_migration_status(branch_id)
        return MigrationHistory(
            branch_id=branch_id,
            applied=list(status.applied),
            pending=self._pending(status).units,
            status=status.status,
            retry_count=status.retry_count,
            last_error=status.last_error,
            last_attempt_at=status.last_attempt_at,
        )

    async def validate_schema(self, branch_id: str) -> ValidationResult:
        """Compare a branch's live schema with the catalog's expected schema.

        Raises:
            BranchNotFoundError: If the branch is unknown.
            ConfigurationError: If the catalog carries no target metadata.
            ConnectivityError: If the branch database cannot be reached.
        """
        return await self._validator.validate(branch_id)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _pending(self, status: BranchMigrationStatus) -> PendingMigrations:
        pending = pending_migrations(status.applied, self._catalog)
        if pending.unknown_applied:
            logger.warning(
                "Branch %s has applied migrations missing from the catalog: %s",
                status.branch_id,
                ", ".join(pending.unknown_applied),
            )
        return pending

    def _branch_lock(self, branch_id: str) -> asyncio.Lock:
        return self._locks.setdefault(branch_id, asyncio.Lock())

    async def _exclusive(
        self,
        branch_id: str,
        operation: str,
        body: BranchOperation,
    ) -> BranchOperationResult:
        """Run an operation on one branch while holding its lock and lease.

        Errors of the migration taxonomy are captured into the result,
        except an unknown branch, which is raised before any lock is created.
        """
        started = time.monotonic()
        bind_context(branch_id=branch_id, operation=operation)
        try:
            branch = await self._registry.get_branch(branch_id)
            async with self._branch_lock(branch_id):
                ttl = self._settings.migration.lock_timeout_seconds
                if not await self._store.acquire_lease(branch_id, self._owner, ttl):
                    raise BranchLockedError(branch_id)
                try:
                    status = await self._store.get(branch_id)
                    result = await body(branch, status)
                finally:
                    await asyncio.shield(self._store.release_lease(branch_id, self._owner))
        except BranchNotFoundError:
            raise
        except MigrationError as e:
            status_after = await self._store.find(branch_id)
            result = BranchOperationResult(
                branch_id=branch_id,
                success=False,
                message=str(e),
                status=status_after.status if status_after else None,
                error_kind=e.kind,
            )
        finally:
            unbind_context("branch_id", "operation")

        result.duration_seconds = time.monotonic() - started
        return result

    async def _for_each_branch(
        self,
        operation: str,
        run: Callable[[str], Awaitable[BranchOperationResult]],
    ) -> BulkOperationResult:
        """Run an operation on every active branch, bounded and isolated."""
        started = time.monotonic()
        branch_ids = await self._registry.list_active_branch_ids()
        logger.info("Starting %s on %d branches", operation, len(branch_ids))

        async def run_one(branch_id: str) -> BranchOperationResult:
            async with self._semaphore:
                try:
                    return await run(branch_id)
                except MigrationError as e:
                    return BranchOperationResult(
                        branch_id=branch_id,
                        success=False,
                        message=str(e),
                        error_kind=e.kind,
                    )
                except Exception as e:
                    logger.error("Unexpected error during %s on branch %s: %s", operation, branch_id, e, exc_info=True)
                    return BranchOperationResult(
                        branch_id=branch_id,
                        success=False,
                        message=str(e),
                        error_kind=type(e).__name__,
                    )

        results = await asyncio.gather(*(run_one(branch_id) for branch_id in branch_ids))
        bulk = BulkOperationResult(results=list(results), duration_seconds=time.monotonic() - started)

        logger.info(
            "Finished %s on %d branches: %d succeeded, %d failed",
            operation,
            bulk.processed,
            bulk.succeeded,
            bulk.failed,
        )
        return bulk

    async def _publish(self, event_type: str, branch_id: str, **payload: Any) -> None:
        if self._event_bus is not None:
            await self._event_bus.publish(event_type, {"branch_id": branch_id, **payload}, branch_id=branch_id)
