# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Central migration ledger.

The StatusStore persists one BranchMigrationStatus per branch in the
``branch_migration_states`` table of the control database. Records are
created lazily the first time a branch is queried.

Besides bookkeeping, the ledger row carries a time-bounded lease
(lock_owner_id, lock_expires_at). Leases are taken with a conditional
UPDATE, so only one process can run migrations against a branch at a time
even when several orchestrators share the control database.

Example:
    >>> store = StatusStore(get_control_sessionmaker())
    >>> status = await store.get("b-001")
    >>> if await store.acquire_lease("b-001", owner, ttl_seconds=600):
    ...     status.applied.append("001_initial")
    ...     await store.save(status)
    ...     await store.release_lease("b-001", owner)
"""

import logging
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from branch_migrator.infrastructure.database.models.control import BranchMigrationState
from branch_migrator.models.migration import BranchMigrationStatus, MigrationStatus
from branch_migrator.utils.datetime import ensure_utc, seconds_from_now, utc_now

logger = logging.getLogger(__name__)


class StatusStore:
    """Ledger of applied migrations and lifecycle state per branch.

    Attributes:
        _sessionmaker: Control database sessionmaker.
    """

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        """Initialize the store.

        Args:
            sessionmaker: Control database sessionmaker.
        """
        self._sessionmaker = sessionmaker

    async def get(self, branch_id: str) -> BranchMigrationStatus:
        """Get a branch's ledger record, creating a Pending one if absent.

        Args:
            branch_id: Branch identifier.

        Returns:
            Current status of the branch.
        """
        async with self._sessionmaker() as session:
            row = await session.get(BranchMigrationState, branch_id)
            if row is not None:
                return self._to_status(row)

            row = BranchMigrationState(
                branch_id=branch_id,
                applied_migrations=[],
                status=MigrationStatus.PENDING.value,
                retry_count=0,
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                # Another writer created the record first
                await session.rollback()
                row = await session.get(BranchMigrationState, branch_id, populate_existing=True)
                if row is None:
                    raise
                return self._to_status(row)

            logger.debug("Created ledger record for branch %s", branch_id)
            return self._to_status(row)

    async def find(self, branch_id: str) -> Optional[BranchMigrationStatus]:
        """Get a branch's ledger record without creating one."""
        async with self._sessionmaker() as session:
            row = await session.get(BranchMigrationState, branch_id)
            return self._to_status(row) if row is not None else None

    async def get_all(self) -> list[BranchMigrationStatus]:
        """Every ledger record, ordered by branch id."""
        async with self._sessionmaker() as session:
            result = await session.execute(
                select(BranchMigrationState).order_by(BranchMigrationState.branch_id)
            )
            return [self._to_status(row) for row in result.scalars().all()]

    async def save(self, status: BranchMigrationStatus) -> BranchMigrationStatus:
        """Persist the bookkeeping fields of a status record.

        Lease fields are left untouched; they change only through
        acquire_lease() and release_lease().

        Args:
            status: Record to persist.

        Returns:
            The record as stored.
        """
        async with self._sessionmaker() as session:
            row = await session.get(BranchMigrationState, status.branch_id)
            if row is None:
                row = BranchMigrationState(branch_id=status.branch_id)
                session.add(row)

            row.applied_migrations = list(status.applied)
            row.last_migration_applied = status.last_applied
            row.status = status.status.value
            row.last_attempt_at = status.last_attempt_at
            row.error_details = status.last_error
            row.retry_count = status.retry_count
            await session.commit()
            return self._to_status(row)

    async def acquire_lease(self, branch_id: str, owner: str, ttl_seconds: int) -> bool:
        """Take the branch lease if it is free, expired, or already ours.

        Args:
            branch_id: Branch identifier.
            owner: Token identifying the caller.
            ttl_seconds: Lease lifetime.

        Returns:
            True if the lease is now held by owner.
        """
        await self.get(branch_id)

        async with self._sessionmaker() as session:
            result = await session.execute(
                update(BranchMigrationState)
                .where(BranchMigrationState.branch_id == branch_id)
                .where(
                    or_(
                        BranchMigrationState.lock_owner_id.is_(None),
                        BranchMigrationState.lock_owner_id == owner,
                        BranchMigrationState.lock_expires_at.is_(None),
                        BranchMigrationState.lock_expires_at < utc_now(),
                    )
                )
                .values(lock_owner_id=owner, lock_expires_at=seconds_from_now(ttl_seconds))
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            acquired = result.rowcount == 1

        if not acquired:
            logger.warning("Lease for branch %s is held by another operation", branch_id)
        return acquired

    async def renew_lease(self, branch_id: str, owner: str, ttl_seconds: int) -> bool:
        """Extend a lease owner still holds.

        Returns:
            False if the lease expired and was taken by someone else.
        """
        async with self._sessionmaker() as session:
            result = await session.execute(
                update(BranchMigrationState)
                .where(BranchMigrationState.branch_id == branch_id)
                .where(BranchMigrationState.lock_owner_id == owner)
                .values(lock_expires_at=seconds_from_now(ttl_seconds))
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def release_lease(self, branch_id: str, owner: str) -> None:
        """Release the branch lease if owner still holds it."""
        async with self._sessionmaker() as session:
            await session.execute(
                update(BranchMigrationState)
                .where(BranchMigrationState.branch_id == branch_id)
                .where(BranchMigrationState.lock_owner_id == owner)
                .values(lock_owner_id=None, lock_expires_at=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    @staticmethod
    def _to_status(row: BranchMigrationState) -> BranchMigrationStatus:
        return BranchMigrationStatus(
            branch_id=row.branch_id,
            applied=list(row.applied_migrations or []),
            status=MigrationStatus(row.status),
            last_attempt_at=ensure_utc(row.last_attempt_at),
            last_error=row.error_details,
            retry_count=row.retry_count or 0,
            lock_owner=row.lock_owner_id,
            lock_expires_at=ensure_utc(row.lock_expires_at),
            created_at=ensure_utc(row.created_at),
            updated_at=ensure_utc(row.updated_at),
        )
