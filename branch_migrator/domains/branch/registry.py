# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tenant registry for branch databases.

The registry is the source of truth for which branches exist and how to
reach them. The migration layer only reads from it through the
BranchRegistry protocol; descriptor changes are announced on the event bus
so that cached connection handles can be dropped.

Two implementations are provided:
- SqlBranchRegistry: reads the ``branches`` table of the control database.
- InMemoryBranchRegistry: a dict-backed registry for tests and embedding.

Example:
    >>> registry = SqlBranchRegistry(get_control_sessionmaker(), get_event_bus())
    >>> branch = await registry.get_branch("b-001")
    >>> await registry.update_descriptor("b-001", new_descriptor)
"""

import logging
from typing import Optional, Protocol

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from branch_migrator.core.errors import BranchNotFoundError, ConfigurationError
from branch_migrator.infrastructure.database.models.control import BranchRecord
from branch_migrator.infrastructure.events import EventBus, EventTypes
from branch_migrator.models.branch import Branch, ConnectionDescriptor
from branch_migrator.utils.datetime import ensure_utc, utc_now

logger = logging.getLogger(__name__)


class BranchRegistry(Protocol):
    """Read interface the migration layer needs from the tenant registry."""

    async def get_branch(self, branch_id: str) -> Branch:
        """Get a branch by id.

        Raises:
            BranchNotFoundError: If the branch does not exist.
            ConfigurationError: If its stored descriptor is malformed.
        """
        ...

    async def list_active_branch_ids(self) -> list[str]:
        """Ids of all active branches, ordered by id."""
        ...

    async def list_active_branches(self) -> list[Branch]:
        """All active branches, ordered by id."""
        ...


async def _publish(event_bus: Optional[EventBus], event_type: str, branch_id: str) -> None:
    if event_bus is not None:
        await event_bus.publish(event_type, {"branch_id": branch_id}, branch_id=branch_id)


class InMemoryBranchRegistry:
    """Dict-backed registry.

    Example:
        >>> registry = InMemoryBranchRegistry([branch_a, branch_b])
        >>> await registry.get_branch(branch_a.id)
    """

    def __init__(
        self,
        branches: Optional[list[Branch]] = None,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        self._branches: dict[str, Branch] = {b.id: b for b in branches or []}
        self._event_bus = event_bus

    def add(self, branch: Branch) -> None:
        self._branches[branch.id] = branch

    async def get_branch(self, branch_id: str) -> Branch:
        branch = self._branches.get(branch_id)
        if branch is None:
            raise BranchNotFoundError(branch_id)
        return branch

    async def list_active_branch_ids(self) -> list[str]:
        return sorted(b.id for b in self._branches.values() if b.is_active)

    async def list_active_branches(self) -> list[Branch]:
        return [self._branches[i] for i in await self.list_active_branch_ids()]

    async def update_descriptor(self, branch_id: str, descriptor: ConnectionDescriptor) -> Branch:
        """Replace a branch's descriptor and announce the change."""
        branch = await self.get_branch(branch_id)
        updated = branch.model_copy(update={"descriptor": descriptor, "updated_at": utc_now()})
        self._branches[branch_id] = updated
        await _publish(self._event_bus, EventTypes.Branch.DESCRIPTOR_UPDATED, branch_id)
        return updated

    async def deactivate(self, branch_id: str) -> None:
        branch = await self.get_branch(branch_id)
        self._branches[branch_id] = branch.model_copy(
            update={"is_active": False, "updated_at": utc_now()}
        )
        await _publish(self._event_bus, EventTypes.Branch.DEACTIVATED, branch_id)


class SqlBranchRegistry:
    """Registry backed by the ``branches`` table of the control database.

    Each call opens its own short session, so a registry instance can be
    shared by concurrent branch operations.

    Attributes:
        _sessionmaker: Control database sessionmaker.
        _event_bus: Bus on which descriptor changes are published.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        event_bus: Optional[EventBus] = None,
    ) -> None:
        """Initialize the registry.

        Args:
            sessionmaker: Control database sessionmaker.
            event_bus: Bus for descriptor change notifications.
        """
        self._sessionmaker = sessionmaker
        self._event_bus = event_bus

    async def register_branch(self, branch: Branch) -> Branch:
        """Store a new branch.

        Args:
            branch: Branch to register.

        Returns:
            The registered branch.

        Raises:
            ConfigurationError: If a branch with the same id or code exists.
        """
        async with self._sessionmaker() as session:
            existing = await session.execute(
                select(BranchRecord.id).where(
                    (BranchRecord.id == branch.id) | (BranchRecord.code == branch.code)
                )
            )
            if existing.first() is not None:
                raise ConfigurationError(
                    f"Branch with id '{branch.id}' or code '{branch.code}' already exists",
                    branch_id=branch.id,
                )

            record = BranchRecord(id=branch.id, code=branch.code, is_active=branch.is_active)
            self._apply_descriptor(record, branch.descriptor)
            session.add(record)
            await session.commit()

        logger.info("Branch registered: %s (code=%s, engine=%s)", branch.id, branch.code, branch.descriptor.engine.value)
        return branch

    async def get_branch(self, branch_id: str) -> Branch:
        """Get a branch by id.

        Args:
            branch_id: Branch identifier.

        Returns:
            The branch, active or not.

        Raises:
            BranchNotFoundError: If no such branch is registered.
            ConfigurationError: If the stored descriptor is malformed.
        """
        async with self._sessionmaker() as session:
            record = await session.get(BranchRecord, branch_id)
        if record is None:
            raise BranchNotFoundError(branch_id)
        return self._to_branch(record)

    async def list_active_branch_ids(self) -> list[str]:
        async with self._sessionmaker() as session:
            result = await session.execute(
                select(BranchRecord.id)
                .where(BranchRecord.is_active.is_(True))
                .order_by(BranchRecord.id)
            )
            return list(result.scalars().all())

    async def list_active_branches(self) -> list[Branch]:
        """All active branches.

        Raises:
            ConfigurationError: If any stored descriptor is malformed.
        """
        async with self._sessionmaker() as session:
            result = await session.execute(
                select(BranchRecord)
                .where(BranchRecord.is_active.is_(True))
                .order_by(BranchRecord.id)
            )
            records = result.scalars().all()
        return [self._to_branch(record) for record in records]

    async def update_descriptor(self, branch_id: str, descriptor: ConnectionDescriptor) -> Branch:
        """Replace a branch's connection descriptor.

        Publishes ``branch.descriptor.updated`` after the change is committed,
        so routers drop the stale handle.

        Args:
            branch_id: Branch identifier.
            descriptor: New descriptor.

        Returns:
            The updated branch.

        Raises:
            BranchNotFoundError: If no such branch is registered.
        """
        async with self._sessionmaker() as session:
            record = await session.get(BranchRecord, branch_id)
            if record is None:
                raise BranchNotFoundError(branch_id)
            self._apply_descriptor(record, descriptor)
            await session.commit()
            branch = self._to_branch(record)

        logger.info("Connection descriptor updated for branch %s", branch_id)
        await _publish(self._event_bus, EventTypes.Branch.DESCRIPTOR_UPDATED, branch_id)
        return branch

    async def deactivate(self, branch_id: str) -> None:
        """Soft-deactivate a branch. Branches are never deleted.

        Raises:
            BranchNotFoundError: If no such branch is registered.
        """
        async with self._sessionmaker() as session:
            record = await session.get(BranchRecord, branch_id)
            if record is None:
                raise BranchNotFoundError(branch_id)
            record.is_active = False
            await session.commit()

        logger.info("Branch deactivated: %s", branch_id)
        await _publish(self._event_bus, EventTypes.Branch.DEACTIVATED, branch_id)

    @staticmethod
    def _apply_descriptor(record: BranchRecord, descriptor: ConnectionDescriptor) -> None:
        record.engine = descriptor.engine.value
        record.db_host = descriptor.host
        record.db_port = descriptor.port
        record.db_name = descriptor.database
        record.db_user = descriptor.username
        record.db_password = descriptor.password.get_secret_value() if descriptor.password else None
        record.ssl_mode = descriptor.ssl_mode.value
        record.trust_server_certificate = descriptor.trust_server_certificate
        record.extra_params = dict(descriptor.extra_params)

    @staticmethod
    def _to_branch(record: BranchRecord) -> Branch:
        """Convert a row to a Branch, validating its descriptor."""
        try:
            descriptor = ConnectionDescriptor(
                engine=record.engine,
                host=record.db_host,
                port=record.db_port,
                database=record.db_name,
                username=record.db_user,
                password=record.db_password,
                ssl_mode=record.ssl_mode,
                trust_server_certificate=record.trust_server_certificate,
                extra_params=record.extra_params or {},
            )
        except ValidationError as e:
            raise ConfigurationError(
                f"Malformed connection descriptor for branch {record.id}",
                branch_id=record.id,
                original_error=e,
            ) from e

        return Branch(
            id=record.id,
            code=record.code,
            descriptor=descriptor,
            is_active=record.is_active,
            created_at=ensure_utc(record.created_at),
            updated_at=ensure_utc(record.updated_at),
        )
