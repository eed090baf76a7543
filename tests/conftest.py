# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Pytest configuration and shared fixtures.

Every database used here is a SQLite file under tmp_path, reached through
aiosqlite: one control database for the registry and ledger, and one file
per embedded branch.
"""

from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path

import pytest
import pytest_asyncio
import sqlalchemy as sa
from alembic import op
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from branch_migrator.core.config.settings import (
    BranchDatabaseSettings,
    ControlDatabaseSettings,
    MigrationSettings,
    Settings,
)
from branch_migrator.domains.branch.registry import InMemoryBranchRegistry
from branch_migrator.domains.migration.catalog import MigrationCatalog
from branch_migrator.domains.migration.service import MigrationService
from branch_migrator.domains.migration.status_store import StatusStore
from branch_migrator.infrastructure.database.connection import build_sessionmaker
from branch_migrator.infrastructure.database.models.base import Base
from branch_migrator.infrastructure.database.router import ConnectionRouter
from branch_migrator.infrastructure.events import EventBus
from branch_migrator.models.branch import Branch, ConnectionDescriptor, EngineKind
from branch_migrator.models.migration import MigrationUnit


# =============================================================================
# Marker Configuration
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


# =============================================================================
# Migration Units
# =============================================================================


def _create_units() -> None:
    op.create_table(
        "units",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
    )


def _drop_units() -> None:
    op.drop_table("units")


def _create_rooms() -> None:
    op.create_table(
        "rooms",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("label", sa.String(50), nullable=False),
    )


def _drop_rooms() -> None:
    op.drop_table("rooms")


def _create_lessons() -> None:
    op.create_table(
        "lessons",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("title", sa.String(200), nullable=False),
    )


def _drop_lessons() -> None:
    op.drop_table("lessons")


def _broken_script() -> None:
    raise RuntimeError("boom")


def build_target_metadata() -> sa.MetaData:
    """Schema produced by M1, M2 and M3."""
    metadata = sa.MetaData()
    sa.Table(
        "units",
        metadata,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
    )
    sa.Table(
        "rooms",
        metadata,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("label", sa.String(50), nullable=False),
    )
    sa.Table(
        "lessons",
        metadata,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("title", sa.String(200), nullable=False),
    )
    return metadata


M1 = MigrationUnit(id="001_units", name="Create units", forward=_create_units, backward=_drop_units)
M2 = MigrationUnit(id="002_rooms", name="Create rooms", forward=_create_rooms, backward=_drop_rooms)
M3 = MigrationUnit(id="003_lessons", name="Create lessons", forward=_create_lessons, backward=_drop_lessons)
M3_BROKEN = MigrationUnit(
    id="003_lessons", name="Create lessons", forward=_broken_script, backward=_drop_lessons
)
M3_BROKEN_ROLLBACK = MigrationUnit(
    id="003_lessons", name="Create lessons", forward=_create_lessons, backward=_broken_script
)


@pytest.fixture
def catalog() -> MigrationCatalog:
    """Catalog of three working units with their expected schema."""
    return MigrationCatalog([M1, M2, M3], target_metadata=build_target_metadata())


@pytest.fixture
def failing_catalog() -> MigrationCatalog:
    """Catalog whose third unit fails going forward."""
    return MigrationCatalog([M1, M2, M3_BROKEN], target_metadata=build_target_metadata())


@pytest.fixture
def failing_rollback_catalog() -> MigrationCatalog:
    """Catalog whose third unit cannot be rolled back."""
    return MigrationCatalog([M1, M2, M3_BROKEN_ROLLBACK], target_metadata=build_target_metadata())


# =============================================================================
# Settings
# =============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings pointing every database at tmp_path."""
    return Settings(
        control_db=ControlDatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'control.db'}"),
        branch_db=BranchDatabaseSettings(embedded_root=tmp_path / "branches"),
        migration=MigrationSettings(max_concurrency=2, max_retry_attempts=3, lock_timeout_seconds=60),
    )


# =============================================================================
# Control Database
# =============================================================================


@pytest_asyncio.fixture(scope="function")
async def control_engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """Control database engine with the registry and ledger tables created."""
    engine = create_async_engine(settings.control_db.url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def control_sessionmaker(control_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_sessionmaker(control_engine)


@pytest.fixture
def status_store(control_sessionmaker: async_sessionmaker[AsyncSession]) -> StatusStore:
    return StatusStore(control_sessionmaker)


# =============================================================================
# Branches and Routing
# =============================================================================


@pytest.fixture
def make_branch() -> Callable[..., Branch]:
    """Factory for embedded branches."""

    def factory(branch_id: str, code: str | None = None, **descriptor: object) -> Branch:
        fields = {"engine": EngineKind.SQLITE, **descriptor}
        return Branch(
            id=branch_id,
            code=code or branch_id.replace("-", "_"),
            descriptor=ConnectionDescriptor(**fields),
        )

    return factory


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest_asyncio.fixture(scope="function")
async def router(settings: Settings) -> AsyncGenerator[ConnectionRouter, None]:
    """Router that disposes every engine it built at teardown."""
    router = ConnectionRouter(settings)
    yield router
    await router.close_all()


@pytest.fixture
def registry(make_branch: Callable[..., Branch], event_bus: EventBus) -> InMemoryBranchRegistry:
    """Registry holding three embedded branches."""
    return InMemoryBranchRegistry(
        [make_branch("b-001"), make_branch("b-002"), make_branch("b-003")],
        event_bus=event_bus,
    )


@pytest.fixture
def make_service(
    settings: Settings,
    registry: InMemoryBranchRegistry,
    router: ConnectionRouter,
    status_store: StatusStore,
    event_bus: EventBus,
) -> Callable[[MigrationCatalog], MigrationService]:
    """Factory for services sharing the fixtures but using a given catalog."""

    def factory(catalog: MigrationCatalog) -> MigrationService:
        return MigrationService(
            settings,
            registry,
            catalog,
            router,
            status_store,
            event_bus=event_bus,
        )

    return factory


@pytest.fixture
def service(
    make_service: Callable[[MigrationCatalog], MigrationService],
    catalog: MigrationCatalog,
) -> MigrationService:
    return make_service(catalog)


async def _table_names(engine: AsyncEngine) -> set[str]:
    async with engine.connect() as conn:
        return set(await conn.run_sync(lambda sync_conn: sa.inspect(sync_conn).get_table_names()))


@pytest.fixture
def table_names() -> Callable[[AsyncEngine], Awaitable[set[str]]]:
    """Coroutine function listing the tables present in a branch database."""
    return _table_names
