# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for ConnectionRouter."""

import asyncio
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import text

from branch_migrator.core.errors import ConfigurationError
from branch_migrator.infrastructure.database.router import ConnectionRouter
from branch_migrator.infrastructure.database.targets import ConnectionTarget, build_sqlite_target
from branch_migrator.infrastructure.events import EventBus, EventTypes
from branch_migrator.models.branch import EngineKind


class CountingEngineFactory:
    """Engine factory recording every construction."""

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.targets: list[ConnectionTarget] = []
        self.engines: list[MagicMock] = []
        self._lock = threading.Lock()

    def __call__(self, target: ConnectionTarget) -> MagicMock:
        time.sleep(self.delay)
        engine = MagicMock()
        engine.dispose = AsyncMock()
        with self._lock:
            self.targets.append(target)
            self.engines.append(engine)
        return engine


@pytest.fixture
def factory() -> CountingEngineFactory:
    return CountingEngineFactory()


@pytest.fixture
def counting_router(settings, factory) -> ConnectionRouter:
    return ConnectionRouter(settings, engine_factory=factory)


class TestResolve:
    """Tests for ConnectionRouter.resolve."""

    @pytest.mark.asyncio
    async def test_embedded_branch_gets_working_engine(self, router, make_branch, settings):
        """Test an embedded branch resolves to a usable SQLite engine."""
        branch = make_branch("b-001")

        handle = router.resolve(branch)

        assert handle.engine_kind == EngineKind.SQLITE
        assert handle.branch_id == "b-001"
        expected = (settings.branch_db.embedded_root / "b_001" / "b_001.db").resolve()
        assert handle.target.url.database == str(expected)
        assert expected.parent.is_dir()
        async with handle.engine.connect() as conn:
            assert (await conn.execute(text("SELECT 1"))).scalar() == 1

    def test_repeated_resolve_returns_cached_handle(self, counting_router, factory, make_branch):
        """Test a second resolve reuses the handle."""
        branch = make_branch("b-001")

        first = counting_router.resolve(branch)
        second = counting_router.resolve(branch)

        assert first is second
        assert len(factory.engines) == 1

    def test_concurrent_resolve_builds_once(self, settings, make_branch):
        """Test parallel resolutions of one branch share one construction."""
        factory = CountingEngineFactory(delay=0.05)
        router = ConnectionRouter(settings, engine_factory=factory)
        branch = make_branch("b-001")

        with ThreadPoolExecutor(max_workers=8) as pool:
            handles = list(pool.map(lambda _: router.resolve(branch), range(16)))

        assert len(factory.engines) == 1
        assert all(h is handles[0] for h in handles)

    def test_branches_get_separate_handles(self, counting_router, factory, make_branch):
        """Test each branch has its own engine."""
        first = counting_router.resolve(make_branch("b-001"))
        second = counting_router.resolve(make_branch("b-002"))

        assert first.engine is not second.engine
        assert sorted(counting_router.cached_branch_ids()) == ["b-001", "b-002"]

    @pytest.mark.asyncio
    async def test_changed_descriptor_rebuilds_handle(self, counting_router, factory, make_branch):
        """Test a new fingerprint replaces the cached handle."""
        original = counting_router.resolve(make_branch("b-001"))

        updated = counting_router.resolve(make_branch("b-001", database="renamed"))

        assert updated is not original
        assert updated.fingerprint != original.fingerprint
        assert len(factory.engines) == 2

        await counting_router.close_all()
        original.engine.dispose.assert_awaited_once()
        updated.engine.dispose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_replaced_engine_is_disposed_without_invalidation(self, counting_router, make_branch):
        """Test the engine dropped by a descriptor change is disposed in the background."""
        original = counting_router.resolve(make_branch("b-001"))
        updated = counting_router.resolve(make_branch("b-001", database="renamed"))

        for _ in range(5):
            await asyncio.sleep(0)

        original.engine.dispose.assert_awaited_once()
        updated.engine.dispose.assert_not_awaited()
        assert counting_router.get_cached("b-001") is updated
        assert await counting_router.dispose_retired() == 0

    def test_replaced_engine_outside_loop_waits_for_dispose_retired(self, counting_router, make_branch):
        """Test an engine replaced without a running loop is kept for later disposal."""
        original = counting_router.resolve(make_branch("b-001"))
        counting_router.resolve(make_branch("b-001", database="renamed"))

        assert asyncio.run(counting_router.dispose_retired()) == 1
        original.engine.dispose.assert_awaited_once()

    def test_unsupported_engine_kind_is_not_cached(self, settings, factory, make_branch):
        """Test a kind missing from the builder table raises before caching."""
        router = ConnectionRouter(
            settings,
            builders={EngineKind.SQLITE: build_sqlite_target},
            engine_factory=factory,
        )
        branch = make_branch("b-001", engine=EngineKind.POSTGRESQL, host="db", database="branch")

        with pytest.raises(ConfigurationError):
            router.resolve(branch)
        with pytest.raises(ConfigurationError):
            router.resolve(branch)

        assert router.cached_branch_ids() == []
        assert factory.engines == []

    def test_missing_driver_is_a_configuration_error(self, settings, make_branch):
        """Test a driver import failure is reported as configuration."""

        def no_driver(target):
            raise ImportError("No module named 'aiomysql'")

        router = ConnectionRouter(settings, engine_factory=no_driver)
        branch = make_branch("b-001", engine=EngineKind.MYSQL, host="db", database="branch")

        with pytest.raises(ConfigurationError) as exc_info:
            router.resolve(branch)

        assert exc_info.value.branch_id == "b-001"
        assert router.get_cached("b-001") is None


class TestInvalidation:
    """Tests for invalidate, invalidate_all and event-driven invalidation."""

    @pytest.mark.asyncio
    async def test_invalidate_disposes_engine(self, counting_router, make_branch):
        """Test invalidate drops the handle and disposes its engine."""
        handle = counting_router.resolve(make_branch("b-001"))

        assert await counting_router.invalidate("b-001") is True
        assert await counting_router.invalidate("b-001") is False

        handle.engine.dispose.assert_awaited_once()
        assert counting_router.get_cached("b-001") is None

    @pytest.mark.asyncio
    async def test_invalidate_all(self, counting_router, factory, make_branch):
        """Test every cached handle is dropped."""
        counting_router.resolve(make_branch("b-001"))
        counting_router.resolve(make_branch("b-002"))

        assert await counting_router.invalidate_all() == 2

        assert counting_router.cached_branch_ids() == []
        for engine in factory.engines:
            engine.dispose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_resolve_after_invalidate_rebuilds(self, counting_router, factory, make_branch):
        """Test a dropped handle is rebuilt on demand."""
        branch = make_branch("b-001")
        first = counting_router.resolve(branch)
        await counting_router.invalidate("b-001")

        second = counting_router.resolve(branch)

        assert second is not first
        assert len(factory.engines) == 2

    @pytest.mark.asyncio
    async def test_descriptor_event_invalidates(self, counting_router, make_branch):
        """Test the registry notification drops the cached handle."""
        bus = EventBus()
        counting_router.subscribe(bus)
        handle = counting_router.resolve(make_branch("b-001"))
        counting_router.resolve(make_branch("b-002"))

        await bus.publish(EventTypes.Branch.DESCRIPTOR_UPDATED, {"branch_id": "b-001"}, branch_id="b-001")

        assert counting_router.get_cached("b-001") is None
        assert counting_router.get_cached("b-002") is not None
        handle.engine.dispose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_deactivation_event_invalidates(self, counting_router, make_branch):
        """Test a deactivated branch loses its handle."""
        bus = EventBus()
        counting_router.subscribe(bus)
        counting_router.resolve(make_branch("b-001"))

        await bus.publish(EventTypes.Branch.DEACTIVATED, {"branch_id": "b-001"})

        assert counting_router.get_cached("b-001") is None
