# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Per-branch connection routing.

ConnectionRouter turns a Branch into a BranchHandle wrapping a SQLAlchemy
AsyncEngine for that branch's engine kind. Handles are created lazily and
cached per branch id; concurrent resolutions for one branch share a single
engine construction.

Locking:
- ``_lock`` guards the handle dict and is only held for O(1) dict work.
- A per-branch build lock serialises construction for that branch only.
- Engines are disposed after every lock is released. An engine replaced by
  a fingerprint change is disposed on a background task when an event loop
  is running, otherwise at the next invalidation.

A cached handle is replaced when the branch's descriptor fingerprint
changes, when the registry announces a descriptor update, or when
invalidate()/invalidate_all() is called.

Example:
    router = ConnectionRouter(settings)
    router.subscribe(get_event_bus())

    handle = router.resolve(branch)
    async with handle.engine.connect() as conn:
        await conn.execute(text("SELECT 1"))

    await router.close_all()
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Mapping, Optional

from sqlalchemy.exc import ArgumentError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from branch_migrator.core.errors import ConfigurationError
from branch_migrator.infrastructure.database.targets import (
    BUILDERS,
    ConnectionTarget,
    TargetBuilder,
    select_builder,
)
from branch_migrator.infrastructure.events import EventBus, EventData, EventTypes
from branch_migrator.models.branch import Branch, EngineKind

if TYPE_CHECKING:
    from branch_migrator.core.config.settings import Settings

logger = logging.getLogger(__name__)

EngineFactory = Callable[[ConnectionTarget], AsyncEngine]


def create_branch_engine(target: ConnectionTarget) -> AsyncEngine:
    """Create the async engine for a connection target.

    No connection is opened; the pool connects on first use.
    """
    return create_async_engine(
        target.url,
        connect_args=target.connect_args,
        **target.engine_options,
    )


@dataclass(frozen=True)
class BranchHandle:
    """A routed, cached connection handle for one branch.

    Attributes:
        branch_id: Branch the handle belongs to.
        engine_kind: Engine the branch runs on.
        target: Connection target the engine was built from.
        engine: Async engine for the branch database.
        fingerprint: Descriptor fingerprint the handle was built for.
    """

    branch_id: str
    engine_kind: EngineKind
    target: ConnectionTarget
    engine: AsyncEngine
    fingerprint: str

    @property
    def display_url(self) -> str:
        return self.target.display_url


class ConnectionRouter:
    """Builds and caches one engine handle per branch.

    Attributes:
        settings: Application settings; branch_db options shape every engine.
    """

    def __init__(
        self,
        settings: "Settings",
        builders: Mapping[EngineKind, TargetBuilder] = BUILDERS,
        engine_factory: EngineFactory = create_branch_engine,
    ) -> None:
        """Initialize the router.

        Args:
            settings: Application settings.
            builders: Engine kind to target builder table.
            engine_factory: Callable creating an engine from a target.
        """
        self._settings = settings
        self._builders = builders
        self._engine_factory = engine_factory
        self._lock = threading.Lock()
        self._handles: dict[str, BranchHandle] = {}
        self._build_locks: dict[str, threading.Lock] = {}
        self._retired: list[AsyncEngine] = []
        self._disposals: set[asyncio.Task[None]] = set()

    def _cached(self, branch_id: str, fingerprint: str) -> Optional[BranchHandle]:
        with self._lock:
            handle = self._handles.get(branch_id)
        if handle is not None and handle.fingerprint == fingerprint:
            return handle
        return None

    def _build_lock(self, branch_id: str) -> threading.Lock:
        with self._lock:
            return self._build_locks.setdefault(branch_id, threading.Lock())

    def resolve(self, branch: Branch) -> BranchHandle:
        """Get the cached handle for a branch, building it on first use.

        Args:
            branch: Branch to route.

        Returns:
            BranchHandle for the branch database.

        Raises:
            ConfigurationError: If the engine kind is unsupported or the
                driver for it is unavailable. Nothing is cached.
        """
        builder = select_builder(branch, self._builders)
        fingerprint = branch.descriptor.fingerprint()

        handle = self._cached(branch.id, fingerprint)
        if handle is not None:
            return handle

        with self._build_lock(branch.id):
            handle = self._cached(branch.id, fingerprint)
            if handle is not None:
                return handle

            target = builder(branch, self._settings.branch_db)
            try:
                engine = self._engine_factory(target)
            except (ArgumentError, ImportError) as e:
                raise ConfigurationError(
                    f"Cannot create {target.engine_kind.value} engine",
                    branch_id=branch.id,
                    original_error=e,
                ) from e

            handle = BranchHandle(
                branch_id=branch.id,
                engine_kind=target.engine_kind,
                target=target,
                engine=engine,
                fingerprint=fingerprint,
            )
            with self._lock:
                previous = self._handles.get(branch.id)
                self._handles[branch.id] = handle
                if previous is not None:
                    self._retired.append(previous.engine)

        if previous is not None:
            logger.info("Connection descriptor changed for branch %s, handle rebuilt", branch.id)
            self._schedule_retired_disposal()
        logger.debug("Built %s handle for branch %s: %s", handle.engine_kind.value, branch.id, handle.display_url)
        return handle

    def get_cached(self, branch_id: str) -> Optional[BranchHandle]:
        """Return the cached handle for a branch without building one."""
        with self._lock:
            return self._handles.get(branch_id)

    def cached_branch_ids(self) -> list[str]:
        """Ids of branches that currently have a cached handle."""
        with self._lock:
            return list(self._handles)

    async def _dispose(self, engines: list[AsyncEngine]) -> None:
        for engine in engines:
            await engine.dispose()

    def _take_retired(self) -> list[AsyncEngine]:
        with self._lock:
            retired, self._retired = self._retired, []
        return retired

    def _schedule_retired_disposal(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._dispose(self._take_retired()))
        self._disposals.add(task)
        task.add_done_callback(self._disposals.discard)

    async def dispose_retired(self) -> int:
        """Dispose engines replaced by descriptor changes.

        Waits for background disposals already scheduled by resolve() and
        disposes any engine retired outside an event loop.

        Returns:
            Number of engines disposed by this call.
        """
        if self._disposals:
            await asyncio.gather(*self._disposals)
        engines = self._take_retired()
        await self._dispose(engines)
        return len(engines)

    async def invalidate(self, branch_id: str) -> bool:
        """Drop and dispose the cached handle for one branch.

        Args:
            branch_id: Branch whose handle should be dropped.

        Returns:
            True if a handle was cached.
        """
        with self._lock:
            handle = self._handles.pop(branch_id, None)
        engines = self._take_retired()
        if handle is not None:
            engines.append(handle.engine)
            logger.info("Invalidated connection handle for branch %s", branch_id)
        await self._dispose(engines)
        return handle is not None

    async def invalidate_all(self) -> int:
        """Drop and dispose every cached handle.

        Returns:
            Number of handles dropped.
        """
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        await self.dispose_retired()
        await self._dispose([h.engine for h in handles])
        logger.info("Invalidated %d connection handles", len(handles))
        return len(handles)

    async def close_all(self) -> None:
        """Dispose every engine. Call at application shutdown."""
        await self.invalidate_all()

    async def _on_branch_changed(self, event: EventData) -> None:
        branch_id = event.branch_id or event.payload.get("branch_id")
        if branch_id:
            await self.invalidate(branch_id)

    def subscribe(self, event_bus: EventBus) -> None:
        """Invalidate handles when the registry reports descriptor changes.

        Args:
            event_bus: Bus the tenant registry publishes on.
        """
        event_bus.subscribe(EventTypes.Branch.DESCRIPTOR_UPDATED, self._on_branch_changed)
        event_bus.subscribe(EventTypes.Branch.DEACTIVATED, self._on_branch_changed)
