# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Migration catalog.

The catalog is the complete ordered set of published migration units for
branch databases. Units are append-only: once published, an id keeps its
position and its scripts. Order follows unit ids, which must sort
monotonically (``001_initial``, ``002_add_units``, ...).

A catalog is usually loaded from a package of alembic-style modules, each
exposing ``revision``, ``upgrade()`` and ``downgrade()``:

    from branch_migrator.domains.migration.catalog import MigrationCatalog

    catalog = MigrationCatalog.from_package(
        "myapp.branch_migrations",
        target_metadata=BranchBase.metadata,
    )

``target_metadata`` is the SQLAlchemy MetaData the units are authored to
produce. The schema validator compares live schemas against it.
"""

import importlib
import logging
import pkgutil
from typing import Iterable, Iterator, Optional

from sqlalchemy import MetaData

from branch_migrator.core.errors import ConfigurationError
from branch_migrator.models.migration import MigrationUnit

logger = logging.getLogger(__name__)


class MigrationCatalog:
    """Immutable ordered collection of migration units.

    Attributes:
        target_metadata: Expected schema once every unit has been applied.
    """

    def __init__(
        self,
        units: Iterable[MigrationUnit],
        target_metadata: Optional[MetaData] = None,
    ) -> None:
        """Initialize the catalog.

        Args:
            units: Published units, in any order.
            target_metadata: Expected schema after all units are applied.

        Raises:
            ConfigurationError: If two units share an id.
        """
        ordered = sorted(units, key=lambda unit: unit.id)
        ids = [unit.id for unit in ordered]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ConfigurationError(f"Duplicate migration ids: {', '.join(duplicates)}")

        self._units: tuple[MigrationUnit, ...] = tuple(ordered)
        self._index = {unit.id: position for position, unit in enumerate(ordered)}
        self.target_metadata = target_metadata

    @classmethod
    def from_package(
        cls,
        package: str,
        target_metadata: Optional[MetaData] = None,
    ) -> "MigrationCatalog":
        """Load every migration module found in a package.

        Each module must define ``revision`` (the unit id), ``upgrade()`` and
        ``downgrade()``. The module docstring's first line is used as the
        display name.

        Args:
            package: Dotted name of the package holding migration modules.
            target_metadata: Expected schema after all units are applied.

        Returns:
            Loaded catalog.

        Raises:
            ConfigurationError: If the package or a module is malformed.
        """
        try:
            root = importlib.import_module(package)
        except ImportError as e:
            raise ConfigurationError(f"Cannot import migration package {package}", original_error=e) from e

        units = []
        for module_info in pkgutil.iter_modules(root.__path__):
            module_name = f"{package}.{module_info.name}"
            try:
                module = importlib.import_module(module_name)
            except ImportError as e:
                raise ConfigurationError(f"Cannot import migration {module_name}", original_error=e) from e

            revision = getattr(module, "revision", None)
            upgrade = getattr(module, "upgrade", None)
            downgrade = getattr(module, "downgrade", None)
            if not revision or upgrade is None or downgrade is None:
                raise ConfigurationError(
                    f"Migration {module_name} must define revision, upgrade() and downgrade()"
                )

            doc = (module.__doc__ or "").strip()
            name = doc.splitlines()[0] if doc else module_info.name
            units.append(MigrationUnit(id=revision, name=name, forward=upgrade, backward=downgrade))

        logger.info("Loaded %d migrations from %s", len(units), package)
        return cls(units, target_metadata=target_metadata)

    def __iter__(self) -> Iterator[MigrationUnit]:
        return iter(self._units)

    def __len__(self) -> int:
        return len(self._units)

    def __contains__(self, migration_id: object) -> bool:
        return migration_id in self._index

    @property
    def units(self) -> tuple[MigrationUnit, ...]:
        """Units in catalog order."""
        return self._units

    @property
    def ids(self) -> list[str]:
        return [unit.id for unit in self._units]

    @property
    def latest(self) -> Optional[MigrationUnit]:
        return self._units[-1] if self._units else None

    def get(self, migration_id: str) -> Optional[MigrationUnit]:
        """Look up a unit by id."""
        position = self._index.get(migration_id)
        return self._units[position] if position is not None else None

    def position(self, migration_id: str) -> int:
        """Catalog position of a unit id.

        Raises:
            KeyError: If the id is not in the catalog.
        """
        return self._index[migration_id]
