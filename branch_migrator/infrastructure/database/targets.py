# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Connection target builders keyed by engine kind.

Each builder turns a branch and the shared branch database settings into a
ConnectionTarget: the SQLAlchemy URL, driver connect arguments and engine
options for that engine. The table of builders is fixed; an engine kind
missing from the table is a configuration error.

Embedded branches live at ``<embedded_root>/<name>/<name>.db`` where name is
the descriptor's database name or, failing that, the branch code. Server
branches without credentials fall back to trusted/integrated authentication.
"""

import ssl
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, Mapping

from sqlalchemy.engine import URL

from branch_migrator.core.errors import ConfigurationError
from branch_migrator.models.branch import Branch, EngineKind, SslMode

if TYPE_CHECKING:
    from branch_migrator.core.config.settings import BranchDatabaseSettings

DEFAULT_PORTS: Mapping[EngineKind, int] = MappingProxyType(
    {
        EngineKind.POSTGRESQL: 5432,
        EngineKind.MYSQL: 3306,
        EngineKind.MSSQL: 1433,
    }
)

DEFAULT_MSSQL_ODBC_DRIVER = "ODBC Driver 18 for SQL Server"

_ASYNCPG_SSL_MODES = {
    SslMode.DISABLE: "disable",
    SslMode.REQUIRE: "require",
    SslMode.VERIFY_CA: "verify-ca",
    SslMode.VERIFY_FULL: "verify-full",
}


@dataclass(frozen=True)
class ConnectionTarget:
    """Everything needed to construct an engine for one branch.

    Attributes:
        engine_kind: Engine the target addresses.
        url: SQLAlchemy URL including driver name.
        connect_args: Keyword arguments handed to the DBAPI connect call.
        engine_options: Keyword arguments for create_async_engine.
    """

    engine_kind: EngineKind
    url: URL
    connect_args: dict[str, Any] = field(default_factory=dict)
    engine_options: dict[str, Any] = field(default_factory=dict)

    @property
    def display_url(self) -> str:
        """URL with the password masked, safe for logs."""
        return self.url.render_as_string(hide_password=True)


TargetBuilder = Callable[[Branch, "BranchDatabaseSettings"], ConnectionTarget]


def _server_pool_options(settings: "BranchDatabaseSettings") -> dict[str, Any]:
    return {
        "pool_size": settings.pool_size,
        "max_overflow": settings.max_overflow,
        "pool_pre_ping": True,
        "pool_recycle": settings.pool_recycle,
    }


def _credentials(branch: Branch) -> tuple[str | None, str | None]:
    descriptor = branch.descriptor
    if not descriptor.has_credentials:
        return None, None
    password = descriptor.password.get_secret_value() if descriptor.password else None
    return descriptor.username, password


def embedded_database_path(branch: Branch, root: Path) -> Path:
    """Path of an embedded branch's database file.

    Args:
        branch: Branch whose descriptor names the database.
        root: Root directory for embedded databases.

    Returns:
        Absolute path of the database file.
    """
    name = branch.descriptor.database or branch.code
    if not name or Path(name).name != name:
        raise ConfigurationError(
            f"Invalid embedded database name {name!r}", branch_id=branch.id
        )
    return (root / name / f"{name}.db").resolve()


def build_sqlite_target(
    branch: Branch, settings: "BranchDatabaseSettings"
) -> ConnectionTarget:
    """Build the target for an embedded (SQLite) branch.

    Creates the database directory when missing.
    """
    path = embedded_database_path(branch, Path(settings.embedded_root))
    path.parent.mkdir(parents=True, exist_ok=True)

    url = URL.create(
        "sqlite+aiosqlite",
        database=str(path),
        query=dict(branch.descriptor.extra_params),
    )
    return ConnectionTarget(
        engine_kind=EngineKind.SQLITE,
        url=url,
        connect_args={"timeout": settings.connect_timeout},
    )


def build_postgresql_target(
    branch: Branch, settings: "BranchDatabaseSettings"
) -> ConnectionTarget:
    """Build the target for a PostgreSQL branch (asyncpg driver)."""
    descriptor = branch.descriptor
    username, password = _credentials(branch)

    url = URL.create(
        "postgresql+asyncpg",
        username=username,
        password=password,
        host=descriptor.host,
        port=descriptor.port or DEFAULT_PORTS[EngineKind.POSTGRESQL],
        database=descriptor.database,
        query=dict(descriptor.extra_params),
    )
    return ConnectionTarget(
        engine_kind=EngineKind.POSTGRESQL,
        url=url,
        connect_args={
            "ssl": _ASYNCPG_SSL_MODES[descriptor.ssl_mode],
            "timeout": settings.connect_timeout,
        },
        engine_options=_server_pool_options(settings),
    )


def _mysql_ssl_context(mode: SslMode) -> ssl.SSLContext | None:
    if mode is SslMode.DISABLE:
        return None
    context = ssl.create_default_context()
    if mode is SslMode.REQUIRE:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    elif mode is SslMode.VERIFY_CA:
        context.check_hostname = False
    return context


def build_mysql_target(
    branch: Branch, settings: "BranchDatabaseSettings"
) -> ConnectionTarget:
    """Build the target for a MySQL/MariaDB branch (aiomysql driver)."""
    descriptor = branch.descriptor
    username, password = _credentials(branch)

    connect_args: dict[str, Any] = {"connect_timeout": settings.connect_timeout}
    ssl_context = _mysql_ssl_context(descriptor.ssl_mode)
    if ssl_context is not None:
        connect_args["ssl"] = ssl_context

    url = URL.create(
        "mysql+aiomysql",
        username=username,
        password=password,
        host=descriptor.host,
        port=descriptor.port or DEFAULT_PORTS[EngineKind.MYSQL],
        database=descriptor.database,
        query=dict(descriptor.extra_params),
    )
    return ConnectionTarget(
        engine_kind=EngineKind.MYSQL,
        url=url,
        connect_args=connect_args,
        engine_options=_server_pool_options(settings),
    )


def build_mssql_target(
    branch: Branch, settings: "BranchDatabaseSettings"
) -> ConnectionTarget:
    """Build the target for a SQL Server branch (aioodbc driver)."""
    descriptor = branch.descriptor
    username, password = _credentials(branch)

    query: dict[str, str] = {"driver": DEFAULT_MSSQL_ODBC_DRIVER}
    if username is None:
        query["Trusted_Connection"] = "yes"
    if descriptor.ssl_mode is not SslMode.DISABLE:
        query["Encrypt"] = "yes"
    if descriptor.trust_server_certificate:
        query["TrustServerCertificate"] = "yes"
    query.update(descriptor.extra_params)

    url = URL.create(
        "mssql+aioodbc",
        username=username,
        password=password,
        host=descriptor.host,
        port=descriptor.port or DEFAULT_PORTS[EngineKind.MSSQL],
        database=descriptor.database,
        query=query,
    )
    return ConnectionTarget(
        engine_kind=EngineKind.MSSQL,
        url=url,
        connect_args={"timeout": settings.connect_timeout},
        engine_options=_server_pool_options(settings),
    )


BUILDERS: Mapping[EngineKind, TargetBuilder] = MappingProxyType(
    {
        EngineKind.SQLITE: build_sqlite_target,
        EngineKind.POSTGRESQL: build_postgresql_target,
        EngineKind.MYSQL: build_mysql_target,
        EngineKind.MSSQL: build_mssql_target,
    }
)


def select_builder(
    branch: Branch, builders: Mapping[EngineKind, TargetBuilder] = BUILDERS
) -> TargetBuilder:
    """Pick the builder for a branch's engine kind.

    Raises:
        ConfigurationError: If no builder exists for the engine kind.
    """
    builder = builders.get(branch.descriptor.engine)
    if builder is None:
        raise ConfigurationError(
            f"Database engine {branch.descriptor.engine!r} is not supported",
            branch_id=branch.id,
        )
    return builder
