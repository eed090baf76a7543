# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for connection target builders."""

import ssl

import pytest

from branch_migrator.core.errors import ConfigurationError
from branch_migrator.infrastructure.database.targets import (
    BUILDERS,
    DEFAULT_MSSQL_ODBC_DRIVER,
    build_mssql_target,
    build_mysql_target,
    build_postgresql_target,
    build_sqlite_target,
    embedded_database_path,
    select_builder,
)
from branch_migrator.models.branch import EngineKind, SslMode


class TestBuilderTable:
    """Tests for the engine kind to builder table."""

    def test_every_engine_kind_has_a_builder(self):
        """Verify the table covers all engine kinds."""
        assert set(BUILDERS) == set(EngineKind)

    def test_select_builder_by_kind(self, make_branch):
        """Test builder selection follows the descriptor's engine."""
        branch = make_branch("b-001", engine=EngineKind.MSSQL, host="sql", database="branch")

        assert select_builder(branch) is build_mssql_target

    def test_missing_kind_raises(self, make_branch):
        """Test a kind absent from the table is a configuration error."""
        with pytest.raises(ConfigurationError):
            select_builder(make_branch("b-001"), builders={})


class TestSqliteTarget:
    """Tests for embedded targets."""

    def test_path_uses_database_name(self, make_branch, tmp_path):
        """Test the descriptor's database name decides the file path."""
        branch = make_branch("b-001", database="north")

        path = embedded_database_path(branch, tmp_path)

        assert path == (tmp_path / "north" / "north.db").resolve()

    def test_path_falls_back_to_code(self, make_branch, tmp_path):
        """Test the branch code is used when no database name is set."""
        branch = make_branch("b-001", code="south")

        assert embedded_database_path(branch, tmp_path).name == "south.db"

    def test_path_rejects_separators(self, make_branch, tmp_path):
        """Test names that would escape the root are rejected."""
        with pytest.raises(ConfigurationError):
            embedded_database_path(make_branch("b-001", database="../etc"), tmp_path)

    def test_target_creates_directory(self, make_branch, settings):
        """Test building the target creates the branch directory."""
        target = build_sqlite_target(make_branch("b-001"), settings.branch_db)

        assert target.url.drivername == "sqlite+aiosqlite"
        assert target.engine_options == {}
        assert target.connect_args == {"timeout": settings.branch_db.connect_timeout}
        assert (settings.branch_db.embedded_root / "b_001").is_dir()

    def test_credentials_are_never_rendered(self, make_branch, settings):
        """Test credentials given for an embedded branch are dropped."""
        branch = make_branch("b-001", username="admin", password="secret")

        target = build_sqlite_target(branch, settings.branch_db)

        assert target.url.username is None
        assert target.url.password is None
        assert "secret" not in str(target.url)


class TestPostgresqlTarget:
    """Tests for PostgreSQL targets."""

    def test_with_credentials(self, make_branch, settings):
        """Test host, port and credentials reach the URL."""
        branch = make_branch(
            "b-001",
            engine=EngineKind.POSTGRESQL,
            host="pg.internal",
            port=6543,
            database="branch_001",
            username="migrator",
            password="s3cret",
            ssl_mode=SslMode.VERIFY_FULL,
        )

        target = build_postgresql_target(branch, settings.branch_db)

        assert target.url.drivername == "postgresql+asyncpg"
        assert target.url.host == "pg.internal"
        assert target.url.port == 6543
        assert target.url.database == "branch_001"
        assert target.url.username == "migrator"
        assert target.connect_args["ssl"] == "verify-full"
        assert target.engine_options["pool_size"] == settings.branch_db.pool_size
        assert target.engine_options["pool_pre_ping"] is True
        assert "s3cret" not in target.display_url

    def test_default_port_and_no_password(self, make_branch, settings):
        """Test the engine default port and passwordless login."""
        branch = make_branch("b-001", engine=EngineKind.POSTGRESQL, host="pg", database="branch")

        target = build_postgresql_target(branch, settings.branch_db)

        assert target.url.port == 5432
        assert target.url.username is None
        assert target.url.password is None
        assert target.connect_args["ssl"] == "disable"

    def test_extra_params_become_query(self, make_branch, settings):
        """Test free-form parameters are appended to the URL."""
        branch = make_branch(
            "b-001",
            engine=EngineKind.POSTGRESQL,
            host="pg",
            database="branch",
            extra_params={"application_name": "branch-migrator"},
        )

        target = build_postgresql_target(branch, settings.branch_db)

        assert target.url.query["application_name"] == "branch-migrator"


class TestMysqlTarget:
    """Tests for MySQL targets."""

    def test_ssl_disabled(self, make_branch, settings):
        """Test no SSL context without TLS."""
        branch = make_branch("b-001", engine=EngineKind.MYSQL, host="my", database="branch")

        target = build_mysql_target(branch, settings.branch_db)

        assert target.url.drivername == "mysql+aiomysql"
        assert target.url.port == 3306
        assert "ssl" not in target.connect_args

    def test_ssl_required(self, make_branch, settings):
        """Test TLS without verification."""
        branch = make_branch(
            "b-001", engine=EngineKind.MYSQL, host="my", database="branch", ssl_mode=SslMode.REQUIRE
        )

        target = build_mysql_target(branch, settings.branch_db)

        context = target.connect_args["ssl"]
        assert isinstance(context, ssl.SSLContext)
        assert context.verify_mode == ssl.CERT_NONE


class TestMssqlTarget:
    """Tests for SQL Server targets."""

    def test_trusted_connection_without_credentials(self, make_branch, settings):
        """Test integrated authentication when no login is given."""
        branch = make_branch("b-001", engine=EngineKind.MSSQL, host="sql", database="branch")

        target = build_mssql_target(branch, settings.branch_db)

        assert target.url.drivername == "mssql+aioodbc"
        assert target.url.port == 1433
        assert target.url.query["Trusted_Connection"] == "yes"
        assert target.url.query["driver"] == DEFAULT_MSSQL_ODBC_DRIVER
        assert "Encrypt" not in target.url.query

    def test_credentials_and_tls(self, make_branch, settings):
        """Test SQL login with encryption and a trusted certificate."""
        branch = make_branch(
            "b-001",
            engine=EngineKind.MSSQL,
            host="sql",
            database="branch",
            username="sa",
            password="pw",
            ssl_mode=SslMode.REQUIRE,
            trust_server_certificate=True,
        )

        target = build_mssql_target(branch, settings.branch_db)

        assert target.url.username == "sa"
        assert "Trusted_Connection" not in target.url.query
        assert target.url.query["Encrypt"] == "yes"
        assert target.url.query["TrustServerCertificate"] == "yes"
