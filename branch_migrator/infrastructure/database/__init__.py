# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Database infrastructure for Branch Migrator.

Components:
- connection: Control database engine and session management
- router: Per-branch engine routing and caching
- targets: Engine-kind specific connection target builders
- models: Control database tables (branch registry, migration ledger)
"""

from branch_migrator.infrastructure.database.connection import (
    DatabaseError,
    build_sessionmaker,
    check_control_database_connection,
    close_control_database,
    create_control_tables,
    get_control_engine,
    get_control_session,
    get_control_sessionmaker,
    init_control_database,
)
from branch_migrator.infrastructure.database.router import (
    BranchHandle,
    ConnectionRouter,
    create_branch_engine,
)
from branch_migrator.infrastructure.database.targets import (
    BUILDERS,
    ConnectionTarget,
    embedded_database_path,
)

__all__ = [
    # Connection
    "DatabaseError",
    "build_sessionmaker",
    "init_control_database",
    "create_control_tables",
    "close_control_database",
    "get_control_engine",
    "get_control_sessionmaker",
    "get_control_session",
    "check_control_database_connection",
    # Routing
    "BranchHandle",
    "ConnectionRouter",
    "create_branch_engine",
    "BUILDERS",
    "ConnectionTarget",
    "embedded_database_path",
]
