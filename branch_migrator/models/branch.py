# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Branch and connection descriptor models.

A branch is one independently deployed tenant database. Its
ConnectionDescriptor says which engine it runs on and how to reach it;
the connection router turns the descriptor into an engine handle.
"""

import hashlib
import json
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr, model_validator

from branch_migrator.utils.datetime import utc_now


class EngineKind(str, Enum):
    """Relational engine a branch database runs on."""

    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    MSSQL = "mssql"

    @property
    def is_embedded(self) -> bool:
        """Whether the engine is file based and needs no server."""
        return self is EngineKind.SQLITE


class SslMode(str, Enum):
    """TLS mode for server engines."""

    DISABLE = "disable"
    REQUIRE = "require"
    VERIFY_CA = "verify_ca"
    VERIFY_FULL = "verify_full"


class ConnectionDescriptor(BaseModel):
    """How to reach a branch database.

    Credentials are discarded for the embedded engine; a server engine
    without credentials falls back to trusted/integrated authentication.

    Attributes:
        engine: Engine kind.
        host: Server host (ignored for the embedded engine).
        port: Server port; None means the engine default.
        database: Database name (embedded: file stem, defaults to branch code).
        username: Optional login name.
        password: Optional password.
        ssl_mode: TLS mode for PostgreSQL and MySQL.
        trust_server_certificate: Skip certificate validation (SQL Server).
        extra_params: Free-form driver parameters appended to the URL query.
    """

    model_config = ConfigDict(frozen=True)

    engine: EngineKind
    host: str | None = None
    port: int | None = Field(default=None, ge=1, le=65535)
    database: str | None = None
    username: str | None = None
    password: SecretStr | None = None
    ssl_mode: SslMode = SslMode.DISABLE
    trust_server_certificate: bool = False
    extra_params: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def drop_embedded_credentials(cls, data: Any) -> Any:
        """Never retain credentials for the embedded engine."""
        if isinstance(data, dict) and data.get("engine") in (EngineKind.SQLITE, "sqlite"):
            data = {**data, "username": None, "password": None}
        return data

    @model_validator(mode="after")
    def require_server_address(self) -> "ConnectionDescriptor":
        """Server engines need at least a host and a database name."""
        if not self.engine.is_embedded:
            if not self.host:
                raise ValueError(f"{self.engine.value} descriptor requires a host")
            if not self.database:
                raise ValueError(f"{self.engine.value} descriptor requires a database")
        return self

    @property
    def has_credentials(self) -> bool:
        """Whether explicit credentials were supplied."""
        return bool(self.username)

    def fingerprint(self) -> str:
        """Stable digest of every field, secrets included.

        Used by the connection router to notice descriptor changes.
        """
        material = {
            "engine": self.engine.value,
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "username": self.username,
            "password": self.password.get_secret_value() if self.password else None,
            "ssl_mode": self.ssl_mode.value,
            "trust_server_certificate": self.trust_server_certificate,
            "extra_params": self.extra_params,
        }
        encoded = json.dumps(material, sort_keys=True).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()


class Branch(BaseModel):
    """A tenant branch as held by the tenant registry.

    Attributes:
        id: Stable unique identifier.
        code: Short branch code, used for embedded file paths and logs.
        descriptor: Connection descriptor.
        is_active: Soft-deactivation flag; branches are never hard-deleted.
        created_at: Creation timestamp.
        updated_at: Last update timestamp.
    """

    id: str
    code: str
    descriptor: ConnectionDescriptor
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
