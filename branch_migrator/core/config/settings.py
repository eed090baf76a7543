# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Application configuration settings using Pydantic Settings.

This module provides centralized configuration management for Branch Migrator.
Settings are loaded from environment variables with sensible defaults.

The Settings class is the main entry point and aggregates all subsettings.
A singleton instance is provided via get_settings() for dependency injection.

Example:
    >>> from branch_migrator.core.config.settings import get_settings
    >>> settings = get_settings()
    >>> print(settings.migration.max_concurrency)
    4
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Self

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ControlDatabaseSettings(BaseSettings):
    """Control database configuration.

    The control database stores:
    - Branch registry and connection descriptors
    - The per-branch migration ledger

    Attributes:
        url: Full async SQLAlchemy connection URL.
        pool_size: Connection pool size (ignored for SQLite).
        echo: Whether to echo SQL statements.
    """

    model_config = SettingsConfigDict(
        env_prefix="CONTROL_DB_",
        extra="ignore",
    )

    url: str = "sqlite+aiosqlite:///./control.db"
    pool_size: int = 10
    echo: bool = False

    @property
    def is_sqlite(self) -> bool:
        """Check whether the control database is an embedded SQLite file."""
        return self.url.startswith("sqlite")


class BranchDatabaseSettings(BaseSettings):
    """Branch database configuration shared by every routed engine.

    Attributes:
        embedded_root: Root directory holding embedded (SQLite) branch files.
        pool_size: Connection pool size per server-engine branch.
        max_overflow: Maximum overflow connections per branch.
        pool_recycle: Seconds after which pooled connections are recycled.
        connect_timeout: Seconds to wait when opening a connection.
    """

    model_config = SettingsConfigDict(
        env_prefix="BRANCH_DB_",
        extra="ignore",
    )

    embedded_root: Path = Path("./branches")
    pool_size: int = 5
    max_overflow: int = 5
    pool_recycle: int = 1800
    connect_timeout: int = 15


class MigrationSettings(BaseSettings):
    """Migration orchestration configuration.

    Attributes:
        max_concurrency: Maximum branches migrated concurrently by bulk calls.
            Keep this below the pool limits of the target servers.
        max_retry_attempts: Consecutive failed applies before a branch is
            escalated to manual intervention.
        lock_timeout_seconds: Lifetime of a branch lease in the ledger.
    """

    model_config = SettingsConfigDict(
        env_prefix="MIGRATION_",
        extra="ignore",
    )

    max_concurrency: int = Field(default=4, ge=1)
    max_retry_attempts: int = Field(default=3, ge=1)
    lock_timeout_seconds: int = Field(default=600, ge=1)


class Settings(BaseSettings):
    """Main application settings aggregating all subsettings.

    Use get_settings() to obtain a cached singleton instance.

    Attributes:
        environment: Current environment (development, staging, production).
        debug: Enable debug mode.
        log_level: Logging level.
        control_db: Control database settings.
        branch_db: Branch database settings.
        migration: Migration orchestration settings.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # Environment
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    # Subsettings - loaded with their own env prefixes
    control_db: ControlDatabaseSettings = Field(default_factory=ControlDatabaseSettings)
    branch_db: BranchDatabaseSettings = Field(default_factory=BranchDatabaseSettings)
    migration: MigrationSettings = Field(default_factory=MigrationSettings)

    @model_validator(mode="after")
    def validate_production_settings(self) -> Self:
        """Validate that production settings are properly configured.

        Raises:
            ValueError: If running in production against a local SQLite ledger.
        """
        if self.environment == "production" and self.control_db.is_sqlite:
            raise ValueError(
                "The control database must be a server database in production. "
                "Set CONTROL_DB_URL environment variable."
            )
        return self

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    Call clear_settings_cache() if you need to reload settings.

    Returns:
        Cached Settings instance.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Call this if you need to reload settings from environment.
    Useful for testing or dynamic configuration updates.
    """
    get_settings.cache_clear()
