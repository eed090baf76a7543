# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Control database models.

The control database holds the branch registry and the central
migration ledger (one row per branch, keyed by branch id).
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from branch_migrator.infrastructure.database.models.base import Base, TimestampMixin


class BranchRecord(Base, TimestampMixin):
    """A registered branch and its connection descriptor.

    Branches are soft-deactivated through is_active and never deleted.
    """

    __tablename__ = "branches"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    engine: Mapped[str] = mapped_column(String(20), nullable=False)
    db_host: Mapped[Optional[str]] = mapped_column(String(255))
    db_port: Mapped[Optional[int]] = mapped_column(Integer)
    db_name: Mapped[Optional[str]] = mapped_column(String(128))
    db_user: Mapped[Optional[str]] = mapped_column(String(128))
    db_password: Mapped[Optional[str]] = mapped_column(String(255))
    ssl_mode: Mapped[str] = mapped_column(String(20), default="disable", nullable=False)
    trust_server_certificate: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    extra_params: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class BranchMigrationState(Base, TimestampMixin):
    """Central ledger row recording what has run on one branch."""

    __tablename__ = "branch_migration_states"

    branch_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    applied_migrations: Mapped[list[str]] = mapped_column(
        JSON, default=list, nullable=False
    )
    last_migration_applied: Mapped[Optional[str]] = mapped_column(String(128))
    status: Mapped[str] = mapped_column(String(40), default="pending", nullable=False)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    error_details: Mapped[Optional[str]] = mapped_column(Text)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lock_owner_id: Mapped[Optional[str]] = mapped_column(String(64))
    lock_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
