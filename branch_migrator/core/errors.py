# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Shared error taxonomy for branch routing and migration.

Every per-branch failure is expressed as a MigrationError subclass so that
the orchestrator can capture it into that branch's result entry and decide
the resulting status:

- ConfigurationError: fatal, never retried, never cached.
- ConnectivityError: recoverable, branch marked Failed.
- MigrationScriptError: recoverable, branch marked Failed.
- RollbackScriptError: branch marked RequiresManualIntervention.
"""

from typing import Optional


class MigrationError(Exception):
    """Base exception for branch routing and migration operations.

    Attributes:
        message: Human-readable error description.
        branch_id: Branch the error concerns, when known.
        original_error: The underlying exception, when there is one.
    """

    def __init__(
        self,
        message: str,
        branch_id: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ) -> None:
        """Initialize the error.

        Args:
            message: Human-readable error description.
            branch_id: Branch the error concerns.
            original_error: The underlying exception that caused this error.
        """
        super().__init__(message)
        self.message = message
        self.branch_id = branch_id
        self.original_error = original_error

    @property
    def kind(self) -> str:
        """Taxonomy name reported in operation results."""
        return type(self).__name__

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.original_error:
            return f"{self.message}: {self.original_error}"
        return self.message


class ConfigurationError(MigrationError):
    """Raised for an unsupported engine kind or a malformed descriptor."""


class ConnectivityError(MigrationError):
    """Raised when a branch database cannot be reached or authenticated."""


class MigrationScriptError(MigrationError):
    """Raised when a forward migration script fails.

    Attributes:
        migration_id: Identifier of the failing migration unit.
    """

    def __init__(
        self,
        migration_id: str,
        branch_id: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ) -> None:
        super().__init__(
            f"Migration {migration_id} failed", branch_id, original_error
        )
        self.migration_id = migration_id


class RollbackScriptError(MigrationError):
    """Raised when a backward (rollback) migration script fails.

    Attributes:
        migration_id: Identifier of the migration that could not be reverted.
    """

    def __init__(
        self,
        migration_id: str,
        branch_id: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ) -> None:
        super().__init__(
            f"Rollback of migration {migration_id} failed", branch_id, original_error
        )
        self.migration_id = migration_id


class ManualInterventionRequiredError(MigrationError):
    """Raised when an automated path meets a branch awaiting an operator."""

    def __init__(self, branch_id: str) -> None:
        super().__init__(
            f"Branch {branch_id} requires manual intervention; "
            "resolve it before running further migrations",
            branch_id,
        )


class BranchLockedError(MigrationError):
    """Raised when another operation holds the branch lease."""

    def __init__(self, branch_id: str, owner: Optional[str] = None) -> None:
        super().__init__(
            f"Migration operation already in progress for branch {branch_id}",
            branch_id,
        )
        self.owner = owner


class BranchNotFoundError(MigrationError):
    """Raised when the tenant registry does not know a branch."""

    def __init__(self, branch_id: str) -> None:
        super().__init__(f"Branch not found: {branch_id}", branch_id)
