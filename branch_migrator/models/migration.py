# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Migration value types.

These dataclasses travel between the catalog, the status ledger, the
orchestrator and its callers. They carry no behaviour beyond small
derived properties and to_dict() for the calling layer.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from branch_migrator.utils.datetime import is_expired


class MigrationStatus(str, Enum):
    """Lifecycle state of a branch's migration ledger record."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    REQUIRES_MANUAL_INTERVENTION = "requires_manual_intervention"


@dataclass(frozen=True)
class MigrationUnit:
    """A published, reversible schema change.

    Attributes:
        id: Monotonic identifier; catalog order follows it.
        name: Display name.
        forward: Callable run inside an alembic Operations context to apply.
        backward: Callable run inside an alembic Operations context to revert.
    """

    id: str
    name: str
    forward: Callable[[], None] = field(compare=False, repr=False)
    backward: Callable[[], None] = field(compare=False, repr=False)

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "name": self.name}


@dataclass
class BranchMigrationStatus:
    """Durable record of what has run on one branch.

    Attributes:
        branch_id: Branch identifier.
        applied: Ids of successfully applied units, in application order.
        status: Current lifecycle state.
        last_attempt_at: When an apply/rollback was last attempted.
        last_error: Message of the last failure, cleared on success.
        retry_count: Consecutive failed apply attempts.
        lock_owner: Owner token of the current lease, if any.
        lock_expires_at: Lease expiry, if leased.
        created_at: Record creation time.
        updated_at: Record update time.
    """

    branch_id: str
    applied: list[str] = field(default_factory=list)
    status: MigrationStatus = MigrationStatus.PENDING
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    retry_count: int = 0
    lock_owner: Optional[str] = None
    lock_expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def last_applied(self) -> Optional[str]:
        """Most recently applied unit id."""
        return self.applied[-1] if self.applied else None

    @property
    def is_locked(self) -> bool:
        """Whether an unexpired lease is held on the branch."""
        return self.lock_owner is not None and not is_expired(self.lock_expires_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "branch_id": self.branch_id,
            "applied": list(self.applied),
            "last_applied": self.last_applied,
            "status": self.status.value,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            "last_error": self.last_error,
            "retry_count": self.retry_count,
            "is_locked": self.is_locked,
        }


@dataclass
class PendingMigrations:
    """Units a branch has not applied yet, in catalog order.

    Attributes:
        units: Outstanding units.
        unknown_applied: Applied ids that the catalog does not contain.
    """

    units: list[MigrationUnit]
    unknown_applied: list[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.units)

    @property
    def ids(self) -> list[str]:
        return [unit.id for unit in self.units]

    def to_dict(self) -> dict[str, Any]:
        return {
            "units": [unit.to_dict() for unit in self.units],
            "count": self.count,
        }


class DiscrepancyKind(str, Enum):
    """Kind of difference between live and expected schema."""

    MISSING_OBJECT = "missing_object"
    UNEXPECTED_OBJECT = "unexpected_object"
    TYPE_MISMATCH = "type_mismatch"


@dataclass(frozen=True)
class SchemaDiscrepancy:
    """One difference found by the schema validator.

    Attributes:
        kind: Discrepancy kind.
        object_name: Dotted name of the table, column, index or constraint.
        detail: Human-readable explanation.
    """

    kind: DiscrepancyKind
    object_name: str
    detail: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "object_name": self.object_name, "detail": self.detail}


@dataclass
class ValidationResult:
    """Outcome of comparing a branch's live schema to the catalog."""

    branch_id: str
    discrepancies: list[SchemaDiscrepancy] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.discrepancies

    def to_dict(self) -> dict[str, Any]:
        return {
            "branch_id": self.branch_id,
            "is_valid": self.is_valid,
            "discrepancies": [d.to_dict() for d in self.discrepancies],
        }


@dataclass
class BranchOperationResult:
    """Itemized outcome of one apply/rollback/cleanup call on one branch.

    Attributes:
        branch_id: Branch identifier.
        success: Whether the operation succeeded.
        message: Human-readable summary or error message.
        status: Ledger status after the operation, when it was read.
        applied: Unit ids run forward during this call.
        rolled_back: Unit id reverted or removed during this call.
        error_kind: Error taxonomy name on failure.
        duration_seconds: Wall-clock duration of the call.
    """

    branch_id: str
    success: bool
    message: str = ""
    status: Optional[MigrationStatus] = None
    applied: list[str] = field(default_factory=list)
    rolled_back: Optional[str] = None
    error_kind: Optional[str] = None
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "branch_id": self.branch_id,
            "success": self.success,
            "message": self.message,
            "status": self.status.value if self.status else None,
            "applied": list(self.applied),
            "rolled_back": self.rolled_back,
            "error_kind": self.error_kind,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class BulkOperationResult:
    """Itemized outcome of a fan-out call across branches.

    The item list is always complete, even when some branches failed.
    """

    results: list[BranchOperationResult] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def processed(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return self.processed - self.succeeded

    @property
    def success(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "duration_seconds": round(self.duration_seconds, 3),
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class MigrationHistory:
    """Applied and outstanding units of one branch alongside its ledger state."""

    branch_id: str
    applied: list[str]
    pending: list[MigrationUnit]
    status: MigrationStatus
    retry_count: int = 0
    last_error: Optional[str] = None
    last_attempt_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "branch_id": self.branch_id,
            "applied": list(self.applied),
            "pending": [unit.to_dict() for unit in self.pending],
            "status": self.status.value,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
        }
