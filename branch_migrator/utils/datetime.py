# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""DateTime utilities for Branch Migrator.

All timestamps written to the ledger are timezone-aware UTC. SQLite hands
back naive datetimes, so anything read back must pass through ensure_utc()
before it is compared with utc_now().
"""

from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime.

    Returns:
        Timezone-aware datetime representing current UTC time.
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Ensure a datetime is timezone-aware UTC.

    Args:
        dt: A datetime object (naive or aware) or None.

    Returns:
        Timezone-aware UTC datetime or None.

    Note:
        - If dt is None, returns None
        - If dt is naive, assumes UTC and adds tzinfo
        - If dt is aware, converts to UTC
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc)


def seconds_from_now(seconds: int) -> datetime:
    """Get a datetime N seconds from now.

    Args:
        seconds: Number of seconds to add.

    Returns:
        Timezone-aware UTC datetime.
    """
    return utc_now() + timedelta(seconds=seconds)


def is_expired(expiry: datetime | None) -> bool:
    """Check if a datetime has passed (is expired).

    Args:
        expiry: The expiry datetime to check.

    Returns:
        True if expired or expiry is None, False otherwise.
    """
    if expiry is None:
        return True

    return utc_now() > ensure_utc(expiry)
