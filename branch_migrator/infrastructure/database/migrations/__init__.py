# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Migration script execution for branch databases."""

from branch_migrator.infrastructure.database.migrations.runner import (
    check_connectivity,
    run_backward,
    run_forward,
)

__all__ = [
    "check_connectivity",
    "run_backward",
    "run_forward",
]
