"""Branch Migrator.

Per-branch connection routing and schema migration orchestration for a fleet
of independently provisioned branch databases, each running on its own
relational engine.

Copyright (C) 2025 Global Digital Labs (gdlabs.io)
SPDX-License-Identifier: LGPL-3.0-or-later
"""

__version__ = "1.0.0"
