# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Domain services for Branch Migrator.

- branch: Tenant registry contract and implementations
- migration: Catalog, status ledger, orchestration and schema validation
"""
