# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for structured logging setup."""

import json
import logging
from collections.abc import Generator

import pytest
import structlog

from branch_migrator.core.config.settings import Settings
from branch_migrator.utils.logging import bind_context, clear_context, setup_logging


@pytest.fixture
def restore_logging() -> Generator[None, None, None]:
    """Put the root logger back the way pytest configured it."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
    clear_context()
    structlog.reset_defaults()


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_json_output_includes_bound_context(self, capsys, restore_logging):
        """Test stdlib records carry structlog context in production format."""
        settings = Settings(environment="staging", log_level="INFO")
        setup_logging(settings)

        bind_context(branch_id="b-001")
        logging.getLogger("branch_migrator.test").info("Applied %s", "001_units")

        line = capsys.readouterr().out.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["event"] == "Applied 001_units"
        assert record["branch_id"] == "b-001"
        assert record["level"] == "info"

    def test_log_level_applies_to_package_logger(self, restore_logging):
        """Test the configured level is set on the package logger."""
        setup_logging(Settings(environment="staging", log_level="WARNING"))

        assert logging.getLogger("branch_migrator").level == logging.WARNING
        assert logging.getLogger("sqlalchemy").level == logging.WARNING
