# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Unit Tests for Structured Logging
"""

import io
import json
import logging

import pytest

from pkgmgr.core.config import Config
from pkgmgr.core.logging import PACKAGE_LOGGER, configure_logging, log_event, setup_logging


@pytest.fixture
def package_logger():
    """Restore the package logger after each test."""
    logger = logging.getLogger(PACKAGE_LOGGER)
    level = logger.level
    yield logger
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(level)


class TestStructuredLogging:
    """Test suite for formatters and log_event"""

    def test_json_event_fields(self, package_logger):
        """Test event fields appear as top-level JSON keys"""
        stream = io.StringIO()
        setup_logging("INFO", "json", stream=stream)

        log_event(
            logging.getLogger("pkgmgr.services.transaction.executor"),
            "step_committed", transaction_id="txn-1", step="fetch:A@1.0", index=0
        )

        record = json.loads(stream.getvalue().strip())
        assert record["message"] == "step_committed"
        assert record["event"] == "step_committed"
        assert record["transaction_id"] == "txn-1"
        assert record["step"] == "fetch:A@1.0"
        assert record["level"] == "INFO"
        assert record["logger"] == "pkgmgr.services.transaction.executor"

    def test_reserved_field_names_prefixed(self, package_logger):
        """Test fields named like LogRecord attributes do not break logging"""
        stream = io.StringIO()
        setup_logging("INFO", "json", stream=stream)

        log_event(logging.getLogger("pkgmgr.test"), "package_seen", name="curl", module="x")

        record = json.loads(stream.getvalue().strip())
        assert record["field_name"] == "curl"
        assert record["field_module"] == "x"
        assert record["logger"] == "pkgmgr.test"

    def test_text_format_appends_fields(self, package_logger):
        stream = io.StringIO()
        setup_logging("DEBUG", "text", stream=stream)

        log_event(logging.getLogger("pkgmgr.test"), "rollback_step", level="WARNING", step="unpack:A@1.0")

        line = stream.getvalue().strip()
        assert "WARNING" in line
        assert line.endswith("rollback_step step=unpack:A@1.0")

    def test_level_filters(self, package_logger):
        stream = io.StringIO()
        setup_logging("WARNING", "text", stream=stream)

        logging.getLogger("pkgmgr.test").info("hidden")

        assert stream.getvalue() == ""

    def test_reconfigure_replaces_handlers(self, package_logger):
        """Test configuring twice does not duplicate output"""
        first, second = io.StringIO(), io.StringIO()
        setup_logging("INFO", "text", stream=first)
        configure_logging(Config(log_level="INFO", log_format="json"), stream=second)

        logging.getLogger("pkgmgr.test").info("once")

        assert first.getvalue() == ""
        assert json.loads(second.getvalue())["message"] == "once"
        assert len(package_logger.handlers) == 1

    def test_unknown_level_rejected(self, package_logger):
        with pytest.raises(ValueError):
            setup_logging("LOUD")
