"""Tests for structured logging setup."""
import logging
from decimal import Decimal

import pytest
import structlog

from flywheel.core.logging import NOISY_LOGGERS, render_decimals, setup_logging


@pytest.fixture
def restore_logging():
    yield
    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.NOTSET)


class TestRenderDecimals:
    def test_amounts_become_strings(self):
        event = render_decimals(None, "info", {"event": "fees_claimed", "amount_sol": Decimal("0.50"), "count": 2})

        assert event == {"event": "fees_claimed", "amount_sol": "0.50", "count": 2}


class TestSetupLogging:
    def test_mode_is_bound_to_every_record(self, restore_logging):
        setup_logging(dry_run=True)

        assert structlog.contextvars.get_contextvars() == {"service": "flywheel", "mode": "dry_run"}

        setup_logging(dry_run=False)

        assert structlog.contextvars.get_contextvars()["mode"] == "live"

    def test_library_loggers_quieted_outside_debug(self, restore_logging):
        setup_logging(level="INFO")

        assert logging.getLogger("aiosqlite").level == logging.WARNING
        assert logging.getLogger("aiohttp.access").level == logging.WARNING

        setup_logging(level="DEBUG")

        assert logging.getLogger("httpx").level == logging.DEBUG

    def test_log_file_directory_is_created(self, tmp_path, restore_logging):
        log_file = tmp_path / "logs" / "flywheel.log"

        setup_logging(log_file=str(log_file), json_output=True)

        assert log_file.parent.is_dir()
