"""
Tests for observability — logging setup.
"""

import logging
from pathlib import Path

import pytest

from natsocks.core.observability.logging_config import (
    current_operation,
    operation_context,
    setup_logging,
)


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestSetupLogging:
    def test_default_warning(self):
        setup_logging()
        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert len(root.handlers) == 1

    def test_debug_format(self):
        setup_logging("DEBUG")
        handler = logging.getLogger().handlers[0]
        assert "%(lineno)d" in handler.formatter._fmt

    def test_unknown_level_falls_back(self):
        setup_logging("LOUD")
        assert logging.getLogger().level == logging.WARNING

    def test_file_handler_with_own_level(self, tmp_path: Path):
        log_file = tmp_path / "nat-socks.log"
        setup_logging("WARNING", log_file=str(log_file), log_file_level="DEBUG")
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 2

        logging.getLogger("natsocks.test").debug("only in the file")
        for handler in root.handlers:
            handler.flush()
        assert "only in the file" in log_file.read_text()

    def test_repeat_calls_do_not_stack_handlers(self):
        setup_logging("INFO")
        setup_logging("INFO")
        assert len(logging.getLogger().handlers) == 1


class TestOperationContext:
    def test_default_is_dash(self):
        assert current_operation() == "-"

    def test_binds_and_resets(self):
        with operation_context("abc123"):
            assert current_operation() == "abc123"
        assert current_operation() == "-"

    def test_resets_after_error(self):
        with pytest.raises(RuntimeError):
            with operation_context("boom"):
                raise RuntimeError("x")
        assert current_operation() == "-"

    def test_records_carry_operation_id(self, tmp_path: Path):
        log_file = tmp_path / "nat-socks.log"
        setup_logging("INFO", log_file=str(log_file))
        log = logging.getLogger("natsocks.test")
        with operation_context("abc123"):
            log.info("inside")
        log.info("outside")
        for handler in logging.getLogger().handlers:
            handler.flush()

        lines = log_file.read_text().splitlines()
        assert "[abc123]" in next(l for l in lines if "inside" in l)
        assert "[-]" in next(l for l in lines if "outside" in l)
