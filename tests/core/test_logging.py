# tests/core/test_logging.py
"""Tests for structured logging configuration."""

import json
import logging
from collections.abc import Iterator

import pytest


@pytest.fixture(autouse=True)
def _restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


class TestConfigureLogging:
    """configure_logging() wiring for structlog and stdlib."""

    def test_json_output_renders_key_values(self, capsys: pytest.CaptureFixture[str]) -> None:
        from formulabench.core.logging import configure_logging, get_logger

        configure_logging(json_output=True, level="INFO")
        get_logger("formulabench.test").info("Row calculated", formula_id="f1", row_id="row-f1-0")

        line = capsys.readouterr().err.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["event"] == "Row calculated"
        assert record["formula_id"] == "f1"
        assert record["row_id"] == "row-f1-0"
        assert record["level"] == "info"

    def test_stdlib_records_share_the_chain(self, capsys: pytest.CaptureFixture[str]) -> None:
        from formulabench.core.logging import configure_logging

        configure_logging(json_output=True, level="INFO")
        logging.getLogger("plain").warning("from stdlib")

        record = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
        assert record["event"] == "from stdlib"
        assert "_record" not in record

    def test_level_filters_debug(self, capsys: pytest.CaptureFixture[str]) -> None:
        from formulabench.core.logging import configure_logging, get_logger

        configure_logging(json_output=True, level="INFO")
        get_logger("formulabench.test").debug("hidden")

        assert "hidden" not in capsys.readouterr().err

    def test_noisy_loggers_raised_to_warning(self) -> None:
        from formulabench.core.logging import configure_logging

        configure_logging(level="DEBUG")
        assert logging.getLogger("asyncio").level == logging.WARNING
        assert logging.getLogger().level == logging.DEBUG
