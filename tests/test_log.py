"""Tests for the package logger setup."""

import logging
from pathlib import Path

import pytest

from agentpipe.utils.log import StructuredFormatter, init_logger


@pytest.fixture
def package_logger():
    logger = logging.getLogger("agentpipe")
    before = list(logger.handlers)
    yield logger
    for handler in list(logger.handlers):
        if handler not in before:
            logger.removeHandler(handler)
            handler.close()


def _file_handlers(logger: logging.Logger) -> list[logging.FileHandler]:
    return [h for h in logger.handlers if isinstance(h, logging.FileHandler)]


def test_init_logger_replaces_file_handler(tmp_path, package_logger) -> None:
    init_logger(tmp_path / "first.log")
    init_logger(tmp_path / "second.log")

    handlers = _file_handlers(package_logger)
    assert [Path(h.baseFilename) for h in handlers] == [(tmp_path / "second.log").resolve()]
    assert isinstance(handlers[0].formatter, StructuredFormatter)


def test_extra_fields_are_written_as_json(tmp_path, package_logger) -> None:
    log_file = tmp_path / "agentpipe.log"
    logger = init_logger(log_file)
    logger.debug("[test] hello", extra={"request_id": "req_1", "attempt": 2})

    line = log_file.read_text(encoding="utf-8").strip().splitlines()[-1]
    assert line.endswith('[DEBUG] agentpipe: [test] hello | {"attempt": 2, "request_id": "req_1"}')
    assert line[:24].endswith("Z")
