"""Unit tests for compass.logging_config."""

import logging
from logging.handlers import RotatingFileHandler

import pytest

from compass.logging_config import LOG_FILE_NAME, setup_logging


@pytest.fixture
def bare_compass_logger():
    """Detach any handlers so setup_logging runs from scratch, then restore them."""
    logger = logging.getLogger("compass")
    saved_handlers, saved_level = logger.handlers[:], logger.level
    logger.handlers.clear()
    yield logger
    for handler in logger.handlers:
        handler.close()
    logger.handlers[:] = saved_handlers
    logger.setLevel(saved_level)


def test_configures_file_and_console(bare_compass_logger, tmp_path):
    logger = setup_logging(log_dir=tmp_path, console_level="error")

    file_handlers = [h for h in logger.handlers if isinstance(h, RotatingFileHandler)]
    console = [h for h in logger.handlers if not isinstance(h, RotatingFileHandler)]
    assert len(file_handlers) == 1
    assert file_handlers[0].baseFilename == str(tmp_path / LOG_FILE_NAME)
    assert file_handlers[0].level == logging.DEBUG
    assert console[0].level == logging.ERROR


def test_repeated_calls_do_not_duplicate_handlers(bare_compass_logger, tmp_path):
    setup_logging(log_dir=tmp_path)
    setup_logging(log_dir=tmp_path)
    assert len(bare_compass_logger.handlers) == 2


def test_child_loggers_reach_the_file(bare_compass_logger, tmp_path):
    setup_logging(log_dir=tmp_path)
    logging.getLogger("compass.decision").info("Decision turn 1: action=gather_context")
    for handler in bare_compass_logger.handlers:
        handler.flush()
    assert "compass.decision | INFO | Decision turn 1" in (tmp_path / LOG_FILE_NAME).read_text()
