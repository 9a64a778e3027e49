"""Unit tests for logging infrastructure."""
import logging
from downtranscoder.infrastructure.logging import setup_logging


def test_setup_logging_creates_log_file(tmp_path):
    log_file = tmp_path / "logs" / "downtranscoder.log"

    logger = setup_logging(log_file, debug=False)

    assert isinstance(logger, logging.Logger)
    assert log_file.exists()
    assert "Logging initialized" in log_file.read_text()


def test_setup_logging_debug_mode(tmp_path):
    logger = setup_logging(tmp_path / "debug.log", debug=True)
    assert logger.getEffectiveLevel() == logging.DEBUG


def test_setup_logging_normal_mode(tmp_path):
    logger = setup_logging(tmp_path / "info.log", debug=False)
    assert logger.getEffectiveLevel() == logging.INFO


def test_setup_logging_format(tmp_path):
    log_file = tmp_path / "format.log"
    setup_logging(log_file)

    logging.getLogger("downtranscoder.test").warning("disk almost full")
    for handler in logging.getLogger().handlers:
        handler.flush()

    last_line = log_file.read_text().strip().splitlines()[-1]
    assert " - WARNING - disk almost full" in last_line


def test_setup_logging_without_file_uses_stderr():
    setup_logging(None)
    handlers = logging.getLogger().handlers
    assert any(type(h) is logging.StreamHandler for h in handlers)
