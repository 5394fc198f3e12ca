import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import CONSOLE_LOG_LEVEL, WORKSPACE_DIR

LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_FILE_NAME = "compass.log"


def setup_logging(log_dir: Path | None = None, console_level: str | None = None):
    """Configure the "compass" logger tree once per process.

    Every module logs on a child logger (compass.decision, compass.components, ...)
    and inherits these handlers. Later calls return the configured logger as is.
    """
    logger = logging.getLogger("compass")
    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter(LOG_FORMAT)

    # Full DEBUG trail of every decision, next to the session records
    log_dir = Path(log_dir) if log_dir is not None else WORKSPACE_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        log_dir / LOG_FILE_NAME,
        maxBytes=5 * 1024 * 1024,  # 5MB
        backupCount=3,
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.getLevelName((console_level or CONSOLE_LOG_LEVEL).upper()))
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    logger.debug("Logging to %s", log_dir / LOG_FILE_NAME)
    return logger
