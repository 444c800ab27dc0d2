"""Logging configuration for the connection manager.

Console output stays at WARNING so that command output is not interleaved with
log lines, unless ``--verbose`` is given. A log file, when configured, always
receives DEBUG records, including the masked ``argocd`` command lines.
"""

import logging
import sys
from pathlib import Path

from connection_manager.exceptions import ConfigurationError

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# ruamel and markdown-it (via rich) are chatty at DEBUG
QUIET_LOGGERS = ("ruamel", "markdown_it")


def resolve_level(level: str) -> int:
    """Turn a level name into its numeric value.

    Raises:
        ConfigurationError: If the name is not a logging level
    """
    value = logging.getLevelName(level.upper())
    if not isinstance(value, int):
        raise ConfigurationError(
            f"Unknown log level: {level}",
            "Use one of DEBUG, INFO, WARNING, ERROR, CRITICAL",
        )
    return value


def setup_logging(level: str = "INFO", log_file: Path | None = None, verbose: bool = False) -> None:
    """Configure logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file
        verbose: If True, set level to DEBUG and log to the console at DEBUG

    Raises:
        ConfigurationError: If the level name is unknown
    """
    root_level = logging.DEBUG if verbose else resolve_level(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(root_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            logging.warning(f"Failed to create log file handler: {e}")

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Logger name (typically __name__)
    """
    return logging.getLogger(name)
