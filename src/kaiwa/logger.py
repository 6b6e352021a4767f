"""
Centralized logging for Kaiwa.

Errors go to ~/.kaiwa/logs/kaiwa_errors.log (file only, no console output), and a
size-rotated logs/debug.log carries the pipeline trace.
"""

import logging
import os
from pathlib import Path
from datetime import datetime


def default_logs_dir() -> Path:
    """KAIWA_LOG_DIR if set, else ~/.kaiwa/logs."""
    return Path(os.environ.get("KAIWA_LOG_DIR") or Path.home() / ".kaiwa" / "logs")


# Create logs directory if it doesn't exist
LOGS_DIR = default_logs_dir()
LOGS_DIR.mkdir(parents=True, exist_ok=True)

# Log file paths
LOG_FILE = LOGS_DIR / "kaiwa_errors.log"
DEBUG_LOG = LOGS_DIR / "debug.log"
_MAX_LOG_SIZE = 1 * 1024 * 1024  # 1MB


class KaiwaLogger:
    """Centralized logger for the Kaiwa pipeline."""

    _instance = None
    _logger = None

    def __init__(self):
        """Initialize the logger (singleton)."""
        if KaiwaLogger._logger is None:
            KaiwaLogger._logger = self._setup_logger()

    @classmethod
    def get_logger(cls):
        """Get the singleton logger instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._logger

    def _setup_logger(self):
        """Set up the file logger with no console output."""
        logger = logging.getLogger('kaiwa')
        logger.setLevel(logging.WARNING)

        # Remove any existing handlers
        logger.handlers = []

        file_handler = logging.FileHandler(LOG_FILE, mode='a', encoding='utf-8')
        file_handler.setLevel(logging.WARNING)

        # Format: [2024-01-15 14:30:25] ERROR - message
        formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        file_handler.setFormatter(formatter)

        logger.addHandler(file_handler)
        logger.propagate = False

        return logger


def log_error(message, exception=None):
    """
    Log an error message to file.

    Args:
        message: Error message string
        exception: Optional exception object to include traceback
    """
    logger = KaiwaLogger.get_logger()
    if exception:
        logger.error(f"{message}: {str(exception)}", exc_info=exception)
    else:
        logger.error(message)


def log_warning(message):
    """Log a recoverable problem (network blips, dropped chunks)."""
    KaiwaLogger.get_logger().warning(message)


def log_exception(exception, context=""):
    """
    Log an exception with full traceback.

    Args:
        exception: Exception object
        context: Optional context string (e.g., "in transcription")
    """
    logger = KaiwaLogger.get_logger()
    if context:
        logger.error(f"Exception {context}", exc_info=exception)
    else:
        logger.error("Exception occurred", exc_info=exception)


def _rotate_log_if_needed():
    """Rotate debug.log if it exceeds max size."""
    try:
        if DEBUG_LOG.exists() and DEBUG_LOG.stat().st_size > _MAX_LOG_SIZE:
            backup = DEBUG_LOG.with_suffix('.log.1')
            if backup.exists():
                backup.unlink()
            DEBUG_LOG.rename(backup)
    except OSError:
        pass


def debug(msg: str, tag: str = ""):
    """Write a pipeline trace line to debug.log with a timestamp."""
    _rotate_log_if_needed()
    timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
    prefix = f"[{tag}] " if tag else ""
    try:
        with open(DEBUG_LOG, "a", encoding="utf-8") as f:
            f.write(f"[{timestamp}] {prefix}{msg}\n")
    except OSError:
        pass


# Initialize logger on import
KaiwaLogger.get_logger()
