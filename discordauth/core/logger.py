"""Logging configuration and custom logger with error tracing."""

import logging
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Any

from discordauth.config.env import LOG_FILE, ENABLE_LOGGING, LOG_LEVEL

_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s'


class CustomLogger(logging.Logger):
    """Custom logger class with additional trace methods."""

    def error_trace(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        """Log an error message with full stack trace."""
        self.log_resource_usage()
        kwargs.pop('exc_info', None)
        self.error(msg, *args, exc_info=True, **kwargs)

    def log_resource_usage(self):
        # Best-effort only; this should never raise during exception logging.
        try:
            import psutil

            process = psutil.Process()
            rss_mb = process.memory_info().rss / (1024 * 1024)
            thread_count = process.num_threads()
            self.debug(f"Process Memory: {rss_mb:.2f} MB, Threads: {thread_count}")
        except Exception:
            return


class LibraryLogForwarder(logging.Handler):
    """Re-emit records from a third-party logger through one of ours."""

    def __init__(self, target: logging.Logger, prefix: str):
        super().__init__()
        self._target = target
        self._prefix = prefix

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = record.getMessage()
        except Exception:
            message = str(record.msg)
        self._target.log(
            record.levelno,
            f"[{self._prefix}] {message}",
            exc_info=record.exc_info,
        )


def forward_library_logs(library: str, target: logging.Logger, level: int = logging.INFO) -> None:
    """Route a library's log records into `target`, replacing earlier forwarders."""
    library_logger = logging.getLogger(library)
    for handler in list(library_logger.handlers):
        if isinstance(handler, LibraryLogForwarder):
            library_logger.removeHandler(handler)
    library_logger.addHandler(LibraryLogForwarder(target, library))
    library_logger.setLevel(level)
    library_logger.propagate = False


def setup_logger(name: str, log_file: Path = LOG_FILE) -> CustomLogger:
    """Set up and configure a logger instance.

    Args:
        name: The name of the logger instance
        log_file: Path to the rotating log file, used when ENABLE_LOGGING is set

    Returns:
        CustomLogger: Configured logger instance with error_trace method
    """
    logging.setLoggerClass(CustomLogger)

    logger = CustomLogger(name)
    log_level = getattr(logging, LOG_LEVEL, logging.INFO)
    logger.setLevel(log_level)

    formatter = logging.Formatter(_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(log_level)
    console_handler.addFilter(lambda record: record.levelno < logging.ERROR)
    logger.addHandler(console_handler)

    error_handler = logging.StreamHandler(sys.stderr)
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)
    logger.addHandler(error_handler)

    try:
        if ENABLE_LOGGING:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=10485760,  # 10MB
                backupCount=5
            )
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
    except Exception as e:
        logger.error_trace(f"Failed to create log file: {e}")

    return logger
