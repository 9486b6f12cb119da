"""
Logging configuration for PAR2Protect.
Handles log file setup, console output and level mapping.
"""

import logging
import os
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

# Global lock for thread-safe console output (worker threads log concurrently)
_console_lock = threading.RLock()


class ThreadSafeStreamHandler(logging.StreamHandler):
    """A StreamHandler that uses a global lock for thread-safe console output.

    Prevents interleaving of log lines when several worker threads
    report operation progress at the same time.
    """

    def emit(self, record):
        """Emit a record with thread-safe locking."""
        with _console_lock:
            super().emit(record)


class LoggingManager:
    """Manages logging configuration and setup."""

    LEVEL_MAPPING = {
        "debug": logging.DEBUG,
        "info": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
        "critical": logging.CRITICAL,
    }

    def __init__(self, logs_folder: str, log_level: str = "", max_log_files: int = 5,
                 max_size_mb: int = 10, console: bool = True):
        self.logs_folder = Path(logs_folder)
        self.log_level = log_level
        self.max_log_files = max_log_files
        self.max_size_mb = max_size_mb
        self.console = console
        self.log_file = self.logs_folder / "par2protect.log"
        self.logger = logging.getLogger()
        self._handlers = []

    def setup_logging(self) -> None:
        """Set up logging configuration."""
        self._ensure_logs_folder()
        self._setup_handlers()
        self._set_log_level()
        # Scheduler job bookkeeping is too chatty at INFO
        logging.getLogger("apscheduler").setLevel(logging.WARNING)
        logging.getLogger("apscheduler.executors.default").setLevel(logging.WARNING)

    def _ensure_logs_folder(self) -> None:
        """Ensure the logs folder exists."""
        if not self.logs_folder.exists():
            try:
                self.logs_folder.mkdir(parents=True, exist_ok=True)
            except PermissionError:
                raise PermissionError(f"{self.logs_folder} not writable, please fix the variable accordingly.")

    def _setup_handlers(self) -> None:
        """Set up the size-bounded log file and the console handler."""
        file_handler = RotatingFileHandler(
            self.log_file,
            maxBytes=self.max_size_mb * 1024 * 1024,
            backupCount=self.max_log_files
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        self.logger.addHandler(file_handler)
        self._handlers.append(file_handler)

        if self.console:
            console_handler = ThreadSafeStreamHandler()
            console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            self.logger.addHandler(console_handler)
            self._handlers.append(console_handler)

    def _set_log_level(self) -> None:
        """Set the logging level."""
        self.logger.setLevel(resolve_log_level(self.log_level))

    def shutdown(self) -> None:
        """Detach and close the handlers installed by this manager."""
        for handler in self._handlers:
            self.logger.removeHandler(handler)
            handler.close()
        self._handlers = []


def resolve_log_level(log_level: Optional[str]) -> int:
    """Map a configured level name to a logging level, defaulting to INFO."""
    if not log_level:
        return logging.INFO
    name = log_level.lower()
    if name in LoggingManager.LEVEL_MAPPING:
        return LoggingManager.LEVEL_MAPPING[name]
    logging.warning(f"Invalid log_level: {name}. Using default level: INFO")
    return logging.INFO


def setup_logging_from_config(config, console: bool = True, debug: bool = False) -> LoggingManager:
    """Create and install a LoggingManager from a loaded ConfigManager."""
    level = "debug" if (debug or config.debug) else config.logging.log_level
    manager = LoggingManager(
        logs_folder=os.path.expanduser(config.logging.logs_folder),
        log_level=level,
        max_log_files=config.logging.max_log_files,
        max_size_mb=config.logging.max_size_mb,
        console=console,
    )
    manager.setup_logging()
    return manager
