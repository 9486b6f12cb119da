"""
Configuration management for PAR2Protect.
Handles loading, validation, and management of engine settings.
"""

import json
import os
import logging
from pathlib import Path
from typing import Dict, Any, Optional, Union
from dataclasses import dataclass, asdict

# Get the directory where config.py is located
_SCRIPT_DIR = Path(os.path.dirname(os.path.abspath(__file__)))

# Project root detection: if we're in core/, go up one level
if _SCRIPT_DIR.name == 'core':
    _PROJECT_ROOT = _SCRIPT_DIR.parent
else:
    _PROJECT_ROOT = _SCRIPT_DIR

DEFAULT_SETTINGS_FILE = "/boot/config/plugins/par2protect/par2protect_settings.json"

IO_PRIORITIES = ("high", "normal", "low", "none")
SCHEDULE_FREQUENCIES = ("daily", "weekly", "monthly", "custom")


@dataclass
class DatabaseConfig:
    """Configuration for the SQLite catalog/queue database."""
    path: str = "/boot/config/plugins/par2protect/par2protect.db"
    busy_timeout: int = 5000  # milliseconds
    journal_mode: str = "WAL"
    synchronous: str = "NORMAL"
    retry_attempts: int = 5
    retry_delay: float = 0.1  # seconds, doubled on each retry


@dataclass
class LoggingConfig:
    """Configuration for log output."""
    logs_folder: str = str(_PROJECT_ROOT / "logs")
    log_level: str = "info"
    max_log_files: int = 5
    max_size_mb: int = 10


@dataclass
class ProtectionConfig:
    """Configuration for parity creation."""
    default_redundancy: int = 10
    par2_binary: str = "/usr/local/bin/par2"
    ionice_binary: str = "/usr/bin/ionice"
    # Scratch directory for per-run output capture files
    temp_dir: str = "/tmp/par2protect"


@dataclass
class VerificationConfig:
    """Configuration for verification behaviour."""
    # Items verified less than this many seconds ago are skipped unless forced
    interval: int = 86400
    verify_metadata: bool = False
    auto_repair: bool = False


@dataclass
class ResourceLimitConfig:
    """Configuration for subprocess resource limits.

    Attributes:
        max_cpu_usage: Thread count passed to par2 (-t). None lets par2 choose.
        max_memory_usage: Memory cap in MB passed to par2 (-m).
        parallel_file_hashing: True for par2's default parallel hashing (-T),
            or a positive int for an explicit file count.
        io_priority: "high", "normal", "low" or "none".
        max_concurrent_operations: Worker pool size / admission ceiling.
    """
    max_cpu_usage: Optional[int] = None
    max_memory_usage: Optional[int] = None
    parallel_file_hashing: Union[bool, int, None] = None
    io_priority: str = "low"
    max_concurrent_operations: int = 2


@dataclass
class QueueConfig:
    """Configuration for the operation queue and worker loop."""
    # Maximum seconds a single par2 invocation may run (0 = unbounded)
    max_execution_time: int = 1800
    poll_interval: float = 2.0
    # Terminal operations stay in the active view for this long
    active_retention_hours: int = 24
    recent_activity_limit: int = 20


@dataclass
class ScheduleConfig:
    """Configuration for periodic verification."""
    enabled: bool = False
    frequency: str = "weekly"  # "daily", "weekly", "monthly" or "custom"
    time: str = "03:00"  # HH:MM
    day_of_week: str = "sun"
    day_of_month: int = 1
    cron_expression: str = "0 3 * * 0"
    force: bool = False


class ConfigManager:
    """Manages engine configuration loading and validation."""

    def __init__(self, config_file: Optional[str] = None):
        self.config_file = Path(config_file or DEFAULT_SETTINGS_FILE)
        self.settings_data: Dict[str, Any] = {}
        self.database = DatabaseConfig()
        self.logging = LoggingConfig()
        self.protection = ProtectionConfig()
        self.verification = VerificationConfig()
        self.resource_limits = ResourceLimitConfig()
        self.queue = QueueConfig()
        self.schedule = ScheduleConfig()
        self.debug = False

    def load_config(self) -> None:
        """Load configuration from file and validate.

        A missing settings file is not an error: every section has defaults.
        """
        logging.debug(f"Loading configuration from: {self.config_file}")

        if self.config_file.exists():
            try:
                with open(self.config_file, 'r', encoding='utf-8') as f:
                    self.settings_data = json.load(f)
                logging.debug("Configuration file loaded successfully")
            except json.JSONDecodeError as e:
                logging.error(f"Invalid JSON in settings file: {type(e).__name__}: {e}")
                raise ValueError(f"Invalid JSON in settings file: {e}")
        else:
            logging.info(f"Settings file not found, using defaults: {self.config_file}")
            self.settings_data = {}

        if not isinstance(self.settings_data, dict):
            raise ValueError("Settings file must contain a JSON object")

        self.load_dict(self.settings_data)
        logging.debug("Configuration loaded and validated successfully")

    def load_dict(self, settings: Dict[str, Any]) -> None:
        """Load configuration from an already-parsed settings dictionary."""
        self.settings_data = settings
        self.debug = bool(settings.get('debug', False))
        self._load_database_config(settings.get('database', {}))
        self._load_logging_config(settings.get('logging', {}))
        self._load_protection_config(settings.get('protection', {}))
        self._load_verification_config(settings.get('verification', {}))
        self._load_resource_limit_config(settings.get('resource_limits', {}))
        self._load_queue_config(settings.get('queue', {}))
        self._load_schedule_config(settings.get('schedule', {}))

    def _load_database_config(self, section: Dict[str, Any]) -> None:
        defaults = DatabaseConfig()
        self.database.path = section.get('path', defaults.path)
        self.database.busy_timeout = self._positive_int(section, 'busy_timeout', defaults.busy_timeout)
        self.database.journal_mode = str(section.get('journal_mode', defaults.journal_mode)).upper()
        if self.database.journal_mode not in ("WAL", "DELETE", "TRUNCATE", "PERSIST", "MEMORY", "OFF"):
            logging.warning(f"Invalid journal_mode '{self.database.journal_mode}', using 'WAL'")
            self.database.journal_mode = "WAL"
        self.database.synchronous = str(section.get('synchronous', defaults.synchronous)).upper()
        if self.database.synchronous not in ("OFF", "NORMAL", "FULL", "EXTRA"):
            logging.warning(f"Invalid synchronous setting '{self.database.synchronous}', using 'NORMAL'")
            self.database.synchronous = "NORMAL"
        self.database.retry_attempts = self._positive_int(section, 'retry_attempts', defaults.retry_attempts)
        self.database.retry_delay = float(section.get('retry_delay', defaults.retry_delay))

    def _load_logging_config(self, section: Dict[str, Any]) -> None:
        defaults = LoggingConfig()
        self.logging.logs_folder = section.get('logs_folder', defaults.logs_folder)
        self.logging.log_level = section.get('log_level', defaults.log_level)
        self.logging.max_log_files = self._positive_int(section, 'max_log_files', defaults.max_log_files)
        self.logging.max_size_mb = self._positive_int(section, 'max_size_mb', defaults.max_size_mb)

    def _load_protection_config(self, section: Dict[str, Any]) -> None:
        defaults = ProtectionConfig()
        redundancy = section.get('default_redundancy', defaults.default_redundancy)
        if not isinstance(redundancy, int) or isinstance(redundancy, bool) or not 1 <= redundancy <= 100:
            logging.warning(f"Invalid default_redundancy '{redundancy}', using {defaults.default_redundancy}")
            redundancy = defaults.default_redundancy
        self.protection.default_redundancy = redundancy
        self.protection.par2_binary = section.get('par2_binary', defaults.par2_binary)
        self.protection.ionice_binary = section.get('ionice_binary', defaults.ionice_binary)
        self.protection.temp_dir = section.get('temp_dir', defaults.temp_dir)

    def _load_verification_config(self, section: Dict[str, Any]) -> None:
        defaults = VerificationConfig()
        interval = section.get('interval', defaults.interval)
        if not isinstance(interval, int) or isinstance(interval, bool) or interval < 0:
            logging.warning(f"Invalid verification interval '{interval}', using {defaults.interval}")
            interval = defaults.interval
        self.verification.interval = interval
        self.verification.verify_metadata = bool(section.get('verify_metadata', defaults.verify_metadata))
        self.verification.auto_repair = bool(section.get('auto_repair', defaults.auto_repair))

    def _load_resource_limit_config(self, section: Dict[str, Any]) -> None:
        defaults = ResourceLimitConfig()
        # Thread/memory/hashing values are passed through as-is; the resource
        # limiter decides which of them produce arguments.
        self.resource_limits.max_cpu_usage = section.get('max_cpu_usage', defaults.max_cpu_usage)
        self.resource_limits.max_memory_usage = section.get('max_memory_usage', defaults.max_memory_usage)
        self.resource_limits.parallel_file_hashing = section.get(
            'parallel_file_hashing', defaults.parallel_file_hashing
        )
        io_priority = section.get('io_priority', defaults.io_priority)
        self.resource_limits.io_priority = io_priority if io_priority else "none"
        self.resource_limits.max_concurrent_operations = self._positive_int(
            section, 'max_concurrent_operations', defaults.max_concurrent_operations
        )

    def _load_queue_config(self, section: Dict[str, Any]) -> None:
        defaults = QueueConfig()
        max_execution_time = section.get('max_execution_time', defaults.max_execution_time)
        if not isinstance(max_execution_time, int) or isinstance(max_execution_time, bool) or max_execution_time < 0:
            logging.warning(f"Invalid max_execution_time '{max_execution_time}', using {defaults.max_execution_time}")
            max_execution_time = defaults.max_execution_time
        self.queue.max_execution_time = max_execution_time
        poll_interval = section.get('poll_interval', defaults.poll_interval)
        if not isinstance(poll_interval, (int, float)) or poll_interval <= 0:
            logging.warning(f"Invalid poll_interval '{poll_interval}', using {defaults.poll_interval}")
            poll_interval = defaults.poll_interval
        self.queue.poll_interval = float(poll_interval)
        self.queue.active_retention_hours = self._positive_int(
            section, 'active_retention_hours', defaults.active_retention_hours
        )
        self.queue.recent_activity_limit = self._positive_int(
            section, 'recent_activity_limit', defaults.recent_activity_limit
        )

    def _load_schedule_config(self, section: Dict[str, Any]) -> None:
        defaults = ScheduleConfig()
        self.schedule.enabled = bool(section.get('enabled', defaults.enabled))
        frequency = section.get('frequency', defaults.frequency)
        if frequency not in SCHEDULE_FREQUENCIES:
            logging.warning(f"Invalid schedule frequency '{frequency}', using '{defaults.frequency}'")
            frequency = defaults.frequency
        self.schedule.frequency = frequency
        self.schedule.time = section.get('time', defaults.time)
        self.schedule.day_of_week = section.get('day_of_week', defaults.day_of_week)
        self.schedule.day_of_month = section.get('day_of_month', defaults.day_of_month)
        self.schedule.cron_expression = section.get('cron_expression', defaults.cron_expression)
        self.schedule.force = bool(section.get('force', defaults.force))

    @staticmethod
    def _positive_int(section: Dict[str, Any], key: str, default: int) -> int:
        value = section.get(key, default)
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            logging.warning(f"Invalid {key} '{value}', using {default}")
            return default
        return value

    def to_dict(self) -> Dict[str, Any]:
        """Return the effective configuration as a settings dictionary."""
        return {
            "debug": self.debug,
            "database": asdict(self.database),
            "logging": asdict(self.logging),
            "protection": asdict(self.protection),
            "verification": asdict(self.verification),
            "resource_limits": asdict(self.resource_limits),
            "queue": asdict(self.queue),
            "schedule": asdict(self.schedule),
        }

    def save_config(self) -> None:
        """Write the effective configuration back to the settings file."""
        self.config_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_file = self.config_file.with_suffix(self.config_file.suffix + ".tmp")
        with open(tmp_file, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=4)
        os.replace(tmp_file, self.config_file)
        logging.debug(f"Configuration saved to: {self.config_file}")
