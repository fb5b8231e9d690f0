# src/formcache/logging_config.py
"""
Unified Logging Configuration for formcache.

Applications embedding the cache call :func:`configure_logging` once at
startup. Configuration comes from an explicit dict or from the ``[logging]``
table of the formcache TOML file and supports:

- Console logging with display-level gating (see DisplayFilter)
- File logging with a per-run or single rotating file
- Per-component log level overrides

Key concepts:

    **Display filter**: When ``console_enabled=False`` (the default), the
    console handler still exists but only passes through log records that
    carry ``extra={"display": True}``. Operational messages such as
    "Flat store 83% full, cleaning chunk keys" can reach the user while
    routine tier chatter stays file-only.

Usage:
    from formcache.logging_config import configure_logging, log_display

    configure_logging(app_name="admin-console")

    import logging
    logger = logging.getLogger("admin-console.startup")
    log_display(logger, logging.INFO, "Cache ready (%s)", readiness)
"""

import logging
import os
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

from .exceptions import ConfigError

DEFAULT_LOGGING_CONFIG: dict[str, Any] = {
    "console_enabled": False,
    "console_level": "WARNING",
    "console_format": "%(levelname)s - %(message)s",
    "file_enabled": True,
    "file_level": "DEBUG",
    "file_directory": "~/.local/share/formcache/logs",
    "file_mode": "per_run",
    "file_name_pattern": "{app}_{timestamp:%Y%m%d_%H%M%S}.log",
    "file_single_name": "{app}.log",
    "file_format": "%(asctime)s [%(levelname)-8s] %(name)-30s - %(message)s (%(filename)s:%(lineno)d)",
    "rotation_max_bytes": 10 * 1024 * 1024,  # 10 MB
    "rotation_backup_count": 5,
    "display_min_level": "INFO",
    "components": {
        "formcache": "INFO",
        "asyncio": "WARNING",
        "aiosqlite": "WARNING",
    },
}


def _resolve_level(value: str | int, default: int) -> int:
    if isinstance(value, int):
        return value
    level = logging.getLevelName(value.upper())
    return level if isinstance(level, int) else default


class DisplayFilter(logging.Filter):
    """Controls which log records pass through to the console handler.

    When the console is globally enabled everything passes and the handler
    level does the filtering. Otherwise only records with
    ``record.display = True`` at or above ``display_min_level`` pass.
    """

    def __init__(
        self,
        console_globally_enabled: bool = False,
        display_min_level: int = logging.INFO,
    ) -> None:
        super().__init__()
        self.console_globally_enabled = console_globally_enabled
        self.display_min_level = display_min_level

    def filter(self, record: logging.LogRecord) -> bool:
        if self.console_globally_enabled:
            return True
        if getattr(record, "display", False):
            return record.levelno >= self.display_min_level
        return False


class UnifiedLoggingManager:
    """
    Singleton manager for the logging setup.

    Ensures logging is only configured once per process and provides
    methods for runtime adjustment of log levels.
    """

    _instance: Optional["UnifiedLoggingManager"] = None
    _configured: bool = False
    _log_file_path: Path | None = None
    _console_handler: logging.Handler | None = None
    _file_handler: logging.Handler | None = None

    def __new__(cls) -> "UnifiedLoggingManager":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    @classmethod
    def get_instance(cls) -> "UnifiedLoggingManager":
        """Get the singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def is_configured(cls) -> bool:
        return cls._configured

    @classmethod
    def get_log_file_path(cls) -> Path | None:
        return cls._log_file_path

    def configure(
        self,
        app_name: str = "formcache",
        config: dict[str, Any] | None = None,
        config_file_path: str | Path | None = None,
        force_reconfigure: bool = False,
    ) -> Path:
        """
        Configure logging for the application.

        Args:
            app_name: Name of the application (used in log filename)
            config: Logging configuration dictionary
            config_file_path: TOML file with a ``[logging]`` table (if config not provided)
            force_reconfigure: If True, reconfigure even if already configured

        Returns:
            Path to the log file, or ``/dev/null`` when file logging is off
        """
        if self._configured and not force_reconfigure:
            return self._log_file_path or Path("/dev/null")

        log_config = self._load_config(config, config_file_path)

        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
            handler.close()
        root_logger.setLevel(logging.DEBUG)

        console_globally_enabled = log_config.get("console_enabled", False)
        display_filter = DisplayFilter(
            console_globally_enabled=console_globally_enabled,
            display_min_level=_resolve_level(log_config.get("display_min_level", "INFO"), logging.INFO),
        )

        self._console_handler = self._create_console_handler(log_config)
        if not console_globally_enabled:
            # The filter is the only gate while the console is "off".
            self._console_handler.setLevel(logging.DEBUG)
        self._console_handler.addFilter(display_filter)
        root_logger.addHandler(self._console_handler)

        self._file_handler = None
        self._log_file_path = None
        if log_config.get("file_enabled", True):
            self._file_handler, self._log_file_path = self._create_file_handler(log_config, app_name)
            if self._file_handler:
                root_logger.addHandler(self._file_handler)

        for component_name, level_str in log_config.get("components", {}).items():
            self.set_component_level(component_name, level_str)

        UnifiedLoggingManager._configured = True
        UnifiedLoggingManager._log_file_path = self._log_file_path
        if self._log_file_path:
            logging.getLogger(__name__).debug("Logging configured. Log file: %s", self._log_file_path)

        return self._log_file_path or Path("/dev/null")

    def _load_config(
        self, config: dict[str, Any] | None, config_file_path: str | Path | None
    ) -> dict[str, Any]:
        if config is not None:
            return {**DEFAULT_LOGGING_CONFIG, **config}

        if config_file_path:
            from .config import read_toml

            try:
                section = read_toml(config_file_path).get("logging", {})
            except ConfigError as e:
                sys.stderr.write(f"Warning: {e}; using default logging config\n")
                section = {}
            return {**DEFAULT_LOGGING_CONFIG, **section}

        return DEFAULT_LOGGING_CONFIG.copy()

    def _create_console_handler(self, config: dict[str, Any]) -> logging.Handler:
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(_resolve_level(config.get("console_level", "WARNING"), logging.WARNING))
        handler.setFormatter(logging.Formatter(
            config.get("console_format", DEFAULT_LOGGING_CONFIG["console_format"])
        ))
        return handler

    def _create_file_handler(
        self, config: dict[str, Any], app_name: str
    ) -> tuple[logging.Handler | None, Path | None]:
        """Create the file handler: one file per run, or a single rotating file."""
        log_dir = Path(os.path.expanduser(
            config.get("file_directory", DEFAULT_LOGGING_CONFIG["file_directory"])
        ))
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            sys.stderr.write(f"Warning: Cannot create log directory {log_dir}: {e}\n")
            return None, None

        handler: logging.Handler
        try:
            if config.get("file_mode", "per_run") == "single":
                log_file_path = log_dir / config.get("file_single_name", "{app}.log").format(app=app_name)
                handler = RotatingFileHandler(
                    log_file_path,
                    maxBytes=config.get("rotation_max_bytes", 10 * 1024 * 1024),
                    backupCount=config.get("rotation_backup_count", 5),
                    encoding="utf-8",
                )
            else:
                pattern = config.get("file_name_pattern", DEFAULT_LOGGING_CONFIG["file_name_pattern"])
                log_file_path = log_dir / pattern.format(app=app_name, timestamp=datetime.now())
                handler = logging.FileHandler(log_file_path, encoding="utf-8")
        except OSError as e:
            sys.stderr.write(f"Warning: Cannot create log file in {log_dir}: {e}\n")
            return None, None

        handler.setLevel(_resolve_level(config.get("file_level", "DEBUG"), logging.DEBUG))
        handler.setFormatter(logging.Formatter(
            config.get("file_format", DEFAULT_LOGGING_CONFIG["file_format"])
        ))
        return handler, log_file_path

    def set_component_level(self, component: str, level: str | int) -> None:
        """Change a specific component's log level at runtime."""
        resolved = _resolve_level(level, -1)
        if resolved >= 0:
            logging.getLogger(component).setLevel(resolved)


def configure_logging(
    app_name: str = "formcache",
    config: dict[str, Any] | None = None,
    config_file_path: str | Path | None = None,
    force_reconfigure: bool = False,
) -> Path:
    """
    Configure logging for the application.

    Call this early in application startup, before building the cache.

    Example:
        configure_logging(
            app_name="admin-console",
            config={"console_enabled": True, "file_enabled": False},
        )
    """
    return UnifiedLoggingManager.get_instance().configure(
        app_name=app_name,
        config=config,
        config_file_path=config_file_path,
        force_reconfigure=force_reconfigure,
    )


def log_display(
    logger: logging.Logger,
    level: int,
    msg: str,
    *args: Any,
    **kwargs: Any,
) -> None:
    """Log a message that also reaches the console in silent mode.

    The ``extra`` kwarg is merged rather than replaced.
    """
    extra = kwargs.pop("extra", None) or {}
    extra["display"] = True
    logger.log(level, msg, *args, extra=extra, **kwargs)


def get_log_file_path() -> Path | None:
    return UnifiedLoggingManager.get_log_file_path()


def set_component_level(component: str, level: str | int) -> None:
    UnifiedLoggingManager.get_instance().set_component_level(component, level)
