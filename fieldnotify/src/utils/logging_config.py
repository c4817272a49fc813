"""
Structured logging configuration for the field notification engine.

Provides JSON-formatted logging with file rotation for production environments
and human-readable console logging for development.

Loggers:
- services: Notification creation pipeline, quota gate, device registry
- delivery: Push provider calls and delivery outcomes
- escalation: Escalation sweeps and supervisor notifications
- sync: Offline status reconciliation and read receipts
- db: Database sessions and maintenance reapers
"""

import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import Dict, Optional
import json
from datetime import datetime, timezone


LOGGER_NAMES = ["services", "delivery", "escalation", "sync", "db"]


class JSONFormatter(logging.Formatter):
    """
    Custom formatter that outputs logs as JSON for structured logging.

    Each log record includes:
    - timestamp: ISO 8601 format
    - level: Log level (INFO, ERROR, etc.)
    - logger: Logger name (services, delivery, escalation, sync, db)
    - message: Log message
    - module, function, line: Call site
    - Any fields passed through ``extra={...}``
    """

    # Attributes every LogRecord carries; anything else came from ``extra``
    _RESERVED = frozenset(
        logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys()
    ) | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON string."""
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in self._RESERVED and not key.startswith("_"):
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """
    Human-readable formatter for console output in development.

    Format: [TIMESTAMP] LEVEL - LOGGER - MESSAGE
    Example: [2025-12-29 10:30:45] INFO - fieldnotify.delivery - Push delivered
    """

    def __init__(self):
        super().__init__(
            fmt="[%(asctime)s] %(levelname)s - %(name)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )


def _get_log_level() -> int:
    """
    Get log level from environment variable.

    Environment Variables:
        FIELDNOTIFY_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR or CRITICAL (default INFO)
    """
    level_str = os.environ.get("FIELDNOTIFY_LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_str, logging.INFO)


def _get_log_dir() -> Path:
    """
    Get log directory path from environment variable or use default.

    Environment Variables:
        FIELDNOTIFY_LOG_DIR: Custom log directory path (default ./logs)
    """
    log_dir = Path(os.environ.get("FIELDNOTIFY_LOG_DIR", "logs"))
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def _is_production() -> bool:
    """
    Check if running in production environment.

    Environment Variables:
        FIELDNOTIFY_ENV: production, development or test (default development)
    """
    return os.environ.get("FIELDNOTIFY_ENV", "development").lower() == "production"


def configure_logging() -> Dict[str, logging.Logger]:
    """
    Configure structured logging for the notification engine.

    Behavior:
    - Production (FIELDNOTIFY_ENV=production):
      * JSON-formatted logs to one rotating file per logger
      * File rotation: 10MB max size, 5 backup files
    - Development (default):
      * Human-readable console output, no file logging

    Returns:
        Dictionary mapping short logger names to configured Logger instances
    """
    log_level = _get_log_level()
    is_prod = _is_production()
    log_dir = _get_log_dir() if is_prod else None

    loggers = {}

    for logger_name in LOGGER_NAMES:
        logger = logging.getLogger(f"fieldnotify.{logger_name}")
        logger.setLevel(log_level)
        logger.propagate = False
        logger.handlers.clear()

        if is_prod:
            file_handler = logging.handlers.RotatingFileHandler(
                log_dir / f"{logger_name}.log",
                maxBytes=10 * 1024 * 1024,
                backupCount=5,
                encoding="utf-8"
            )
            file_handler.setLevel(log_level)
            file_handler.setFormatter(JSONFormatter())
            logger.addHandler(file_handler)
        else:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(log_level)
            console_handler.setFormatter(ConsoleFormatter())
            logger.addHandler(console_handler)

        loggers[logger_name] = logger

    return loggers


_loggers: Optional[Dict[str, logging.Logger]] = None


def get_logger(name: str) -> logging.Logger:
    """
    Get a configured logger by name.

    Args:
        name: Logger name (services, delivery, escalation, sync, db)

    Returns:
        Configured Logger instance

    Raises:
        ValueError: If logger name is not recognized

    Example:
        >>> logger = get_logger("delivery")
        >>> logger.info("Push delivered", extra={"notification_id": 42})
    """
    global _loggers

    if _loggers is None:
        _loggers = configure_logging()

    if name not in _loggers:
        raise ValueError(
            f"Unknown logger name: {name}. "
            f"Valid names: {', '.join(_loggers.keys())}"
        )

    return _loggers[name]


def init_logging() -> Dict[str, logging.Logger]:
    """Initialize logging configuration (called once by the engine or CLI)."""
    global _loggers
    _loggers = configure_logging()
    return _loggers
