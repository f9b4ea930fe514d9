"""
utils/logger.py

Logging setup for the health monitor.

- All package loggers live under the "healing" namespace and are configured
  once by setup_logging(config).
- Colored console output via colorama, or JSON / pretty formats.
- Optional RotatingFileHandler (always JSON) for persistent logs.
- Custom HEAL level for remediation activity.
- SignalLogger subscribes to a SignalBus and logs every signal it sees.

Structured context fields (module, component, incident_id, correlation_id)
can be attached via `extra` or with get_logger_with_context().
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

from colorama import Back, Fore, Style, init as colorama_init

# Module-level logger for internal errors of the logging setup itself
logger = logging.getLogger(__name__)

# Initialize colorama (for Windows support)
colorama_init(autoreset=True)

ROOT_LOGGER_NAME = "healing"
LOGS_DIR = Path("logs")

# Remediation activity sits between INFO and WARNING
HEAL = 21
logging.addLevelName(HEAL, "HEAL")

_STANDARD_RECORD_ATTRS = {
    "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
    "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
    "created", "msecs", "relativeCreated", "thread", "threadName",
    "processName", "process", "taskName", "message", "asctime",
}


class ColorFormatter(logging.Formatter):
    """Formatter that adds simple color codes based on levelname."""

    LEVEL_COLORS = {
        "DEBUG": Fore.CYAN,
        "INFO": Fore.GREEN,
        "HEAL": Fore.MAGENTA,
        "WARNING": Fore.YELLOW,
        "ERROR": Fore.RED,
        "CRITICAL": Fore.WHITE + Back.RED,
    }

    def __init__(self, fmt=None, datefmt=None):
        default_fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        super().__init__(fmt or default_fmt, datefmt)

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, "")
        message = super().format(record)
        return f"{color}{message}{Style.RESET_ALL}"


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
        }

        # Extra fields passed via `extra=`
        for key, value in record.__dict__.items():
            if key not in _STANDARD_RECORD_ATTRS and key not in log_entry and value is not None:
                log_entry[key] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class PrettyFormatter(logging.Formatter):
    """Human-readable formatter for development."""

    CONTEXT_FIELDS = (
        ("correlation_id", "corr_id"),
        ("component", "component"),
        ("module_name", "module"),
        ("incident_id", "incident"),
    )

    def __init__(self, fmt=None, datefmt=None):
        default_fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        super().__init__(fmt or default_fmt, datefmt or "%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        context_parts = []
        for attr, label in self.CONTEXT_FIELDS:
            value = getattr(record, attr, None)
            if value:
                context_parts.append(f"{label}={value}")

        formatted = super().format(record)
        if context_parts:
            formatted = f"{formatted} ({' | '.join(context_parts)})"
        return formatted


class SignalLogger:
    """
    Logs every signal published on a SignalBus.

    Degradation, unhealthy and escalation signals are logged as warnings,
    remediation results at HEAL level and everything else at INFO.
    """

    def __init__(self, target: Optional[logging.Logger] = None):
        self.logger = target or get_logger(f"{ROOT_LOGGER_NAME}.signals")
        self.counts: Dict[str, int] = {}
        self._subscriptions: List[Any] = []

    def attach(self, bus) -> None:
        """Subscribe to every signal kind on ``bus``."""
        # Lazy import to avoid circular dependency
        from healing.events import SignalType

        self.detach()
        for kind in SignalType:
            self._subscriptions.append(bus.subscribe(kind, self.handle_signal))

    def detach(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()

    def handle_signal(self, event) -> None:
        from healing.events import SignalType

        kind = event.kind
        self.counts[kind.value] = self.counts.get(kind.value, 0) + 1
        extra = {"signal": event.to_dict()}
        module_name = getattr(event, "module_name", None)
        if module_name:
            extra["module_name"] = module_name

        if kind in (SignalType.DEGRADED, SignalType.UNHEALTHY):
            self.logger.warning(
                f"Module {event.module_name} is {event.current_status.value} "
                f"({event.consecutive_failures} consecutive failures): {event.error}",
                extra=extra,
            )
        elif kind == SignalType.RECOVERED:
            self.logger.info(f"Module {event.module_name} recovered", extra=extra)
        elif kind == SignalType.ESCALATION:
            self.logger.warning(
                f"Module {event.module_name} escalated after {event.attempts} remediation attempts",
                extra=extra,
            )
        elif kind == SignalType.REMEDIATION:
            result = "succeeded" if event.success else "failed"
            self.logger.log(HEAL, f"Remediation of {event.module_name} {result}: {event.message}", extra=extra)
        else:
            extra["incident_id"] = event.incident.id
            self.logger.info(
                f"Incident {event.incident.id} {kind.value.replace('incident_', '')} "
                f"[{event.incident.severity.value}]",
                extra=extra,
            )

    def get_stats(self) -> Dict[str, int]:
        return dict(self.counts)


def setup_logging(config: Optional[Dict[str, Any]] = None) -> logging.Logger:
    """
    Configure the "healing" logger hierarchy and return its root logger.

    Supports environment variables:
    - LOG_LEVEL: DEBUG, INFO, WARNING, ERROR, CRITICAL (default: INFO)
    - LOG_FILE: Path to log file (default: logs/healing.log)
    - LOG_FORMAT: json, pretty, or color (default: color)

    Args:
        config: Optional dict with logging configuration. Expected keys:
            - level (str or int)
            - file_logging (bool)
            - log_file (str)
            - max_size (int)
            - backup_count (int)
            - console (bool)
            - format (str): json, pretty, or color

    Returns:
        The configured "healing" logger
    """
    env_level = os.getenv("LOG_LEVEL", "INFO").upper()
    env_log_file = os.getenv("LOG_FILE")
    env_format = os.getenv("LOG_FORMAT", "color").lower()

    valid_levels = ["DEBUG", "INFO", "HEAL", "WARNING", "ERROR", "CRITICAL"]
    if env_level not in valid_levels:
        logger.warning(f"Invalid LOG_LEVEL '{env_level}', using INFO")
        env_level = "INFO"

    cfg = {
        "level": env_level,
        "file_logging": False,
        "log_file": env_log_file or str(LOGS_DIR / "healing.log"),
        "max_size": 10 * 1024 * 1024,
        "backup_count": 5,
        "console": True,
        "format": env_format,
    }
    if config:
        cfg.update({k: v for k, v in config.items() if v is not None})

    level = cfg.get("level", "INFO")
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(level)

    # Remove existing handlers and reconfigure to avoid duplication
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()

    log_format = cfg.get("format", "color")

    if cfg.get("console", True):
        console_handler = logging.StreamHandler(sys.stdout)
        if log_format == "json":
            console_handler.setFormatter(JSONFormatter())
        elif log_format == "pretty":
            console_handler.setFormatter(PrettyFormatter())
        else:
            console_handler.setFormatter(ColorFormatter())
        console_handler.setLevel(level)
        root.addHandler(console_handler)

    # File handler (always JSON for structured logging)
    if cfg.get("file_logging", False):
        log_file = Path(cfg.get("log_file"))
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                str(log_file),
                maxBytes=int(cfg.get("max_size", 10 * 1024 * 1024)),
                backupCount=int(cfg.get("backup_count", 5)),
                encoding="utf-8",
            )
        except OSError as e:
            logger.exception(f"Failed to open log file {log_file}: {e}")
        else:
            file_handler.setFormatter(JSONFormatter())
            file_handler.setLevel(level)
            root.addHandler(file_handler)

    # Prevent propagation to root handlers to avoid duplicate log messages
    root.propagate = False
    return root


def get_logger(name: str) -> logging.Logger:
    """Return a standard logger with the given name."""
    return logging.getLogger(name)


def generate_correlation_id() -> str:
    """Return a short correlation id for tracing log messages across components."""
    return uuid.uuid4().hex


def get_logger_with_context(
    module_name: Optional[str] = None,
    component: Optional[str] = None,
    incident_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> logging.LoggerAdapter:
    """
    Return a LoggerAdapter that attaches structured context fields to all records.

    Usage:
        adapter = get_logger_with_context(
            module_name="storage",
            component="auto_healing",
            correlation_id=generate_correlation_id(),
        )
        adapter.info("Restart requested")
    """
    base = logging.getLogger(ROOT_LOGGER_NAME if not component else f"{ROOT_LOGGER_NAME}.{component}")

    extra = {}
    if module_name:
        extra["module_name"] = module_name
    if component:
        extra["component"] = component
    if incident_id:
        extra["incident_id"] = incident_id
    if correlation_id:
        extra["correlation_id"] = correlation_id

    return logging.LoggerAdapter(base, extra)
