# =============================================================================
# File: chatsync/config/logging_config.py
# Description: Logging configuration using the Rich framework
# =============================================================================

"""
Logging for chatsync processes.

Handler selection in setup_logging():
    LOG_JSON_FORMAT=true        -> one JSON object per line (ProductionFormatter)
    TTY or FORCE_COLOR=true     -> ChatSyncRichHandler
    otherwise                   -> plain stream handler
    LOG_FILE=<path>             -> additional rotating plain-text file

Per-logger overrides: LOGLEVEL_CHATSYNC_REALTIME_CHANGE_FEED=DEBUG
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from typing import Dict, Mapping, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.theme import Theme


def get_env_bool(key: str, default: bool = False) -> bool:
    value = os.getenv(key, '').lower()
    return value in ('true', '1', 'yes', 'on') if value else default


def get_env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


CHATSYNC_THEME = Theme({
    "debug": "magenta dim",
    "info": "green",
    "warning": "dark_goldenrod",
    "error": "red",
    "critical": "bold red",
    "area": "grey50",
})

PLAIN_FORMAT = "[%(asctime)s] [%(levelname)-8s] [%(name)s] %(message)s"
PLAIN_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Library loggers quieted by default; chatsync areas stay at INFO
NOISY_LOGGERS: Dict[str, int] = {
    "asyncio": logging.WARNING,
    "asyncpg": logging.WARNING,
    "redis": logging.WARNING,
    "prometheus_client": logging.WARNING,
    "chatsync.realtime.change_feed": logging.INFO,
    "chatsync.infra.pg_client": logging.INFO,
}

# LogRecord attributes copied into JSON output when passed via `extra=`
CONTEXT_FIELDS = ("user_id", "chat_id", "topic", "command")


class ChatSyncRichHandler(RichHandler):
    """One line per record: time, level, area (logger name minus 'chatsync.'), message"""

    def __init__(self, *args, **kwargs):
        kwargs.setdefault('show_time', False)
        kwargs.setdefault('show_level', False)
        kwargs.setdefault('show_path', False)
        kwargs.setdefault('markup', True)
        kwargs.setdefault('rich_tracebacks', True)
        super().__init__(*args, **kwargs)

    @staticmethod
    def area(logger_name: str) -> str:
        if logger_name.startswith("chatsync."):
            return logger_name[len("chatsync."):]
        return logger_name

    def format(self, record: logging.LogRecord) -> str:
        style = record.levelname.lower()
        stamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        return (
            f"{stamp} [{style}]{record.levelname:>8}[/{style}] "
            f"[area]{self.area(record.name):<28}[/area] {record.getMessage()}"
        )

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.console.print(self.format(record), soft_wrap=True, highlight=False)
            if record.exc_info:
                self.console.print_exception()
        except Exception:
            self.handleError(record)


class ProductionFormatter(logging.Formatter):
    """JSON lines for log shippers"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "line": f"{record.module}:{record.lineno}",
        }
        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                entry[field] = str(getattr(record, field))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def get_logger_level_from_env(logger_name: str, default_level: int) -> int:
    """LOGLEVEL_<LOGGER_NAME> (dots become underscores) or the default."""
    env_name = f"LOGLEVEL_{logger_name.replace('.', '_').upper()}"
    level = logging.getLevelName(os.getenv(env_name, '').upper() or default_level)
    return level if isinstance(level, int) else default_level


def _console_handler(enable_json: bool) -> logging.Handler:
    if enable_json:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(ProductionFormatter())
        return handler

    force_color = get_env_bool("FORCE_COLOR", False)
    if force_color or sys.stdout.isatty():
        console = Console(
            theme=CHATSYNC_THEME,
            force_terminal=force_color,
            width=get_env_int('LOG_CONSOLE_WIDTH', 0) or None,
        )
        return ChatSyncRichHandler(console=console)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(PLAIN_FORMAT, datefmt=PLAIN_DATEFMT))
    return handler


def _file_handler(log_file: str) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=get_env_int('LOG_MAX_SIZE_MB', 100) * 1024 * 1024,
        backupCount=get_env_int('LOG_BACKUP_COUNT', 5),
        encoding='utf-8',
    )
    handler.setFormatter(logging.Formatter(PLAIN_FORMAT, datefmt=PLAIN_DATEFMT))
    return handler


def setup_logging(
        service_name: str = "chatsync",
        log_level: Optional[str] = None,
        log_file: Optional[str] = None,
        enable_json: Optional[bool] = None,
) -> None:
    """
    Replace the root handlers with chatsync's.

    Args:
        service_name: Prefix of the startup logger
        log_level: Root level (default: LOG_LEVEL env or INFO)
        log_file: Rotating log file (default: LOG_FILE env)
        enable_json: JSON output (default: LOG_JSON_FORMAT env)
    """
    if enable_json is None:
        enable_json = get_env_bool('LOG_JSON_FORMAT', False)
    log_file = log_file or os.getenv("LOG_FILE")

    root_logger = logging.getLogger()
    root_logger.setLevel((log_level or os.getenv("LOG_LEVEL", "INFO")).upper())
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    root_logger.addHandler(_console_handler(enable_json))
    if log_file:
        root_logger.addHandler(_file_handler(log_file))

    for logger_name, default_level in NOISY_LOGGERS.items():
        logging.getLogger(logger_name).setLevel(get_logger_level_from_env(logger_name, default_level))

    logging.getLogger(f"{service_name}.startup").debug(
        f"Logging configured (json={enable_json}, file={log_file or '-'})"
    )


def get_logger(name: str) -> logging.Logger:
    """Logger by name; convention is "chatsync.<area>"."""
    return logging.getLogger(name)


def log_startup_summary(logger: logging.Logger, title: str, rows: Mapping[str, str]) -> None:
    """
    Component/status table after startup. Rendered as a Rich table when a
    ChatSyncRichHandler is installed, one INFO line per row otherwise.
    """
    rich_handler = next(
        (h for h in logging.getLogger().handlers if isinstance(h, ChatSyncRichHandler)), None
    )
    if rich_handler is None:
        for component, status in rows.items():
            logger.info(f"{title}: {component} {status}")
        return

    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Component")
    table.add_column("Status")
    for component, status in rows.items():
        table.add_row(component, status)
    rich_handler.console.print(table)
