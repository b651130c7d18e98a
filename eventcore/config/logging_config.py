# =============================================================================
# File: eventcore/config/logging_config.py
# Description: Logging configuration using the Rich framework
# =============================================================================

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime
from typing import Any, Dict, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.theme import Theme

PLAIN_FORMAT = "[%(asctime)s] [%(levelname)-8s] [%(name)-40s] %(message)s"
PLAIN_DATEFMT = "%Y-%m-%d %H:%M:%S"


def get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(key, '').lower()
    return value in ('true', '1', 'yes', 'on') if value else default


def get_env_int(key: str, default: int) -> int:
    """Get integer value from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


EVENTCORE_THEME = Theme({
    "debug": "magenta dim",
    "info": "green",
    "warning": "dark_goldenrod",
    "error": "red",
    "critical": "bold red",
    "timestamp": "grey70",
    "logger_name": "grey35",
    "message": "grey85",
    "table.header": "white on grey23",
})


class ProductionFormatter(logging.Formatter):
    """JSON formatter for production environments"""

    EXTRA_FIELDS = ("command_id", "query_id", "aggregate_id", "saga_id", "correlation_id", "error_kind")

    def format(self, record: logging.LogRecord) -> str:
        log_obj: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if get_env_bool('LOG_JSON_INCLUDE_EXTRAS', True):
            for field_name in self.EXTRA_FIELDS:
                if hasattr(record, field_name):
                    log_obj[field_name] = str(getattr(record, field_name))

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj)


def get_logger_level_from_env(logger_name: str, default_level: int) -> int:
    """
    Get logger level from environment variable.

    "eventcore.cqrs.command" -> LOGLEVEL_EVENTCORE_CQRS_COMMAND
    """
    env_name = f"LOGLEVEL_{logger_name.replace('.', '_').upper()}"
    level_str = os.getenv(env_name, '').upper()
    if level_str:
        level_map = {
            'DEBUG': logging.DEBUG,
            'INFO': logging.INFO,
            'WARNING': logging.WARNING,
            'WARN': logging.WARNING,
            'ERROR': logging.ERROR,
            'CRITICAL': logging.CRITICAL,
        }
        return level_map.get(level_str, default_level)
    return default_level


def setup_logging(
        service_name: str = "eventcore",
        log_level: Optional[str] = None,
        log_file: Optional[str] = None,
        enable_json: Optional[bool] = None,
        rich_tracebacks: bool = True,
) -> None:
    """
    Configure logging for a process using eventcore.

    Args:
        service_name: Name of the service (used for the startup logger)
        log_level: Override log level (defaults to LOG_LEVEL or INFO)
        log_file: Optional rotating log file path (defaults to LOG_FILE)
        enable_json: Enable JSON formatting (defaults to LOG_JSON_FORMAT)
        rich_tracebacks: Enable rich tracebacks on the console handler
    """
    level = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_file = log_file or os.getenv("LOG_FILE")

    if enable_json is None:
        enable_json = get_env_bool('LOG_JSON_FORMAT', False)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    use_rich = not enable_json and (sys.stdout.isatty() or get_env_bool("FORCE_COLOR", False))

    if use_rich:
        console = Console(
            theme=EVENTCORE_THEME,
            force_terminal=get_env_bool("FORCE_COLOR", False),
            width=get_env_int('LOG_CONSOLE_WIDTH', 0) or None,
        )
        rich_handler = RichHandler(
            console=console,
            rich_tracebacks=rich_tracebacks,
            show_path=False,
            markup=False,
            log_time_format="[%X]",
        )
        root_logger.addHandler(rich_handler)

    elif enable_json:
        json_handler = logging.StreamHandler(sys.stdout)
        json_handler.setFormatter(ProductionFormatter())
        root_logger.addHandler(json_handler)

    else:
        plain_handler = logging.StreamHandler(sys.stdout)
        plain_handler.setFormatter(logging.Formatter(PLAIN_FORMAT, datefmt=PLAIN_DATEFMT))
        root_logger.addHandler(plain_handler)

    if log_file:
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=get_env_int('LOG_MAX_SIZE_MB', 100) * 1024 * 1024,
            backupCount=get_env_int('LOG_BACKUP_COUNT', 5),
            encoding=os.getenv('LOG_FILE_ENCODING', 'utf-8'),
        )
        # Files always get the plain format
        file_handler.setFormatter(logging.Formatter(PLAIN_FORMAT, datefmt=PLAIN_DATEFMT))
        root_logger.addHandler(file_handler)

    default_noise_config = {
        "asyncio": logging.WARNING,
        "asyncpg": logging.WARNING,
        "redis": logging.WARNING,
        "prometheus_client": logging.WARNING,
        "eventcore.retry": logging.WARNING,
        "eventcore.circuit_breaker": logging.INFO,
        "eventcore.event_store": logging.INFO,
    }
    for logger_name, default_level in default_noise_config.items():
        logging.getLogger(logger_name).setLevel(get_logger_level_from_env(logger_name, default_level))

    logger = logging.getLogger(f"{service_name}.startup")
    logger.info(f"Logging configured for {service_name} service")


def log_metrics_table(logger: logging.Logger, title: str, metrics: Dict[str, Any]) -> None:
    """
    Log a metrics dict (bus, cache or DLQ statistics) as a table.

    Rendered with Rich when the root logger has a Rich console, otherwise
    as a single key=value line.
    """
    rich_handler = next((h for h in logging.getLogger().handlers if isinstance(h, RichHandler)), None)
    if rich_handler is None:
        flat = ", ".join(f"{k}={v}" for k, v in metrics.items())
        logger.info(f"{title}: {flat}")
        return

    table = Table(title=title, show_header=True, header_style="table.header")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    for key, value in metrics.items():
        table.add_row(str(key), str(value))
    rich_handler.console.print(table)
