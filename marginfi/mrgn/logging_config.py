"""
Logging configuration for the marginfi client.

The library itself only creates module loggers; hosts call `setup_logging`
(or `setup_logging_from_env`) once. Records can carry key/value context,
which the formatter appends after the message:

    12:00:01 | INFO     | swap            | Built LOOP | txs=2 bytes=1104 keys=41
"""

import sys
import logging
from pathlib import Path
from logging.handlers import TimedRotatingFileHandler
from typing import Optional


LOG_FILE = "marginfi.log"
ERROR_LOG_FILE = "marginfi_errors.log"


class StructuredFormatter(logging.Formatter):
    """Adds `component` (last logger name segment) and appends `extra_context`."""

    def format(self, record: logging.LogRecord) -> str:
        record.component = record.name.rsplit('.', 1)[-1]
        formatted = super().format(record)

        context = getattr(record, 'extra_context', None)
        if context:
            formatted += " | " + " ".join(f"{k}={v}" for k, v in context.items())
        return formatted


def _rotating_handler(path: Path, level: int, retention_days: int) -> TimedRotatingFileHandler:
    handler = TimedRotatingFileHandler(
        filename=str(path),
        when='midnight',
        backupCount=retention_days,
        encoding='utf-8',
    )
    handler.setLevel(level)
    handler.suffix = "%Y-%m-%d"
    return handler


def setup_logging(
    log_dir: Optional[str] = "logs",
    log_level: str = "INFO",
    console_level: str = "INFO",
    retention_days: int = 30,
) -> logging.Logger:
    """
    Configure the `mrgn` and `integrations` loggers for a host application.

    Args:
        log_dir: Directory for rotating log files; None logs to the console only
        log_level: File logging level
        console_level: Console logging level
        retention_days: Rotated files to keep

    Returns:
        The `mrgn` logger
    """
    formatter = StructuredFormatter(
        fmt='%(asctime)s | %(levelname)-8s | %(component)-15s | %(message)s',
        datefmt='%H:%M:%S',
    )

    handlers = []
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(getattr(logging, console_level.upper()))
    handlers.append(console)

    if log_dir is not None:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        handlers.append(_rotating_handler(log_path / LOG_FILE, getattr(logging, log_level.upper()), retention_days))
        handlers.append(_rotating_handler(log_path / ERROR_LOG_FILE, logging.ERROR, retention_days))

    for name in ("mrgn", "integrations"):
        package_logger = logging.getLogger(name)
        package_logger.setLevel(logging.DEBUG)
        package_logger.handlers.clear()
        for handler in handlers:
            handler.setFormatter(formatter)
            package_logger.addHandler(handler)

    root = logging.getLogger("mrgn")
    root.info(f"Logging initialized: dir={log_dir} level={log_level} console={console_level}")
    return root


def setup_logging_from_env(env) -> logging.Logger:
    """`setup_logging` driven by LOG_DIR / LOG_LEVEL / CONSOLE_LOG_LEVEL of an EnvironmentConfig."""
    return setup_logging(
        log_dir=env.get("LOG_DIR"),
        log_level=env.get("LOG_LEVEL"),
        console_level=env.get("CONSOLE_LOG_LEVEL"),
    )


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    **context
):
    """
    Log `message` with key/value context.

    Args:
        logger: Logger instance
        level: Log level (logging.INFO, logging.ERROR, etc.)
        message: Log message
        **context: Pairs rendered after the message; None values are dropped
    """
    context = {k: v for k, v in context.items() if v is not None}
    extra = {'extra_context': context} if context else {}
    logger.log(level, message, extra=extra)
