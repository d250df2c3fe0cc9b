"""
Centralized logging manager for the application.

Every logger writes to the console (stdout). When `LOKI_ENABLED` is set the
logger additionally ships records to Loki through `LokiLoggerHandler`.

Loki Downtime Handling:
----------------------
- If the Loki handler cannot be attached, logs still reach the console.
- Logs emitted while Loki is unreachable are not resent when it comes back;
  use a log shipper (e.g., Promtail) where delivery guarantees matter.

Usage:
- Use get_logger() to obtain a logger instance, optionally with a component
  prefix such as "[UndoLog]".
"""

import logging
import sys

from loki_logger_handler.loki_logger_handler import LokiLoggerHandler

from mongo_auto_rollback.config import settings

LOKI_TAGS: dict[str, str] = {
    "app": settings.APP_NAME,
    "env": settings.ENV,
}
LOG_LEVEL: str = settings.LOG_LEVEL
DEFAULT_LOGGER_NAME: str = "Mongo_Auto_Rollback"


class PrefixFilter(logging.Filter):
    """Prepend a component prefix to every message passing through a logger."""

    def __init__(self, prefix: str):
        super().__init__()
        self.prefix = prefix

    def filter(self, record: logging.LogRecord) -> bool:
        if self.prefix and not getattr(record, "_prefix_applied", False):
            record.msg = f"{self.prefix} {record.msg}"
            record._prefix_applied = True
        return True


def _ensure_console_handler(logger: logging.Logger, formatter: logging.Formatter) -> bool:
    """
    Ensure logger has a StreamHandler for console output.

    Args:
        logger: The logger instance to check and modify
        formatter: The formatter to apply to the StreamHandler

    Returns:
        bool: True if a new StreamHandler was added, False if one already existed
    """
    for handler in logger.handlers:
        if isinstance(handler, logging.StreamHandler) and handler.stream is sys.stdout:
            return False

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logger.level)
    logger.addHandler(console_handler)
    return True


def _ensure_loki_handler(logger: logging.Logger) -> None:
    if any(isinstance(h, LokiLoggerHandler) for h in logger.handlers):
        return
    try:
        loki_handler = LokiLoggerHandler(
            url=settings.LOKI_URL,
            labels=LOKI_TAGS,
            auth=None,
            compressed=settings.LOKI_COMPRESS,
        )
    except (ValueError, OSError) as e:
        logger.error("[LoggingManager] Failed to attach LokiLoggerHandler: %s", e, exc_info=True)
        return
    logger.addHandler(loki_handler)
    logger.info("[LoggingManager] LokiLoggerHandler attached to logger '%s' (url=%s)", logger.name, settings.LOKI_URL)


def get_logger(name: str = DEFAULT_LOGGER_NAME, add_loki: bool = True, prefix: str = "") -> logging.Logger:
    """
    Get a configured logger.

    Loggers created with a prefix are children of `name`, so each component
    keeps its own prefix while sharing the parent's handlers.

    Args:
        name: Base logger name
        add_loki: Attach the Loki handler when Loki is enabled in settings
        prefix: Component prefix prepended to every message

    Returns:
        logging.Logger: The configured logger
    """
    base_logger = logging.getLogger(name)
    base_logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

    formatter = logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")
    if _ensure_console_handler(base_logger, formatter):
        base_logger.debug("[LoggingManager] Console StreamHandler attached to logger '%s'", name)

    if add_loki and settings.LOKI_ENABLED:
        _ensure_loki_handler(base_logger)

    if not prefix:
        return base_logger

    child_name = prefix.strip("[] ").replace(" ", "_") or "default"
    logger = base_logger.getChild(child_name)
    if not any(isinstance(f, PrefixFilter) for f in logger.filters):
        logger.addFilter(PrefixFilter(prefix))
    return logger
