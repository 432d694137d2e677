"""
Central logging configuration for hearthcal.

Keeps engine modules at INFO (DEBUG on request), quiets chatty third-party
loggers, and stamps every record with the id of the backfill or drift run it
belongs to.
"""

import logging
import os
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Optional

# Operation id of the backfill/drift run in progress, if any
operation_id_var: ContextVar[str] = ContextVar("operation_id", default="")


def get_operation_id() -> str:
    """Return the current operation id, or ``"no-operation"`` outside a run."""
    return operation_id_var.get() or "no-operation"


@contextmanager
def operation_scope(name: str, operation_id: Optional[str] = None) -> Iterator[str]:
    """Tag log records emitted inside the block with an operation id.

    Args:
        name: Short operation label, e.g. ``"backfill"``
        operation_id: Explicit id; a random one is generated when omitted

    Yields:
        The operation id in force
    """
    op_id = operation_id or f"{name}-{uuid.uuid4().hex[:8]}"
    token = operation_id_var.set(op_id)
    try:
        yield op_id
    finally:
        operation_id_var.reset(token)


class OperationIdFilter(logging.Filter):
    """Add the operation id to all log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Add operation id to log record.

        Args:
            record: Log record to enhance

        Returns:
            True to allow record to be logged
        """
        record.operation_id = get_operation_id()
        return True


def configure_hearthcal_logging(
    debug_mode: bool = False, force_debug: Optional[bool] = None
) -> None:
    """
    Configure logging levels for hearthcal.

    Args:
        debug_mode: Whether to enable debug logging for hearthcal modules
        force_debug: Override debug mode setting (None to use env var detection)

    Environment Variables:
        HEARTHCAL_DEBUG: Set to '1', 'true', 'yes' to force debug logging
        HEARTHCAL_LOG_LEVEL: Override root log level (DEBUG, INFO, WARNING, ERROR)
    """
    env_debug = os.getenv("HEARTHCAL_DEBUG", "").lower() in ("1", "true", "yes")
    env_log_level = os.getenv("HEARTHCAL_LOG_LEVEL", "").upper()

    if force_debug is not None:
        final_debug = force_debug
    elif env_debug:
        final_debug = True
    else:
        final_debug = debug_mode

    root_level = logging.DEBUG if final_debug else logging.INFO
    if env_log_level in ("DEBUG", "INFO", "WARNING", "ERROR"):
        root_level = getattr(logging, env_log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(root_level)

    operation_filter = OperationIdFilter()

    if not root_logger.handlers:
        handler = logging.StreamHandler()
        handler.setLevel(root_level)
        formatter = logging.Formatter(
            "[%(asctime)s] [%(operation_id)s] %(levelname)s - %(name)s - %(message)s"
        )
        handler.setFormatter(formatter)
        handler.addFilter(operation_filter)
        root_logger.addHandler(handler)
    else:
        for existing_handler in root_logger.handlers:
            if not any(isinstance(f, OperationIdFilter) for f in existing_handler.filters):
                existing_handler.addFilter(operation_filter)

    logger_config: dict[str, int] = {
        "aiosqlite": logging.WARNING,  # Logs every proxied call at DEBUG
        "asyncio": logging.WARNING,
    }

    hearthcal_level = logging.DEBUG if final_debug else logging.INFO
    hearthcal_modules = [
        "hearthcal",
        "hearthcal.calendar",
        "hearthcal.domain",
        "hearthcal.storage",
    ]
    for module in hearthcal_modules:
        logger_config[module] = hearthcal_level

    for logger_name, level in logger_config.items():
        logging.getLogger(logger_name).setLevel(level)

    if final_debug:
        root_logger.info("Debug logging enabled for hearthcal modules.")
    else:
        root_logger.debug("Production logging configuration applied.")


def get_logging_status() -> dict[str, str]:
    """
    Get current logging configuration status.

    Returns:
        Dictionary mapping logger names to their current levels
    """
    status = {"root": logging.getLevelName(logging.getLogger().level)}
    for logger_name in ("hearthcal", "aiosqlite", "asyncio"):
        status[logger_name] = logging.getLevelName(logging.getLogger(logger_name).level)
    return status
