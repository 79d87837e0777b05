import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator, Optional

from pythonjsonlogger import jsonlogger

from chatsync.config import get_settings


# Context variable to store the conversation being synchronized by the current task
conversation_id_ctx: ContextVar[Optional[str]] = ContextVar("conversation_id", default=None)


def get_conversation_id() -> Optional[str]:
    """Get the current conversation ID from context."""
    return conversation_id_ctx.get()


@contextmanager
def conversation_context(conversation_id: str) -> Iterator[None]:
    """
    Tag every log record emitted inside the block with ``conversation_id``.

    asyncio tasks copy the context when they are created, so a poll task
    started inside the block keeps the tag for its whole lifetime.
    """
    token = conversation_id_ctx.set(conversation_id)
    try:
        yield
    finally:
        conversation_id_ctx.reset(token)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter to ensure ISO-8601 timestamps and conversation_id."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        # Ensure timestamp is in ISO-8601 format with Z suffix
        if not log_record.get('ts'):
            log_record['ts'] = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        # Add conversation_id from context if available and not already present
        if 'conversation_id' not in log_record:
            conversation_id = conversation_id_ctx.get()
            if conversation_id:
                log_record['conversation_id'] = conversation_id


def setup_logging(log_level: Optional[str] = None):
    """
    Setup structured JSON logging for an application embedding chatsync.

    The library itself never calls this; it only emits records through
    module-level loggers.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL),
            defaults to ``LOG_LEVEL`` from the settings
    """
    if log_level is None:
        log_level = get_settings().LOG_LEVEL

    # Configure root logger
    logger = logging.getLogger()
    logger.setLevel(log_level.upper())

    # Remove existing handlers
    logger.handlers = []

    # Create JSON handler for stdout
    json_handler = logging.StreamHandler(sys.stdout)

    # Use custom JSON formatter
    formatter = CustomJsonFormatter(
        '%(ts)s %(level)s %(name)s %(message)s'
    )
    json_handler.setFormatter(formatter)

    logger.addHandler(json_handler)

    # httpx logs every request at INFO; keep it quiet unless debugging
    if logger.level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)

    return logger
