"""
Utility functions shared by the store and the façade.
"""

import logging
import secrets
import string
import time
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

OPTIMISTIC_ID_PREFIX = "optimistic-"

_ID_ALPHABET = string.ascii_lowercase + string.digits


def utc_now() -> datetime:
    """Current instant as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so every instant is comparable."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_cursor(value: datetime) -> str:
    """
    Render a cursor instant the way the message API expects it.

    Args:
        value: boundary ``created_at``

    Returns:
        ISO-8601 UTC string with millisecond precision and ``Z`` suffix
    """
    return to_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def generate_optimistic_id() -> str:
    """
    Generate a placeholder id for a locally-originated message.

    Format: ``optimistic-<epoch ms>-<9 random chars>``. Server ids never
    carry the prefix, so a placeholder can never collide with a real id.
    """
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    optimistic_id = f"{OPTIMISTIC_ID_PREFIX}{int(time.time() * 1000)}-{suffix}"
    logger.debug(f"Generated optimistic id: {optimistic_id}")
    return optimistic_id


def is_optimistic_id(message_id: str) -> bool:
    return message_id.startswith(OPTIMISTIC_ID_PREFIX)
