"""
chatsync: poll-based message synchronization for chat clients.
"""

from chatsync.config import Settings, get_settings
from chatsync.errors import (
    OwnershipError,
    PermissionDeniedError,
    SyncError,
    TickOutcome,
    TransientError,
    TransportError,
)
from chatsync.logging_utils import setup_logging
from chatsync.profile_cache import ProfileCache
from chatsync.scheduler import PollScheduler, Transition, compute_delay
from chatsync.schemas import (
    ConnectionState,
    ConversationKey,
    Message,
    MessagePage,
    MessageRecord,
    Profile,
    ReferenceItem,
    SendPayload,
    SendStatus,
    UnreadCount,
)
from chatsync.store import MessageStore, ReconcileResult
from chatsync.sync import ConversationSync
from chatsync.transport import TransportClient

__version__ = "1.0.0"

__all__ = [
    "ConnectionState",
    "ConversationKey",
    "ConversationSync",
    "Message",
    "MessagePage",
    "MessageRecord",
    "MessageStore",
    "OwnershipError",
    "PermissionDeniedError",
    "PollScheduler",
    "Profile",
    "ProfileCache",
    "ReconcileResult",
    "ReferenceItem",
    "SendPayload",
    "SendStatus",
    "Settings",
    "SyncError",
    "TickOutcome",
    "TransientError",
    "TransportClient",
    "TransportError",
    "Transition",
    "UnreadCount",
    "compute_delay",
    "get_settings",
    "setup_logging",
]
