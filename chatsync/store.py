"""
Reconciling Message Store.

Holds the client-side ordered view of one conversation and performs every
merge into it. Messages are treated as values: a mutation replaces the
``Message`` at its position with an updated copy, so lists previously handed
out by ``messages`` never change underneath the caller.

Ordering: ascending by ``(created_at, id)`` after every operation, ids unique.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, Iterator, Optional

from chatsync.errors import OwnershipError
from chatsync.schemas import Message, ReferenceItem, SendStatus, UnreadCount
from chatsync.utils import utc_now

logger = logging.getLogger(__name__)


def sort_key(message: Message) -> tuple[datetime, str]:
    return (message.created_at, message.id)


class ReconcileResult(str, Enum):
    """What ``reconcile_optimistic`` did with a placeholder."""
    REPLACED = "replaced"
    DEDUPLICATED = "deduplicated"
    FAILED = "failed"
    MISSING = "missing"


@dataclass(frozen=True)
class DeleteSnapshot:
    """Field values of a message before an optimistic delete, for rollback."""
    message_id: str
    message_text: Optional[str]
    deleted_at: Optional[datetime]
    changed_at: Optional[datetime]


class MessageStore:
    """
    Ordered, deduplicated collection of messages for one conversation.

    Attributes:
        backward_cursor: ``created_at`` of the oldest loaded message; only
            ever moves older
        has_more: whether older pages exist on the server
    """

    def __init__(self) -> None:
        self._messages: list[Message] = []
        self._positions: dict[str, int] = {}
        self.backward_cursor: Optional[datetime] = None
        self.has_more: bool = False

    # -------------------------------------------------------------------------
    # Read access
    # -------------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._positions

    @property
    def messages(self) -> list[Message]:
        """Snapshot of the ordered view."""
        return list(self._messages)

    def get(self, message_id: str) -> Optional[Message]:
        position = self._positions.get(message_id)
        if position is None:
            return None
        return self._messages[position]

    @property
    def forward_cursor(self) -> Optional[datetime]:
        """``created_at`` of the newest server-confirmed message."""
        for message in reversed(self._messages):
            if not message.is_optimistic:
                return message.created_at
        return None

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _reindex(self) -> None:
        self._positions = {message.id: i for i, message in enumerate(self._messages)}

    def _resort(self) -> None:
        self._messages.sort(key=sort_key)
        self._reindex()

    def _replace_at(self, message_id: str, **changes) -> Message:
        position = self._positions[message_id]
        updated = self._messages[position].model_copy(update=changes)
        self._messages[position] = updated
        return updated

    def _unknown(self, messages: Iterable[Message]) -> list[Message]:
        """Messages whose ids are neither stored nor repeated earlier in the batch."""
        seen = set(self._positions)
        fresh = []
        for message in messages:
            if message.id in seen:
                continue
            seen.add(message.id)
            fresh.append(message)
        return fresh

    # -------------------------------------------------------------------------
    # Paging merges
    # -------------------------------------------------------------------------

    def clear(self) -> None:
        self._messages = []
        self._positions = {}
        self.backward_cursor = None
        self.has_more = False

    def replace_all(self, messages: Iterable[Message], has_more: bool = False) -> None:
        """
        Replace the whole view with the result of an initial load.

        Sets the backward cursor to the oldest message's ``created_at``.
        """
        self._messages = []
        self._positions = {}
        self._messages = self._unknown(messages)
        self._resort()
        self.has_more = has_more
        self.backward_cursor = self._messages[0].created_at if self._messages else None
        logger.info(f"Store replaced: {len(self._messages)} messages, has_more={has_more}")

    def prepend_older(self, messages: Iterable[Message], has_more: bool) -> int:
        """
        Merge a backward page of older history.

        Returns:
            Number of messages actually added
        """
        older = self._unknown(messages)
        self._messages = older + self._messages
        self._resort()
        self.has_more = has_more

        if older:
            oldest = min(message.created_at for message in older)
            if self.backward_cursor is None or oldest < self.backward_cursor:
                self.backward_cursor = oldest
        logger.debug(f"Prepended {len(older)} older messages, has_more={has_more}")
        return len(older)

    def merge_newer(self, messages: Iterable[Message]) -> list[Message]:
        """
        Merge messages discovered by polling.

        Only ids not already present are appended, so merging the same batch
        twice is a no-op the second time.

        Returns:
            The messages that were actually added
        """
        fresh = self._unknown(messages)
        if fresh:
            self._messages.extend(fresh)
            self._resort()
            logger.debug(f"Merged {len(fresh)} new messages")
        return fresh

    # -------------------------------------------------------------------------
    # Optimistic send
    # -------------------------------------------------------------------------

    def insert_optimistic(self, message: Message) -> Message:
        """Add a locally-originated placeholder with ``send_status = sending``."""
        if message.id in self._positions:
            raise ValueError(f"message {message.id} is already in the store")
        placeholder = message.model_copy(update={"send_status": SendStatus.SENDING, "is_sender": True})
        self._messages.append(placeholder)
        self._resort()
        return placeholder

    def mark_sending(self, optimistic_id: str) -> Optional[Message]:
        """Flip a failed placeholder back to ``sending`` before a manual resend."""
        if optimistic_id not in self._positions:
            return None
        return self._replace_at(optimistic_id, send_status=SendStatus.SENDING)

    def reconcile_optimistic(self, optimistic_id: str, confirmed: Optional[Message]) -> ReconcileResult:
        """
        Resolve a placeholder against the outcome of its send call.

        Args:
            optimistic_id: id of the placeholder
            confirmed: the server-confirmed message, or None if the send failed

        Returns:
            ReconcileResult describing the change applied
        """
        present = optimistic_id in self._positions

        if confirmed is None:
            if not present:
                return ReconcileResult.MISSING
            self._replace_at(optimistic_id, send_status=SendStatus.FAILED)
            logger.warning(f"Send failed for {optimistic_id}")
            return ReconcileResult.FAILED

        confirmed = confirmed.model_copy(update={"send_status": SendStatus.SENT})

        if confirmed.id in self._positions:
            # The real record already arrived through polling
            if present:
                del self._messages[self._positions[optimistic_id]]
                self._reindex()
            logger.info(f"Send confirmed for {optimistic_id} as {confirmed.id} (already merged)")
            return ReconcileResult.DEDUPLICATED

        if not present:
            self.merge_newer([confirmed])
            return ReconcileResult.MISSING

        self._messages[self._positions[optimistic_id]] = confirmed
        self._resort()
        logger.info(f"Send confirmed for {optimistic_id} as {confirmed.id}")
        return ReconcileResult.REPLACED

    # -------------------------------------------------------------------------
    # Soft delete and read receipts
    # -------------------------------------------------------------------------

    def soft_delete(
        self,
        message_id: str,
        requester_id: Optional[str],
        deleted_at: Optional[datetime] = None,
    ) -> DeleteSnapshot:
        """
        Optimistically mark a message deleted.

        Raises:
            KeyError: the message is not in the store
            OwnershipError: ``requester_id`` did not send the message

        Returns:
            Snapshot of the previous values, for ``restore``
        """
        message = self.get(message_id)
        if message is None:
            raise KeyError(message_id)
        if requester_id is None or message.sender_user_id != requester_id:
            raise OwnershipError(message_id, requester_id)

        snapshot = DeleteSnapshot(
            message_id=message_id,
            message_text=message.message_text,
            deleted_at=message.deleted_at,
            changed_at=message.changed_at,
        )
        now = deleted_at or utc_now()
        self._replace_at(message_id, deleted_at=now, changed_at=now, message_text=None)
        return snapshot

    def restore(self, snapshot: DeleteSnapshot) -> bool:
        """Roll a message back to its pre-delete field values."""
        if snapshot.message_id not in self._positions:
            return False
        self._replace_at(
            snapshot.message_id,
            deleted_at=snapshot.deleted_at,
            changed_at=snapshot.changed_at,
            message_text=snapshot.message_text,
        )
        logger.warning(f"Delete rolled back for {snapshot.message_id}")
        return True

    def can_mark_read(self, message_id: str, reader_id: Optional[str]) -> bool:
        """False if absent, already read, or sent by the reader."""
        message = self.get(message_id)
        if message is None or message.read_at is not None:
            return False
        return reader_id is not None and message.sender_user_id != reader_id

    def apply_read(self, message_id: str, read_at: datetime) -> bool:
        if message_id not in self._positions:
            return False
        self._replace_at(message_id, read_at=read_at)
        return True

    # -------------------------------------------------------------------------
    # Derived views
    # -------------------------------------------------------------------------

    def unread_counts(self, user_id: Optional[str]) -> list[UnreadCount]:
        """
        Count unread messages per reference_id, most unread first.

        A message is unread for ``user_id`` when someone else sent it and it
        is neither read nor deleted.
        """
        counts: dict[str, int] = {}
        for message in self._messages:
            if message.sender_user_id == user_id or message.read_at or message.deleted_at:
                continue
            counts[message.reference_id] = counts.get(message.reference_id, 0) + 1

        results = [UnreadCount(reference_id=ref, count=count) for ref, count in counts.items()]
        results.sort(key=lambda item: item.count, reverse=True)
        return results

    def references(self, initial: Iterable[ReferenceItem] = ()) -> list[ReferenceItem]:
        """
        Aggregate reference descriptors across the loaded messages.

        ``initial`` references keep their own scope and gain the id of the
        first message that carries them; references only found on messages
        are scoped ``chat``.
        """
        aggregated: dict[str, ReferenceItem] = {}
        for ref in initial:
            aggregated[ref.id] = ref

        for message in self._messages:
            for ref in message.reference_list or ():
                existing = aggregated.get(ref.id)
                if existing is None:
                    aggregated[ref.id] = ref.model_copy(update={"scope": "chat", "message_id": message.id})
                elif existing.message_id is None:
                    aggregated[ref.id] = existing.model_copy(update={"message_id": message.id})
        return list(aggregated.values())

    def message_for_reference(self, reference_id: str) -> Optional[str]:
        """Id of the first loaded message that carries ``reference_id``."""
        for message in self._messages:
            if any(ref.id == reference_id for ref in message.reference_list or ()):
                return message.id
        return None
