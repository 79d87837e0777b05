"""
Synchronization Façade.

``ConversationSync`` is the unit an application holds per open conversation
view. It owns its store, profile cache and poll scheduler exclusively; two
instances never share state.

Every await in this module is followed by a liveness check: once the instance
is closed, switched to another conversation or refreshed, completions of
requests issued before that point no longer touch the store or the state.
"""

import asyncio
import logging
import time
from typing import Callable, Iterable, Optional

from chatsync.config import Settings, get_settings
from chatsync.errors import OwnershipError, PermissionDeniedError, TransientError, TransportError
from chatsync.logging_utils import conversation_context
from chatsync.metrics import record_mutation
from chatsync.profile_cache import ProfileCache
from chatsync.scheduler import PollScheduler, Sleep
from chatsync.schemas import (
    ConnectionState,
    ConversationKey,
    Message,
    MessageRecord,
    ReferenceItem,
    SendPayload,
    SendStatus,
    UnreadCount,
)
from chatsync.store import MessageStore, ReconcileResult
from chatsync.transport import TransportClient
from chatsync.utils import generate_optimistic_id, utc_now

logger = logging.getLogger(__name__)

StateCallback = Callable[[ConnectionState], None]

ACCESS_DENIED_ERROR = "Access denied"
LOAD_FAILED_ERROR = "Failed to load messages"
NOT_AUTHENTICATED_ERROR = "Not authenticated"
CANNOT_DELETE_ERROR = "Cannot delete this message"


class ConversationSync:
    """
    Keeps a local ordered view of one conversation in sync with the server.

    Args:
        conversation: identity of the conversation to follow
        transport: Transport Client; created (and closed on ``close``) from
            ``settings`` when omitted
        settings: explicit configuration, defaults to ``get_settings()``
        sleep: delay function handed to the Poll Scheduler
        clock: monotonic clock handed to the Profile Cache
        initial_references: references supplied by the embedding page,
            merged into ``references()``

    Usage::

        async with ConversationSync(ConversationKey(chat_group_id="g1"), transport) as sync:
            await sync.send("hello")
    """

    def __init__(
        self,
        conversation: ConversationKey,
        transport: Optional[TransportClient] = None,
        settings: Optional[Settings] = None,
        *,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        initial_references: Iterable[ReferenceItem] = (),
    ):
        self.settings = settings or get_settings()
        self.conversation = conversation
        self._owns_transport = transport is None
        self._transport = transport or TransportClient(self.settings)
        self._sleep = sleep
        self._clock = clock
        self._initial_references = list(initial_references)

        self.current_user_id: Optional[str] = None
        self.state = ConnectionState.CONNECTED
        self.error: Optional[str] = None
        self.error_code: Optional[str] = None
        self.is_loading = False
        self.is_loading_more = False

        self._listeners: list[StateCallback] = []
        self._generation = 0
        self._closed = False
        self._reset_conversation_state()

    def _reset_conversation_state(self) -> None:
        self.store = MessageStore()
        self.profiles = ProfileCache(
            capacity=self.settings.PROFILE_CACHE_MAX_SIZE,
            ttl_seconds=self.settings.PROFILE_CACHE_TTL_SECONDS,
            clock=self._clock,
        )
        self.scheduler = PollScheduler(
            self._poll_tick,
            self.settings,
            on_state=self._on_poll_state,
            sleep=self._sleep,
        )
        self._pending_deletes: dict[str, asyncio.Future] = {}

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def __aenter__(self) -> "ConversationSync":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def log_id(self) -> str:
        if self.conversation.reference_id:
            return f"{self.conversation.chat_group_id}/{self.conversation.reference_id}"
        return self.conversation.chat_group_id

    def _is_live(self, generation: int) -> bool:
        return not self._closed and generation == self._generation

    async def start(self) -> bool:
        """
        Run the initial load and, in polling mode, start the Poll Scheduler.

        Polling only starts after a successful initial load.

        Returns:
            True if the initial load succeeded
        """
        loaded = await self.load_initial()
        if loaded and self.settings.REALTIME_MODE == "polling" and not self._closed:
            with conversation_context(self.log_id):
                self.scheduler.start()
        return loaded

    async def close(self) -> None:
        """Stop polling and make every in-flight completion a no-op."""
        if self._closed:
            return
        self._closed = True
        self._generation += 1
        await self.scheduler.stop()
        if self._owns_transport:
            await self._transport.aclose()
        logger.info(f"Conversation {self.log_id} closed")

    async def switch(self, conversation: ConversationKey) -> bool:
        """
        Follow a different conversation.

        Discards store, profile cache and retry state of the previous
        conversation and runs ``start`` for the new one.
        """
        if self._closed:
            return False
        await self.scheduler.stop()
        self._generation += 1
        logger.info(f"Switching conversation {self.log_id} -> {conversation.chat_group_id}")
        self.conversation = conversation
        self.current_user_id = None
        self.error = None
        self.error_code = None
        self.is_loading = False
        self.is_loading_more = False
        self._reset_conversation_state()
        self._set_state(ConnectionState.CONNECTED)
        return await self.start()

    # -------------------------------------------------------------------------
    # Observable state
    # -------------------------------------------------------------------------

    @property
    def messages(self) -> list[Message]:
        return self.store.messages

    @property
    def has_more(self) -> bool:
        return self.store.has_more

    def subscribe(self, listener: StateCallback) -> Callable[[], None]:
        """
        Register a connection-state listener.

        Returns:
            A callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_state(self, state: ConnectionState, error_code: Optional[str] = None) -> None:
        self.error_code = error_code if state is ConnectionState.FORBIDDEN else None
        if state is self.state:
            return
        logger.info(f"Connection state {self.state.value} -> {state.value}")
        self.state = state
        for listener in list(self._listeners):
            listener(state)

    def _on_poll_state(self, state: ConnectionState, error_code: Optional[str]) -> None:
        if self._closed:
            return
        if state is ConnectionState.FORBIDDEN:
            self.error = ACCESS_DENIED_ERROR
        self._set_state(state, error_code)

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    async def _decorate(self, records: list[MessageRecord]) -> list[Message]:
        """Attach sender profiles and ``is_sender`` to server records."""
        profiles = await self.profiles.resolve_many(
            (record.sender_user_id for record in records),
            self._transport.fetch_profiles,
        )
        return [
            Message.from_record(record, self.current_user_id, profiles.get(record.sender_user_id))
            for record in records
        ]

    async def load_initial(self) -> bool:
        """
        Load the newest page and replace the store with it.

        A call made while another initial load is in flight is dropped.
        Transport failures are absorbed into ``state``/``error``: a permission
        failure yields ``forbidden``, anything else ``error``. There is no
        automatic retry; call ``refresh`` to try again.

        Returns:
            True if the store was replaced
        """
        if self._closed or self.is_loading:
            return False

        generation = self._generation
        self.is_loading = True
        self.error = None

        with conversation_context(self.log_id):
            try:
                page = await self._transport.fetch_messages(self.conversation)
                if not self._is_live(generation):
                    return False
                if page.current_user_id:
                    self.current_user_id = page.current_user_id

                messages = await self._decorate(page.records)
                if not self._is_live(generation):
                    return False

                self.store.replace_all(messages, has_more=page.has_more)
                self.scheduler.reset()
                self._set_state(ConnectionState.CONNECTED)
                logger.info(f"Initial load: {len(messages)} messages, has_more={page.has_more}")
                return True
            except PermissionDeniedError as e:
                if self._is_live(generation):
                    self.error = ACCESS_DENIED_ERROR
                    self._set_state(ConnectionState.FORBIDDEN, e.code)
                return False
            except TransientError as e:
                if self._is_live(generation):
                    logger.warning(f"Initial load failed: {e}")
                    self.error = LOAD_FAILED_ERROR
                    self._set_state(ConnectionState.ERROR)
                return False
            finally:
                if generation == self._generation:
                    self.is_loading = False

    async def load_more(self) -> int:
        """
        Load the page of history just older than the oldest loaded message.

        No-op when no older pages are known or a load is already running.

        Returns:
            Number of messages added
        """
        cursor = self.store.backward_cursor
        if (
            self._closed
            or self.is_loading_more
            or not self.store.has_more
            or cursor is None
            or self.current_user_id is None
        ):
            return 0

        generation = self._generation
        self.is_loading_more = True

        with conversation_context(self.log_id):
            try:
                page = await self._transport.fetch_messages(self.conversation, cursor=cursor, direction="older")
                if not self._is_live(generation):
                    return 0
                messages = await self._decorate(page.records)
                if not self._is_live(generation):
                    return 0
                return self.store.prepend_older(messages, has_more=page.has_more)
            except PermissionDeniedError as e:
                if self._is_live(generation):
                    self.error = ACCESS_DENIED_ERROR
                    self._set_state(ConnectionState.FORBIDDEN, e.code)
                    await self.scheduler.stop()
                return 0
            except TransientError as e:
                logger.warning(f"Load more failed: {e}")
                return 0
            finally:
                if generation == self._generation:
                    self.is_loading_more = False

    async def _poll_tick(self) -> None:
        """One poll: fetch strictly newer messages and merge them."""
        generation = self._generation
        cursor = self.store.forward_cursor
        if cursor is not None:
            page = await self._transport.fetch_messages(
                self.conversation,
                cursor=cursor,
                direction="newer",
                limit=self.settings.POLL_PAGE_LIMIT,
            )
        else:
            page = await self._transport.fetch_messages(self.conversation, limit=self.settings.POLL_PAGE_LIMIT)

        if not page.records or not self._is_live(generation):
            return

        messages = await self._decorate(page.records)
        if not self._is_live(generation):
            return
        added = self.store.merge_newer(messages)
        if added:
            logger.info(f"Poll merged {len(added)} new messages")

    async def refresh(self) -> bool:
        """
        Clear local state and load the conversation again.

        Also restarts polling if it had stopped, including after ``forbidden``.
        """
        if self._closed:
            return False
        await self.scheduler.stop()
        self._generation += 1
        self.is_loading = False
        self.is_loading_more = False
        self.store.clear()
        self.scheduler.reset()
        logger.info(f"Refreshing conversation {self.log_id}")
        return await self.start()

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def send(self, text: str, reference_list: Optional[list[ReferenceItem]] = None) -> bool:
        """
        Send a message optimistically.

        The placeholder is in the store before the first await, whatever the
        network state. Invalid input (e.g. empty text) raises pydantic's
        ValidationError before anything is inserted.

        Returns:
            True once the server accepted the message, False if the send
            failed (the placeholder is then marked ``failed``) or no user is
            known yet
        """
        if self._closed:
            return False
        if self.current_user_id is None:
            self.error = NOT_AUTHENTICATED_ERROR
            return False

        payload = SendPayload(
            chat_group_id=self.conversation.chat_group_id,
            reference_id=self.conversation.reference_id,
            reference_type=self.conversation.reference_type,
            message_text=text,
            reference_list=reference_list,
        )
        now = utc_now()
        placeholder = self.store.insert_optimistic(
            Message(
                id=generate_optimistic_id(),
                chat_group_id=payload.chat_group_id,
                reference_id=payload.reference_id,
                reference_type=payload.reference_type,
                sender_user_id=self.current_user_id,
                message_text=payload.message_text,
                reference_list=payload.reference_list,
                created_at=now,
                changed_at=now,
                sender_profile=self.profiles.get(self.current_user_id),
                is_sender=True,
                send_status=SendStatus.SENDING,
            )
        )
        with conversation_context(self.log_id):
            return await self._deliver(placeholder.id, payload)

    async def retry_send(self, optimistic_id: str) -> bool:
        """
        Re-issue a failed send, keeping its placeholder id and position.

        The request is rebuilt from the placeholder itself, so a failed send
        holds no state beyond its entry in the store.
        """
        message = self.store.get(optimistic_id)
        if self._closed or message is None or message.send_status is not SendStatus.FAILED:
            return False
        payload = SendPayload(
            chat_group_id=message.chat_group_id,
            reference_id=message.reference_id,
            reference_type=message.reference_type,
            message_text=message.message_text,
            reference_list=message.reference_list,
        )
        self.store.mark_sending(optimistic_id)
        with conversation_context(self.log_id):
            return await self._deliver(optimistic_id, payload)

    async def _deliver(self, optimistic_id: str, payload: SendPayload) -> bool:
        """Issue the send call and reconcile its placeholder exactly once."""
        generation = self._generation
        try:
            record = await self._transport.send_message(payload)
        except TransportError as e:
            if self._is_live(generation):
                self.store.reconcile_optimistic(optimistic_id, None)
            record_mutation("send", "failed")
            logger.warning(f"Send of {optimistic_id} failed: {e}")
            return False

        if not self._is_live(generation):
            return True

        confirmed = Message.from_record(record, self.current_user_id, self.profiles.get(record.sender_user_id))
        result = self.store.reconcile_optimistic(optimistic_id, confirmed)
        record_mutation("send", "deduplicated" if result is ReconcileResult.DEDUPLICATED else "confirmed")
        return True

    async def delete(self, message_id: str) -> bool:
        """
        Soft-delete one of the current user's messages.

        Returns False without any request when the message is unknown, not
        owned by the current user, or still an unconfirmed placeholder.
        Deleting an already-deleted own message is a successful no-op. A call
        made while a delete of the same message is in flight waits for that
        request and reports its outcome.
        """
        if self._closed:
            return False
        pending = self._pending_deletes.get(message_id)
        if pending is not None:
            return await asyncio.shield(pending)

        message = self.store.get(message_id)
        if message is not None and message.is_optimistic:
            return False
        if message is not None and message.is_deleted and message.sender_user_id == self.current_user_id:
            return True

        try:
            snapshot = self.store.soft_delete(message_id, self.current_user_id)
        except (KeyError, OwnershipError) as e:
            logger.warning(f"Refusing to delete {message_id}: {e}")
            self.error = CANNOT_DELETE_ERROR
            return False

        generation = self._generation
        pending_deletes = self._pending_deletes
        outcome = asyncio.get_running_loop().create_future()
        pending_deletes[message_id] = outcome
        deleted = False
        with conversation_context(self.log_id):
            try:
                await self._transport.delete_message(message_id)
                deleted = True
            except TransportError as e:
                if self._is_live(generation):
                    self.store.restore(snapshot)
                logger.warning(f"Delete of {message_id} failed: {e}")
            finally:
                pending_deletes.pop(message_id, None)
                outcome.set_result(deleted)

        record_mutation("delete", "confirmed" if deleted else "rolled_back")
        return deleted

    async def mark_read(self, message_id: str) -> bool:
        """
        Send a read receipt for someone else's unread message.

        Returns:
            True if ``read_at`` was set from the server's answer
        """
        if self._closed or not self.store.can_mark_read(message_id, self.current_user_id):
            return False

        generation = self._generation
        with conversation_context(self.log_id):
            try:
                read_at = await self._transport.mark_read(message_id)
            except TransportError as e:
                logger.warning(f"Mark read of {message_id} failed: {e}")
                return False

        if not self._is_live(generation):
            return False
        return self.store.apply_read(message_id, read_at)

    # -------------------------------------------------------------------------
    # Derived views
    # -------------------------------------------------------------------------

    def unread_counts(self) -> list[UnreadCount]:
        return self.store.unread_counts(self.current_user_id)

    def unread_count(self) -> int:
        return sum(item.count for item in self.unread_counts())

    def references(self) -> list[ReferenceItem]:
        return self.store.references(self._initial_references)

    def message_for_reference(self, reference_id: str) -> Optional[str]:
        return self.store.message_for_reference(reference_id)
