"""
Transport Client for the message API.

One call, one attempt: retry policy lives in the Poll Scheduler. This module is
the single place where HTTP status codes are turned into the error taxonomy
of ``chatsync.errors``.
"""

import logging
import time
from datetime import datetime
from typing import Any, Literal, Optional, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from chatsync.config import Settings
from chatsync.errors import PermissionDeniedError, TransientError
from chatsync.metrics import record_transport_request
from chatsync.schemas import (
    ConversationKey,
    MessagePage,
    MessageRecord,
    MessagesEnvelope,
    MessagesQuery,
    Profile,
    ProfilesEnvelope,
    ReadEnvelope,
    SendEnvelope,
    SendPayload,
)
from chatsync.utils import utc_now

logger = logging.getLogger(__name__)

EnvelopeT = TypeVar("EnvelopeT", bound=BaseModel)

PERMISSION_STATUS_CODES = {401: "unauthorized", 403: "forbidden"}


class TransportClient:
    """
    Request/response access to the message, read-receipt and profile endpoints.

    Authentication is ambient: whatever cookies or headers the supplied
    ``httpx.AsyncClient`` carries are sent with every request.
    """

    def __init__(
        self,
        settings: Settings,
        client: Optional[httpx.AsyncClient] = None,
        base_url: str = "",
    ):
        self._settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
        )
        self._messages_url = settings.API_BASE_URL.rstrip("/") + "/messages"

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    # -------------------------------------------------------------------------
    # Request plumbing
    # -------------------------------------------------------------------------

    async def _request(self, operation: str, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Issue one request and classify its failure modes.

        Raises:
            PermissionDeniedError: on HTTP 401/403
            TransientError: on network failure or any other non-2xx status
        """
        outcome = "transient"
        start_time = time.perf_counter()
        try:
            try:
                response = await self._client.request(method, url, **kwargs)
            except httpx.HTTPError as e:
                logger.warning(f"{operation}: network failure: {e!r}")
                raise TransientError(f"{operation} failed: {e}", operation) from e

            if response.status_code in PERMISSION_STATUS_CODES:
                outcome = "permission"
                code = self._error_code(response)
                logger.error(f"{operation}: permission denied (status={response.status_code}, code={code})")
                raise PermissionDeniedError(
                    f"{operation} denied: HTTP {response.status_code}",
                    operation=operation,
                    status_code=response.status_code,
                    code=code,
                )

            if not response.is_success:
                logger.warning(f"{operation}: HTTP {response.status_code}")
                raise TransientError(
                    f"{operation} failed: HTTP {response.status_code}",
                    operation=operation,
                    status_code=response.status_code,
                )

            outcome = "ok"
            return response
        finally:
            record_transport_request(operation, outcome, time.perf_counter() - start_time)

    @staticmethod
    def _error_code(response: httpx.Response) -> str:
        default = PERMISSION_STATUS_CODES[response.status_code]
        try:
            body = response.json()
        except ValueError:
            return default
        if isinstance(body, dict) and isinstance(body.get("error_code"), str):
            return body["error_code"]
        return default

    @staticmethod
    def _parse(operation: str, response: httpx.Response, envelope: type[EnvelopeT]) -> EnvelopeT:
        """Decode a JSON envelope; any malformed body is a transient failure."""
        try:
            data: Any = response.json()
        except ValueError as e:
            logger.warning(f"{operation}: response body is not JSON")
            raise TransientError(f"{operation} returned invalid JSON", operation, response.status_code) from e

        try:
            parsed = envelope.model_validate(data)
        except ValidationError as e:
            logger.warning(f"{operation}: malformed response: {e.error_count()} validation errors")
            raise TransientError(f"{operation} returned a malformed body", operation, response.status_code) from e

        if not getattr(parsed, "success", True):
            error = getattr(parsed, "error", None) or "request unsuccessful"
            logger.warning(f"{operation}: server reported failure: {error}")
            raise TransientError(f"{operation} failed: {error}", operation, response.status_code)
        return parsed

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def fetch_messages(
        self,
        conversation: ConversationKey,
        cursor: Optional[datetime] = None,
        direction: Optional[Literal["older", "newer"]] = None,
        limit: Optional[int] = None,
    ) -> MessagePage:
        """
        Fetch one page of messages.

        Args:
            conversation: the conversation to read
            cursor: boundary ``created_at``; omitted for the newest page
            direction: ``older`` (backward paging) or ``newer`` (polling)
            limit: page size, defaults to MESSAGES_PER_PAGE

        Returns:
            MessagePage with records, has_more, next_cursor and current_user_id
        """
        query = MessagesQuery(
            chat_group_id=conversation.chat_group_id,
            reference_id=conversation.reference_id,
            reference_type=conversation.reference_type,
            limit=limit or self._settings.MESSAGES_PER_PAGE,
            cursor=cursor,
            direction=direction,
        )
        logger.debug(f"fetch_messages: params={query.to_params()}")

        response = await self._request("fetch_messages", "GET", self._messages_url, params=query.to_params())
        envelope = self._parse("fetch_messages", response, MessagesEnvelope)
        pagination = envelope.pagination

        logger.debug(f"fetch_messages: received {len(envelope.messages)} records")
        return MessagePage(
            records=envelope.messages,
            has_more=pagination.has_more if pagination else False,
            next_cursor=pagination.next_cursor if pagination else None,
            current_user_id=envelope.current_user_id,
        )

    async def send_message(self, payload: SendPayload) -> MessageRecord:
        """Create a message; returns the authoritative server record."""
        response = await self._request(
            "send_message",
            "POST",
            self._messages_url,
            json=payload.model_dump(mode="json", exclude_none=True),
        )
        envelope = self._parse("send_message", response, SendEnvelope)
        if envelope.message is None:
            raise TransientError("send_message returned no message", "send_message", response.status_code)
        logger.info(f"send_message: server assigned id {envelope.message.id}")
        return envelope.message

    async def delete_message(self, message_id: str) -> None:
        """Soft-delete a message. Success is the absence of an exception."""
        await self._request("delete_message", "DELETE", f"{self._messages_url}/{message_id}")
        logger.info(f"delete_message: {message_id} deleted")

    async def mark_read(self, message_id: str) -> datetime:
        """
        Record a read receipt.

        Returns:
            The server's ``read_at``, or the local time when the server omits it
        """
        response = await self._request("mark_read", "PATCH", f"{self._messages_url}/{message_id}/read")
        envelope = self._parse("mark_read", response, ReadEnvelope)
        if envelope.message is not None and envelope.message.read_at is not None:
            return envelope.message.read_at
        return utc_now()

    async def fetch_profiles(self, user_ids: list[str]) -> list[Profile]:
        """Batched profile lookup. Unknown ids are simply missing from the result."""
        if not user_ids:
            return []
        response = await self._request(
            "fetch_profiles",
            "POST",
            self._settings.PROFILES_URL,
            json={"user_ids": user_ids},
        )
        envelope = self._parse("fetch_profiles", response, ProfilesEnvelope)
        logger.debug(f"fetch_profiles: requested {len(user_ids)}, received {len(envelope.profiles)}")
        return envelope.profiles
