"""
Pydantic models for the synchronization engine.

This module contains:
- Domain models (Profile, MessageRecord, Message) and their enums
- Wire envelopes returned by the message and profile endpoints
- Request payloads sent by the Transport Client
"""

import json
from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from chatsync.utils import format_cursor, is_optimistic_id, to_utc


# =============================================================================
# Enums
# =============================================================================

class SendStatus(str, Enum):
    """Delivery status of a locally-originated message."""
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class ConnectionState(str, Enum):
    """Conversation-wide connection indicator shown to the user."""
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"
    FORBIDDEN = "forbidden"


# =============================================================================
# Domain Models
# =============================================================================

class ConversationKey(BaseModel):
    """Identity of one conversation view."""
    chat_group_id: str = Field(..., min_length=1, description="Chat group identifier")
    reference_id: str = Field(default="", description="Reference grouping inside the group")
    reference_type: str = Field(default="chat", description="Kind of reference context")

    model_config = ConfigDict(frozen=True)


class Profile(BaseModel):
    """Sender display metadata."""
    id: str = Field(..., min_length=1)
    name: str
    email: Optional[str] = None
    avatar_url: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class ReferenceItem(BaseModel):
    """Attachment or reference descriptor attached to a message."""
    id: str
    type: Literal["document", "field", "url"] = "document"
    scope: Literal["chat", "field"] = "chat"
    name: str = ""
    url: str = ""
    mime_type: Optional[str] = None
    file_size: Optional[int] = None
    message_id: Optional[str] = None


class _MessageFields(BaseModel):
    id: str = Field(..., min_length=1)
    chat_group_id: str
    reference_id: str = ""
    reference_type: str = "chat"
    sender_user_id: str
    message_text: Optional[str] = None
    reference_list: Optional[list[ReferenceItem]] = None
    created_at: datetime
    changed_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @field_validator("reference_list", mode="before")
    @classmethod
    def parse_reference_list(cls, v):
        """Some backends store the reference list as a JSON string."""
        if isinstance(v, str):
            if not v.strip():
                return None
            return json.loads(v)
        return v

    @field_validator("created_at", "changed_at", "read_at", "deleted_at")
    @classmethod
    def normalize_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_utc(v) if v is not None else None

    @model_validator(mode="after")
    def apply_soft_delete_rules(self):
        # A deleted message never carries text
        if self.deleted_at is not None:
            self.message_text = None
        if self.changed_at is None:
            self.changed_at = self.created_at
        return self

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class MessageRecord(_MessageFields):
    """
    Server-confirmed message as returned by the message API.

    The id must come from the server namespace; a record carrying the
    optimistic prefix is rejected as malformed.
    """

    @field_validator("id")
    @classmethod
    def reject_optimistic_ids(cls, v: str) -> str:
        if is_optimistic_id(v):
            raise ValueError("server record id uses the optimistic namespace")
        return v


class Message(_MessageFields):
    """
    Client-side view of a message.

    Adds the derived fields: resolved sender profile, ``is_sender`` and,
    for locally-originated messages, ``send_status``.
    """
    sender_profile: Optional[Profile] = None
    is_sender: bool = False
    send_status: Optional[SendStatus] = None

    @classmethod
    def from_record(
        cls,
        record: MessageRecord,
        current_user_id: Optional[str],
        sender_profile: Optional[Profile] = None,
    ) -> "Message":
        """Decorate a server record for display."""
        return cls(
            **record.model_dump(),
            sender_profile=sender_profile,
            is_sender=current_user_id is not None and record.sender_user_id == current_user_id,
            send_status=SendStatus.SENT,
        )

    @property
    def is_optimistic(self) -> bool:
        return is_optimistic_id(self.id)


# =============================================================================
# Wire Envelopes
# =============================================================================

class Pagination(BaseModel):
    """Pagination block of the GET /messages response."""
    limit: Optional[int] = None
    has_more: bool = False
    next_cursor: Optional[str] = None
    prev_cursor: Optional[str] = None


class MessagesEnvelope(BaseModel):
    """Response body of GET /messages."""
    success: bool
    messages: list[MessageRecord] = Field(default_factory=list)
    current_user_id: Optional[str] = None
    error: Optional[str] = None
    pagination: Optional[Pagination] = None


class SendEnvelope(BaseModel):
    """Response body of POST /messages."""
    success: bool
    message: Optional[MessageRecord] = None
    error: Optional[str] = None


class ReadReceipt(BaseModel):
    read_at: Optional[datetime] = None

    @field_validator("read_at")
    @classmethod
    def normalize_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_utc(v) if v is not None else None


class ReadEnvelope(BaseModel):
    """Response body of PATCH /messages/{id}/read."""
    success: bool
    message: Optional[ReadReceipt] = None
    error: Optional[str] = None


class ProfilesEnvelope(BaseModel):
    """Response body of the batched profile lookup."""
    success: bool
    profiles: list[Profile] = Field(default_factory=list)
    error: Optional[str] = None


class MessagePage(BaseModel):
    """
    One page of history as seen by the rest of the engine.

    Contains:
    - records: raw server records in the order the server returned them
    - has_more: whether older pages exist beyond this one
    - next_cursor: server-suggested cursor for the next backward page
    - current_user_id: identity of the requester, as reported by the server
    """
    records: list[MessageRecord] = Field(default_factory=list)
    has_more: bool = False
    next_cursor: Optional[str] = None
    current_user_id: Optional[str] = None


# =============================================================================
# Request Payloads
# =============================================================================

class SendPayload(BaseModel):
    """Body of POST /messages."""
    chat_group_id: str = Field(..., min_length=1)
    message_text: str = Field(..., min_length=1, max_length=4096)
    reference_id: str = ""
    reference_type: str = "chat"
    reference_list: Optional[list[ReferenceItem]] = None


class MessagesQuery(BaseModel):
    """
    Query parameters for GET /messages.

    ``direction`` is only sent together with a cursor.
    """
    chat_group_id: str
    reference_id: str = ""
    reference_type: str = "chat"
    limit: int = Field(default=20, ge=1, le=100)
    cursor: Optional[datetime] = None
    direction: Optional[Literal["older", "newer"]] = None

    def to_params(self) -> dict[str, str]:
        params = {
            "chat_group_id": self.chat_group_id,
            "limit": str(self.limit),
        }
        if self.reference_id:
            params["reference_id"] = self.reference_id
        if self.reference_type:
            params["reference_type"] = self.reference_type
        if self.cursor is not None:
            params["cursor"] = format_cursor(self.cursor)
            params["direction"] = self.direction or "older"
        return params


class UnreadCount(BaseModel):
    """Unread messages for one reference_id."""
    reference_id: str
    count: int = Field(..., ge=0)
