"""
Response schemas for the conversation API.

Every payload is validated here before anything else sees it, and mapped
into the storage models. A payload missing a required field raises
MalformedResponseError at the boundary instead of leaking a None.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from circuitchat.errors import MalformedResponseError, UnknownStatusError
from circuitchat.storage.models import Conversation, Message, MessageStatus, Role, utc_now


class RemoteStatus(str, Enum):
    """The closed set of job statuses the server is known to report."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"


_STATUS_ALIASES = {
    "pending": RemoteStatus.PENDING,
    "queued": RemoteStatus.PENDING,
    "processing": RemoteStatus.PROCESSING,
    "in progress": RemoteStatus.PROCESSING,
    "in_progress": RemoteStatus.PROCESSING,
    "complete": RemoteStatus.COMPLETE,
    "completed": RemoteStatus.COMPLETE,
    "error": RemoteStatus.ERROR,
    "failed": RemoteStatus.ERROR,
}


def parse_status(raw: str) -> RemoteStatus:
    """
    "Complete" -> COMPLETE, "Processing....." -> PROCESSING.
    Anything else raises UnknownStatusError.
    """
    normalized = (raw or "").strip().rstrip(".").strip().lower()
    try:
        return _STATUS_ALIASES[normalized]
    except KeyError:
        raise UnknownStatusError(raw) from None


class _Schema(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ConversationRecord(_Schema):
    id: str
    name: str = ""
    total_messages: int = 0
    created_at: datetime
    is_pinned: bool = False

    def to_conversation(self) -> Conversation:
        created = self.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return Conversation(
            id=self.id,
            name=self.name,
            total_messages=self.total_messages,
            created_at=created,
            is_pinned=self.is_pinned,
        )


class ConversationListResponse(_Schema):
    conversations: list[ConversationRecord] = []


class NewQueryResponse(_Schema):
    message_id: str
    conversation_id: str
    timestamp: str = ""


class NewMessageResponse(_Schema):
    message_id: str
    timestamp: str = ""


class MessageStatusResponse(_Schema):
    message_id: str = ""
    status: RemoteStatus
    message: str = ""
    error: str = ""
    timestamp: str = ""

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value):
        if isinstance(value, RemoteStatus):
            return value
        return parse_status(str(value))

    @field_validator("message", "error", "timestamp", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return "" if value is None else value

    @property
    def is_complete(self) -> bool:
        return self.status == RemoteStatus.COMPLETE

    @property
    def failure(self) -> str | None:
        """The remote's error text, if the job failed."""
        if self.error:
            return self.error
        if self.status == RemoteStatus.ERROR:
            return self.message or "Remote job failed"
        return None


class MessageRecord(_Schema):
    id: str
    index: int | None = None
    message_by: str = ""
    content: str | None = ""
    timestamp: str | None = None

    def to_message(self, conversation_id: str) -> Message:
        return Message(
            id=self.id,
            conversation_id=conversation_id,
            role=Role.USER if self.message_by == "user" else Role.ASSISTANT,
            content=self.content or "",
            timestamp=self.timestamp or utc_now(),
            status=MessageStatus.COMPLETE,
            index=self.index,
        )


class ConversationMessagesResponse(_Schema):
    messages: list[MessageRecord] = []
    error: str | None = None


class DeleteConversationResponse(_Schema):
    success: bool = True
    message: str = ""


class PresignedUrlResponse(_Schema):
    url: str
    upload_path: str
    filename: str
    conversation_id: str = ""


SchemaT = TypeVar("SchemaT", bound=BaseModel)


def parse_payload(schema: type[SchemaT], payload) -> SchemaT:
    """
    Validate a decoded JSON payload, raising MalformedResponseError on mismatch.
    UnknownStatusError is not a ValueError, so pydantic lets it through as is.
    """
    try:
        return schema.model_validate(payload)
    except ValidationError as e:
        raise MalformedResponseError(
            f"Malformed {schema.__name__} payload: {e.error_count()} validation error(s)"
        ) from e
