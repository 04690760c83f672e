"""
Data models for conversations and messages.
These define the shape of data flowing between the API client,
the local cache and the conversation manager.

Messages are frozen: every update goes through `with_update()` /
`dataclasses.replace`, so a message list can be swapped for a new one
instead of being edited in place.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

TABLE_CONTEXT_MARKER = "\n\n[CURRENT"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class MessageStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (MessageStatus.COMPLETE, MessageStatus.ERROR)

    def can_become(self, new: "MessageStatus") -> bool:
        """Statuses only move forward: pending/processing -> complete/error."""
        if self == new:
            return not self.is_terminal
        if self.is_terminal:
            return False
        if self == MessageStatus.PROCESSING and new == MessageStatus.PENDING:
            return False
        return True


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def display_text(query: str) -> str:
    """The part of a query shown to the user, without appended table context."""
    return query.split(TABLE_CONTEXT_MARKER)[0].strip()


@dataclass(frozen=True)
class FileAttachment:
    """A file uploaded to object storage and referenced by a query."""
    path: Path
    upload_path: str
    filename: str
    conversation_id: str = ""
    mime_type: str = "application/octet-stream"
    preview_url: str | None = None

    def to_reference(self) -> dict:
        """The part of the attachment the API needs."""
        return {
            "upload_path": self.upload_path,
            "filename": self.filename,
            "type": self.mime_type,
        }

    def to_dict(self) -> dict:
        return {
            "path": str(self.path),
            "upload_path": self.upload_path,
            "filename": self.filename,
            "conversation_id": self.conversation_id,
            "mime_type": self.mime_type,
            "preview_url": self.preview_url,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FileAttachment":
        return cls(
            path=Path(data["path"]),
            upload_path=data["upload_path"],
            filename=data["filename"],
            conversation_id=data.get("conversation_id", ""),
            mime_type=data.get("mime_type", "application/octet-stream"),
            preview_url=data.get("preview_url"),
        )


@dataclass(frozen=True)
class Message:
    """A single turn in a conversation."""
    id: str
    conversation_id: str
    role: Role
    content: str = ""
    timestamp: str = field(default_factory=utc_now)
    status: MessageStatus = MessageStatus.COMPLETE
    error: str | None = None
    index: int | None = None
    attachments: tuple[FileAttachment, ...] = ()

    def with_update(self, **changes) -> "Message":
        """
        Return an updated copy. A status change that would move backwards
        is dropped (the rest of the update still applies).
        """
        if changes.get("status") is not None:
            new_status = MessageStatus(changes["status"])
            if self.status.can_become(new_status):
                changes["status"] = new_status
            else:
                logger.debug(
                    "Ignoring status change %s -> %s for message %s",
                    self.status.value, new_status.value, self.id,
                )
                changes.pop("status")
        return replace(self, **changes)

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp,
            "status": self.status.value,
        }
        if self.error is not None:
            data["error"] = self.error
        if self.index is not None:
            data["index"] = self.index
        if self.attachments:
            data["attachments"] = [a.to_dict() for a in self.attachments]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        return cls(
            id=data["id"],
            conversation_id=data.get("conversation_id", ""),
            role=Role(data.get("role", Role.ASSISTANT.value)),
            content=data.get("content", ""),
            timestamp=data.get("timestamp") or utc_now(),
            status=MessageStatus(data.get("status", MessageStatus.COMPLETE.value)),
            error=data.get("error"),
            index=data.get("index"),
            attachments=tuple(FileAttachment.from_dict(a) for a in data.get("attachments", [])),
        )


@dataclass(frozen=True)
class Conversation:
    """A named thread of messages, owned by the remote system."""
    id: str
    name: str = ""
    total_messages: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    is_pinned: bool = False


def order_messages(messages: list[Message]) -> list[Message]:
    """Order by server index when every message has one, else keep insertion order."""
    if messages and all(m.index is not None for m in messages):
        return sorted(messages, key=lambda m: m.index)
    return list(messages)


def sort_conversations(conversations: list[Conversation]) -> list[Conversation]:
    """Pinned first, then newest first within each group."""
    def created(c: Conversation) -> float:
        ts = c.created_at
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return ts.timestamp()

    pinned = sorted((c for c in conversations if c.is_pinned), key=created, reverse=True)
    rest = sorted((c for c in conversations if not c.is_pinned), key=created, reverse=True)
    return pinned + rest


def replace_by_id(messages: tuple[Message, ...] | list[Message], updated: Message) -> tuple[Message, ...]:
    """New sequence with the message of the same id swapped for `updated`."""
    return tuple(updated if m.id == updated.id else m for m in messages)
