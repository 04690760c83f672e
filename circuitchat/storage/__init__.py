"""
Local storage: data models and the per-conversation message cache.
"""
from circuitchat.storage.local_cache import LocalCache
from circuitchat.storage.models import (
    Conversation,
    FileAttachment,
    Message,
    MessageStatus,
    Role,
)

__all__ = [
    "LocalCache",
    "Conversation",
    "FileAttachment",
    "Message",
    "MessageStatus",
    "Role",
]
