"""
Client for the circuit-design assistant REST API.
"""
from circuitchat.api.client import ConversationAPIClient
from circuitchat.api.schemas import MessageStatusResponse, RemoteStatus, parse_status

__all__ = [
    "ConversationAPIClient",
    "MessageStatusResponse",
    "RemoteStatus",
    "parse_status",
]
