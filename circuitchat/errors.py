"""
Error taxonomy for circuitchat.

    CircuitChatError
    ├── AuthError               missing or rejected credentials (session is wiped)
    ├── NetworkError            non-2xx response or transport failure
    ├── PollTimeoutError        polling attempt budget exhausted
    ├── AbortError              user-initiated cancellation, never shown as a failure
    ├── RemoteError             non-empty `error` reported by a poll response
    ├── MalformedResponseError  payload failed schema validation
    │   └── UnknownStatusError  job status outside the recognized set
    └── UploadError             attachment rejected or upload failed
"""

from __future__ import annotations


class CircuitChatError(Exception):
    """Base class for every error raised by circuitchat."""

    def __init__(self, message: str = "", status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        return self.message


class AuthError(CircuitChatError):
    pass


class NetworkError(CircuitChatError):
    pass


class PollTimeoutError(CircuitChatError, TimeoutError):
    pass


class AbortError(CircuitChatError):
    pass


class RemoteError(CircuitChatError):
    pass


class MalformedResponseError(CircuitChatError):
    pass


class UnknownStatusError(MalformedResponseError):
    def __init__(self, status: str):
        super().__init__(f"Unrecognized message status: {status!r}")
        self.status = status


class UploadError(CircuitChatError):
    pass
