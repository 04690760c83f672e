"""
Conversation API client.

Wraps the REST endpoints of the circuit-design assistant backend:

    GET    /conversation?user_id=...                 list conversations
    POST   /new_query                                start a conversation
    POST   /conversation/{id}/message                send a message
    GET    /conversation/{id}/message/{message_id}   poll a message job
    GET    /conversation/{id}                        message history
    DELETE /conversation/{id}?user_id=...            delete a conversation
    POST   /get-presigned-url                        upload slot for a file

Every call carries `Authorization: bearer <token>` from the session store.
401/403 wipe the session and raise AuthError; other non-2xx responses and
transport failures raise NetworkError.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path

import httpx

from circuitchat.api.schemas import (
    ConversationListResponse,
    ConversationMessagesResponse,
    DeleteConversationResponse,
    MessageStatusResponse,
    NewMessageResponse,
    NewQueryResponse,
    PresignedUrlResponse,
    parse_payload,
)
from circuitchat.config import DEFAULT_API_BASE_URL
from circuitchat.errors import AuthError, MalformedResponseError, NetworkError
from circuitchat.session import SessionStore
from circuitchat.storage.models import Conversation, FileAttachment, Message, order_messages

logger = logging.getLogger(__name__)


class ConversationAPIClient:
    """Authenticated async client for the conversation REST API."""

    def __init__(
        self,
        session: SessionStore,
        base_url: str = DEFAULT_API_BASE_URL,
        timeout: float = 30,
        http: httpx.AsyncClient | None = None,
    ):
        self.session = session
        self.base_url = (base_url or DEFAULT_API_BASE_URL).rstrip("/")
        self.timeout = timeout
        self._http = http or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_config(cls, cfg: dict, session: SessionStore) -> "ConversationAPIClient":
        api_cfg = cfg.get("api", {})
        return cls(
            session,
            base_url=api_cfg.get("base_url", DEFAULT_API_BASE_URL),
            timeout=api_cfg.get("timeout", 30),
        )

    async def close(self):
        await self._http.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------

    def _auth_headers(self) -> dict[str, str]:
        token = self.session.access_token
        if not token:
            raise AuthError("No authentication token found. Please log in.")
        # every authenticated call also needs a user identifier
        self._user_email()
        return {
            "Content-Type": "application/json",
            "Authorization": f"bearer {token}",
        }

    def _user_email(self) -> str:
        email = self.session.user_email
        if not email:
            raise AuthError("User email not found. Please log in again.")
        return email

    async def _request(
        self,
        method: str,
        path: str,
        action: str,
        *,
        params: dict | None = None,
        json: dict | None = None,
        allow_404: bool = False,
    ) -> httpx.Response | None:
        """Send one authenticated request; returns None for a tolerated 404."""
        headers = self._auth_headers()
        url = f"{self.base_url}{path}"
        t0 = time.monotonic()
        try:
            resp = await self._http.request(method, url, params=params, json=json, headers=headers)
        except httpx.TransportError as e:
            logger.warning("%s: %s %s failed: %s", action, method, path, e)
            raise NetworkError(f"Failed to {action}: {e}") from e
        latency = (time.monotonic() - t0) * 1000
        logger.debug("%s %s -> %d in %.0fms", method, path, resp.status_code, latency)

        if resp.status_code in (401, 403):
            self.session.invalidate()
            raise AuthError("Authentication failed. Please log in again.", status_code=resp.status_code)
        if resp.status_code == 404 and allow_404:
            return None
        if resp.status_code >= 400:
            raise NetworkError(
                f"Failed to {action}: {resp.status_code} {resp.text[:200]}",
                status_code=resp.status_code,
            )
        return resp

    @staticmethod
    def _json(resp: httpx.Response):
        try:
            return resp.json()
        except ValueError as e:
            raise MalformedResponseError(f"Response is not JSON: {resp.text[:200]}") from e

    @staticmethod
    def _files(attachments: list[FileAttachment] | None) -> list[dict] | None:
        if not attachments:
            return None
        return [a.to_reference() for a in attachments]

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def list_conversations(self) -> list[Conversation]:
        """All conversations of the signed-in user, in server order."""
        email = self._user_email()
        resp = await self._request(
            "GET", "/conversation", "fetch conversations", params={"user_id": email},
        )
        data = parse_payload(ConversationListResponse, self._json(resp))
        return [record.to_conversation() for record in data.conversations]

    async def start_conversation(
        self, query: str, attachments: list[FileAttachment] | None = None,
    ) -> NewQueryResponse:
        """Create a conversation with its first query; the remote assigns both ids."""
        body = {"email": self._user_email(), "query": query}
        files = self._files(attachments)
        if files:
            body["files"] = files
        resp = await self._request("POST", "/new_query", "start conversation", json=body)
        data = parse_payload(NewQueryResponse, self._json(resp))
        logger.info("Started conversation %s (message %s)", data.conversation_id, data.message_id)
        return data

    async def send_message(
        self, conversation_id: str, query: str, attachments: list[FileAttachment] | None = None,
    ) -> NewMessageResponse:
        body = {"query": query, "user_id": self._user_email()}
        files = self._files(attachments)
        if files:
            body["files"] = files
        resp = await self._request(
            "POST", f"/conversation/{conversation_id}/message", "send message", json=body,
        )
        data = parse_payload(NewMessageResponse, self._json(resp))
        logger.info("Sent message in %s (message %s)", conversation_id, data.message_id)
        return data

    async def poll_status(self, conversation_id: str, message_id: str) -> MessageStatusResponse:
        resp = await self._request(
            "GET", f"/conversation/{conversation_id}/message/{message_id}", "poll message",
        )
        return parse_payload(MessageStatusResponse, self._json(resp))

    async def get_messages(self, conversation_id: str) -> list[Message]:
        """
        Message history of a conversation, ordered by index.
        A 404 or an `error` in the payload both mean there is nothing to show.
        """
        resp = await self._request(
            "GET", f"/conversation/{conversation_id}", "fetch messages", allow_404=True,
        )
        if resp is None:
            logger.warning("Conversation %s not found", conversation_id)
            return []
        data = parse_payload(ConversationMessagesResponse, self._json(resp))
        if data.error:
            logger.error("API returned error for %s: %s", conversation_id, data.error)
            return []
        messages = order_messages([r.to_message(conversation_id) for r in data.messages])
        logger.debug("Loaded %d messages for conversation %s", len(messages), conversation_id)
        return messages

    async def delete_conversation(self, conversation_id: str) -> DeleteConversationResponse:
        email = self._user_email()
        resp = await self._request(
            "DELETE", f"/conversation/{conversation_id}", "delete conversation",
            params={"user_id": email},
        )
        if not resp.content:
            return DeleteConversationResponse()
        return parse_payload(DeleteConversationResponse, self._json(resp))

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    async def get_presigned_url(
        self, filename: str, conversation_id: str | None = None,
    ) -> PresignedUrlResponse:
        body = {"filename": filename, "user_id": self._user_email()}
        if conversation_id:
            body["conversation_id"] = conversation_id
        resp = await self._request("POST", "/get-presigned-url", "get presigned URL", json=body)
        return parse_payload(PresignedUrlResponse, self._json(resp))

    async def upload_to_presigned_url(self, url: str, path: Path, mime_type: str):
        """PUT raw file bytes to object storage. The URL carries its own auth."""
        content = Path(path).read_bytes()
        try:
            resp = await self._http.put(
                url,
                content=content,
                headers={"Content-Type": mime_type or "application/octet-stream"},
            )
        except httpx.TransportError as e:
            raise NetworkError(f"Failed to upload file: {e}") from e
        if resp.status_code >= 400:
            raise NetworkError(
                f"Failed to upload file: {resp.status_code}", status_code=resp.status_code,
            )
        logger.debug("Uploaded %s (%d bytes)", path, len(content))
