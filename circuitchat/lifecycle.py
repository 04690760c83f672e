"""
Conversation lifecycle manager.

Owns the client-side state of the assistant (conversation list, current
conversation, per-conversation message lists, loading/sending flags, the
error banner) and runs each query through

    sending -> polling -> streaming -> complete | error | aborted

Message lists are tuples and are swapped for new tuples on every change,
so subscribers can compare snapshots by identity. Messages are matched by
id when the placeholder is updated; nothing is spliced by position.

The local cache is written when a user message is created, when an
assistant message settles (complete, error, or forced complete on stop)
and when an authoritative history is fetched. Streaming ticks never
touch it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Callable
from uuid import uuid4

from circuitchat.cancellation import CancellationRegistry, CancelToken
from circuitchat.config import get_config
from circuitchat.errors import AbortError, AuthError, CircuitChatError
from circuitchat.exchange import Exchange, ExchangeLog, Phase, exchange_key
from circuitchat.polling import PollingEngine
from circuitchat.session import SessionStore
from circuitchat.storage.local_cache import LocalCache
from circuitchat.storage.models import (
    Conversation,
    FileAttachment,
    Message,
    MessageStatus,
    Role,
    display_text,
    replace_by_id,
    sort_conversations,
    utc_now,
)
from circuitchat.streaming import StreamPresenter

logger = logging.getLogger(__name__)

Listener = Callable[["ConversationManager"], None]


class ConversationManager:
    """Orchestrates the API client, polling engine, streaming presenter and cache."""

    def __init__(
        self,
        client,
        cache: LocalCache,
        session: SessionStore,
        config: dict | None = None,
        presenter: StreamPresenter | None = None,
        engine: PollingEngine | None = None,
    ):
        cfg = config if config is not None else get_config()
        self.client = client
        self.cache = cache
        self.session = session

        self.polls = CancellationRegistry("polls")
        if presenter is None:
            presenter = StreamPresenter.from_config(cfg, CancellationRegistry("streams"))
        self.presenter = presenter
        self.streams = presenter.registry
        self.engine = engine or PollingEngine.from_config(client, cfg)
        self.exchanges = ExchangeLog()

        self.stream_start_delay = cfg.get("streaming", {}).get("start_delay", 0.05)
        self.error_dismiss_seconds = cfg.get("ui", {}).get("error_dismiss_seconds", 5.0)

        # State read by the presentation layer
        self.conversations: list[Conversation] = []
        self.current_conversation_id: str | None = None
        self.is_loading = False
        self.is_deleting = False
        self.error: str | None = None

        self._messages: dict[str, tuple[Message, ...]] = {}
        self._pin_overrides: dict[str, bool] = cache.get_pins()
        self._sending = 0
        self._polling: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self._listeners: list[Listener] = []
        self._dismiss_handle: asyncio.TimerHandle | None = None

    # ------------------------------------------------------------------
    # State access and notification
    # ------------------------------------------------------------------

    @property
    def messages(self) -> tuple[Message, ...]:
        """Messages of the current conversation."""
        if self.current_conversation_id is None:
            return ()
        return self._messages.get(self.current_conversation_id, ())

    def messages_for(self, conversation_id: str) -> tuple[Message, ...]:
        return self._messages.get(conversation_id, ())

    @property
    def is_sending(self) -> bool:
        """True while a send request is open or any exchange is still in flight."""
        return self._sending > 0 or bool(self.exchanges.active())

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call `listener(manager)` after every state change. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _notify(self):
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.warning("State listener %r failed: %s", listener, e)

    def _set_error(self, message: str):
        self.error = message
        if self._dismiss_handle is not None:
            self._dismiss_handle.cancel()
            self._dismiss_handle = None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None and self.error_dismiss_seconds:
            self._dismiss_handle = loop.call_later(self.error_dismiss_seconds, self._dismiss_error, message)
        self._notify()

    def _dismiss_error(self, message: str):
        self._dismiss_handle = None
        if self.error == message:
            self.error = None
            self._notify()

    def clear_error(self):
        if self._dismiss_handle is not None:
            self._dismiss_handle.cancel()
            self._dismiss_handle = None
        self.error = None
        self._notify()

    def _find(self, conversation_id: str, message_id: str) -> Message | None:
        for m in self._messages.get(conversation_id, ()):
            if m.id == message_id:
                return m
        return None

    def _append(self, conversation_id: str, message: Message):
        self._messages[conversation_id] = self._messages.get(conversation_id, ()) + (message,)

    def _update_message(self, conversation_id: str, message_id: str, **changes) -> Message | None:
        current = self._find(conversation_id, message_id)
        if current is None:
            return None
        updated = current.with_update(**changes)
        self._messages[conversation_id] = replace_by_id(self._messages[conversation_id], updated)
        return updated

    def _track(self, task: asyncio.Task):
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def _apply_pins(self, conversations: list[Conversation]) -> list[Conversation]:
        pinned = []
        for c in conversations:
            override = self._pin_overrides.get(c.id)
            pinned.append(c if override is None else replace(c, is_pinned=override))
        return sort_conversations(pinned)

    async def load_conversations(self):
        """Refresh the conversation list. Failures keep the previous list."""
        if not self.session.is_authenticated:
            self.conversations = []
            self.is_loading = False
            self._notify()
            return

        self.is_loading = True
        self.error = None
        self._notify()
        try:
            conversations = await self.client.list_conversations()
        except AuthError as e:
            # The session has been wiped; the login route takes over from here
            logger.info("Conversation list unavailable: %s", e)
        except CircuitChatError as e:
            logger.error("Error loading conversations: %s", e)
            self._set_error(str(e))
        else:
            self.conversations = self._apply_pins(conversations)
            logger.debug("Loaded %d conversations", len(self.conversations))
        finally:
            self.is_loading = False
            self._notify()

    async def select_conversation(self, conversation_id: str) -> tuple[Message, ...]:
        self.current_conversation_id = conversation_id
        self._notify()
        return await self.load_messages(conversation_id)

    async def load_messages(self, conversation_id: str) -> tuple[Message, ...]:
        """
        Load history from the API, falling back to the local cache when the
        API fails or has nothing. Messages of in-flight exchanges are kept.
        """
        remote: list[Message] = []
        try:
            remote = await self.client.get_messages(conversation_id)
        except CircuitChatError as e:
            logger.warning("Error loading messages from API, using local cache: %s", e)

        if remote:
            self.cache.replace_messages(conversation_id, remote)
            loaded = list(remote)
        else:
            loaded = self.cache.get_messages(conversation_id)

        # The local copy of an in-flight answer wins over the server's record of it
        local = {m.id: m for m in self._messages.get(conversation_id, ())}
        active = {ex.message_id for ex in self.exchanges.active(conversation_id)}
        loaded = [local[m.id] if m.id in active and m.id in local else m for m in loaded]

        known = {m.id for m in loaded}
        in_flight = [
            m for m in local.values()
            if not m.status.is_terminal and m.id not in known
        ]
        self._messages[conversation_id] = tuple(loaded) + tuple(in_flight)
        self._notify()
        return self._messages[conversation_id]

    async def delete_conversation(self, conversation_id: str) -> bool:
        self.is_deleting = True
        self.error = None
        self._notify()
        try:
            result = await self.client.delete_conversation(conversation_id)
        except CircuitChatError as e:
            logger.error("Error deleting conversation %s: %s", conversation_id, e)
            self.is_deleting = False
            self._set_error(str(e))
            raise

        if result.success:
            self.stop_response(conversation_id)
            self.conversations = [c for c in self.conversations if c.id != conversation_id]
            self.cache.clear(conversation_id)
            self._messages.pop(conversation_id, None)
            self._pin_overrides.pop(conversation_id, None)
            self.cache.clear_pin(conversation_id)
            if self.current_conversation_id == conversation_id:
                self.current_conversation_id = None
            logger.info("Conversation deleted: %s %s", conversation_id, result.message)
        self.is_deleting = False
        self._notify()
        return result.success

    def toggle_pin(self, conversation_id: str) -> bool:
        """Flip the local pin flag of a conversation and re-sort. Returns the new flag."""
        new_flag = False
        updated = []
        for c in self.conversations:
            if c.id == conversation_id:
                new_flag = not c.is_pinned
                c = replace(c, is_pinned=new_flag)
            updated.append(c)
        self._pin_overrides[conversation_id] = new_flag
        self.cache.set_pin(conversation_id, new_flag)
        self.conversations = sort_conversations(updated)
        self._notify()
        return new_flag

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    @staticmethod
    def _user_message(conversation_id: str, query: str, timestamp: str,
                      attachments: list[FileAttachment] | None) -> Message:
        return Message(
            id=f"user_{uuid4().hex[:12]}",
            conversation_id=conversation_id,
            role=Role.USER,
            content=display_text(query),
            timestamp=timestamp,
            status=MessageStatus.COMPLETE,
            attachments=tuple(attachments or ()),
        )

    async def create_conversation(
        self, query: str, attachments: list[FileAttachment] | None = None,
    ) -> str:
        """Start a new conversation with `query`. Returns the new conversation id."""
        self._sending += 1
        self.error = None
        self._notify()
        exchange = Exchange()
        exchange.advance(Phase.SENDING)
        try:
            response = await self.client.start_conversation(query, attachments)
        except CircuitChatError as e:
            logger.error("Error creating conversation: %s", e)
            self._sending -= 1
            self._set_error(str(e))
            raise
        self._sending -= 1

        cid = response.conversation_id
        timestamp = response.timestamp or utc_now()
        user_message = self._user_message(cid, query, timestamp, attachments)
        self.cache.store_message(cid, user_message)
        self._messages[cid] = (user_message,)
        self.current_conversation_id = cid

        self._begin_exchange(exchange, cid, response.message_id, timestamp)
        await self.load_conversations()
        return cid

    async def send_message(
        self, query: str, attachments: list[FileAttachment] | None = None,
    ) -> str | None:
        """Send `query` in the current conversation. Returns the assistant message id."""
        cid = self.current_conversation_id
        if not cid:
            self._set_error("No conversation selected")
            return None

        self._sending += 1
        self.error = None
        user_message = self._user_message(cid, query, utc_now(), attachments)
        self.cache.store_message(cid, user_message)
        self._append(cid, user_message)
        self._notify()

        exchange = Exchange(cid)
        exchange.advance(Phase.SENDING)
        try:
            response = await self.client.send_message(cid, query, attachments)
        except CircuitChatError as e:
            logger.error("Error sending message in %s: %s", cid, e)
            self._sending -= 1
            self._set_error(str(e))
            return None
        self._sending -= 1

        self._begin_exchange(exchange, cid, response.message_id, response.timestamp or utc_now())
        return response.message_id

    def _begin_exchange(self, exchange: Exchange, conversation_id: str, message_id: str, timestamp: str):
        placeholder = Message(
            id=message_id,
            conversation_id=conversation_id,
            role=Role.ASSISTANT,
            content="",
            timestamp=timestamp,
            status=MessageStatus.PROCESSING,
        )
        self._append(conversation_id, placeholder)
        exchange.conversation_id = conversation_id
        exchange.message_id = message_id
        self.exchanges.add(exchange)
        self._notify()
        self.poll_for_response(exchange)

    # ------------------------------------------------------------------
    # Polling and streaming
    # ------------------------------------------------------------------

    def poll_for_response(self, exchange: Exchange) -> asyncio.Task | None:
        """Launch the poll for an exchange unless one is already running for it."""
        key = exchange.key
        if key in self._polling:
            logger.warning("Already polling: %s", key)
            return None
        self._polling.add(key)
        task = asyncio.get_running_loop().create_task(self._poll(exchange))
        self._track(task)
        return task

    async def _poll(self, exchange: Exchange):
        cid, mid = exchange.conversation_id, exchange.message_id
        if exchange.settled:
            # stopped before the poll got to run
            logger.debug("Skipping poll for settled exchange %s", exchange.key)
            self._polling.discard(exchange.key)
            return
        token = CancelToken()
        self.polls.register(mid, token, scope=cid)
        exchange.advance(Phase.POLLING)
        logger.info("Starting poll for %s", mid)
        try:
            status = await self.engine.poll_until_complete(cid, mid, token)
        except AbortError:
            logger.info("Polling aborted by user for %s", mid)
            self._complete_partial(cid, mid)
            exchange.advance(Phase.ABORTED)
            self._notify()
        except Exception as e:
            if not isinstance(e, CircuitChatError):
                logger.exception("Unexpected failure polling %s", mid)
            else:
                logger.error("Error polling for response %s: %s", mid, e)
            self._fail_message(cid, mid, str(e) or "Failed to get response")
            exchange.advance(Phase.ERROR, error=str(e))
            self._notify()
        else:
            if self.streams.cancel(mid):
                logger.debug("Cancelled existing stream for %s", mid)
            exchange.advance(Phase.STREAMING, chars=len(status.message))
            stream_task = asyncio.get_running_loop().create_task(
                self._stream_after_delay(exchange, status.message, status.timestamp)
            )
            self._track(stream_task)
            await self.load_conversations()
        finally:
            self._polling.discard(exchange.key)
            self.polls.unregister(mid, token)

    async def _stream_after_delay(self, exchange: Exchange, text: str, timestamp: str):
        if self.stream_start_delay:
            await asyncio.sleep(self.stream_start_delay)
        if exchange.settled:
            return
        cid, mid = exchange.conversation_id, exchange.message_id

        def on_update(content: str, done: bool):
            self._on_stream_update(exchange, timestamp, content, done)

        handle = self.presenter.start(mid, text, on_update, scope=cid)
        await handle.task

    def _on_stream_update(self, exchange: Exchange, timestamp: str, content: str, done: bool):
        if exchange.settled:
            return
        cid, mid = exchange.conversation_id, exchange.message_id
        changes = {
            "content": content,
            "status": MessageStatus.COMPLETE if done else MessageStatus.PROCESSING,
        }
        if done and timestamp:
            changes["timestamp"] = timestamp
        message = self._update_message(cid, mid, **changes)
        if done:
            if message is not None:
                self.cache.store_message(cid, message)
            exchange.advance(Phase.COMPLETE, chars=len(content))
            logger.info("Streaming finished for %s", mid)
        self._notify()

    def _complete_partial(self, conversation_id: str, message_id: str):
        """Force an in-flight message to complete with whatever it has revealed."""
        message = self._find(conversation_id, message_id)
        if message is None or message.status.is_terminal:
            return
        message = self._update_message(conversation_id, message_id, status=MessageStatus.COMPLETE)
        self.cache.store_message(conversation_id, message)

    def _fail_message(self, conversation_id: str, message_id: str, error: str):
        message = self._find(conversation_id, message_id)
        if message is None or message.status.is_terminal:
            return
        message = self._update_message(
            conversation_id, message_id, status=MessageStatus.ERROR, error=error,
        )
        self.cache.store_message(conversation_id, message)

    def stop_response(self, conversation_id: str | None = None) -> int:
        """
        Stop in-flight answers: every conversation's by default, or only
        `conversation_id`'s. Messages still processing become complete with
        their partial content. Returns how many exchanges were stopped.
        """
        polls = self.polls.cancel_all(conversation_id)
        streams = self.streams.cancel_all(conversation_id)
        stopped = self.exchanges.active(conversation_id)
        for exchange in stopped:
            self._complete_partial(exchange.conversation_id, exchange.message_id)
            exchange.advance(Phase.ABORTED)
        logger.info(
            "Stopped %d exchange(s) (%d poll(s), %d stream(s))",
            len(stopped), len(polls), len(streams),
        )
        self._notify()
        return len(stopped)

    # ------------------------------------------------------------------
    # Lifetime
    # ------------------------------------------------------------------

    def exchange_for(self, conversation_id: str, message_id: str) -> Exchange | None:
        return self.exchanges.get(exchange_key(conversation_id, message_id))

    async def wait_idle(self):
        """Wait until every background poll and stream has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self):
        self.stop_response()
        if self._dismiss_handle is not None:
            self._dismiss_handle.cancel()
            self._dismiss_handle = None
        await self.wait_idle()
        await self.client.close()
