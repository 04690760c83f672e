"""
Tests for the conversation lifecycle manager.
The API client is an AsyncMock; the cache is a real SQLite file under
tmp_path; polling and streaming run on the real event loop with tiny delays.
Run with: pytest tests/test_lifecycle.py
"""

import asyncio
import copy
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from circuitchat.api.schemas import (
    DeleteConversationResponse,
    MessageStatusResponse,
    NewMessageResponse,
    NewQueryResponse,
)
from circuitchat.config import DEFAULTS
from circuitchat.errors import AuthError, NetworkError
from circuitchat.exchange import Phase
from circuitchat.lifecycle import ConversationManager
from circuitchat.session import ACCESS_TOKEN, USER_EMAIL, SessionStore
from circuitchat.storage.local_cache import LocalCache
from circuitchat.storage.models import Conversation, Message, MessageStatus, Role


def fast_config(**streaming):
    cfg = copy.deepcopy(DEFAULTS)
    cfg["polling"].update(max_attempts=10, initial_delay=0.001, max_delay=0.002)
    cfg["streaming"].update(tick=0, start_delay=0, **streaming)
    cfg["ui"]["error_dismiss_seconds"] = 0
    return cfg


def status(raw, message="", error=""):
    return MessageStatusResponse(status=raw, message=message, error=error)


def make_client():
    client = MagicMock()
    client.list_conversations = AsyncMock(return_value=[])
    client.start_conversation = AsyncMock(
        return_value=NewQueryResponse(message_id="m1", conversation_id="c1"))
    client.send_message = AsyncMock(return_value=NewMessageResponse(message_id="m2"))
    client.poll_status = AsyncMock(return_value=status("Complete", "ok"))
    client.get_messages = AsyncMock(return_value=[])
    client.delete_conversation = AsyncMock(return_value=DeleteConversationResponse())
    client.close = AsyncMock()
    return client


def make_manager(tmp_path, client=None, **streaming):
    session = SessionStore({ACCESS_TOKEN: "tok", USER_EMAIL: "ada@example.com"})
    cache = LocalCache(str(tmp_path / "cache.db"))
    return ConversationManager(client or make_client(), cache, session, config=fast_config(**streaming))


def _conv(cid, day, pinned=False):
    return Conversation(cid, name=cid, created_at=datetime(2025, 5, day, tzinfo=timezone.utc), is_pinned=pinned)


# ---------------------------------------------------------------------------
# Full exchange
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_conversation_polls_and_streams(tmp_path):
    """New conversation: two 'Processing.....' polls, then the answer is streamed in full."""
    answer = "Use a bandgap core with a PTAT/CTAT sum trimmed to 1.2V."
    client = make_client()
    client.poll_status = AsyncMock(side_effect=[
        status("Processing....."), status("Processing....."), status("Complete", answer),
    ])
    manager = make_manager(tmp_path, client)

    cid = await manager.create_conversation("Design a 1.2V reference")
    assert cid == "c1"
    assert manager.current_conversation_id == "c1"
    assert manager.is_sending
    await manager.wait_idle()

    msgs = manager.messages
    assert len(msgs) == 2
    user, assistant = msgs
    assert (user.role, user.content) == (Role.USER, "Design a 1.2V reference")
    assert (assistant.id, assistant.role) == ("m1", Role.ASSISTANT)
    assert assistant.content == answer
    assert assistant.status == MessageStatus.COMPLETE
    assert client.poll_status.await_count == 3
    assert manager.exchange_for("c1", "m1").phase == Phase.COMPLETE
    assert not manager.is_sending

    cached = manager.cache.get_messages("c1")
    assert [m.role for m in cached] == [Role.USER, Role.ASSISTANT]
    assert cached[1].content == answer


@pytest.mark.asyncio
async def test_table_context_hidden_from_user_message(tmp_path):
    manager = make_manager(tmp_path)
    await manager.create_conversation("Design an LDO\n\n[CURRENT REQUIREMENTS]\nVin 3.3")
    await manager.wait_idle()
    assert manager.messages[0].content == "Design an LDO"
    sent_query = manager.client.start_conversation.await_args.args[0]
    assert "[CURRENT REQUIREMENTS]" in sent_query


@pytest.mark.asyncio
async def test_remote_error_marks_message(tmp_path):
    client = make_client()
    client.poll_status = AsyncMock(return_value=status("Processing", error="rate limited"))
    manager = make_manager(tmp_path, client)

    await manager.create_conversation("Design a 1.2V reference")
    await manager.wait_idle()

    assistant = manager.messages[-1]
    assert assistant.status == MessageStatus.ERROR
    assert assistant.error == "rate limited"
    assert assistant.content == ""
    ex = manager.exchange_for("c1", "m1")
    assert ex.phase == Phase.ERROR
    assert ex.error == "rate limited"
    assert client.poll_status.await_count == 1
    assert manager.cache.get_messages("c1")[-1].status == MessageStatus.ERROR


@pytest.mark.asyncio
async def test_poll_timeout_marks_message(tmp_path):
    client = make_client()
    client.poll_status = AsyncMock(return_value=status("Processing"))
    manager = make_manager(tmp_path, client)
    await manager.create_conversation("q")
    await manager.wait_idle()
    assert client.poll_status.await_count == 10
    assert manager.messages[-1].status == MessageStatus.ERROR
    assert "timeout" in manager.messages[-1].error.lower()


@pytest.mark.asyncio
async def test_create_failure_appends_nothing(tmp_path):
    client = make_client()
    client.start_conversation = AsyncMock(side_effect=NetworkError("Failed to start conversation: 500"))
    manager = make_manager(tmp_path, client)
    with pytest.raises(NetworkError):
        await manager.create_conversation("q")
    assert manager.current_conversation_id is None
    assert manager.error == "Failed to start conversation: 500"
    assert not manager.is_sending
    client.poll_status.assert_not_awaited()


# ---------------------------------------------------------------------------
# Stopping
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_stop_mid_stream_keeps_partial(tmp_path):
    """Stopping at 40% leaves exactly the revealed prefix, marked complete."""
    text = "".join(chr(ord("a") + i % 26) for i in range(100))
    client = make_client()
    client.poll_status = AsyncMock(return_value=status("Complete", text))
    manager = make_manager(tmp_path, client, min_chunk=1, max_chunk=1)
    stopped = []

    def stop_at_40(m):
        msgs = m.messages_for("c1")
        if stopped or not msgs:
            return
        last = msgs[-1]
        if last.status == MessageStatus.PROCESSING and len(last.content) == 40:
            stopped.append(m.stop_response())

    manager.subscribe(stop_at_40)
    await manager.create_conversation("Design a 1.2V reference")
    await manager.wait_idle()

    assert stopped == [1]
    assistant = manager.messages[-1]
    assert assistant.content == text[:40]
    assert assistant.status == MessageStatus.COMPLETE
    assert manager.exchange_for("c1", "m1").phase == Phase.ABORTED
    assert manager.cache.get_messages("c1")[-1].content == text[:40]
    assert len(manager.streams) == 0


@pytest.mark.asyncio
async def test_stop_during_polling_sends_no_more_polls(tmp_path):
    client = make_client()
    manager = make_manager(tmp_path, client)
    calls = []

    async def poll(cid, mid):
        calls.append(mid)
        if len(calls) == 2:
            manager.stop_response()
        return status("Processing.....")

    client.poll_status = AsyncMock(side_effect=poll)
    await manager.create_conversation("q")
    await manager.wait_idle()

    assert len(calls) == 2
    assistant = manager.messages[-1]
    assert assistant.status == MessageStatus.COMPLETE
    assert assistant.content == ""
    assert assistant.error is None
    assert manager.exchange_for("c1", "m1").phase == Phase.ABORTED
    assert manager.error is None
    assert len(manager.polls) == 0


@pytest.mark.asyncio
async def test_scoped_stop_leaves_other_conversation(tmp_path):
    client = make_client()
    manager = make_manager(tmp_path, client)
    client.poll_status = AsyncMock(return_value=status("Processing"))

    await manager.create_conversation("first")
    client.start_conversation.return_value = NewQueryResponse(message_id="m9", conversation_id="c2")
    await manager.create_conversation("second")

    assert manager.stop_response("c1") == 1
    assert manager.exchange_for("c1", "m1").phase == Phase.ABORTED
    assert not manager.exchange_for("c2", "m9").settled
    assert manager.stop_response() == 1
    await manager.wait_idle()
    assert manager.exchanges.active() == []


# ---------------------------------------------------------------------------
# Sending in an existing conversation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_messages_alternate_user_assistant(tmp_path):
    client = make_client()
    manager = make_manager(tmp_path, client)
    await manager.create_conversation("first question")
    await manager.wait_idle()

    for i, mid in enumerate(["m2", "m3"]):
        client.send_message.return_value = NewMessageResponse(message_id=mid)
        client.poll_status.return_value = status("Complete", f"answer {i}")
        assert await manager.send_message(f"follow-up {i}") == mid
        await manager.wait_idle()

    roles = [m.role for m in manager.messages]
    assert roles == [Role.USER, Role.ASSISTANT] * 3
    assert [m.id for m in manager.messages][1::2] == ["m1", "m2", "m3"]
    assert all(m.status == MessageStatus.COMPLETE for m in manager.messages)
    assert [m.content for m in manager.cache.get_messages("c1")][-1] == "answer 1"


@pytest.mark.asyncio
async def test_send_without_conversation(tmp_path):
    manager = make_manager(tmp_path)
    assert await manager.send_message("hello") is None
    assert manager.error == "No conversation selected"
    manager.client.send_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_send_failure_keeps_optimistic_user_message(tmp_path):
    client = make_client()
    client.send_message = AsyncMock(side_effect=NetworkError("Failed to send message: 502"))
    manager = make_manager(tmp_path, client)
    manager.current_conversation_id = "c1"

    assert await manager.send_message("hello") is None
    assert [m.role for m in manager.messages] == [Role.USER]
    assert manager.error == "Failed to send message: 502"
    assert not manager.is_sending
    assert [m.content for m in manager.cache.get_messages("c1")] == ["hello"]


@pytest.mark.asyncio
async def test_duplicate_poll_is_ignored(tmp_path):
    client = make_client()
    client.poll_status = AsyncMock(side_effect=[status("Processing"), status("Complete", "ok")])
    manager = make_manager(tmp_path, client)
    await manager.create_conversation("q")
    assert manager.poll_for_response(manager.exchange_for("c1", "m1")) is None
    await manager.wait_idle()
    assert client.poll_status.await_count == 2


# ---------------------------------------------------------------------------
# Conversations and history
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_load_conversations_sorted_and_pins_kept(tmp_path):
    client = make_client()
    client.list_conversations.return_value = [_conv("old", 1), _conv("new", 9), _conv("pinned", 2, True)]
    manager = make_manager(tmp_path, client)
    await manager.load_conversations()
    assert [c.id for c in manager.conversations] == ["pinned", "new", "old"]

    assert manager.toggle_pin("old") is True
    assert [c.id for c in manager.conversations] == ["pinned", "old", "new"]
    assert manager.toggle_pin("pinned") is False
    await manager.load_conversations()
    assert [c.id for c in manager.conversations] == ["old", "new", "pinned"]
    assert not manager.is_loading


@pytest.mark.asyncio
async def test_load_conversations_without_session(tmp_path):
    manager = make_manager(tmp_path)
    manager.session.clear()
    await manager.load_conversations()
    assert manager.conversations == []
    manager.client.list_conversations.assert_not_awaited()


@pytest.mark.asyncio
async def test_load_conversations_errors(tmp_path):
    """Network failures raise the banner; auth failures leave it to the login flow."""
    client = make_client()
    manager = make_manager(tmp_path, client)
    client.list_conversations = AsyncMock(side_effect=NetworkError("Failed to fetch conversations: 500"))
    await manager.load_conversations()
    assert manager.error == "Failed to fetch conversations: 500"

    manager.clear_error()
    client.list_conversations = AsyncMock(side_effect=AuthError("Authentication failed."))
    await manager.load_conversations()
    assert manager.error is None


@pytest.mark.asyncio
async def test_select_conversation_falls_back_to_cache(tmp_path):
    client = make_client()
    client.get_messages = AsyncMock(side_effect=NetworkError("offline"))
    manager = make_manager(tmp_path, client)
    await manager.create_conversation("Design a 1.2V reference")
    await manager.wait_idle()

    manager._messages.clear()
    msgs = await manager.select_conversation("c1")
    assert [m.role for m in msgs] == [Role.USER, Role.ASSISTANT]
    assert msgs[1].content == "ok"
    assert await manager.select_conversation("unknown") == ()


@pytest.mark.asyncio
async def test_delete_conversation_clears_state(tmp_path):
    client = make_client()
    client.list_conversations.return_value = [_conv("c1", 3)]
    manager = make_manager(tmp_path, client)
    await manager.create_conversation("q")
    await manager.wait_idle()

    assert await manager.delete_conversation("c1") is True
    client.delete_conversation.assert_awaited_once_with("c1")
    assert manager.conversations == []
    assert manager.current_conversation_id is None
    assert manager.messages_for("c1") == ()
    assert manager.cache.get_messages("c1") == []
    assert not manager.is_deleting


@pytest.mark.asyncio
async def test_delete_failure_sets_error(tmp_path):
    client = make_client()
    client.delete_conversation = AsyncMock(side_effect=NetworkError("Failed to delete conversation: 500"))
    manager = make_manager(tmp_path, client)
    with pytest.raises(NetworkError):
        await manager.delete_conversation("c1")
    assert manager.error == "Failed to delete conversation: 500"
    assert not manager.is_deleting


@pytest.mark.asyncio
async def test_listener_failure_does_not_break_flow(tmp_path):
    manager = make_manager(tmp_path)
    seen = []

    def broken(_):
        raise RuntimeError("ui crashed")

    manager.subscribe(broken)
    unsubscribe = manager.subscribe(lambda m: seen.append(len(m.messages)))
    await manager.create_conversation("q")
    await manager.wait_idle()
    unsubscribe()
    count = len(seen)
    manager.clear_error()
    assert len(seen) == count
    assert manager.messages[-1].content == "ok"


@pytest.mark.asyncio
async def test_close_stops_and_closes_client(tmp_path):
    client = make_client()
    client.poll_status = AsyncMock(return_value=status("Processing"))
    manager = make_manager(tmp_path, client)
    await manager.create_conversation("q")
    await manager.close()
    assert manager.exchange_for("c1", "m1").phase == Phase.ABORTED
    client.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_reload_keeps_in_flight_answer(tmp_path):
    """A history reload that already lists the pending answer does not settle it early."""
    client = make_client()
    release = asyncio.Event()

    async def poll(cid, mid):
        await release.wait()
        return status("Processing")

    client.poll_status = AsyncMock(side_effect=poll)
    manager = make_manager(tmp_path, client)
    await manager.create_conversation("Design a 1.2V reference")
    await asyncio.sleep(0)

    client.get_messages.return_value = [
        Message(id="u-remote", conversation_id="c1", role=Role.USER,
                content="Design a 1.2V reference", index=0),
        Message(id="m1", conversation_id="c1", role=Role.ASSISTANT,
                content="server copy", index=1),
    ]
    msgs = await manager.select_conversation("c1")
    assert [m.id for m in msgs] == ["u-remote", "m1"]
    assert msgs[1].status == MessageStatus.PROCESSING
    assert msgs[1].content == ""

    assert manager.stop_response() == 1
    release.set()
    await manager.wait_idle()
    m1 = manager.messages_for("c1")[1]
    assert (m1.status, m1.content) == (MessageStatus.COMPLETE, "")
    assert manager.exchange_for("c1", "m1").phase == Phase.ABORTED


# ---------------------------------------------------------------------------
# Pins
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_pin_survives_new_manager(tmp_path):
    """A pin set by one manager is applied by the next one on the same cache file."""
    client = make_client()
    client.list_conversations.return_value = [_conv("a", 1), _conv("b", 9)]
    first = make_manager(tmp_path, client)
    await first.load_conversations()
    assert [c.id for c in first.conversations] == ["b", "a"]
    assert first.toggle_pin("a") is True

    second = make_manager(tmp_path, client)
    await second.load_conversations()
    assert [(c.id, c.is_pinned) for c in second.conversations] == [("a", True), ("b", False)]


@pytest.mark.asyncio
async def test_delete_forgets_pin(tmp_path):
    client = make_client()
    client.list_conversations.return_value = [_conv("a", 1), _conv("b", 9)]
    manager = make_manager(tmp_path, client)
    await manager.load_conversations()
    manager.toggle_pin("a")
    assert await manager.delete_conversation("a") is True
    assert manager.cache.get_pins() == {}


# ---------------------------------------------------------------------------
# Error banner
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_error_auto_dismisses(tmp_path):
    client = make_client()
    client.list_conversations = AsyncMock(side_effect=NetworkError("boom"))
    manager = make_manager(tmp_path, client)
    manager.error_dismiss_seconds = 0.02
    seen = []
    manager.subscribe(lambda m: seen.append(m.error))

    await manager.load_conversations()
    assert manager.error == "boom"
    await asyncio.sleep(0.08)
    assert manager.error is None
    assert seen[-1] is None


@pytest.mark.asyncio
async def test_newer_error_outlives_older_timer(tmp_path):
    """The first error's timer must not clear an error raised after it."""
    client = make_client()
    client.list_conversations = AsyncMock(side_effect=NetworkError("first outage"))
    manager = make_manager(tmp_path, client)
    manager.error_dismiss_seconds = 0.05

    await manager.load_conversations()
    assert manager.error == "first outage"
    await asyncio.sleep(0.03)
    assert await manager.send_message("hello") is None
    assert manager.error == "No conversation selected"

    await asyncio.sleep(0.035)
    assert manager.error == "No conversation selected"
    manager._dismiss_error("first outage")
    assert manager.error == "No conversation selected"

    await asyncio.sleep(0.08)
    assert manager.error is None
