from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime, timedelta, timezone

import pytest

from adapters.memory_realtime import InProcessRealtime
from adapters.sqlite_store import SQLiteStore
from conftest import add_user, post_request
from core.config import ChatConfig
from core.errors import Forbidden, UpstreamUnavailable, ValidationFailed
from core.matching import MatchingEngine
from core.messaging import MESSAGES_TABLE, ChatLog, MessagingChannel, seen_marker_id
from core.models import Message, RealtimeEvent

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _message(message_id: str, seconds: int, sender_id: str = "buyer", seen: bool = False) -> Message:
    return Message(
        id=message_id,
        request_id="req",
        sender_id=sender_id,
        content=f"message {message_id}",
        created_at=T0 + timedelta(seconds=seconds),
        seen=seen,
        seen_at=T0 + timedelta(seconds=seconds + 1) if seen else None,
    )


def _matched_request(store, clock):
    request = post_request(store, "buyer")
    MatchingEngine(store, clock).accept(request.request_id, "helper")
    return request


def test_chat_log_orders_by_timestamp_regardless_of_arrival() -> None:
    log = ChatLog("req")
    for message in (_message("c", 3), _message("a", 1), _message("b", 2)):
        log.merge(message)

    assert [message.id for message in log.messages()] == ["a", "b", "c"]


def test_chat_log_breaks_timestamp_ties_by_id() -> None:
    log = ChatLog("req")
    log.merge_all([_message("b", 1), _message("a", 1)])
    assert [message.id for message in log.messages()] == ["a", "b"]


def test_chat_log_ignores_duplicates_and_other_requests() -> None:
    log = ChatLog("req")
    assert log.merge(_message("a", 1)) is True
    assert log.merge(_message("a", 1)) is False

    foreign = Message(id="x", request_id="other", sender_id="buyer", content="hi", created_at=T0)
    assert log.merge(foreign) is False
    assert len(log) == 1


def test_chat_log_never_unsees_a_message() -> None:
    log = ChatLog("req")
    log.merge(_message("a", 1, seen=True))
    log.merge(_message("a", 1, seen=False))

    (message,) = log.messages()
    assert message.seen is True
    assert message.seen_at is not None


def test_chat_log_applies_partial_update_events() -> None:
    log = ChatLog("req")
    log.merge(_message("a", 1))

    changed = log.apply(
        RealtimeEvent("update", MESSAGES_TABLE, {"id": "a", "seen": 1, "seen_at": (T0 + timedelta(minutes=1)).isoformat()})
    )

    assert changed is True
    (message,) = log.messages()
    assert message.seen is True
    assert message.content == "message a"


def test_chat_log_skips_malformed_events() -> None:
    log = ChatLog("req")
    assert log.apply(RealtimeEvent("insert", MESSAGES_TABLE, {"id": "a", "request_id": "req"})) is False
    assert log.apply(RealtimeEvent("delete", MESSAGES_TABLE, {"id": "a"})) is False
    assert len(log) == 0


def test_seen_marker_is_latest_seen_message_of_viewer() -> None:
    messages = [
        _message("a", 1, sender_id="buyer", seen=True),
        _message("b", 2, sender_id="helper", seen=True),
        _message("c", 3, sender_id="buyer", seen=True),
        _message("d", 4, sender_id="buyer", seen=False),
    ]
    assert seen_marker_id(messages, "buyer") == "c"
    assert seen_marker_id(messages, "helper") == "b"
    assert seen_marker_id(messages, "nobody") is None


def test_send_validates_body_and_participants(store, clock) -> None:
    request = _matched_request(store, clock)
    channel = MessagingChannel(store, clock=clock)

    with pytest.raises(ValidationFailed):
        channel.send(request.request_id, "buyer", "   ")
    with pytest.raises(Forbidden):
        channel.send(request.request_id, "stranger", "hello")

    sent = channel.send(request.request_id, "helper", "  on my way  ")
    assert sent.content == "on my way"
    assert sent.seen is False
    assert [message.id for message in channel.history(request.request_id)] == [sent.id]


def test_mark_seen_flips_only_counterpart_messages_and_is_idempotent(store, clock) -> None:
    request = _matched_request(store, clock)
    channel = MessagingChannel(store, clock=clock)
    own = channel.send(request.request_id, "buyer", "hi")
    channel.send(request.request_id, "helper", "hello")
    channel.send(request.request_id, "helper", "bought the milk")

    assert channel.mark_seen(request.request_id, "buyer") == 2
    after_first = channel.history(request.request_id)
    assert channel.mark_seen(request.request_id, "buyer") == 0
    after_second = channel.history(request.request_id)

    assert after_first == after_second
    seen = {message.id: message.seen for message in after_second}
    assert seen[own.id] is False
    assert sum(seen.values()) == 2
    assert seen_marker_id(after_second, "helper") == after_second[-1].id


def test_resolve_roles_via_match_offers_call_to_helper(store, clock) -> None:
    request = _matched_request(store, clock)
    add_user(store, "buyer", phone="+6281234")
    add_user(store, "helper", phone="+6299999")
    channel = MessagingChannel(store, clock=clock)

    helper_view = channel.resolve_roles(request.request_id, "helper")
    assert helper_view.viewer_is_helper is True
    assert helper_view.counterpart_id == "buyer"
    assert helper_view.call_link == "tel:+6281234"

    buyer_view = channel.resolve_roles(request.request_id, "buyer")
    assert buyer_view.viewer_is_helper is False
    assert buyer_view.counterpart_id == "helper"
    assert buyer_view.call_link is None

    with pytest.raises(Forbidden):
        channel.resolve_roles(request.request_id, "stranger")


def test_resolve_roles_falls_back_to_legacy_helper_column(store, clock, tmp_path) -> None:
    request = post_request(store, "buyer")
    with sqlite3.connect(str(tmp_path / "helpmate.db")) as conn:
        conn.execute(
            "UPDATE requests SET helper_id = ?, status = 'on_progress' WHERE request_id = ?",
            ("old-helper", request.request_id),
        )
    channel = MessagingChannel(store, clock=clock)

    roles = channel.resolve_roles(request.request_id, "old-helper")
    assert roles.viewer_is_helper is True
    assert roles.counterpart_id == "buyer"
    assert channel.resolve_roles(request.request_id, "buyer").counterpart_id == "old-helper"
    # Legacy helpers can still chat on their old requests.
    assert channel.send(request.request_id, "old-helper", "hi").sender_id == "old-helper"


def test_follow_requires_realtime(store, clock) -> None:
    request = post_request(store, "buyer")
    channel = MessagingChannel(store, clock=clock)

    async def first_snapshot():
        async for snapshot in channel.follow(request.request_id):
            return snapshot

    with pytest.raises(UpstreamUnavailable):
        asyncio.run(first_snapshot())


def test_follow_streams_updates_and_recovers_after_drop(store, clock, tmp_path) -> None:
    request = _matched_request(store, clock)

    async def scenario() -> None:
        realtime = InProcessRealtime()
        live_store = SQLiteStore(str(tmp_path / "helpmate.db"), on_change=realtime.publish, clock=clock)
        channel = MessagingChannel(
            live_store, realtime, ChatConfig(reconnect_delay_seconds=0, max_reconnects=1), clock=clock
        )
        channel.send(request.request_id, "buyer", "hi")

        stream = channel.follow(request.request_id)
        first = await asyncio.wait_for(stream.__anext__(), timeout=5)
        assert [message.content for message in first] == ["hi"]

        channel.send(request.request_id, "helper", "hello")
        second = await asyncio.wait_for(stream.__anext__(), timeout=5)
        assert [message.content for message in second] == ["hi", "hello"]

        channel.mark_seen(request.request_id, "helper")
        third = await asyncio.wait_for(stream.__anext__(), timeout=5)
        assert third[0].seen is True

        # A message written while the feed is down is picked up by the refetch.
        realtime.drop_all()
        channel.send(request.request_id, "buyer", "are you there?")
        fourth = await asyncio.wait_for(stream.__anext__(), timeout=5)
        assert [message.content for message in fourth] == ["hi", "hello", "are you there?"]
        assert realtime.subscriber_count == 1

        # Reconnect budget exhausted: the stream ends.
        realtime.drop_all()
        with pytest.raises(StopAsyncIteration):
            await stream.__anext__()
        assert realtime.subscriber_count == 0

    asyncio.run(scenario())


class GatedStore:
    """Holds list_messages until the gate opens."""

    def __init__(self, wrapped) -> None:
        self._wrapped = wrapped
        self.gate = threading.Event()

    def __getattr__(self, name):
        return getattr(self._wrapped, name)

    def list_messages(self, request_id):
        if not self.gate.wait(timeout=5):
            raise UpstreamUnavailable()
        return self._wrapped.list_messages(request_id)


def test_follow_fetches_history_off_the_event_loop(store, clock) -> None:
    request = _matched_request(store, clock)
    store.insert_message(request.request_id, "buyer", "hi")
    gated = GatedStore(store)

    async def scenario() -> None:
        channel = MessagingChannel(
            gated, InProcessRealtime(), ChatConfig(reconnect_delay_seconds=0, max_reconnects=1), clock=clock
        )
        stream = channel.follow(request.request_id)
        pending = asyncio.ensure_future(stream.__anext__())
        await asyncio.sleep(0.05)
        # The loop is still free while the history read waits.
        assert not pending.done()
        gated.gate.set()
        first = await asyncio.wait_for(pending, timeout=5)
        assert [message.content for message in first] == ["hi"]
        await stream.aclose()

    asyncio.run(scenario())
