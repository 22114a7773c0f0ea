import asyncio
import json

import pytest

from fakes import eventually
from todo_sync.errors import SubscriptionError
from todo_sync.realtime import (
    SupabaseChangeFeed,
    build_join_payload,
    filter_expression,
    parse_change,
    realtime_url,
)
from todo_sync.services import ChangeType, ChannelStatus


class FakeSocket:
    """Websocket double answering phx_join and replaying pushed frames."""

    def __init__(self, join_status: str = "ok"):
        self.join_status = join_status
        self.sent = []
        self.closed = False
        self._incoming = asyncio.Queue()

    async def send(self, raw):
        message = json.loads(raw)
        self.sent.append(message)
        if message["event"] == "phx_join":
            response = {} if self.join_status == "ok" else {"reason": "Unauthorized"}
            self.push(
                {
                    "topic": message["topic"],
                    "event": "phx_reply",
                    "payload": {"status": self.join_status, "response": response},
                    "ref": message["ref"],
                }
            )

    async def recv(self):
        return await self._incoming.get()

    def push(self, message):
        self._incoming.put_nowait(json.dumps(message))

    def push_raw(self, raw):
        self._incoming.put_nowait(raw)

    def end(self):
        self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        raw = await self._incoming.get()
        if raw is None:
            raise StopAsyncIteration
        return raw

    async def close(self):
        self.closed = True


def change_frame(change_type, record=None, old_record=None):
    return {
        "topic": "realtime:todos_changes",
        "event": "postgres_changes",
        "payload": {
            "data": {
                "type": change_type,
                "table": "todos",
                "schema": "public",
                "record": record,
                "old_record": old_record,
            }
        },
        "ref": None,
    }


def _feed(socket, token="user-token"):
    urls = []

    async def connect(url):
        urls.append(url)
        return socket

    feed = SupabaseChangeFeed(
        "https://project.supabase.co", "anon-key", lambda: token, connect=connect, join_timeout=1.0
    )
    return feed, urls


class TestProtocolHelpers:
    def test_realtime_url(self):
        url = realtime_url("https://project.supabase.co/", "anon-key")
        assert url == "wss://project.supabase.co/realtime/v1/websocket?apikey=anon-key&vsn=1.0.0"
        assert realtime_url("http://localhost:54321", "k").startswith("ws://localhost:54321/")

    def test_filter_expression(self):
        assert filter_expression({}) is None
        assert filter_expression({"user_id": "u1"}) == "user_id=eq.u1"
        with pytest.raises(ValueError):
            filter_expression({"a": 1, "b": 2})

    def test_join_payload(self):
        payload = build_join_payload("todos", {"user_id": "u1"}, "user-token")
        (change,) = payload["config"]["postgres_changes"]
        assert change == {"event": "*", "schema": "public", "table": "todos", "filter": "user_id=eq.u1"}
        assert payload["access_token"] == "user-token"

    def test_parse_change(self):
        insert = parse_change(change_frame("INSERT", record={"id": "t1", "task": "Buy milk"}))
        assert insert.type is ChangeType.INSERT
        assert insert.record == {"id": "t1", "task": "Buy milk"}
        assert insert.old_record is None

        delete = parse_change(change_frame("DELETE", old_record={"id": "t1"}))
        assert delete.type is ChangeType.DELETE
        assert delete.record is None
        assert delete.old_record == {"id": "t1"}

        assert parse_change({"event": "presence_state", "payload": {}}) is None
        assert parse_change(change_frame("TRUNCATE")) is None


class TestSupabaseChangeFeed:
    @pytest.mark.asyncio
    async def test_joins_and_dispatches_changes(self):
        socket = FakeSocket()
        feed, urls = _feed(socket)
        events, statuses = [], []

        channel = await feed.open_channel("todos", {"user_id": "u1"}, events.append, statuses.append)

        assert channel.status is ChannelStatus.SUBSCRIBED
        assert urls[0].startswith("wss://project.supabase.co/realtime/v1/websocket")
        join = socket.sent[0]
        assert join["event"] == "phx_join"
        assert join["topic"] == "realtime:todos_changes"
        assert join["payload"]["access_token"] == "user-token"

        socket.push(change_frame("INSERT", record={"id": "t1", "task": "Buy milk", "user_id": "u1"}))
        socket.push(change_frame("DELETE", old_record={"id": "t1"}))
        await eventually(lambda: len(events) == 2)

        assert [e.type for e in events] == [ChangeType.INSERT, ChangeType.DELETE]
        assert statuses == []
        await channel.cancel()
        assert socket.sent[-1]["event"] == "phx_leave"
        assert socket.closed

    @pytest.mark.asyncio
    async def test_channel_error_reports_status_once(self):
        socket = FakeSocket()
        feed, _ = _feed(socket)
        statuses = []
        channel = await feed.open_channel("todos", {"user_id": "u1"}, lambda e: None, statuses.append)

        socket.push({"topic": "realtime:todos_changes", "event": "phx_error", "payload": {}, "ref": None})
        socket.end()
        await eventually(lambda: statuses != [])
        await asyncio.sleep(0.01)

        assert statuses == [ChannelStatus.CHANNEL_ERROR]
        assert channel.status is ChannelStatus.CHANNEL_ERROR
        await channel.cancel()

    @pytest.mark.asyncio
    async def test_closed_connection_reports_closed(self):
        socket = FakeSocket()
        feed, _ = _feed(socket)
        statuses = []
        channel = await feed.open_channel("todos", {"user_id": "u1"}, lambda e: None, statuses.append)

        socket.end()
        await eventually(lambda: statuses != [])

        assert statuses == [ChannelStatus.CLOSED]
        await channel.cancel()

    @pytest.mark.asyncio
    async def test_refused_join_raises_and_closes_socket(self):
        socket = FakeSocket(join_status="error")
        feed, _ = _feed(socket)

        with pytest.raises(SubscriptionError, match="Unauthorized"):
            await feed.open_channel("todos", {"user_id": "u1"}, lambda e: None, lambda s: None)
        assert socket.closed

    @pytest.mark.asyncio
    async def test_join_without_token_is_refused(self):
        socket = FakeSocket()
        feed, urls = _feed(socket, token=None)

        with pytest.raises(SubscriptionError):
            await feed.open_channel("todos", {"user_id": "u1"}, lambda e: None, lambda s: None)
        assert urls == []

    @pytest.mark.asyncio
    async def test_connection_failure_raises_subscription_error(self):
        async def refuse(url):
            raise OSError("connection refused")

        feed = SupabaseChangeFeed("https://project.supabase.co", "anon-key", lambda: "t", connect=refuse)

        with pytest.raises(SubscriptionError, match="connection refused"):
            await feed.open_channel("todos", {"user_id": "u1"}, lambda e: None, lambda s: None)

    @pytest.mark.asyncio
    async def test_malformed_frame_during_join_raises_subscription_error(self):
        socket = FakeSocket()
        socket.push_raw("{not json")
        feed, _ = _feed(socket)

        with pytest.raises(SubscriptionError, match="realtime join failed"):
            await feed.open_channel("todos", {"user_id": "u1"}, lambda e: None, lambda s: None)
        assert socket.closed

    @pytest.mark.asyncio
    async def test_malformed_frame_after_join_reports_channel_error(self):
        socket = FakeSocket()
        feed, _ = _feed(socket)
        statuses = []
        channel = await feed.open_channel("todos", {"user_id": "u1"}, lambda e: None, statuses.append)

        socket.push_raw("{not json")
        await eventually(lambda: statuses != [])

        assert statuses == [ChannelStatus.CHANNEL_ERROR]
        await channel.cancel()

    @pytest.mark.asyncio
    async def test_failing_event_handler_reports_channel_error(self):
        socket = FakeSocket()
        feed, _ = _feed(socket)
        statuses = []

        def explode(event):
            raise RuntimeError("handler failed")

        channel = await feed.open_channel("todos", {"user_id": "u1"}, explode, statuses.append)
        socket.push(change_frame("INSERT", record={"id": "t1", "task": "Buy milk", "user_id": "u1"}))
        await eventually(lambda: statuses != [])

        assert statuses == [ChannelStatus.CHANNEL_ERROR]
        await channel.cancel()
