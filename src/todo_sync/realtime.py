"""
Change feed over the Supabase realtime websocket.

The server speaks Phoenix channels (vsn 1.0.0): JSON frames of
``{"topic", "event", "payload", "ref"}``. A channel is joined with
``phx_join`` carrying a ``postgres_changes`` config, confirmed by a
``phx_reply`` with status ``ok``, kept alive by ``heartbeat`` frames on the
``phoenix`` topic and left with ``phx_leave``. Row changes arrive as
``postgres_changes`` events.
"""

from __future__ import annotations

import asyncio
import itertools
import json
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .errors import SubscriptionError
from .logging import get_logger
from .services import (
    ChangeCallback,
    ChangeEvent,
    ChangeFeedService,
    ChangeType,
    ChannelHandle,
    ChannelStatus,
    StatusCallback,
)

logger = get_logger(__name__)

Connect = Callable[[str], Awaitable[Any]]

PHOENIX_TOPIC = "phoenix"
DEFAULT_JOIN_TIMEOUT = 10.0
DEFAULT_HEARTBEAT_INTERVAL = 25.0


def realtime_url(base_url: str, api_key: str) -> str:
    url = base_url.rstrip("/")
    if url.startswith("https://"):
        url = "wss://" + url[len("https://"):]
    elif url.startswith("http://"):
        url = "ws://" + url[len("http://"):]
    return f"{url}/realtime/v1/websocket?{urlencode({'apikey': api_key, 'vsn': '1.0.0'})}"


def filter_expression(filters: Mapping[str, Any]) -> Optional[str]:
    """Realtime accepts a single `column=eq.value` filter per subscription."""
    if not filters:
        return None
    if len(filters) > 1:
        raise ValueError("realtime channels support a single equality filter")
    ((column, value),) = filters.items()
    return f"{column}=eq.{value}"


def build_join_payload(table: str, filters: Mapping[str, Any], access_token: str) -> Dict[str, Any]:
    change: Dict[str, Any] = {"event": "*", "schema": "public", "table": table}
    expression = filter_expression(filters)
    if expression:
        change["filter"] = expression
    return {
        "config": {
            "broadcast": {"ack": False, "self": False},
            "presence": {"key": ""},
            "postgres_changes": [change],
        },
        "access_token": access_token,
    }


def parse_change(message: Mapping[str, Any]) -> Optional[ChangeEvent]:
    """Turn a `postgres_changes` frame into a ChangeEvent; other frames give None."""
    if message.get("event") != "postgres_changes":
        return None
    data = (message.get("payload") or {}).get("data") or {}
    try:
        change_type = ChangeType(str(data.get("type", "")).upper())
    except ValueError:
        return None
    record = data.get("record") or None
    old_record = data.get("old_record") or None
    return ChangeEvent(
        type=change_type,
        table=str(data.get("table") or ""),
        record=dict(record) if record else None,
        old_record=dict(old_record) if old_record else None,
    )


class RealtimeChannel(ChannelHandle):
    """One joined topic on its own websocket connection."""

    def __init__(
        self,
        websocket: Any,
        topic: str,
        on_event: ChangeCallback,
        on_status: StatusCallback,
        *,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
    ) -> None:
        self._ws = websocket
        self.topic = topic
        self._on_event = on_event
        self._on_status = on_status
        self._heartbeat_interval = heartbeat_interval
        self._refs = itertools.count(1)
        self._status = ChannelStatus.CLOSED
        self._reader: Optional["asyncio.Task[None]"] = None
        self._heartbeat: Optional["asyncio.Task[None]"] = None
        self._closed = False

    @property
    def status(self) -> ChannelStatus:
        return self._status

    async def _send(self, topic: str, event: str, payload: Mapping[str, Any]) -> str:
        ref = str(next(self._refs))
        await self._ws.send(json.dumps({"topic": topic, "event": event, "payload": dict(payload), "ref": ref}))
        return ref

    async def join(self, payload: Mapping[str, Any]) -> None:
        """Send phx_join and wait for its reply. Raises SubscriptionError if refused."""
        ref = await self._send(self.topic, "phx_join", payload)
        while True:
            message = json.loads(await self._ws.recv())
            if message.get("event") == "phx_reply" and message.get("ref") == ref:
                reply = message.get("payload") or {}
                if reply.get("status") != "ok":
                    reason = (reply.get("response") or {}).get("reason") or "join refused"
                    raise SubscriptionError(f"realtime join failed: {reason}")
                break
            self._handle(message)
        self._status = ChannelStatus.SUBSCRIBED
        self._reader = asyncio.ensure_future(self._read())
        self._heartbeat = asyncio.ensure_future(self._beat())

    def _handle(self, message: Mapping[str, Any]) -> None:
        event = message.get("event")
        if event == "postgres_changes":
            change = parse_change(message)
            if change is not None:
                self._on_event(change)
        elif event == "phx_error":
            self._lost(ChannelStatus.CHANNEL_ERROR)
        elif event == "phx_close":
            self._lost(ChannelStatus.CLOSED)
        elif event == "system" and (message.get("payload") or {}).get("status") == "error":
            logger.warning("realtime_system_error", topic=self.topic, payload=message.get("payload"))
            self._lost(ChannelStatus.CHANNEL_ERROR)

    def _lost(self, status: ChannelStatus) -> None:
        if self._closed or self._status is not ChannelStatus.SUBSCRIBED:
            return
        self._status = status
        self._on_status(status)

    async def _read(self) -> None:
        status = ChannelStatus.CLOSED
        try:
            async for raw in self._ws:
                self._handle(json.loads(raw))
        except ConnectionClosed as exc:
            logger.info("realtime_connection_closed", topic=self.topic, reason=str(exc))
        except Exception:
            logger.exception("realtime_reader_failed", topic=self.topic)
            status = ChannelStatus.CHANNEL_ERROR
        self._lost(status)

    async def _beat(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._heartbeat_interval)
                await self._send(PHOENIX_TOPIC, "heartbeat", {})
        except ConnectionClosed:
            self._lost(ChannelStatus.CLOSED)
        except Exception:
            logger.exception("realtime_heartbeat_failed", topic=self.topic)
            self._lost(ChannelStatus.CHANNEL_ERROR)

    async def cancel(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._status = ChannelStatus.CLOSED
        for task in (self._reader, self._heartbeat):
            if task is not None:
                task.cancel()
        try:
            await self._send(self.topic, "phx_leave", {})
        except ConnectionClosed:
            pass
        await self._ws.close()


class SupabaseChangeFeed(ChangeFeedService):
    """Opens one realtime websocket per channel, authorized with the user's token."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        access_token: Callable[[], Optional[str]],
        *,
        connect: Connect = websockets.connect,
        join_timeout: float = DEFAULT_JOIN_TIMEOUT,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
    ) -> None:
        self._url = realtime_url(base_url, api_key)
        self._access_token = access_token
        self._connect = connect
        self._join_timeout = join_timeout
        self._heartbeat_interval = heartbeat_interval

    async def open_channel(
        self,
        table: str,
        filters: Mapping[str, Any],
        on_event: ChangeCallback,
        on_status: StatusCallback,
    ) -> ChannelHandle:
        token = self._access_token()
        if not token:
            raise SubscriptionError("realtime join needs a signed-in user")
        try:
            websocket = await self._connect(self._url)
        except (OSError, WebSocketException) as exc:
            raise SubscriptionError(f"realtime connection failed: {exc}") from exc

        topic = f"realtime:{table}_changes"
        channel = RealtimeChannel(
            websocket, topic, on_event, on_status, heartbeat_interval=self._heartbeat_interval
        )
        try:
            await asyncio.wait_for(channel.join(build_join_payload(table, filters, token)), self._join_timeout)
        except asyncio.TimeoutError as exc:
            await channel.cancel()
            raise SubscriptionError("realtime join timed out", channel_status=ChannelStatus.TIMED_OUT.value) from exc
        except SubscriptionError:
            await channel.cancel()
            raise
        except ConnectionClosed as exc:
            await channel.cancel()
            raise SubscriptionError(f"realtime connection closed during join: {exc}") from exc
        except Exception as exc:
            await channel.cancel()
            raise SubscriptionError(f"realtime join failed: {exc!r}") from exc
        logger.debug("realtime_joined", topic=topic)
        return channel
