"""
Supabase Realtime broker over an aiohttp websocket.

Speaks the Phoenix channel protocol used by Supabase Realtime:

    -> {"topic": "realtime:orders_abc", "event": "phx_join", "payload": {"config": ...}, "ref": "1"}
    <- {"topic": "realtime:orders_abc", "event": "phx_reply", "payload": {"status": "ok"}, "ref": "1"}
    <- {"topic": "realtime:orders_abc", "event": "postgres_changes", "payload": {"data": {...}}}
    -> {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": "7"}

One websocket carries every channel. When the socket drops, every joined
channel reports CHANNEL_ERROR; rejoining is the ReconnectionSupervisor's job.
"""
import asyncio
import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from ...realtime.broker import BrokerChannel, RawCallback, RawStatusCallback, RealtimeBroker

logger = logging.getLogger(__name__)

PHOENIX_TOPIC = "phoenix"
PROTOCOL_VERSION = "1.0.0"


def websocket_endpoint(url: str, api_key: str) -> str:
    """https://xyz.supabase.co -> wss://xyz.supabase.co/realtime/v1/websocket?..."""
    base = re.sub(r"^http", "ws", url.rstrip("/"))
    return f"{base}/realtime/v1/websocket?apikey={api_key}&vsn={PROTOCOL_VERSION}"


def change_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a postgres_changes `data` object to the broker change shape."""
    return {
        "schema": data.get("schema"),
        "table": data.get("table"),
        "eventType": data.get("type") or data.get("eventType"),
        "new": data.get("record") or {},
        "old": data.get("old_record") or {},
        "commit_timestamp": data.get("commit_timestamp"),
    }


class SupabaseChannel(BrokerChannel):
    """A Phoenix channel on the shared realtime socket."""

    def __init__(self, broker: "SupabaseRealtimeBroker", name: str):
        self.broker = broker
        self.name = name
        self.topic = f"realtime:{name}"
        self.join_ref: Optional[str] = None
        self.joined = False
        self._changes: List[Tuple[str, str, Optional[str], RawCallback]] = []
        self._broadcasts: Dict[str, List[RawCallback]] = {}
        self._status_callback: Optional[RawStatusCallback] = None

    def on_postgres_changes(self, table, event, row_filter, callback) -> "SupabaseChannel":
        self._changes.append((table, event, row_filter, callback))
        return self

    def on_broadcast(self, event, callback) -> "SupabaseChannel":
        self._broadcasts.setdefault(event, []).append(callback)
        return self

    def join_config(self) -> Dict[str, Any]:
        return {
            "config": {
                "broadcast": {"self": False, "ack": False},
                "presence": {"key": ""},
                "postgres_changes": [
                    {
                        "event": event,
                        "schema": self.broker.schema,
                        "table": table,
                        **({"filter": row_filter} if row_filter else {}),
                    }
                    for table, event, row_filter, _ in self._changes
                ],
            },
            "access_token": self.broker.api_key,
        }

    async def subscribe(self, status_callback: RawStatusCallback) -> None:
        self._status_callback = status_callback
        try:
            await self.broker._join(self)
        except (aiohttp.ClientError, ConnectionError, OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Could not join {self.topic}: {e}")
            self._report("CHANNEL_ERROR")

    async def send_broadcast(self, event: str, payload: Dict[str, Any]) -> None:
        if not self.joined:
            raise ConnectionError(f"Channel {self.topic} is not joined")
        await self.broker._push(
            self.topic,
            "broadcast",
            {"type": "broadcast", "event": event, "payload": payload},
        )

    async def unsubscribe(self) -> None:
        was_joined = self.joined
        self.joined = False
        self.broker._forget(self)
        if was_joined:
            try:
                await self.broker._push(self.topic, "phx_leave", {})
            except (aiohttp.ClientError, ConnectionError) as e:
                logger.debug(f"Leave for {self.topic} not sent: {e}")
            self._report("CLOSED")
        self._changes.clear()
        self._broadcasts.clear()
        self._status_callback = None

    # --- Inbound ---

    def _report(self, status: str) -> None:
        if self._status_callback is None:
            return
        try:
            self._status_callback(status)
        except Exception as e:
            logger.exception(f"Status callback for {self.topic} failed: {e}")

    def _handle(self, message: Dict[str, Any]) -> None:
        event = message.get("event")
        payload = message.get("payload") or {}

        if event == "phx_reply" and message.get("ref") == self.join_ref:
            if payload.get("status") == "ok":
                self.joined = True
                self._report("SUBSCRIBED")
            else:
                logger.warning(f"Join of {self.topic} rejected: {payload.get('response')}")
                self._report("CHANNEL_ERROR")
        elif event == "postgres_changes":
            self._dispatch_change(change_payload(payload.get("data") or {}))
        elif event == "broadcast":
            for callback in list(self._broadcasts.get(payload.get("event"), [])):
                self._call(callback, payload)
        elif event == "phx_close":
            self.joined = False
            self._report("CLOSED")
        elif event == "phx_error":
            self.joined = False
            self._report("CHANNEL_ERROR")
        elif event == "system" and payload.get("status") == "error":
            logger.warning(f"System error on {self.topic}: {payload.get('message')}")
            self._report("CHANNEL_ERROR")

    def _dispatch_change(self, change: Dict[str, Any]) -> None:
        for table, event, _, callback in list(self._changes):
            if table != change.get("table"):
                continue
            if event not in ("*", change.get("eventType")):
                continue
            self._call(callback, change)

    def _call(self, callback: RawCallback, value: Dict[str, Any]) -> None:
        try:
            callback(value)
        except Exception as e:
            logger.exception(f"Listener on {self.topic} failed: {e}")


class SupabaseRealtimeBroker(RealtimeBroker):
    """
    Realtime broker backed by one Supabase Realtime websocket.

    The socket is opened lazily by the first join and kept alive with
    Phoenix heartbeats. A heartbeat left unanswered for a full interval
    closes the socket, which reports CHANNEL_ERROR to every joined channel.
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        schema: str = "public",
        heartbeat_interval: float = 25.0,
        connect_timeout: float = 10.0,
    ):
        self.url = url
        self.api_key = api_key
        self.schema = schema
        self.heartbeat_interval = heartbeat_interval
        self.connect_timeout = connect_timeout

        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._channels: Dict[str, SupabaseChannel] = {}
        self._connect_lock = asyncio.Lock()
        self._reader: Optional[asyncio.Task] = None
        self._heartbeat: Optional[asyncio.Task] = None
        self._pending_heartbeat: Optional[str] = None
        self._ref = 0

    @property
    def endpoint(self) -> str:
        return websocket_endpoint(self.url, self.api_key)

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    def channel(self, name: str) -> SupabaseChannel:
        return SupabaseChannel(self, name)

    # --- Socket ---

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _connect(self) -> None:
        async with self._connect_lock:
            if self.is_connected:
                return
            session = await self._get_session()
            logger.info(f"Connecting to realtime at {self.url}")
            self._ws = await asyncio.wait_for(
                session.ws_connect(self.endpoint),
                timeout=self.connect_timeout,
            )
            self._pending_heartbeat = None
            self._reader = asyncio.create_task(self._read_loop(self._ws), name="realtime-reader")
            self._heartbeat = asyncio.create_task(self._heartbeat_loop(), name="realtime-heartbeat")

    def _next_ref(self) -> str:
        self._ref += 1
        return str(self._ref)

    async def _push(self, topic: str, event: str, payload: Dict[str, Any], ref: Optional[str] = None) -> str:
        if not self.is_connected:
            raise ConnectionError("Realtime socket is not connected")
        ref = ref or self._next_ref()
        message = {"topic": topic, "event": event, "payload": payload, "ref": ref}
        if event == "phx_join":
            message["join_ref"] = ref
        await self._ws.send_str(json.dumps(message))
        return ref

    async def _join(self, channel: SupabaseChannel) -> None:
        await self._connect()
        previous = self._channels.get(channel.topic)
        if previous is not None and previous is not channel:
            logger.debug(f"Replacing channel object for {channel.topic}")
        self._channels[channel.topic] = channel
        channel.join_ref = self._next_ref()
        await self._push(channel.topic, "phx_join", channel.join_config(), ref=channel.join_ref)

    def _forget(self, channel: SupabaseChannel) -> None:
        if self._channels.get(channel.topic) is channel:
            del self._channels[channel.topic]

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._dispatch(msg.data)
                elif msg.type in (aiohttp.WSMsgType.ERROR, aiohttp.WSMsgType.CLOSED):
                    break
        finally:
            if ws is self._ws:
                await self._on_socket_lost()

    def _dispatch(self, raw: str) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning("Dropping non-JSON realtime frame")
            return
        if not isinstance(message, dict):
            return

        topic = message.get("topic")
        if topic == PHOENIX_TOPIC:
            if message.get("ref") == self._pending_heartbeat:
                self._pending_heartbeat = None
            return

        channel = self._channels.get(topic)
        if channel is None:
            logger.debug(f"Frame for unknown topic {topic} ignored")
            return
        channel._handle(message)

    async def _heartbeat_loop(self) -> None:
        while self.is_connected:
            await asyncio.sleep(self.heartbeat_interval)
            if self._pending_heartbeat is not None:
                logger.warning("Realtime heartbeat timed out, closing socket")
                await self._ws.close()
                return
            try:
                self._pending_heartbeat = await self._push(PHOENIX_TOPIC, "heartbeat", {})
            except (aiohttp.ClientError, ConnectionError) as e:
                logger.warning(f"Heartbeat failed: {e}")
                return

    async def _on_socket_lost(self) -> None:
        logger.warning("Realtime socket closed")
        self._ws = None
        if self._heartbeat is not None and self._heartbeat is not asyncio.current_task():
            self._heartbeat.cancel()
        self._heartbeat = None
        channels = list(self._channels.values())
        self._channels.clear()
        for channel in channels:
            channel.joined = False
            channel._report("CHANNEL_ERROR")

    async def close(self) -> None:
        """Close the socket and the HTTP session."""
        self._channels.clear()
        ws, self._ws = self._ws, None
        for task in (self._heartbeat, self._reader):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
        self._heartbeat = self._reader = None
        if ws is not None and not ws.closed:
            await ws.close()
        if self._session and not self._session.closed:
            await self._session.close()


__all__ = [
    "SupabaseChannel",
    "SupabaseRealtimeBroker",
    "change_payload",
    "websocket_endpoint",
]
