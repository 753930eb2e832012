"""Session-scoped push connection with reconnect, subscription replay and gap detection.

State machine::

    disconnected -> connecting -> connected -> (drop) -> reconnecting -> connected

Frames are ordered within a channel only. Each channel's ``seq`` is tracked;
a jump (or a reconnect, which may have hidden any number of frames) is
reported through ``on_gap`` so the owner re-fetches that channel's state.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

from jobflow.client.events import Ack, Connected, PushEvent, decode_frame, outgoing_frame
from jobflow.client.transports import PushTransport
from jobflow.errors import TransportError
from jobflow.models import conversation_channel

logger = logging.getLogger(__name__)


class ConnectionState:
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


EventHandler = Callable[[PushEvent], None]
GapHandler = Callable[[str], Awaitable[None] | None]


class EventBus:
    def __init__(
        self,
        transport: PushTransport,
        *,
        on_event: EventHandler | None = None,
        on_gap: GapHandler | None = None,
        reconnect_base_ms: int = 500,
        reconnect_max_ms: int = 30000,
        session_key: str = "session",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.transport = transport
        self.on_event = on_event
        self.on_gap = on_gap
        self.reconnect_base_ms = max(1, int(reconnect_base_ms))
        self.reconnect_max_ms = max(self.reconnect_base_ms, int(reconnect_max_ms))
        self.session_key = session_key
        self._sleep = sleep
        self.state = ConnectionState.DISCONNECTED
        self.attempts = 0
        self.connected_event = asyncio.Event()
        self._subscriptions: set[str] = set()
        self._pending: deque[tuple[str, str]] = deque()
        self._last_seq: dict[str, int] = {}
        self._resync_channels: set[str] = set()
        self._has_connected = False
        self._closed = False
        self._task: asyncio.Task[None] | None = None
        self._state_listeners: list[Callable[[str], None]] = []

    # -- state -----------------------------------------------------------------------

    def add_state_listener(self, listener: Callable[[str], None]) -> None:
        self._state_listeners.append(listener)

    def _set_state(self, state: str) -> None:
        if state == self.state:
            return
        self.state = state
        if state == ConnectionState.CONNECTED:
            self.connected_event.set()
        else:
            self.connected_event.clear()
        for listener in list(self._state_listeners):
            listener(state)

    @property
    def subscriptions(self) -> frozenset[str]:
        return frozenset(self._subscriptions)

    @property
    def pending_operations(self) -> list[tuple[str, str]]:
        return list(self._pending)

    def last_seq(self, channel: str) -> int | None:
        return self._last_seq.get(channel)

    def _jitter_ms(self, attempt: int) -> int:
        digest = hashlib.sha256(f"{self.session_key}:{attempt}".encode("utf-8")).digest()
        return int.from_bytes(digest[:2], byteorder="big") % min(301, self.reconnect_base_ms + 1)

    def reconnect_delay_ms(self, attempt: int) -> int:
        normalized = max(1, int(attempt))
        exponential = self.reconnect_base_ms * (2 ** min(normalized - 1, 30))
        return min(self.reconnect_max_ms, exponential + self._jitter_ms(normalized))

    # -- subscriptions ---------------------------------------------------------------

    async def subscribe(self, conversation_id: str) -> None:
        self._subscriptions.add(conversation_id)
        await self._submit("join_conversation", conversation_id)

    async def unsubscribe(self, conversation_id: str) -> None:
        self._subscriptions.discard(conversation_id)
        self._last_seq.pop(conversation_channel(conversation_id), None)
        await self._submit("leave_conversation", conversation_id)

    async def _submit(self, event: str, conversation_id: str) -> None:
        if self.state != ConnectionState.CONNECTED:
            self._pending.append((event, conversation_id))
            return
        try:
            await self.transport.send(outgoing_frame(event, conversation_id))
        except TransportError:
            self._pending.append((event, conversation_id))

    async def _replay(self) -> None:
        while self._pending:
            event, conversation_id = self._pending.popleft()
            try:
                await self.transport.send(outgoing_frame(event, conversation_id))
            except TransportError:
                self._pending.appendleft((event, conversation_id))
                raise

    async def send(self, event: str, conversation_id: str, **extra: Any) -> None:
        """Emit a client frame now; raises ``TransportError`` while not connected."""
        if self.state != ConnectionState.CONNECTED:
            raise TransportError("push channel is not connected")
        await self.transport.send(outgoing_frame(event, conversation_id, **extra))

    # -- inbound ---------------------------------------------------------------------

    async def _report_gap(self, channel: str) -> None:
        logger.info("push_gap_detected channel=%s", channel)
        if self.on_gap is None:
            return
        try:
            result = self.on_gap(channel)
            if asyncio.iscoroutine(result):
                await result
        except Exception as exc:
            logger.warning("push_gap_handler_failed channel=%s error=%s", channel, type(exc).__name__)

    def _emit(self, event: PushEvent) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(event)
        except Exception as exc:
            logger.warning("push_event_handler_failed event=%s error=%s", type(event).__name__, type(exc).__name__)

    async def handle_frame(self, frame: dict[str, Any]) -> None:
        event = decode_frame(frame)
        if isinstance(event, Connected):
            self._last_seq.update(event.channels)
            self._emit(event)
            resync, self._resync_channels = self._resync_channels, set()
            if resync:
                for channel in sorted(resync | set(event.channels)):
                    await self._report_gap(channel)
            return
        if isinstance(event, Ack) and event.request == "join_conversation":
            seq = event.payload.get("seq")
            cid = str(event.payload.get("conversation_id", ""))
            if isinstance(seq, int) and cid in self._subscriptions:
                self._last_seq.setdefault(conversation_channel(cid), seq)
            self._emit(event)
            return

        channel = getattr(event, "channel", None)
        seq = getattr(event, "seq", None)
        if channel is None or seq is None:
            # Ephemeral or reply frames carry no position in any channel.
            self._emit(event)
            return
        last = self._last_seq.get(channel)
        if last is not None and seq <= last:
            logger.debug("push_duplicate_dropped channel=%s seq=%s last=%s", channel, seq, last)
            return
        self._last_seq[channel] = seq
        self._emit(event)
        if last is not None and seq > last + 1:
            await self._report_gap(channel)

    # -- connection loop -------------------------------------------------------------

    def _on_drop(self) -> None:
        self._resync_channels = set(self._last_seq)
        self._resync_channels.update(conversation_channel(x) for x in self._subscriptions)
        self._last_seq.clear()
        # Joins do not survive the connection; replay them ahead of anything queued meanwhile.
        for conversation_id in sorted(self._subscriptions, reverse=True):
            if ("join_conversation", conversation_id) not in self._pending:
                self._pending.appendleft(("join_conversation", conversation_id))

    async def connect_once(self) -> bool:
        self._set_state(ConnectionState.RECONNECTING if self._has_connected else ConnectionState.CONNECTING)
        try:
            await self.transport.open()
        except (TransportError, OSError) as exc:
            logger.warning("push_connect_failed attempt=%s error=%s", self.attempts + 1, type(exc).__name__)
            return False
        self._has_connected = True
        self.attempts = 0
        self._set_state(ConnectionState.CONNECTED)
        try:
            await self._replay()
        except TransportError:
            logger.warning("push_replay_failed pending=%s", len(self._pending))
        logger.info("push_connected subscriptions=%s", len(self._subscriptions))
        return True

    async def pump(self) -> None:
        """Process frames until the transport reports a drop."""
        while True:
            frame = await self.transport.receive()
            if frame is None:
                break
            await self.handle_frame(frame)
        if not self._closed:
            self._on_drop()
            self._set_state(ConnectionState.DISCONNECTED)
            logger.info("push_disconnected resync_channels=%s", len(self._resync_channels))

    async def run(self) -> None:
        while not self._closed:
            if not await self.connect_once():
                self._set_state(ConnectionState.DISCONNECTED)
                self.attempts += 1
                delay_ms = self.reconnect_delay_ms(self.attempts)
                logger.info("push_reconnect_scheduled attempt=%s delay_ms=%s", self.attempts, delay_ms)
                await self._sleep(delay_ms / 1000)
                continue
            await self.pump()

    def start(self) -> asyncio.Task[None]:
        if self._task is None or self._task.done():
            self._closed = False
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self._closed = True
        await self.transport.close()
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._set_state(ConnectionState.DISCONNECTED)
