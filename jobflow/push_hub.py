from __future__ import annotations

import asyncio
import json
import logging
import os
import queue
import threading
import uuid
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from jobflow.models import user_channel

logger = logging.getLogger(__name__)


@dataclass
class PushFrame:
    event: str
    channel: str
    seq: int | None
    payload: dict[str, Any]

    def as_dict(self) -> dict[str, Any]:
        return {
            "event": self.event,
            "channel": self.channel,
            "seq": self.seq,
            "payload": self.payload,
        }


class PushConnection:
    """One live push session; frames are handed over to the owning event loop."""

    def __init__(
        self,
        *,
        user_id: str,
        loop: asyncio.AbstractEventLoop | None = None,
        max_pending: int = 1000,
    ) -> None:
        self.connection_id = f"conn_{uuid.uuid4().hex[:12]}"
        self.user_id = user_id
        self.channels: set[str] = set()
        self.closed = False
        self.dropped = 0
        self._loop = loop
        self._queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue(maxsize=max(1, max_pending))

    def _put(self, item: dict[str, Any] | None) -> None:
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            self.dropped += 1

    def deliver(self, frame: PushFrame) -> bool:
        return self.send(frame.as_dict())

    def send(self, data: dict[str, Any]) -> bool:
        """Queue a raw frame (replies included) behind everything already delivered."""
        if self.closed:
            return False
        if self._loop is None or self._loop.is_closed():
            self._put(data)
        else:
            self._loop.call_soon_threadsafe(self._put, data)
        return True

    async def receive(self) -> dict[str, Any] | None:
        if self.closed and self._queue.empty():
            return None
        return await self._queue.get()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._loop is None or self._loop.is_closed():
            self._put(None)
        else:
            self._loop.call_soon_threadsafe(self._put, None)


DEFAULT_DEDUPE_WINDOW = 1024


@dataclass
class _ChannelState:
    seq: int = 0
    members: set[str] = field(default_factory=set)
    fanned_out: set[str] = field(default_factory=set)
    fanned_out_order: deque[str] = field(default_factory=deque)


class InMemoryPushHub:
    """Channel fan-out with per-channel sequence numbers and best-effort delivery.

    Each channel remembers the last ``dedupe_window`` dedupe keys it fanned out;
    an older key can be fanned out again.
    """

    def __init__(self, *, dedupe_window: int = DEFAULT_DEDUPE_WINDOW) -> None:
        self._lock = threading.RLock()
        self._connections: dict[str, PushConnection] = {}
        self._channels: dict[str, _ChannelState] = {}
        self.dedupe_window = max(1, int(dedupe_window))

    def connect(self, *, user_id: str, loop: asyncio.AbstractEventLoop | None = None) -> PushConnection:
        conn = PushConnection(user_id=user_id, loop=loop)
        with self._lock:
            self._connections[conn.connection_id] = conn
        self.join(conn, user_channel(user_id))
        logger.info("push_connected user_id=%s connection_id=%s", user_id, conn.connection_id)
        return conn

    def disconnect(self, conn: PushConnection) -> None:
        with self._lock:
            self._connections.pop(conn.connection_id, None)
            for channel in list(conn.channels):
                state = self._channels.get(channel)
                if state is not None:
                    state.members.discard(conn.connection_id)
            conn.channels.clear()
        conn.close()
        logger.info("push_disconnected user_id=%s connection_id=%s", conn.user_id, conn.connection_id)

    def join(self, conn: PushConnection, channel: str) -> None:
        with self._lock:
            self._channels.setdefault(channel, _ChannelState()).members.add(conn.connection_id)
            conn.channels.add(channel)

    def leave(self, conn: PushConnection, channel: str) -> None:
        with self._lock:
            state = self._channels.get(channel)
            if state is not None:
                state.members.discard(conn.connection_id)
            conn.channels.discard(channel)

    def current_seq(self, channel: str) -> int:
        with self._lock:
            state = self._channels.get(channel)
            return state.seq if state else 0

    def publish(
        self,
        *,
        channel: str,
        event: str,
        payload: dict[str, Any],
        ephemeral: bool = False,
        exclude_connection_id: str | None = None,
        dedupe_key: str | None = None,
    ) -> PushFrame | None:
        """Fan a frame out to the channel's current members.

        Ephemeral frames carry no sequence number, so skipping a member never
        opens a gap in that member's view of the channel.
        """
        frame = self._fan_out(
            channel=channel,
            event=event,
            payload=payload,
            ephemeral=ephemeral,
            exclude_connection_id=exclude_connection_id,
            dedupe_key=dedupe_key,
        )
        if frame is not None:
            self._mirror(frame, dedupe_key=dedupe_key)
        return frame

    def _remember(self, state: _ChannelState, dedupe_key: str) -> bool:
        if dedupe_key in state.fanned_out:
            return False
        state.fanned_out.add(dedupe_key)
        state.fanned_out_order.append(dedupe_key)
        while len(state.fanned_out_order) > self.dedupe_window:
            state.fanned_out.discard(state.fanned_out_order.popleft())
        return True

    def _fan_out(
        self,
        *,
        channel: str,
        event: str,
        payload: dict[str, Any],
        ephemeral: bool,
        exclude_connection_id: str | None = None,
        dedupe_key: str | None = None,
    ) -> PushFrame | None:
        with self._lock:
            state = self._channels.setdefault(channel, _ChannelState())
            if dedupe_key is not None and not self._remember(state, dedupe_key):
                return None
            if ephemeral:
                frame = PushFrame(event=event, channel=channel, seq=None, payload=payload)
            else:
                state.seq += 1
                frame = PushFrame(event=event, channel=channel, seq=state.seq, payload=payload)
            delivered = 0
            for connection_id in list(state.members):
                if connection_id == exclude_connection_id:
                    continue
                conn = self._connections.get(connection_id)
                if conn is not None and conn.deliver(frame):
                    delivered += 1
        logger.debug(
            "push_published channel=%s event=%s seq=%s delivered=%s",
            channel,
            event,
            frame.seq,
            delivered,
        )
        return frame

    def _mirror(self, frame: PushFrame, *, dedupe_key: str | None = None) -> None:
        return None

    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    def reset(self) -> None:
        with self._lock:
            for conn in self._connections.values():
                conn.close()
            self._connections.clear()
            self._channels.clear()

    def close(self) -> None:
        self.reset()


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for JOBFLOW_PUSH_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisPushHub(InMemoryPushHub):
    """Gateway node that shares frames with its peers over Redis pub/sub.

    Local fan-out happens first. Frames are then queued for a publisher thread,
    so ``publish`` never waits on Redis. A subscriber thread feeds frames from
    other nodes into local fan-out; every node numbers a channel on its own, and
    a session that moves to another node resyncs from the ``connected`` frame.
    """

    def __init__(
        self,
        *,
        dsn: str,
        namespace: str = "jobflow",
        dedupe_window: int = DEFAULT_DEDUPE_WINDOW,
        poll_timeout_s: float = 1.0,
        max_backlog: int = 10000,
    ) -> None:
        if not dsn.strip():
            raise ValueError("REDIS_DSN must be provided for redis push backend")
        super().__init__(dedupe_window=dedupe_window)
        self._namespace = namespace.strip() or "jobflow"
        self.node_id = f"node_{uuid.uuid4().hex[:12]}"
        self.poll_timeout_s = max(0.01, float(poll_timeout_s))
        self.dropped_mirrors = 0
        redis = _import_redis()
        self._client = redis.Redis.from_url(dsn.strip(), decode_responses=True)
        self._outgoing: queue.Queue[dict[str, Any]] = queue.Queue(maxsize=max(1, int(max_backlog)))
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def redis_channel(self, channel: str) -> str:
        return f"{self._namespace}:push:{channel}"

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        pubsub.psubscribe(self.redis_channel("*"))
        self._threads = [
            threading.Thread(target=self._publish_loop, name=f"{self.node_id}-publisher", daemon=True),
            threading.Thread(
                target=self._subscribe_loop,
                args=(pubsub,),
                name=f"{self.node_id}-subscriber",
                daemon=True,
            ),
        ]
        for thread in self._threads:
            thread.start()
        logger.info("push_node_started node_id=%s namespace=%s", self.node_id, self._namespace)

    def close(self) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=self.poll_timeout_s * 2)
        self._threads = []
        super().close()

    def _mirror(self, frame: PushFrame, *, dedupe_key: str | None = None) -> None:
        envelope = {"node": self.node_id, "dedupe_key": dedupe_key, "frame": frame.as_dict()}
        try:
            self._outgoing.put_nowait(envelope)
        except queue.Full:
            self.dropped_mirrors += 1
            logger.warning("push_mirror_dropped channel=%s backlog=%s", frame.channel, self._outgoing.qsize())

    def _publish_loop(self) -> None:
        while not self._stop.is_set():
            try:
                envelope = self._outgoing.get(timeout=self.poll_timeout_s)
            except queue.Empty:
                continue
            channel = envelope["frame"]["channel"]
            try:
                self._client.publish(
                    self.redis_channel(channel),
                    json.dumps(envelope, ensure_ascii=True, sort_keys=True),
                )
            except Exception as exc:
                # Local delivery already happened; mirroring is best effort.
                logger.warning("push_mirror_failed channel=%s error=%s", channel, type(exc).__name__)

    def _subscribe_loop(self, pubsub: Any) -> None:
        try:
            while not self._stop.is_set():
                try:
                    message = pubsub.get_message(timeout=self.poll_timeout_s)
                except Exception as exc:
                    logger.warning("push_subscribe_failed node_id=%s error=%s", self.node_id, type(exc).__name__)
                    self._stop.wait(self.poll_timeout_s)
                    continue
                if message and message.get("type") in {"message", "pmessage"}:
                    self.receive_remote(message.get("data"))
        finally:
            pubsub.close()

    def receive_remote(self, raw: Any) -> PushFrame | None:
        """Fan a frame published by another node out to local members."""
        try:
            envelope = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("push_remote_frame_invalid node_id=%s", self.node_id)
            return None
        if not isinstance(envelope, dict) or envelope.get("node") == self.node_id:
            return None
        frame = envelope.get("frame")
        if not isinstance(frame, dict) or not frame.get("channel") or not frame.get("event"):
            logger.warning("push_remote_frame_invalid node_id=%s", self.node_id)
            return None
        return self._fan_out(
            channel=str(frame["channel"]),
            event=str(frame["event"]),
            payload=frame.get("payload") if isinstance(frame.get("payload"), dict) else {},
            ephemeral=frame.get("seq") is None,
            dedupe_key=envelope.get("dedupe_key"),
        )


def create_push_hub_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryPushHub | RedisPushHub:
    env = os.environ if environ is None else environ
    backend = env.get("JOBFLOW_PUSH_BACKEND", "memory").strip().lower()
    dedupe_window = _env_int(env, "JOBFLOW_PUSH_DEDUPE_WINDOW", DEFAULT_DEDUPE_WINDOW)
    if backend == "memory":
        return InMemoryPushHub(dedupe_window=dedupe_window)
    if backend == "redis":
        dsn = env.get("REDIS_DSN", "").strip()
        if not dsn:
            raise ValueError("REDIS_DSN must be set when JOBFLOW_PUSH_BACKEND=redis")
        hub = RedisPushHub(
            dsn=dsn,
            namespace=env.get("JOBFLOW_PUSH_NAMESPACE", "jobflow"),
            dedupe_window=dedupe_window,
        )
        hub.start()
        return hub
    raise RuntimeError(f"unsupported push backend: {backend}")


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    try:
        return int(env.get(name, default))
    except (TypeError, ValueError):
        return default
