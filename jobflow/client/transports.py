from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from jobflow.errors import TransportError
from jobflow.push_hub import PushConnection

logger = logging.getLogger(__name__)


class PushTransport(Protocol):
    """One push connection at a time; ``receive`` returns None once it drops."""

    async def open(self) -> None: ...

    async def send(self, frame: dict[str, Any]) -> None: ...

    async def receive(self) -> dict[str, Any] | None: ...

    async def close(self) -> None: ...


class InProcessTransport:
    """Talks to a store's push hub directly, the way the realtime endpoint does."""

    def __init__(self, store: Any, *, user_id: str) -> None:
        self.store = store
        self.user_id = user_id
        self.available = True
        self._conn: PushConnection | None = None

    @property
    def connection(self) -> PushConnection | None:
        return self._conn

    async def open(self) -> None:
        if not self.available:
            raise TransportError("push endpoint unreachable")
        self._conn = self.store.open_push_connection(user_id=self.user_id, loop=asyncio.get_running_loop())

    async def send(self, frame: dict[str, Any]) -> None:
        conn = self._conn
        if conn is None or conn.closed:
            raise TransportError("push connection is not open")
        conn.send(self.store.handle_client_frame(conn, frame))

    async def receive(self) -> dict[str, Any] | None:
        conn = self._conn
        if conn is None:
            return None
        frame = await conn.receive()
        if frame is None:
            self._conn = None
        return frame

    async def close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None:
            self.store.push_hub.disconnect(conn)

    def drop(self) -> None:
        """Sever the connection from the server side, as a network fault would."""
        if self._conn is not None:
            logger.info("push_transport_dropped user_id=%s", self.user_id)
            self.store.push_hub.disconnect(self._conn)


def realtime_url(api_url: str, path: str = "/api/v1/realtime") -> str:
    """Map the REST base url onto the realtime endpoint, e.g. https://host -> wss://host/api/v1/realtime."""
    parts = urlsplit(api_url.rstrip("/"))
    scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme)
    return urlunsplit((scheme, parts.netloc, parts.path + path, "", ""))


class WebSocketTransport:
    """Push connection to the realtime endpoint over the network.

    Identity travels the same way the REST client sends it: the development
    ``x-user-id`` / ``x-user-role`` headers, or a bearer token, which the
    endpoint reads from the ``token`` query parameter.
    """

    def __init__(
        self,
        url: str,
        *,
        user_id: str | None = None,
        role: str | None = None,
        token: str | None = None,
        headers: Mapping[str, str] | None = None,
        open_timeout_s: float = 10.0,
    ) -> None:
        self.headers = dict(headers or {})
        if user_id:
            self.headers.setdefault("x-user-id", user_id)
        if role:
            self.headers.setdefault("x-user-role", role)
        if token:
            parts = urlsplit(url)
            query = urlencode([*parse_qsl(parts.query), ("token", token)])
            url = urlunsplit((parts.scheme, parts.netloc, parts.path, query, ""))
        self.url = url
        self.open_timeout_s = open_timeout_s
        self._ws: ClientConnection | None = None

    async def open(self) -> None:
        try:
            self._ws = await connect(
                self.url,
                additional_headers=self.headers,
                open_timeout=self.open_timeout_s,
            )
        except (OSError, TimeoutError, WebSocketException) as exc:
            raise TransportError(f"push endpoint unreachable: {type(exc).__name__}") from exc

    async def send(self, frame: dict[str, Any]) -> None:
        ws = self._ws
        if ws is None:
            raise TransportError("push connection is not open")
        try:
            await ws.send(json.dumps(frame, ensure_ascii=True))
        except ConnectionClosed as exc:
            raise TransportError("push connection closed") from exc

    async def receive(self) -> dict[str, Any] | None:
        while True:
            ws = self._ws
            if ws is None:
                return None
            try:
                raw = await ws.recv()
            except ConnectionClosed as exc:
                logger.info("push_transport_closed code=%s", exc.rcvd.code if exc.rcvd else None)
                self._ws = None
                return None
            try:
                frame = json.loads(raw)
            except ValueError:
                logger.warning("push_transport_frame_invalid size=%s", len(raw))
                continue
            if isinstance(frame, dict):
                return frame

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
