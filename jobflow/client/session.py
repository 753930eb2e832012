from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from jobflow.client.conversations import ConversationSynchronizer
from jobflow.client.event_bus import EventBus
from jobflow.client.events import (
    Ack,
    Connected,
    NewMessage,
    NewNotification,
    PushEvent,
    PushRejected,
    UnknownEvent,
    UserStopTyping,
    UserTyping,
)
from jobflow.client.jobs import JobWorkflowClient
from jobflow.client.notifications import NotificationReconciler
from jobflow.client.transports import PushTransport
from jobflow.errors import ApiError
from jobflow.models import user_channel

logger = logging.getLogger(__name__)

NOTIFICATIONS_SLICE = "notifications"
CONVERSATIONS_SLICE = "conversations"


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


@dataclass
class ClientSettings:
    api_url: str = "http://127.0.0.1:8000"
    poll_interval_s: float = 30.0
    reconnect_base_ms: int = 500
    reconnect_max_ms: int = 30000
    typing_idle_s: float = 1.0
    stale_after_s: float = 120.0
    request_timeout_s: float = 10.0
    pending_window_s: float = 30.0
    expiry_interval_s: float = 1.0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ClientSettings":
        env = os.environ if environ is None else environ
        base_ms = _env_int(env, "JOBFLOW_RECONNECT_BASE_MS", default=500, minimum=1)
        return cls(
            api_url=env.get("JOBFLOW_API_URL", "http://127.0.0.1:8000").strip() or "http://127.0.0.1:8000",
            poll_interval_s=_env_float(env, "JOBFLOW_POLL_INTERVAL_S", default=30.0, minimum=0.1),
            reconnect_base_ms=base_ms,
            reconnect_max_ms=_env_int(env, "JOBFLOW_RECONNECT_MAX_MS", default=30000, minimum=base_ms),
            typing_idle_s=_env_float(env, "JOBFLOW_TYPING_IDLE_S", default=1.0),
            stale_after_s=_env_float(env, "JOBFLOW_STALE_AFTER_S", default=120.0, minimum=1.0),
            request_timeout_s=_env_float(env, "JOBFLOW_REQUEST_TIMEOUT_S", default=10.0, minimum=0.1),
            pending_window_s=_env_float(env, "JOBFLOW_PENDING_WINDOW_S", default=30.0, minimum=0.1),
            expiry_interval_s=_env_float(env, "JOBFLOW_EXPIRY_INTERVAL_S", default=1.0, minimum=0.01),
        )


class ClientSession:
    """One signed-in user's live view: push connection, reconcilers and job actions."""

    def __init__(
        self,
        *,
        user_id: str,
        api: Any,
        transport: PushTransport,
        settings: ClientSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.user_id = user_id
        self.api = api
        self.settings = settings or ClientSettings()
        self._clock = clock
        self._last_success: dict[str, float] = {}
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task[Any]] = []
        self.bus = EventBus(
            transport,
            on_event=self.dispatch,
            on_gap=self.handle_gap,
            reconnect_base_ms=self.settings.reconnect_base_ms,
            reconnect_max_ms=self.settings.reconnect_max_ms,
            session_key=user_id,
        )
        self.notifications = NotificationReconciler(api, poll_interval_s=self.settings.poll_interval_s, clock=clock)
        self.conversations = ConversationSynchronizer(
            api,
            user_id=user_id,
            subscribe=self.bus.subscribe,
            unsubscribe=self.bus.unsubscribe,
            send_frame=self.bus.send,
            typing_idle_s=self.settings.typing_idle_s,
            pending_window_s=self.settings.pending_window_s,
            clock=clock,
        )
        self.jobs = JobWorkflowClient(
            api,
            retry_base_ms=self.settings.reconnect_base_ms,
            retry_max_ms=self.settings.reconnect_max_ms,
        )

    # -- push dispatch ---------------------------------------------------------------

    def dispatch(self, event: PushEvent) -> None:
        match event:
            case NewNotification():
                self.notifications.apply_event(event)
            case NewMessage():
                self.conversations.apply_new_message(event)
            case UserTyping() | UserStopTyping():
                self.conversations.apply_typing(event)
            case Connected(connection_id=connection_id):
                logger.info("session_connected user_id=%s connection_id=%s", self.user_id, connection_id)
            case PushRejected(request=request, code=code):
                logger.warning("session_push_rejected request=%s code=%s", request, code)
            case Ack():
                pass
            case UnknownEvent(event=name):
                logger.debug("session_event_ignored event=%s", name)

    async def handle_gap(self, channel: str) -> None:
        """Re-fetch the slice a channel feeds; failures leave it to the next reconciliation."""
        try:
            if channel == user_channel(self.user_id):
                await self._refresh(NOTIFICATIONS_SLICE, self.notifications.refresh)
                await self._refresh(CONVERSATIONS_SLICE, self.conversations.refresh_conversations)
            elif channel.startswith("conversation:"):
                conversation_id = channel.split(":", 1)[1]
                await self._refresh(channel, lambda: self.conversations.refresh_messages(conversation_id))
        except ApiError as exc:
            logger.warning("session_refetch_failed channel=%s code=%s", channel, exc.code)

    # -- staleness -------------------------------------------------------------------

    async def _refresh(self, slice_name: str, fetch: Callable[[], Any]) -> None:
        await fetch()
        self._last_success[slice_name] = self._clock()

    def mark_fresh(self, slice_name: str) -> None:
        self._last_success[slice_name] = self._clock()

    def is_stale(self, slice_name: str = NOTIFICATIONS_SLICE) -> bool:
        last = self._last_success.get(slice_name)
        if slice_name == NOTIFICATIONS_SLICE and self.notifications.last_reconciled_at is not None:
            last = max(last or 0.0, self.notifications.last_reconciled_at)
        if last is None:
            return False
        return self._clock() - last > self.settings.stale_after_s

    # -- lifecycle -------------------------------------------------------------------

    async def refresh_all(self) -> None:
        await self._refresh(NOTIFICATIONS_SLICE, self.notifications.refresh)
        await self._refresh(CONVERSATIONS_SLICE, self.conversations.refresh_conversations)

    async def start(self) -> None:
        self._stop.clear()
        try:
            await self.refresh_all()
        except ApiError as exc:
            logger.warning("session_initial_fetch_failed code=%s", exc.code)
        self._tasks = [
            self.bus.start(),
            asyncio.create_task(self.notifications.run_periodic(self._stop)),
            asyncio.create_task(self.conversations.run_expiry(self._stop, self.settings.expiry_interval_s)),
        ]

    async def stop(self) -> None:
        self._stop.set()
        self.conversations.typing.cancel_all()
        await self.bus.stop()
        for task in self._tasks:
            if not task.done():
                task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
