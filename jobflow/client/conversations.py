from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from jobflow.client.events import NewMessage, UserStopTyping, UserTyping
from jobflow.client.optimistic import OptimisticTracker, Undo, apply_optimistically
from jobflow.errors import ApiError

logger = logging.getLogger(__name__)


class MessageStatus:
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


def _display_key(message: dict[str, Any]) -> tuple[str, int]:
    seq = message.get("seq")
    return str(message.get("created_at") or ""), seq if isinstance(seq, int) else 1 << 62


class TypingDebouncer:
    """Sends ``typing`` on the first keypress and ``stop_typing`` once keys go quiet."""

    def __init__(
        self,
        send: Callable[[str, str], Awaitable[None]],
        *,
        idle_s: float = 1.0,
    ) -> None:
        self._send = send
        self.idle_s = max(0.0, float(idle_s))
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def is_typing(self, conversation_id: str) -> bool:
        return conversation_id in self._timers

    async def _emit(self, event: str, conversation_id: str) -> None:
        try:
            await self._send(event, conversation_id)
        except ApiError as exc:
            logger.debug("typing_signal_dropped event=%s code=%s", event, exc.code)

    async def keypress(self, conversation_id: str) -> None:
        timer = self._timers.pop(conversation_id, None)
        if timer is not None:
            timer.cancel()
        else:
            await self._emit("typing", conversation_id)
        loop = asyncio.get_running_loop()
        self._timers[conversation_id] = loop.call_later(self.idle_s, self._idle, conversation_id)

    def _idle(self, conversation_id: str) -> None:
        if self._timers.pop(conversation_id, None) is not None:
            task = asyncio.ensure_future(self._emit("stop_typing", conversation_id))
            self._tasks.add(task)
            task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("typing_signal_failed error=%r", task.exception())

    async def stop(self, conversation_id: str) -> None:
        timer = self._timers.pop(conversation_id, None)
        if timer is not None:
            timer.cancel()
            await self._emit("stop_typing", conversation_id)

    def cancel_all(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()


class ConversationSynchronizer:
    """Per-conversation message lists, the conversation list and optimistic sends."""

    def __init__(
        self,
        api: Any,
        *,
        user_id: str,
        subscribe: Callable[[str], Awaitable[None]] | None = None,
        unsubscribe: Callable[[str], Awaitable[None]] | None = None,
        send_frame: Callable[[str, str], Awaitable[None]] | None = None,
        typing_idle_s: float = 1.0,
        pending_window_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.api = api
        self.user_id = user_id
        self._subscribe = subscribe
        self._unsubscribe = unsubscribe
        self._conversations: dict[str, dict[str, Any]] = {}
        self._messages: dict[str, list[dict[str, Any]]] = {}
        self._typing: dict[str, set[str]] = {}
        self._listeners: list[Callable[[], None]] = []
        self.active_conversation_id: str | None = None
        self.pending = OptimisticTracker(window_s=pending_window_s, clock=clock)
        self.typing = TypingDebouncer(send_frame or self._no_frames, idle_s=typing_idle_s)

    @staticmethod
    async def _no_frames(event: str, conversation_id: str) -> None:
        return None

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).isoformat()

    def subscribe(self, listener: Callable[[], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _changed(self) -> None:
        for listener in list(self._listeners):
            listener()

    # -- read side -------------------------------------------------------------------

    @property
    def conversations(self) -> list[dict[str, Any]]:
        rows = [dict(x) for x in self._conversations.values()]
        return sorted(rows, key=lambda x: str(x.get("last_message_at") or ""), reverse=True)

    def messages(self, conversation_id: str) -> list[dict[str, Any]]:
        # Stable sort: arrival order survives among equal timestamps.
        return [dict(x) for x in sorted(self._messages.get(conversation_id, []), key=_display_key)]

    def unread_count(self, conversation_id: str) -> int:
        return int(self._conversations.get(conversation_id, {}).get("unread_count", 0))

    def typing_users(self, conversation_id: str) -> frozenset[str]:
        return frozenset(self._typing.get(conversation_id, set()))

    # -- views -----------------------------------------------------------------------

    async def open_conversation(self, conversation_id: str) -> None:
        self.active_conversation_id = conversation_id
        if self._subscribe is not None:
            await self._subscribe(conversation_id)
        await self.refresh_messages(conversation_id)
        if self.unread_count(conversation_id):
            await self.mark_read(conversation_id)

    async def close_conversation(self, conversation_id: str) -> None:
        if self.active_conversation_id == conversation_id:
            self.active_conversation_id = None
        await self.typing.stop(conversation_id)
        self._typing.pop(conversation_id, None)
        if self._unsubscribe is not None:
            await self._unsubscribe(conversation_id)

    async def start_conversation(self, other_user_id: str, job_id: str | None = None) -> dict[str, Any]:
        conversation = await self.api.create_conversation(other_user_id, job_id)
        self._conversations[str(conversation["id"])] = dict(conversation)
        self._changed()
        return conversation

    # -- sending ---------------------------------------------------------------------

    def _find_local(self, conversation_id: str, client_temp_id: str) -> dict[str, Any] | None:
        for message in self._messages.get(conversation_id, []):
            if message.get("client_temp_id") == client_temp_id and message.get("status") != MessageStatus.SENT:
                return message
        return None

    def _has_id(self, conversation_id: str, message_id: str) -> bool:
        return any(x.get("id") == message_id for x in self._messages.get(conversation_id, []))

    def _touch(self, conversation_id: str, message: dict[str, Any]) -> None:
        conversation = self._conversations.setdefault(
            conversation_id,
            {"id": conversation_id, "participants": [], "job_id": None, "unread_count": 0},
        )
        conversation["last_message"] = dict(message)
        conversation["last_message_at"] = message.get("created_at") or self._utcnow_iso()

    def _mark_failed(self, conversation_id: str, client_temp_id: str) -> Undo:
        def _undo() -> None:
            local = self._find_local(conversation_id, client_temp_id)
            if local is not None and local.get("status") == MessageStatus.PENDING:
                local["status"] = MessageStatus.FAILED
                self._changed()

        return _undo

    def _settle(self, conversation_id: str, client_temp_id: str, message: dict[str, Any]) -> None:
        """Swap the local entry for the server's copy, unless a push already delivered it."""
        local = self._find_local(conversation_id, client_temp_id)
        server_copy = {**message, "status": MessageStatus.SENT}
        if self._has_id(conversation_id, str(message.get("id"))):
            if local is not None:
                self._messages[conversation_id].remove(local)
        elif local is not None:
            local.clear()
            local.update(server_copy)
        else:
            self._messages.setdefault(conversation_id, []).append(server_copy)
        self.pending.confirm(client_temp_id)
        self._touch(conversation_id, server_copy)

    async def _deliver(self, conversation_id: str, local: dict[str, Any]) -> dict[str, Any]:
        client_temp_id = str(local["client_temp_id"])
        try:
            message = await self.api.send_message(
                conversation_id,
                local.get("content", ""),
                local.get("attachments") or None,
                client_temp_id=client_temp_id,
            )
        except ApiError as exc:
            logger.warning(
                "message_send_failed conversation_id=%s client_temp_id=%s code=%s",
                conversation_id,
                client_temp_id,
                exc.code,
            )
            self.pending.rollback(client_temp_id)
            local["error"] = exc.code
            self._changed()
            raise
        self._settle(conversation_id, client_temp_id, message)
        self._changed()
        return self._find_by_id(conversation_id, str(message.get("id"))) or message

    def _find_by_id(self, conversation_id: str, message_id: str) -> dict[str, Any] | None:
        for message in self._messages.get(conversation_id, []):
            if message.get("id") == message_id:
                return dict(message)
        return None

    async def send(
        self,
        conversation_id: str,
        content: str,
        attachments: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        """Append a pending message at once and reconcile it with the server's ack.

        On failure the entry stays in the list marked ``failed`` and the error
        propagates; ``resend`` retries it under the same temporary id.
        """
        client_temp_id = f"tmp_{uuid.uuid4().hex[:12]}"
        local = {
            "id": None,
            "client_temp_id": client_temp_id,
            "conversation_id": conversation_id,
            "sender_id": self.user_id,
            "content": content,
            "attachments": list(attachments or []),
            "seq": None,
            "status": MessageStatus.PENDING,
            "created_at": self._utcnow_iso(),
        }
        self._messages.setdefault(conversation_id, []).append(local)
        self.pending.begin(client_temp_id, lambda: self._mark_failed(conversation_id, client_temp_id))
        self._touch(conversation_id, local)
        self._changed()
        await self.typing.stop(conversation_id)
        return await self._deliver(conversation_id, local)

    async def resend(self, conversation_id: str, client_temp_id: str) -> dict[str, Any]:
        local = self._find_local(conversation_id, client_temp_id)
        if local is None or local.get("status") != MessageStatus.FAILED:
            raise KeyError(client_temp_id)
        local["status"] = MessageStatus.PENDING
        local.pop("error", None)
        self.pending.begin(client_temp_id, lambda: self._mark_failed(conversation_id, client_temp_id))
        self._changed()
        return await self._deliver(conversation_id, local)

    def expire_pending(self) -> list[str]:
        """Mark sends that have waited past the window as failed; returns their temporary ids."""
        expired = self.pending.expire()
        if expired:
            self._changed()
        return expired

    async def run_expiry(self, stop: asyncio.Event, interval_s: float = 1.0) -> None:
        while not stop.is_set():
            self.expire_pending()
            try:
                await asyncio.wait_for(stop.wait(), timeout=max(0.01, interval_s))
            except asyncio.TimeoutError:
                continue

    def failed_messages(self, conversation_id: str) -> list[dict[str, Any]]:
        return [dict(x) for x in self._messages.get(conversation_id, []) if x.get("status") == MessageStatus.FAILED]

    # -- receiving -------------------------------------------------------------------

    def apply_new_message(self, event: NewMessage) -> bool:
        message = dict(event.message)
        conversation_id = event.conversation_id or str(message.get("conversation_id") or "")
        message_id = str(message.get("id") or "")
        if not conversation_id or not message_id or self._has_id(conversation_id, message_id):
            return False
        client_temp_id = message.get("client_temp_id")
        local = None
        if client_temp_id and message.get("sender_id") == self.user_id:
            local = self._find_local(conversation_id, str(client_temp_id))
        if local is not None:
            local.clear()
            local.update({**message, "status": MessageStatus.SENT})
            self.pending.confirm(str(client_temp_id))
        else:
            self._messages.setdefault(conversation_id, []).append({**message, "status": MessageStatus.SENT})
        self._touch(conversation_id, message)
        if message.get("sender_id") != self.user_id:
            self._typing.get(conversation_id, set()).discard(str(message.get("sender_id")))
            if conversation_id != self.active_conversation_id:
                self._conversations[conversation_id]["unread_count"] = self.unread_count(conversation_id) + 1
        self._changed()
        return True

    def apply_typing(self, event: UserTyping | UserStopTyping) -> None:
        if event.user_id == self.user_id:
            return
        users = self._typing.setdefault(event.conversation_id, set())
        if isinstance(event, UserTyping):
            users.add(event.user_id)
        else:
            users.discard(event.user_id)
        self._changed()

    # -- reconciliation --------------------------------------------------------------

    async def refresh_messages(self, conversation_id: str) -> None:
        """Merge the server's ordered list with whatever local-only entries remain."""
        server = await self.api.get_messages(conversation_id)
        by_id = {str(x["id"]): {**x, "status": MessageStatus.SENT} for x in server}
        merged = list(by_id.values())
        for message in self._messages.get(conversation_id, []):
            message_id = message.get("id")
            if message_id and str(message_id) not in by_id:
                merged.append(message)
            elif not message_id:
                echoed = next(
                    (x for x in merged if x.get("client_temp_id") == message.get("client_temp_id")),
                    None,
                )
                if echoed is None:
                    merged.append(message)
                else:
                    self.pending.confirm(str(message.get("client_temp_id")))
        self._messages[conversation_id] = merged
        self._changed()

    async def refresh_conversations(self) -> None:
        rows = await self.api.get_conversations()
        self._conversations = {str(x["id"]): dict(x) for x in rows}
        self._changed()

    async def mark_read(self, conversation_id: str) -> None:
        def _apply() -> Undo:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                return lambda: None
            previous = int(conversation.get("unread_count", 0))
            conversation["unread_count"] = 0

            def _undo() -> None:
                # Messages pushed while the request was in flight keep their count.
                current = self._conversations.get(conversation_id)
                if current is not None:
                    current["unread_count"] = int(current.get("unread_count", 0)) + previous

            return _undo

        await apply_optimistically(
            _apply,
            lambda: self.api.mark_conversation_read(conversation_id),
            on_change=self._changed,
        )
