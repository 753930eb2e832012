"""Local notification feed kept consistent with the server.

Pushes are folded in as they arrive, user actions apply optimistically, and a
scheduled unread-count fetch replaces the local counter every
``poll_interval_s`` so that missed pushes cannot leave it wrong for long.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from jobflow.client.events import NewNotification
from jobflow.client.optimistic import Undo, apply_optimistically
from jobflow.errors import ApiError
from jobflow.models import NotificationAction

logger = logging.getLogger(__name__)

# Ordered: the first phrase found in a legacy title/message decides the action.
LEGACY_ACTION_PHRASES: tuple[tuple[str, str], ...] = (
    ("revision", NotificationAction.REVISION_REQUESTED),
    ("reject", NotificationAction.REJECTED),
    ("approved", NotificationAction.APPROVED),
    ("completed", NotificationAction.APPROVED),
)


def notification_action(notification: dict[str, Any]) -> str | None:
    metadata = notification.get("metadata") if isinstance(notification.get("metadata"), dict) else {}
    action = metadata.get("action")
    if action:
        return str(action)
    text = f"{notification.get('title', '')} {notification.get('message', '')}".lower()
    for phrase, legacy_action in LEGACY_ACTION_PHRASES:
        if phrase in text:
            return legacy_action
    return None


class NotificationReconciler:
    def __init__(
        self,
        api: Any,
        *,
        poll_interval_s: float = 30.0,
        page_size: int = 20,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.api = api
        self.poll_interval_s = max(0.01, float(poll_interval_s))
        self.page_size = page_size
        self._clock = clock
        self._items: list[dict[str, Any]] = []
        self._unread = 0
        self._generation = 0
        self._listeners: list[Callable[[], None]] = []
        self.last_reconciled_at: float | None = None

    notification_action = staticmethod(notification_action)

    # -- read side -------------------------------------------------------------------

    @property
    def notifications(self) -> list[dict[str, Any]]:
        return [dict(x) for x in self._items]

    @property
    def unread_count(self) -> int:
        return self._unread

    def subscribe(self, listener: Callable[[], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _changed(self) -> None:
        for listener in list(self._listeners):
            listener()

    def _index(self, notification_id: str) -> int | None:
        for idx, item in enumerate(self._items):
            if item.get("id") == notification_id:
                return idx
        return None

    # -- push ------------------------------------------------------------------------

    def apply_event(self, event: NewNotification) -> bool:
        notification = dict(event.notification)
        if not notification.get("id") or self._index(str(notification["id"])) is not None:
            return False
        self._items.insert(0, notification)
        if not notification.get("read"):
            self._unread += 1
        self._changed()
        return True

    # -- optimistic actions ----------------------------------------------------------
    #
    # Each undo reverts only the entries its own apply touched. After a refresh or
    # reconcile the counter is the server's and undo leaves it alone.

    def _restore_unread(self, generation: int, count: int) -> None:
        if generation == self._generation:
            self._unread += count

    def _reinsert(self, item: dict[str, Any], successor_id: str | None) -> bool:
        if self._index(str(item["id"])) is not None:
            return False
        idx = self._index(successor_id) if successor_id is not None else None
        if idx is None:
            if successor_id is None:
                self._items.append(item)
            else:
                self._items.insert(0, item)
        else:
            self._items.insert(idx, item)
        return True

    def _successor_id(self, idx: int) -> str | None:
        if idx + 1 < len(self._items):
            return str(self._items[idx + 1].get("id"))
        return None

    async def mark_as_read(self, notification_id: str) -> None:
        def _apply() -> Undo:
            idx = self._index(notification_id)
            if idx is None or self._items[idx].get("read"):
                return lambda: None
            self._items[idx]["read"] = True
            generation, cleared = self._generation, min(1, self._unread)
            self._unread -= cleared

            def _undo() -> None:
                current = self._index(notification_id)
                if current is not None and self._items[current].get("read"):
                    self._items[current]["read"] = False
                    self._restore_unread(generation, cleared)

            return _undo

        await apply_optimistically(
            _apply,
            lambda: self.api.mark_notification_read(notification_id),
            on_change=self._changed,
        )

    async def mark_all_read(self) -> int:
        def _apply() -> Undo:
            flipped = [str(x["id"]) for x in self._items if not x.get("read")]
            for item in self._items:
                item["read"] = True
            generation, cleared = self._generation, self._unread
            self._unread = 0

            def _undo() -> None:
                for notification_id in flipped:
                    idx = self._index(notification_id)
                    if idx is not None:
                        self._items[idx]["read"] = False
                self._restore_unread(generation, cleared)

            return _undo

        result = await apply_optimistically(_apply, self.api.mark_all_read, on_change=self._changed)
        return int((result or {}).get("modified_count", 0))

    async def delete(self, notification_id: str) -> None:
        def _apply() -> Undo:
            idx = self._index(notification_id)
            if idx is None:
                return lambda: None
            successor_id = self._successor_id(idx)
            removed = self._items.pop(idx)
            generation, cleared = self._generation, 0 if removed.get("read") else min(1, self._unread)
            self._unread -= cleared

            def _undo() -> None:
                if self._reinsert(removed, successor_id):
                    self._restore_unread(generation, cleared)

            return _undo

        await apply_optimistically(
            _apply,
            lambda: self.api.delete_notification(notification_id),
            on_change=self._changed,
        )

    async def delete_all_read(self) -> int:
        def _apply() -> Undo:
            removed = [(x, self._successor_id(idx)) for idx, x in enumerate(self._items) if x.get("read")]
            self._items = [x for x in self._items if not x.get("read")]

            def _undo() -> None:
                for item, successor_id in reversed(removed):
                    self._reinsert(item, successor_id)

            return _undo

        result = await apply_optimistically(_apply, self.api.delete_all_read, on_change=self._changed)
        return int((result or {}).get("deleted_count", 0))

    # -- reconciliation --------------------------------------------------------------

    async def refresh(self) -> None:
        """Replace the feed and the counter with the server's snapshot."""
        data = await self.api.get_notifications(limit=self.page_size)
        self._items = [dict(x) for x in data.get("items", [])]
        self._generation += 1
        self._unread = int(data.get("unread_count", sum(1 for x in self._items if not x.get("read"))))
        self.last_reconciled_at = self._clock()
        self._changed()

    async def reconcile_unread(self) -> int:
        count = await self.api.get_unread_count()
        if count != self._unread:
            logger.info("notification_unread_corrected local=%s server=%s", self._unread, count)
        self._generation += 1
        self._unread = max(0, int(count))
        self.last_reconciled_at = self._clock()
        self._changed()
        return self._unread

    async def run_periodic(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await self.reconcile_unread()
            except ApiError as exc:
                logger.warning("notification_reconcile_failed code=%s retryable=%s", exc.code, exc.retryable)
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.poll_interval_s)
            except asyncio.TimeoutError:
                continue
