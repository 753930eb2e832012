"""Apply locally, confirm or roll back: the one optimistic-update helper.

``apply`` mutates a state slice and returns the callable that undoes exactly
that mutation. Rollback runs the undo at most once.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Undo = Callable[[], None]


class OptimisticUpdate:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"

    def __init__(self, key: str, undo: Undo, *, started_at: float) -> None:
        self.key = key
        self.status = self.PENDING
        self.started_at = started_at
        self._undo = undo

    def confirm(self) -> None:
        if self.status == self.PENDING:
            self.status = self.CONFIRMED

    def rollback(self) -> bool:
        if self.status != self.PENDING:
            return False
        self.status = self.ROLLED_BACK
        self._undo()
        return True


async def apply_optimistically(
    apply: Callable[[], Undo],
    commit: Callable[[], Awaitable[T]],
    *,
    on_change: Callable[[], None] | None = None,
) -> T:
    """Run ``apply`` now, then ``commit``; any failure undoes the local change and re-raises."""
    update = OptimisticUpdate("inline", apply(), started_at=time.monotonic())
    if on_change is not None:
        on_change()
    try:
        result = await commit()
    except Exception:
        update.rollback()
        if on_change is not None:
            on_change()
        raise
    update.confirm()
    return result


class OptimisticTracker:
    """Pending updates that roll back on their own once ``window_s`` passes unconfirmed."""

    def __init__(self, *, window_s: float = 30.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.window_s = max(0.0, float(window_s))
        self._clock = clock
        self._updates: dict[str, OptimisticUpdate] = {}

    def begin(self, key: str, apply: Callable[[], Undo]) -> OptimisticUpdate:
        update = OptimisticUpdate(key, apply(), started_at=self._clock())
        self._updates[key] = update
        return update

    def get(self, key: str) -> OptimisticUpdate | None:
        return self._updates.get(key)

    def confirm(self, key: str) -> bool:
        update = self._updates.pop(key, None)
        if update is None:
            return False
        update.confirm()
        return True

    def rollback(self, key: str) -> bool:
        update = self._updates.pop(key, None)
        return update.rollback() if update is not None else False

    def expire(self) -> list[str]:
        now = self._clock()
        expired = [k for k, v in self._updates.items() if now - v.started_at >= self.window_s]
        for key in expired:
            logger.info("optimistic_update_expired key=%s", key)
            self.rollback(key)
        return expired

    def pending_keys(self) -> list[str]:
        return list(self._updates)

    def __len__(self) -> int:
        return len(self._updates)
