from __future__ import annotations

import logging
import threading
import uuid
from collections import OrderedDict, deque
from datetime import UTC, datetime
from typing import Any

from jobflow.errors import not_found

logger = logging.getLogger(__name__)

DEFAULT_RETAIN_PUBLISHED = 1000


class DomainOutbox:
    """Domain events written in the same step as the state change they describe.

    Push delivery happens afterwards, from ``dispatch``; a push failure leaves the
    event pending and never undoes the state change. Published events leave the
    pending queue; only the most recent ``retain_published`` are kept for
    inspection.
    """

    def __init__(self, *, retain_published: int = DEFAULT_RETAIN_PUBLISHED) -> None:
        self._lock = threading.RLock()
        self._dispatch_lock = threading.Lock()
        self._pending: OrderedDict[str, dict[str, Any]] = OrderedDict()
        self._published: deque[dict[str, Any]] = deque(maxlen=max(0, int(retain_published)))

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).isoformat()

    def build_event(
        self,
        *,
        event_type: str,
        aggregate_type: str,
        aggregate_id: str,
        deliveries: list[dict[str, Any]],
    ) -> dict[str, Any]:
        return {
            "event_id": f"evt_{uuid.uuid4().hex[:12]}",
            "event_type": event_type,
            "aggregate_type": aggregate_type,
            "aggregate_id": aggregate_id,
            "deliveries": deliveries,
            "status": "pending",
            "published_at": None,
            "created_at": self._utcnow_iso(),
        }

    def append(self, event: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self._pending[event["event_id"]] = event
            return event

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def list_events(self, *, status: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        with self._lock:
            items: list[dict[str, Any]] = []
            if status in {None, "published"}:
                items.extend(self._published)
            if status in {None, "pending"}:
                items.extend(self._pending.values())
        return items[: max(1, min(limit, 1000))]

    def mark_published(self, event_id: str) -> dict[str, Any]:
        with self._lock:
            event = self._pending.pop(event_id, None)
            if event is None:
                raise not_found("OUTBOX_EVENT_NOT_FOUND", "outbox event not found")
            event["status"] = "published"
            event["published_at"] = self._utcnow_iso()
            self._published.append(event)
            return event

    def dispatch(self, hub: Any) -> int:
        """Publish pending events in creation order; returns how many went out.

        Concurrent callers run one at a time, so an event is never pushed twice.
        """
        published = 0
        with self._dispatch_lock:
            with self._lock:
                pending = list(self._pending.values())
            for event in pending:
                try:
                    for delivery in event.get("deliveries", []):
                        hub.publish(
                            channel=delivery["channel"],
                            event=delivery["event"],
                            payload=delivery["payload"],
                            dedupe_key=delivery.get("dedupe_key"),
                        )
                except Exception as exc:
                    logger.warning(
                        "outbox_dispatch_failed event_id=%s error=%s",
                        event["event_id"],
                        type(exc).__name__,
                    )
                    break
                self.mark_published(event["event_id"])
                published += 1
        return published

    def reset(self) -> None:
        with self._lock:
            self._pending.clear()
            self._published.clear()
