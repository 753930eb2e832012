from __future__ import annotations

import itertools
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from jobflow.errors import ValidationError, not_found
from jobflow.models import NotificationType, user_channel
from jobflow.repositories.notifications import InMemoryNotificationsRepository

DEFAULT_TTL_DAYS = 30


class NotificationService:
    """Server-side notification feed: create, query, mark-read, delete."""

    def __init__(self, repository: InMemoryNotificationsRepository, *, ttl_days: int = DEFAULT_TTL_DAYS) -> None:
        self.repository = repository
        self.ttl_days = max(1, int(ttl_days))
        self._sequence = itertools.count(1)

    @staticmethod
    def _utcnow() -> datetime:
        return datetime.now(UTC)

    def prepare(
        self,
        *,
        user_id: str,
        type: str,
        title: str,
        message: str,
        link: str | None = None,
        metadata: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        if type not in NotificationType.ALL:
            raise ValidationError(f"unknown notification type: {type}", field="type")
        if not title.strip() or not message.strip():
            raise ValidationError("notification title and message are required", field="title")
        created = now or self._utcnow()
        return {
            "notification_id": f"ntf_{uuid.uuid4().hex[:12]}",
            "user_id": user_id,
            "type": type,
            "title": title.strip(),
            "message": message.strip(),
            "read": False,
            "link": link,
            "metadata": dict(metadata or {}),
            "sequence": next(self._sequence),
            "created_at": created.isoformat(),
            "expires_at": (created + timedelta(days=self.ttl_days)).isoformat(),
        }

    @staticmethod
    def delivery_for(notification: dict[str, Any]) -> dict[str, Any]:
        return {
            "channel": user_channel(str(notification["user_id"])),
            "event": "new_notification",
            "payload": {"notification": public_notification(notification)},
        }

    def commit(self, notification: dict[str, Any]) -> dict[str, Any]:
        return self.repository.create(notification=notification)

    def _purge_expired(self) -> None:
        self.repository.purge_expired(now_iso=self._utcnow().isoformat())

    def get_notifications(
        self,
        *,
        user_id: str,
        read: bool | None = None,
        type: str | None = None,
        limit: int = 20,
        skip: int = 0,
    ) -> list[dict[str, Any]]:
        self._purge_expired()
        rows = self.repository.list_for_user(user_id=user_id)
        if read is not None:
            rows = [x for x in rows if bool(x.get("read")) is read]
        if type:
            rows = [x for x in rows if x.get("type") == type]
        start = max(0, int(skip))
        end = start + max(1, min(int(limit), 100))
        return [public_notification(x) for x in rows[start:end]]

    def unread_count(self, *, user_id: str) -> int:
        self._purge_expired()
        return sum(1 for x in self.repository.list_for_user(user_id=user_id) if not x.get("read"))

    def mark_read(self, *, user_id: str, notification_id: str) -> dict[str, Any]:
        if self.repository.get(user_id=user_id, notification_id=notification_id) is None:
            raise not_found("NOTIFICATION_NOT_FOUND", "notification not found")
        self.repository.set_read(user_id=user_id, notification_ids=[notification_id])
        row = self.repository.get(user_id=user_id, notification_id=notification_id)
        return public_notification(row or {})

    def mark_all_read(self, *, user_id: str) -> dict[str, Any]:
        ids = [str(x["notification_id"]) for x in self.repository.list_for_user(user_id=user_id) if not x.get("read")]
        modified = self.repository.set_read(user_id=user_id, notification_ids=ids)
        return {"modified_count": modified}

    def delete(self, *, user_id: str, notification_id: str) -> dict[str, Any]:
        if self.repository.get(user_id=user_id, notification_id=notification_id) is None:
            raise not_found("NOTIFICATION_NOT_FOUND", "notification not found")
        self.repository.delete(user_id=user_id, notification_ids=[notification_id])
        return {"notification_id": notification_id, "deleted": True}

    def delete_all_read(self, *, user_id: str) -> dict[str, Any]:
        ids = [str(x["notification_id"]) for x in self.repository.list_for_user(user_id=user_id) if x.get("read")]
        deleted = self.repository.delete(user_id=user_id, notification_ids=ids)
        return {"deleted_count": deleted}


def public_notification(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": row.get("notification_id"),
        "user_id": row.get("user_id"),
        "type": row.get("type"),
        "title": row.get("title"),
        "message": row.get("message"),
        "read": bool(row.get("read")),
        "link": row.get("link"),
        "metadata": dict(row.get("metadata") or {}),
        "created_at": row.get("created_at"),
    }
