from __future__ import annotations

from typing import Any


class InMemoryNotificationsRepository:
    def __init__(self, notifications: dict[str, dict[str, Any]]) -> None:
        self._notifications = notifications

    def create(self, *, notification: dict[str, Any]) -> dict[str, Any]:
        self._notifications[str(notification["notification_id"])] = dict(notification)
        return dict(notification)

    def get(self, *, user_id: str, notification_id: str) -> dict[str, Any] | None:
        row = self._notifications.get(notification_id)
        if row is None or row.get("user_id") != user_id:
            return None
        return dict(row)

    def list_for_user(self, *, user_id: str) -> list[dict[str, Any]]:
        rows = [dict(x) for x in self._notifications.values() if x.get("user_id") == user_id]
        return sorted(rows, key=lambda x: (x.get("created_at", ""), x.get("sequence", 0)), reverse=True)

    def set_read(self, *, user_id: str, notification_ids: list[str]) -> int:
        changed = 0
        for notification_id in notification_ids:
            row = self._notifications.get(notification_id)
            if row is None or row.get("user_id") != user_id or row.get("read"):
                continue
            row["read"] = True
            changed += 1
        return changed

    def delete(self, *, user_id: str, notification_ids: list[str]) -> int:
        deleted = 0
        for notification_id in notification_ids:
            row = self._notifications.get(notification_id)
            if row is None or row.get("user_id") != user_id:
                continue
            self._notifications.pop(notification_id, None)
            deleted += 1
        return deleted

    def purge_expired(self, *, now_iso: str) -> int:
        expired = [k for k, v in self._notifications.items() if str(v.get("expires_at", "")) <= now_iso]
        for key in expired:
            self._notifications.pop(key, None)
        return len(expired)
