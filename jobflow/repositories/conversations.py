from __future__ import annotations

from typing import Any


class InMemoryConversationsRepository:
    def __init__(
        self,
        conversations: dict[str, dict[str, Any]],
        messages: dict[str, list[dict[str, Any]]],
    ) -> None:
        self._conversations = conversations
        self._messages = messages

    def save(self, *, conversation: dict[str, Any]) -> dict[str, Any]:
        self._conversations[str(conversation["conversation_id"])] = dict(conversation)
        return dict(conversation)

    def get(self, *, conversation_id: str) -> dict[str, Any] | None:
        row = self._conversations.get(conversation_id)
        if row is None:
            return None
        return dict(row)

    def find(self, *, participants: frozenset[str], job_id: str | None) -> dict[str, Any] | None:
        for row in self._conversations.values():
            if frozenset(row.get("participants", [])) == participants and row.get("job_id") == job_id:
                return dict(row)
        return None

    def list_for_user(self, *, user_id: str) -> list[dict[str, Any]]:
        rows = [dict(x) for x in self._conversations.values() if user_id in x.get("participants", [])]
        return sorted(rows, key=lambda x: x.get("last_message_at", ""), reverse=True)

    def append_message(self, *, message: dict[str, Any]) -> dict[str, Any]:
        self._messages.setdefault(str(message["conversation_id"]), []).append(dict(message))
        return dict(message)

    def get_message(self, *, conversation_id: str, message_id: str) -> dict[str, Any] | None:
        for row in self._messages.get(conversation_id, []):
            if row.get("message_id") == message_id:
                return dict(row)
        return None

    def list_messages(self, *, conversation_id: str) -> list[dict[str, Any]]:
        return [dict(x) for x in self._messages.get(conversation_id, [])]

    def mark_read(self, *, conversation_id: str, reader_id: str, read_at: str) -> int:
        changed = 0
        for row in self._messages.get(conversation_id, []):
            if row.get("sender_id") == reader_id or row.get("read"):
                continue
            row["read"] = True
            row["read_at"] = read_at
            changed += 1
        return changed
