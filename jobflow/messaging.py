from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from jobflow.errors import ValidationError, forbidden, not_found
from jobflow.ledger import normalize_files
from jobflow.models import conversation_channel, user_channel
from jobflow.outbox import DomainOutbox
from jobflow.repositories.conversations import InMemoryConversationsRepository

logger = logging.getLogger(__name__)


class MessagingService:
    """Two-party conversations with server-ordered messages."""

    def __init__(self, repository: InMemoryConversationsRepository, *, outbox: DomainOutbox) -> None:
        self.repository = repository
        self.outbox = outbox

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).isoformat()

    def require_participant(self, *, conversation_id: str, user_id: str) -> dict[str, Any]:
        conversation = self.repository.get(conversation_id=conversation_id)
        if conversation is None:
            raise not_found("CONVERSATION_NOT_FOUND", "conversation not found")
        if user_id not in conversation.get("participants", []):
            raise forbidden("not a participant of this conversation")
        return conversation

    def get_or_create_conversation(
        self,
        *,
        user_id: str,
        other_user_id: str,
        job_id: str | None = None,
    ) -> dict[str, Any]:
        other = str(other_user_id or "").strip()
        if not other:
            raise ValidationError("other_user_id is required", field="other_user_id")
        if other == user_id:
            raise ValidationError("cannot start a conversation with yourself", field="other_user_id")
        participants = frozenset({user_id, other})
        existing = self.repository.find(participants=participants, job_id=job_id)
        if existing is not None:
            return existing
        now = self._utcnow_iso()
        conversation = {
            "conversation_id": f"conv_{uuid.uuid4().hex[:12]}",
            "participants": sorted(participants),
            "job_id": job_id,
            "last_message": None,
            "last_message_at": now,
            "message_seq": 0,
            "created_at": now,
        }
        logger.info("conversation_created conversation_id=%s job_id=%s", conversation["conversation_id"], job_id)
        return self.repository.save(conversation=conversation)

    def send_message(
        self,
        *,
        conversation_id: str,
        sender_id: str,
        content: str,
        attachments: list[dict[str, Any]] | None = None,
        client_temp_id: str | None = None,
    ) -> dict[str, Any]:
        conversation = self.require_participant(conversation_id=conversation_id, user_id=sender_id)
        text = str(content or "").strip()
        files = normalize_files(attachments, field="attachments")
        if not text and not files:
            raise ValidationError("message needs content or attachments", code="MESSAGE_EMPTY", field="content")

        seq = int(conversation.get("message_seq", 0)) + 1
        now = self._utcnow_iso()
        message = {
            "message_id": f"msg_{uuid.uuid4().hex[:12]}",
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": text,
            "attachments": files,
            "seq": seq,
            "read": False,
            "read_at": None,
            "client_temp_id": client_temp_id,
            "created_at": now,
        }
        conversation["message_seq"] = seq
        conversation["last_message"] = public_message(message)
        conversation["last_message_at"] = now
        self.repository.append_message(message=message)
        self.repository.save(conversation=conversation)

        payload = {"conversation_id": conversation_id, "message": public_message(message)}
        channels = [conversation_channel(conversation_id)]
        channels += [user_channel(str(x)) for x in conversation.get("participants", [])]
        self.outbox.append(
            self.outbox.build_event(
                event_type="message.created",
                aggregate_type="conversation",
                aggregate_id=conversation_id,
                deliveries=[
                    {
                        "channel": channel,
                        "event": "new_message",
                        "payload": payload,
                        "dedupe_key": message["message_id"],
                    }
                    for channel in channels
                ],
            )
        )
        return public_message(message)

    def get_message(self, *, conversation_id: str, message_id: str, user_id: str) -> dict[str, Any]:
        self.require_participant(conversation_id=conversation_id, user_id=user_id)
        row = self.repository.get_message(conversation_id=conversation_id, message_id=message_id)
        if row is None:
            raise not_found("MESSAGE_NOT_FOUND", "message not found")
        return public_message(row)

    def get_messages(
        self,
        *,
        conversation_id: str,
        user_id: str,
        limit: int = 50,
        before: int | None = None,
    ) -> list[dict[str, Any]]:
        self.require_participant(conversation_id=conversation_id, user_id=user_id)
        rows = sorted(
            self.repository.list_messages(conversation_id=conversation_id),
            key=lambda x: int(x.get("seq", 0)),
        )
        if before is not None:
            rows = [x for x in rows if int(x.get("seq", 0)) < before]
        size = max(1, min(int(limit), 200))
        return [public_message(x) for x in rows[-size:]]

    def unread_for(self, *, conversation_id: str, user_id: str) -> int:
        return sum(
            1
            for x in self.repository.list_messages(conversation_id=conversation_id)
            if x.get("sender_id") != user_id and not x.get("read")
        )

    def list_conversations(self, *, user_id: str) -> list[dict[str, Any]]:
        items = []
        for row in self.repository.list_for_user(user_id=user_id):
            item = public_conversation(row)
            item["unread_count"] = self.unread_for(conversation_id=str(row["conversation_id"]), user_id=user_id)
            items.append(item)
        return items

    def mark_conversation_read(self, *, conversation_id: str, user_id: str) -> dict[str, Any]:
        self.require_participant(conversation_id=conversation_id, user_id=user_id)
        changed = self.repository.mark_read(
            conversation_id=conversation_id,
            reader_id=user_id,
            read_at=self._utcnow_iso(),
        )
        return {"conversation_id": conversation_id, "modified_count": changed}


def public_message(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": row.get("message_id"),
        "conversation_id": row.get("conversation_id"),
        "sender_id": row.get("sender_id"),
        "content": row.get("content", ""),
        "attachments": list(row.get("attachments") or []),
        "seq": row.get("seq"),
        "read": bool(row.get("read")),
        "client_temp_id": row.get("client_temp_id"),
        "created_at": row.get("created_at"),
    }


def public_conversation(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": row.get("conversation_id"),
        "participants": list(row.get("participants") or []),
        "job_id": row.get("job_id"),
        "last_message": row.get("last_message"),
        "last_message_at": row.get("last_message_at"),
        "created_at": row.get("created_at"),
    }
