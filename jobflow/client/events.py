"""Push frames as a closed set of event variants.

Every frame the realtime endpoint emits decodes into exactly one of the
dataclasses below; consumers ``match`` on the variant instead of dispatching
on event-name strings.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Connected:
    connection_id: str
    user_id: str
    channels: dict[str, int] = field(default_factory=dict)
    channel: str | None = None
    seq: int | None = None


@dataclass(frozen=True)
class NewNotification:
    channel: str
    seq: int | None
    notification: dict[str, Any]


@dataclass(frozen=True)
class NewMessage:
    channel: str
    seq: int | None
    conversation_id: str
    message: dict[str, Any]


@dataclass(frozen=True)
class UserTyping:
    channel: str
    seq: int | None
    conversation_id: str
    user_id: str


@dataclass(frozen=True)
class UserStopTyping:
    channel: str
    seq: int | None
    conversation_id: str
    user_id: str


@dataclass(frozen=True)
class Ack:
    request: str
    payload: dict[str, Any]
    channel: str | None = None
    seq: int | None = None


@dataclass(frozen=True)
class PushRejected:
    request: str
    code: str
    message: str
    channel: str | None = None
    seq: int | None = None


@dataclass(frozen=True)
class UnknownEvent:
    event: str
    channel: str | None
    seq: int | None
    payload: dict[str, Any]


PushEvent = Connected | NewNotification | NewMessage | UserTyping | UserStopTyping | Ack | PushRejected | UnknownEvent


def decode_frame(frame: dict[str, Any]) -> PushEvent:
    event = str(frame.get("event") or "")
    channel = frame.get("channel")
    seq = frame.get("seq")
    seq = seq if isinstance(seq, int) and not isinstance(seq, bool) else None
    payload = frame.get("payload") if isinstance(frame.get("payload"), dict) else {}

    match event:
        case "connected":
            channels = payload.get("channels") if isinstance(payload.get("channels"), dict) else {}
            return Connected(
                connection_id=str(payload.get("connection_id", "")),
                user_id=str(payload.get("user_id", "")),
                channels={str(k): int(v) for k, v in channels.items()},
            )
        case "new_notification" if isinstance(payload.get("notification"), dict):
            return NewNotification(channel=str(channel), seq=seq, notification=payload["notification"])
        case "new_message" if isinstance(payload.get("message"), dict):
            return NewMessage(
                channel=str(channel),
                seq=seq,
                conversation_id=str(payload.get("conversation_id", "")),
                message=payload["message"],
            )
        case "user_typing":
            return UserTyping(
                channel=str(channel),
                seq=seq,
                conversation_id=str(payload.get("conversation_id", "")),
                user_id=str(payload.get("user_id", "")),
            )
        case "user_stop_typing":
            return UserStopTyping(
                channel=str(channel),
                seq=seq,
                conversation_id=str(payload.get("conversation_id", "")),
                user_id=str(payload.get("user_id", "")),
            )
        case "ack":
            return Ack(request=str(payload.get("request", "")), payload=payload)
        case "error":
            return PushRejected(
                request=str(payload.get("request", "")),
                code=str(payload.get("code", "")),
                message=str(payload.get("message", "")),
            )
    return UnknownEvent(event=event, channel=channel if isinstance(channel, str) else None, seq=seq, payload=payload)


def outgoing_frame(event: str, conversation_id: str, **extra: Any) -> dict[str, Any]:
    """Build a frame for one of the client-emitted events (join, leave, typing, send)."""
    return {"event": event, "payload": {"conversation_id": conversation_id, **extra}}
