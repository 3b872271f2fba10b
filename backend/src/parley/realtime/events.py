"""Typed inbound events and outbound event builders.

Inbound payloads are JSON objects with a ``type`` discriminator and camelCase
fields. Outbound events are plain dicts ready for ``send_json``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .errors import InvalidPayload
from .store import MessageRecord, MessageType


class InboundEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class JoinRoom(InboundEvent):
    type: Literal["join_room"]
    room_id: int = Field(alias="roomId")


class LeaveRoom(InboundEvent):
    type: Literal["leave_room"]
    room_id: int = Field(alias="roomId")


class SubmitMessage(InboundEvent):
    type: Literal["submit_message"]
    chat_id: int = Field(alias="chatId")
    content: str
    client_id: str = Field(alias="clientId", min_length=1, max_length=64)
    reply_to: int | None = Field(default=None, alias="replyTo")
    message_type: MessageType = Field(default=MessageType.TEXT, alias="messageType")


class MarkDelivered(InboundEvent):
    type: Literal["mark_delivered"]
    message_id: int = Field(alias="messageId")


class MarkRead(InboundEvent):
    type: Literal["mark_read"]
    message_id: int = Field(alias="messageId")


class EditMessage(InboundEvent):
    type: Literal["edit_message"]
    message_id: int = Field(alias="messageId")
    content: str


class DeleteMessage(InboundEvent):
    type: Literal["delete_message"]
    message_id: int = Field(alias="messageId")
    for_everyone: bool = Field(default=False, alias="forEveryone")


class AddReaction(InboundEvent):
    type: Literal["add_reaction"]
    message_id: int = Field(alias="messageId")
    emoji: str = Field(min_length=1, max_length=32)


class RemoveReaction(InboundEvent):
    type: Literal["remove_reaction"]
    message_id: int = Field(alias="messageId")


class TypingStart(InboundEvent):
    type: Literal["typing_start"]
    chat_id: int = Field(alias="chatId")


class TypingStop(InboundEvent):
    type: Literal["typing_stop"]
    chat_id: int = Field(alias="chatId")


class CallInitiate(InboundEvent):
    type: Literal["call_initiate"]
    target_user_id: int = Field(alias="targetUserId")
    chat_id: int = Field(alias="chatId")
    call_type: Literal["audio", "video"] = Field(default="audio", alias="callType")
    offer: Any = None


class CallAnswer(InboundEvent):
    type: Literal["call_answer"]
    caller_id: int = Field(alias="callerId")
    answer: Any = None


class CallReject(InboundEvent):
    type: Literal["call_reject"]
    caller_id: int = Field(alias="callerId")
    reason: str | None = None


class CallEnd(InboundEvent):
    type: Literal["call_end"]
    target_user_id: int = Field(alias="targetUserId")


class IceCandidate(InboundEvent):
    type: Literal["ice_candidate"]
    target_user_id: int = Field(alias="targetUserId")
    candidate: Any = None


class Ping(InboundEvent):
    type: Literal["ping"]


AnyInboundEvent = Annotated[
    Union[
        JoinRoom,
        LeaveRoom,
        SubmitMessage,
        MarkDelivered,
        MarkRead,
        EditMessage,
        DeleteMessage,
        AddReaction,
        RemoveReaction,
        TypingStart,
        TypingStop,
        CallInitiate,
        CallAnswer,
        CallReject,
        CallEnd,
        IceCandidate,
        Ping,
    ],
    Field(discriminator="type"),
]

_inbound_adapter: TypeAdapter[AnyInboundEvent] = TypeAdapter(AnyInboundEvent)


def parse_inbound(payload: Any) -> AnyInboundEvent:
    """Validate a raw inbound payload, raising :class:`InvalidPayload`."""

    if not isinstance(payload, dict):
        raise InvalidPayload("Event payload must be a JSON object")
    try:
        return _inbound_adapter.validate_python(payload)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        message = first.get("msg", "Invalid event")
        detail = f"{location}: {message}" if location else message
        raise InvalidPayload(detail, event=payload.get("type")) from None


# ---------------------------------------------------------------------------
# Outbound builders
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def serialize_message(message: MessageRecord) -> dict[str, Any]:
    status = message.status
    return {
        "id": message.id,
        "chatId": message.chat_id,
        "senderId": message.sender_id,
        "content": None if message.deleted else message.content,
        "messageType": message.message_type.value,
        "replyTo": message.reply_to_id,
        "clientId": message.client_id,
        "createdAt": _iso(message.created_at),
        "editedAt": _iso(message.edited_at),
        "deleted": message.deleted,
        "status": {
            "sent": status.sent,
            "sentAt": _iso(status.sent_at),
            "delivered": status.delivered,
            "deliveredAt": _iso(status.delivered_at),
            "read": status.read,
            "readAt": _iso(status.read_at),
        },
    }


def connected(user_id: int, session_id: str) -> dict[str, Any]:
    return {"type": "connected", "userId": user_id, "sessionId": session_id}


def presence_online(user_id: int) -> dict[str, Any]:
    return {"type": "presence_online", "userId": user_id}


def presence_offline(user_id: int, last_seen: datetime) -> dict[str, Any]:
    return {"type": "presence_offline", "userId": user_id, "lastSeen": _iso(last_seen)}


def presence_snapshot(entries: list[tuple[int, bool]]) -> dict[str, Any]:
    return {
        "type": "presence_snapshot",
        "users": [{"userId": user_id, "online": online} for user_id, online in entries],
    }


def room_joined(room_id: int) -> dict[str, Any]:
    return {"type": "room_joined", "roomId": room_id}


def room_left(room_id: int) -> dict[str, Any]:
    return {"type": "room_left", "roomId": room_id}


def user_joined_chat(user_id: int, chat_id: int) -> dict[str, Any]:
    return {"type": "user_joined_chat", "userId": user_id, "chatId": chat_id}


def new_message(message: MessageRecord) -> dict[str, Any]:
    return {"type": "new_message", "message": serialize_message(message)}


def message_ack(client_id: str, message_id: int, server_time: datetime) -> dict[str, Any]:
    return {
        "type": "message_ack",
        "clientId": client_id,
        "messageId": message_id,
        "serverTime": _iso(server_time),
    }


def delivery_receipt(message_id: int, user_id: int, timestamp: datetime) -> dict[str, Any]:
    return {
        "type": "delivery_receipt",
        "messageId": message_id,
        "userId": user_id,
        "timestamp": _iso(timestamp),
    }


def message_edited(message: MessageRecord) -> dict[str, Any]:
    return {"type": "message_edited", "message": serialize_message(message)}


def message_deleted(message_id: int, chat_id: int, deleted_for: str) -> dict[str, Any]:
    return {
        "type": "message_deleted",
        "messageId": message_id,
        "chatId": chat_id,
        "deletedFor": deleted_for,
    }


def reaction_added(message_id: int, chat_id: int, user_id: int, emoji: str) -> dict[str, Any]:
    return {
        "type": "reaction_added",
        "messageId": message_id,
        "chatId": chat_id,
        "userId": user_id,
        "emoji": emoji,
    }


def reaction_removed(message_id: int, chat_id: int, user_id: int) -> dict[str, Any]:
    return {
        "type": "reaction_removed",
        "messageId": message_id,
        "chatId": chat_id,
        "userId": user_id,
    }


def read_receipt(message_id: int, chat_id: int, user_id: int, timestamp: datetime) -> dict[str, Any]:
    return {
        "type": "read_receipt",
        "messageId": message_id,
        "chatId": chat_id,
        "userId": user_id,
        "timestamp": _iso(timestamp),
    }


def typing(user_id: int, chat_id: int, is_typing: bool) -> dict[str, Any]:
    return {"type": "typing", "userId": user_id, "chatId": chat_id, "isTyping": is_typing}


def incoming_call(caller_id: int, chat_id: int, call_type: str, offer: Any) -> dict[str, Any]:
    return {
        "type": "incoming_call",
        "callerId": caller_id,
        "chatId": chat_id,
        "callType": call_type,
        "offer": offer,
    }


def call_initiated(target_user_id: int, chat_id: int) -> dict[str, Any]:
    return {"type": "call_initiated", "targetUserId": target_user_id, "chatId": chat_id}


def call_answered(answerer_id: int, answer: Any) -> dict[str, Any]:
    return {"type": "call_answered", "answererId": answerer_id, "answer": answer}


def call_rejected(rejecter_id: int, reason: str | None) -> dict[str, Any]:
    return {"type": "call_rejected", "rejecterId": rejecter_id, "reason": reason}


def call_ended(ender_id: int, reason: str | None = None) -> dict[str, Any]:
    return {"type": "call_ended", "enderId": ender_id, "reason": reason}


def ice_candidate(sender_id: int, candidate: Any) -> dict[str, Any]:
    return {"type": "ice_candidate", "senderId": sender_id, "candidate": candidate}


def error(reason: str, **context: Any) -> dict[str, Any]:
    return {"type": "error", "reason": reason, "context": context}


PONG: dict[str, Any] = {"type": "pong"}
