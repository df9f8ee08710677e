from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from chatsync.schemas.messages import MessageRead
from chatsync.schemas.receipts import ReadMarkerRead
from chatsync.sync.engine import ReceiptEvent, StateEvent, TypingEvent, ViewEvent
from chatsync.sync.message_store import MessageEvent


@dataclass(slots=True)
class ProtocolError(Exception):
    code: str
    message: str


class OpenCommand(BaseModel):
    model_config = ConfigDict(extra="forbid")

    op: Literal["open"]
    conversation_id: str = Field(min_length=1, max_length=64)


class CloseCommand(BaseModel):
    model_config = ConfigDict(extra="forbid")

    op: Literal["close"]
    conversation_id: str = Field(min_length=1, max_length=64)


class TypingCommand(BaseModel):
    model_config = ConfigDict(extra="forbid")

    op: Literal["typing"]
    conversation_id: str = Field(min_length=1, max_length=64)
    is_typing: bool


class ReadCommand(BaseModel):
    model_config = ConfigDict(extra="forbid")

    op: Literal["read"]
    conversation_id: str = Field(min_length=1, max_length=64)
    local_id: str | None = Field(default=None, min_length=1, max_length=64)


class PingCommand(BaseModel):
    model_config = ConfigDict(extra="forbid")

    op: Literal["ping"]
    ts: int | None = None


Command = OpenCommand | CloseCommand | TypingCommand | ReadCommand | PingCommand

_COMMANDS: dict[str, type[BaseModel]] = {
    "open": OpenCommand,
    "close": CloseCommand,
    "typing": TypingCommand,
    "read": ReadCommand,
    "ping": PingCommand,
}


def parse_command(raw_text: str, *, max_bytes: int) -> Command:
    payload_size = len(raw_text.encode("utf-8"))
    if payload_size > max_bytes:
        raise ProtocolError(code="INVALID_COMMAND", message="Frame is too large")

    try:
        decoded = json.loads(raw_text)
    except json.JSONDecodeError as exc:
        raise ProtocolError(code="INVALID_COMMAND", message="Invalid JSON payload") from exc

    if not isinstance(decoded, dict):
        raise ProtocolError(code="INVALID_COMMAND", message="Command payload must be an object")

    model = _COMMANDS.get(str(decoded.get("op")))
    if model is None:
        raise ProtocolError(code="INVALID_COMMAND", message="Unsupported command")

    try:
        return model.model_validate(decoded)  # type: ignore[return-value]
    except ValidationError as exc:
        raise ProtocolError(code="INVALID_COMMAND", message=str(exc.errors()[0]["msg"])) from exc


def welcome_frame(*, connection_id: str, user_id: str, heartbeat_sec: int) -> dict[str, object]:
    return {
        "type": "connection.welcome",
        "connection_id": connection_id,
        "user_id": user_id,
        "server_time": datetime.now(UTC).isoformat(),
        "heartbeat_sec": heartbeat_sec,
        "protocol_version": 1,
    }


def ack_frame(*, op: str, details: dict[str, object] | None = None) -> dict[str, object]:
    payload: dict[str, object] = {
        "type": "ack",
        "op": op,
        "ok": True,
    }
    if details:
        payload["details"] = details
    return payload


def error_frame(*, code: str, message: str, details: dict[str, object] | None = None) -> dict[str, object]:
    error_payload: dict[str, object] = {"code": code, "message": message}
    if details:
        error_payload["details"] = details
    return {"type": "error", "error": error_payload}


def pong_frame(*, ts: int | None = None) -> dict[str, object]:
    payload: dict[str, object] = {"type": "pong"}
    if ts is not None:
        payload["ts"] = ts
    return payload


def event_frame(event: ViewEvent) -> dict[str, object]:
    """Render an engine view event as an outgoing WebSocket frame."""
    occurred_at = datetime.now(UTC).isoformat()
    if isinstance(event, MessageEvent):
        return {
            "type": event.type.value,
            "conversation_id": event.conversation_id,
            "occurred_at": occurred_at,
            "payload": {"message": MessageRead.model_validate(event.message).model_dump(mode="json")},
        }
    if isinstance(event, StateEvent):
        return {
            "type": "subscription.state",
            "conversation_id": event.conversation_id,
            "occurred_at": occurred_at,
            "payload": {"state": event.state.value, "reconnecting": event.reconnecting},
        }
    if isinstance(event, TypingEvent):
        return {
            "type": "typing.updated",
            "conversation_id": event.conversation_id,
            "occurred_at": occurred_at,
            "payload": {"user_ids": sorted(event.user_ids)},
        }
    if isinstance(event, ReceiptEvent):
        return {
            "type": "receipts.updated",
            "conversation_id": event.conversation_id,
            "occurred_at": occurred_at,
            "payload": {
                "markers": [ReadMarkerRead.model_validate(marker).model_dump(mode="json") for marker in event.markers],
            },
        }
    raise TypeError(f"Unsupported view event: {type(event).__name__}")
