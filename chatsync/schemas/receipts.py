from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from chatsync.core.clock import parse_datetime, serialize_datetime
from chatsync.schemas.messages import Message, MessageCursor

if TYPE_CHECKING:
    from chatsync.store.base import StoredDocument

READ_MARKERS_COLLECTION = "read_markers"


@dataclass(frozen=True, slots=True)
class ReadMarker:
    """A participant's last-read position in a conversation.

    The position is the ``(created_at, id)`` cursor of the newest confirmed
    message the participant has read; everything at or before it counts as
    read. Markers only ever move forward.
    """

    conversation_id: str
    user_id: str
    message_id: str
    message_local_id: str
    message_created_at: datetime
    read_at: datetime

    @property
    def cursor(self) -> MessageCursor:
        return (self.message_created_at, self.message_id)

    def covers(self, message: Message) -> bool:
        return message.id is not None and message.sort_key <= self.cursor


def read_marker_key(conversation_id: str, user_id: str) -> str:
    return f"{conversation_id}/{user_id}"


def read_marker_document(marker: ReadMarker) -> dict[str, object]:
    return {
        "conversation_id": marker.conversation_id,
        "user_id": marker.user_id,
        "message_id": marker.message_id,
        "message_local_id": marker.message_local_id,
        "message_created_at": serialize_datetime(marker.message_created_at),
        "read_at": serialize_datetime(marker.read_at),
    }


def read_marker_from_document(document: StoredDocument) -> ReadMarker:
    data = document.data
    message_created_at = parse_datetime(data.get("message_created_at"))  # type: ignore[arg-type]
    if message_created_at is None:
        raise ValueError("Read marker is missing message_created_at")
    return ReadMarker(
        conversation_id=str(data["conversation_id"]),
        user_id=str(data["user_id"]),
        message_id=str(data["message_id"]),
        message_local_id=str(data["message_local_id"]),
        message_created_at=message_created_at,
        read_at=parse_datetime(data.get("read_at")) or document.updated_at,  # type: ignore[arg-type]
    )


class MarkReadRequest(BaseModel):
    local_id: str | None = Field(default=None, min_length=1, max_length=64)


class ReadMarkerRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    message_id: str
    message_local_id: str
    message_created_at: datetime
    read_at: datetime


class ReceiptsRead(BaseModel):
    conversation_id: str
    markers: list[ReadMarkerRead]
