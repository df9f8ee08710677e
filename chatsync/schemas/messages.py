from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatsync.core.clock import ensure_utc, serialize_datetime

if TYPE_CHECKING:
    from chatsync.store.base import StoredDocument

MESSAGES_COLLECTION = "messages"
PREVIEW_MAX_LENGTH = 280
REPLY_PREVIEW_MAX_LENGTH = 100
REACTION_MAX_LENGTH = 32
DELETED_MESSAGE_TEXT = "This message was deleted"

MessageCursor = tuple[datetime, str]


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    SYSTEM = "system"


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class TextContent(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["text"] = "text"
    text: str = Field(min_length=1, max_length=2000)

    def preview(self) -> str:
        return self.text


class ImageContent(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["image"] = "image"
    url: str = Field(min_length=1, max_length=2048)
    caption: str | None = Field(default=None, max_length=2000)

    def preview(self) -> str:
        return self.caption or "[image]"


class FileContent(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["file"] = "file"
    url: str = Field(min_length=1, max_length=2048)
    file_name: str = Field(min_length=1, max_length=255)
    file_size: int = Field(ge=0)
    mime_type: str = Field(min_length=1, max_length=255)

    def preview(self) -> str:
        return f"[file] {self.file_name}"


class SystemContent(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["system"] = "system"
    text: str = Field(min_length=1, max_length=2000)

    def preview(self) -> str:
        return self.text


MessageContent = Annotated[
    Union[TextContent, ImageContent, FileContent, SystemContent],
    Field(discriminator="kind"),
]


class ReplyReference(BaseModel):
    """Snapshot of the message being answered, taken at send time."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    local_id: str
    message_id: str | None = None
    sender_display_name: str
    preview: str = Field(max_length=REPLY_PREVIEW_MAX_LENGTH)


class Message(BaseModel):
    """One entry of a conversation log.

    A message is provisional while ``id`` is ``None``; ``local_id`` is always
    set and is the key that links a provisional entry to its confirmed copy.
    ``status`` only exists on the client and is never written to the store.
    ``version`` is the store version of the confirmed document (``0`` while
    provisional) and orders updates of the same message.
    """

    model_config = ConfigDict(frozen=True)

    local_id: str
    id: str | None = None
    conversation_id: str
    sender_id: str
    sender_display_name: str
    content: MessageContent
    created_at: datetime
    edited_at: datetime | None = None
    reply_to: ReplyReference | None = None
    reactions: dict[str, tuple[str, ...]] = Field(default_factory=dict)
    version: int = 0
    status: MessageStatus = MessageStatus.SENT

    @field_validator("created_at", "edited_at")
    @classmethod
    def normalize_timestamps(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return ensure_utc(value)

    @property
    def kind(self) -> MessageKind:
        return MessageKind(self.content.kind)

    @property
    def is_confirmed(self) -> bool:
        return self.id is not None

    @property
    def sort_key(self) -> MessageCursor:
        return (self.created_at, self.id or self.local_id)

    def preview(self) -> str:
        return self.content.preview()[:PREVIEW_MAX_LENGTH]


def message_document(message: Message) -> dict[str, object]:
    return {
        "local_id": message.local_id,
        "conversation_id": message.conversation_id,
        "sender_id": message.sender_id,
        "sender_display_name": message.sender_display_name,
        "content": message.content.model_dump(mode="json"),
        "edited_at": serialize_datetime(message.edited_at),
        "reply_to": message.reply_to.model_dump(mode="json") if message.reply_to is not None else None,
        "reactions": {emoji: sorted(user_ids) for emoji, user_ids in sorted(message.reactions.items()) if user_ids},
    }


def message_from_document(document: StoredDocument) -> Message:
    data = document.data
    return Message.model_validate(
        {
            "local_id": data["local_id"],
            "id": document.id,
            "conversation_id": data["conversation_id"],
            "sender_id": data["sender_id"],
            "sender_display_name": data.get("sender_display_name") or data["sender_id"],
            "content": data["content"],
            "created_at": document.created_at,
            "edited_at": data.get("edited_at"),
            "reply_to": data.get("reply_to"),
            "reactions": data.get("reactions") or {},
            "version": document.version,
            "status": MessageStatus.SENT,
        }
    )


class SendMessageRequest(BaseModel):
    content: MessageContent
    reply_to_local_id: str | None = Field(default=None, min_length=1, max_length=64)


class EditMessageRequest(BaseModel):
    text: str = Field(min_length=1, max_length=2000)


class MessageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    local_id: str
    id: str | None
    conversation_id: str
    sender_id: str
    sender_display_name: str
    kind: MessageKind
    content: MessageContent
    created_at: datetime
    edited_at: datetime | None
    reply_to: ReplyReference | None
    reactions: dict[str, list[str]]
    status: MessageStatus


class MessageListResponse(BaseModel):
    messages: list[MessageRead]
