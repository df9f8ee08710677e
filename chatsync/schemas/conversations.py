from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Callable

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatsync.core.clock import ensure_utc
from chatsync.schemas.messages import Message, MessageKind

if TYPE_CHECKING:
    from chatsync.store.base import StoredDocument

CONVERSATIONS_COLLECTION = "conversations"


class MessageSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    message_id: str
    local_id: str
    sender_id: str
    sender_display_name: str
    preview: str
    kind: MessageKind
    timestamp: datetime
    edited_at: datetime | None = None

    @field_validator("timestamp", "edited_at")
    @classmethod
    def normalize_timestamps(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return ensure_utc(value)

    @classmethod
    def from_message(cls, message: Message) -> "MessageSummary":
        if message.id is None:
            raise ValueError("Only confirmed messages can be summarized")
        return cls(
            message_id=message.id,
            local_id=message.local_id,
            sender_id=message.sender_id,
            sender_display_name=message.sender_display_name,
            preview=message.preview(),
            kind=message.kind,
            timestamp=message.created_at,
            edited_at=message.edited_at,
        )

    def is_superseded_by(self, message: Message) -> bool:
        if message.id is None:
            return False
        if message.id == self.message_id:
            if message.edited_at is None:
                return False
            return self.edited_at is None or message.edited_at > self.edited_at
        return (message.created_at, message.id) > (self.timestamp, self.message_id)


class Conversation(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    participant_ids: list[str]
    is_group: bool = False
    name: str | None = None
    avatar_url: str | None = None
    last_message: MessageSummary | None = None
    created_at: datetime
    created_by: str
    version: int = 0

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def activity_at(self) -> datetime:
        if self.last_message is not None:
            return self.last_message.timestamp
        return self.created_at

    def has_participant(self, user_id: str) -> bool:
        return user_id in self.participant_ids

    def display_name(self, viewer_id: str, resolve_name: Callable[[str], str] = str) -> str:
        if self.is_group and self.name:
            return self.name
        others = [resolve_name(user_id) for user_id in self.participant_ids if user_id != viewer_id]
        return ", ".join(others) if others else resolve_name(viewer_id)


def conversation_document(conversation: Conversation) -> dict[str, object]:
    return conversation.model_dump(mode="json", exclude={"id", "created_at", "version"})


def conversation_from_document(document: StoredDocument) -> Conversation:
    data = dict(document.data)
    data["id"] = document.key
    data["created_at"] = document.created_at
    data["version"] = document.version
    return Conversation.model_validate(data)


class DirectConversationCreateRequest(BaseModel):
    other_user_id: str = Field(min_length=1, max_length=64)


class GroupConversationCreateRequest(BaseModel):
    participant_ids: list[str] = Field(min_length=1, max_length=256)
    name: str = Field(min_length=1, max_length=120)


class AddParticipantsRequest(BaseModel):
    participant_ids: list[str] = Field(min_length=1, max_length=256)


class ConversationSummary(BaseModel):
    id: str
    participant_ids: list[str]
    is_group: bool
    name: str | None
    display_name: str
    last_message: MessageSummary | None
    created_at: datetime
    created_by: str
