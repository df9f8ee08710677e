from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel

from chatsync.core.clock import parse_datetime, serialize_datetime

if TYPE_CHECKING:
    from chatsync.store.base import StoredDocument

PRESENCE_COLLECTION = "presence"


@dataclass(frozen=True, slots=True)
class PresenceEntry:
    conversation_id: str
    user_id: str
    is_typing: bool
    expires_at: datetime

    def is_active(self, now: datetime) -> bool:
        return self.is_typing and now <= self.expires_at


def presence_key(conversation_id: str, user_id: str) -> str:
    return f"{conversation_id}/{user_id}"


def presence_document(entry: PresenceEntry) -> dict[str, object]:
    return {
        "conversation_id": entry.conversation_id,
        "user_id": entry.user_id,
        "is_typing": entry.is_typing,
        "expires_at": serialize_datetime(entry.expires_at),
    }


def presence_from_document(document: StoredDocument) -> PresenceEntry:
    data = document.data
    expires_at = parse_datetime(data.get("expires_at")) or document.updated_at
    return PresenceEntry(
        conversation_id=str(data["conversation_id"]),
        user_id=str(data["user_id"]),
        is_typing=bool(data.get("is_typing")),
        expires_at=expires_at,
    )


class TypingRequest(BaseModel):
    is_typing: bool


class TypingRead(BaseModel):
    conversation_id: str
    user_ids: list[str]
