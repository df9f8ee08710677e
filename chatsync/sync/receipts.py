from __future__ import annotations

import logging

from chatsync.schemas.messages import Message
from chatsync.schemas.receipts import ReadMarker

logger = logging.getLogger(__name__)


class ReadReceiptTracker:
    """Last-read markers per conversation and participant.

    :meth:`apply` ignores a marker that does not move strictly past the one
    already held, so markers replayed by the change feed or fetched again on
    resubscribe are harmless.
    """

    def __init__(self) -> None:
        self._markers: dict[str, dict[str, ReadMarker]] = {}

    def apply(self, marker: ReadMarker) -> bool:
        conversation = self._markers.setdefault(marker.conversation_id, {})
        current = conversation.get(marker.user_id)
        if current is not None and marker.cursor <= current.cursor:
            return False
        conversation[marker.user_id] = marker
        logger.debug(
            "Read marker advanced conversation_id=%s user_id=%s message_id=%s",
            marker.conversation_id,
            marker.user_id,
            marker.message_id,
        )
        return True

    def get(self, conversation_id: str, user_id: str) -> ReadMarker | None:
        return self._markers.get(conversation_id, {}).get(user_id)

    def markers(self, conversation_id: str) -> list[ReadMarker]:
        conversation = self._markers.get(conversation_id, {})
        return [conversation[user_id] for user_id in sorted(conversation)]

    def read_by(self, conversation_id: str, message: Message) -> set[str]:
        readers = {
            user_id
            for user_id, marker in self._markers.get(conversation_id, {}).items()
            if marker.covers(message)
        }
        if message.id is not None:
            readers.add(message.sender_id)
        return readers

    def clear(self, conversation_id: str) -> None:
        self._markers.pop(conversation_id, None)
