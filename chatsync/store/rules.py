from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Callable

from chatsync.core.clock import parse_datetime
from chatsync.core.errors import InvalidArgumentError, NotFoundError, UnauthorizedError
from chatsync.schemas.conversations import CONVERSATIONS_COLLECTION
from chatsync.schemas.messages import MESSAGES_COLLECTION
from chatsync.schemas.presence import PRESENCE_COLLECTION, presence_key
from chatsync.schemas.receipts import READ_MARKERS_COLLECTION, read_marker_key
from chatsync.store.base import StoredDocument

logger = logging.getLogger(__name__)

DocumentLoader = Callable[[str, str], StoredDocument | None]


class AccessRules:
    """Server-side write rules checked inside the store transaction."""

    def check_write(
        self,
        *,
        collection: str,
        key: str,
        document: Mapping[str, object],
        existing: StoredDocument | None,
        load: DocumentLoader,
    ) -> None:
        if collection == MESSAGES_COLLECTION:
            self._check_message_write(key=key, document=document, existing=existing, load=load)
        elif collection == PRESENCE_COLLECTION:
            self._check_presence_write(key=key, document=document, load=load)
        elif collection == READ_MARKERS_COLLECTION:
            self._check_read_marker_write(key=key, document=document, existing=existing, load=load)

    def _check_presence_write(self, *, key: str, document: Mapping[str, object], load: DocumentLoader) -> None:
        conversation_id = document.get("conversation_id")
        user_id = document.get("user_id")
        if not isinstance(conversation_id, str) or not isinstance(user_id, str):
            raise InvalidArgumentError("Presence document requires conversation_id and user_id")
        if key != presence_key(conversation_id, user_id):
            raise InvalidArgumentError("Presence key must be <conversation_id>/<user_id>")
        conversation = load(CONVERSATIONS_COLLECTION, conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found", code="conversation_not_found")
        participant_ids = conversation.data.get("participant_ids")
        if not isinstance(participant_ids, list) or user_id not in participant_ids:
            raise UnauthorizedError("Only participants may publish typing state")

    def _check_read_marker_write(
        self,
        *,
        key: str,
        document: Mapping[str, object],
        existing: StoredDocument | None,
        load: DocumentLoader,
    ) -> None:
        conversation_id = document.get("conversation_id")
        user_id = document.get("user_id")
        message_id = document.get("message_id")
        if not isinstance(conversation_id, str) or not isinstance(user_id, str) or not isinstance(message_id, str):
            raise InvalidArgumentError("Read marker requires conversation_id, user_id and message_id")
        if key != read_marker_key(conversation_id, user_id):
            raise InvalidArgumentError("Read marker key must be <conversation_id>/<user_id>")
        created_at = parse_datetime(document.get("message_created_at"))  # type: ignore[arg-type]
        if created_at is None:
            raise InvalidArgumentError("Read marker requires message_created_at")

        conversation = load(CONVERSATIONS_COLLECTION, conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found", code="conversation_not_found")
        participant_ids = conversation.data.get("participant_ids")
        if not isinstance(participant_ids, list) or user_id not in participant_ids:
            raise UnauthorizedError("Only participants may mark a conversation read")

        if existing is None:
            return
        previous_at = parse_datetime(existing.data.get("message_created_at"))  # type: ignore[arg-type]
        previous_id = existing.data.get("message_id")
        if (
            previous_at is not None
            and isinstance(previous_id, str)
            and (created_at, message_id) < (previous_at, previous_id)
        ):
            raise InvalidArgumentError("Read marker must not move backwards")

    def _check_message_write(
        self,
        *,
        key: str,
        document: Mapping[str, object],
        existing: StoredDocument | None,
        load: DocumentLoader,
    ) -> None:
        conversation_id = document.get("conversation_id")
        sender_id = document.get("sender_id")
        if not isinstance(conversation_id, str) or not isinstance(sender_id, str):
            raise InvalidArgumentError("Message document requires conversation_id and sender_id")
        if document.get("local_id") != key:
            raise InvalidArgumentError("Message key must equal its local_id")

        conversation = load(CONVERSATIONS_COLLECTION, conversation_id)
        if conversation is None:
            logger.warning("Message write rejected: conversation missing conversation_id=%s", conversation_id)
            raise NotFoundError("Conversation not found", code="conversation_not_found")
        participant_ids = conversation.data.get("participant_ids")
        if not isinstance(participant_ids, list) or sender_id not in participant_ids:
            logger.warning(
                "Message write rejected: sender is not a participant conversation_id=%s sender_id=%s",
                conversation_id,
                sender_id,
            )
            raise UnauthorizedError("Sender is not a participant of this conversation")

        reactions = document.get("reactions") or {}
        if not isinstance(reactions, Mapping):
            raise InvalidArgumentError("reactions must map an emoji to user ids")
        for user_ids in reactions.values():
            if not isinstance(user_ids, list) or any(user_id not in participant_ids for user_id in user_ids):
                raise UnauthorizedError("Only participants may react to a message")

        if existing is None:
            return

        if existing.data.get("sender_id") != sender_id or existing.data.get("conversation_id") != conversation_id:
            raise UnauthorizedError("Only the sender may modify a message")
        previous_edit = parse_datetime(existing.data.get("edited_at"))  # type: ignore[arg-type]
        new_edit = parse_datetime(document.get("edited_at"))  # type: ignore[arg-type]
        if previous_edit is not None and (new_edit is None or new_edit < previous_edit):
            raise InvalidArgumentError("edited_at must not move backwards")
