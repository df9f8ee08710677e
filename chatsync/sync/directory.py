from __future__ import annotations

import hashlib
import logging
import uuid

from chatsync.core.clock import Clock, utcnow
from chatsync.core.errors import ConflictError, InvalidArgumentError, NotFoundError
from chatsync.schemas.conversations import (
    CONVERSATIONS_COLLECTION,
    Conversation,
    MessageSummary,
    conversation_document,
    conversation_from_document,
)
from chatsync.schemas.identity import Identity
from chatsync.schemas.messages import (
    MESSAGES_COLLECTION,
    Message,
    MessageStatus,
    SystemContent,
    message_document,
    message_from_document,
)
from chatsync.store.base import Contains, DocumentStore

logger = logging.getLogger(__name__)


def direct_conversation_key(participant_ids: list[str]) -> str:
    canonical = "\x1f".join(sorted(participant_ids))
    return "dm_" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:32]


def _unique(ids: list[str]) -> list[str]:
    return [item for item in dict.fromkeys(item.strip() for item in ids) if item]


class ConversationDirectory:
    def __init__(
        self,
        store: DocumentStore,
        *,
        identity: Identity,
        clock: Clock = utcnow,
        summary_max_attempts: int = 5,
    ) -> None:
        self._store = store
        self._identity = identity
        self._clock = clock
        self._summary_max_attempts = summary_max_attempts
        self._cache: dict[str, Conversation] = {}

    def cached(self, conversation_id: str) -> Conversation | None:
        return self._cache.get(conversation_id)

    def _remember(self, conversation: Conversation) -> Conversation:
        current = self._cache.get(conversation.id)
        if current is None or conversation.version >= current.version:
            self._cache[conversation.id] = conversation
            return conversation
        return current

    async def get(self, conversation_id: str) -> Conversation:
        document = await self._store.get(CONVERSATIONS_COLLECTION, conversation_id)
        if document is None:
            logger.warning("Conversation not found conversation_id=%s", conversation_id)
            raise NotFoundError("Conversation not found", code="conversation_not_found")
        return self._remember(conversation_from_document(document))

    async def get_or_create_direct(self, participant_ids: list[str]) -> Conversation:
        participants = sorted(_unique(participant_ids))
        logger.info("Open or create direct conversation participants=%s", participants)
        if len(participants) != 2:
            raise InvalidArgumentError(
                "A direct conversation needs exactly two distinct participants",
                details={"participant_ids": participant_ids},
            )
        if self._identity.user_id not in participants:
            raise InvalidArgumentError("The current user must be one of the participants")

        key = direct_conversation_key(participants)
        existing = await self._store.get(CONVERSATIONS_COLLECTION, key)
        if existing is not None:
            logger.debug("Returning existing direct conversation conversation_id=%s", key)
            return self._remember(conversation_from_document(existing))

        draft = Conversation(
            id=key,
            participant_ids=participants,
            is_group=False,
            created_at=self._clock(),
            created_by=self._identity.user_id,
        )
        try:
            stored = await self._store.write(
                CONVERSATIONS_COLLECTION,
                key,
                conversation_document(draft),
                expected_version=0,
            )
        except ConflictError as exc:
            logger.info("Direct conversation creation lost the race; adopting winner conversation_id=%s", key)
            winner = exc.existing or await self._store.get(CONVERSATIONS_COLLECTION, key)
            if winner is None:
                raise
            return self._remember(conversation_from_document(winner))

        logger.info("Direct conversation created conversation_id=%s users=%s", key, ",".join(participants))
        return self._remember(conversation_from_document(stored))

    async def create_group(
        self,
        participant_ids: list[str],
        name: str,
        *,
        avatar_url: str | None = None,
    ) -> Conversation:
        requested = _unique(participant_ids)
        if len(requested) < 2:
            raise InvalidArgumentError(
                "A group needs at least two distinct participants",
                details={"participant_ids": participant_ids},
            )
        group_name = name.strip()
        if not group_name:
            raise InvalidArgumentError("Group name must not be blank")

        creator = self._identity
        participants = sorted(set(requested) | {creator.user_id})
        conversation_id = uuid.uuid4().hex
        draft = Conversation(
            id=conversation_id,
            participant_ids=participants,
            is_group=True,
            name=group_name,
            avatar_url=avatar_url,
            created_at=self._clock(),
            created_by=creator.user_id,
        )
        await self._store.write(
            CONVERSATIONS_COLLECTION,
            conversation_id,
            conversation_document(draft),
            expected_version=0,
        )
        logger.info(
            "Group conversation created conversation_id=%s participants=%s",
            conversation_id,
            len(participants),
        )

        announcement = Message(
            local_id=uuid.uuid4().hex,
            conversation_id=conversation_id,
            sender_id=creator.user_id,
            sender_display_name=creator.display_name,
            content=SystemContent(text=f'{creator.display_name} created the group "{group_name}"'),
            created_at=self._clock(),
            status=MessageStatus.PENDING,
        )
        stored_message = await self._store.write(
            MESSAGES_COLLECTION,
            announcement.local_id,
            message_document(announcement),
            expected_version=0,
        )
        updated = await self.update_summary(conversation_id, message_from_document(stored_message))
        if updated is not None:
            return updated
        return await self.get(conversation_id)

    async def add_participants(self, conversation_id: str, participant_ids: list[str]) -> Conversation:
        additions = _unique(participant_ids)
        if not additions:
            raise InvalidArgumentError("No participants to add")
        for _ in range(self._summary_max_attempts):
            document = await self._store.get(CONVERSATIONS_COLLECTION, conversation_id)
            if document is None:
                raise NotFoundError("Conversation not found", code="conversation_not_found")
            conversation = conversation_from_document(document)
            if not conversation.is_group:
                raise InvalidArgumentError("Participants of a direct conversation cannot change")
            if self._identity.user_id not in conversation.participant_ids:
                raise InvalidArgumentError("Only participants can add members")
            merged = sorted(set(conversation.participant_ids) | set(additions))
            if merged == conversation.participant_ids:
                return self._remember(conversation)
            updated = conversation.model_copy(update={"participant_ids": merged})
            try:
                stored = await self._store.write(
                    CONVERSATIONS_COLLECTION,
                    conversation_id,
                    conversation_document(updated),
                    expected_version=document.version,
                )
            except ConflictError:
                logger.debug("Participant update raced; retrying conversation_id=%s", conversation_id)
                continue
            logger.info(
                "Participants added conversation_id=%s added=%s",
                conversation_id,
                ",".join(sorted(set(merged) - set(conversation.participant_ids))),
            )
            return self._remember(conversation_from_document(stored))
        raise ConflictError("Could not update participants after repeated conflicts")

    async def list(self, user_id: str) -> list[Conversation]:
        logger.debug("Listing conversations for user_id=%s", user_id)
        documents = await self._store.query(
            CONVERSATIONS_COLLECTION,
            {"participant_ids": Contains(user_id)},
        )
        conversations = [self._remember(conversation_from_document(document)) for document in documents]
        conversations.sort(key=lambda conversation: (conversation.activity_at, conversation.id), reverse=True)
        logger.debug("Found %s conversations for user_id=%s", len(conversations), user_id)
        return conversations

    async def update_summary(self, conversation_id: str, message: Message) -> Conversation | None:
        """Point ``last_message`` at ``message`` if it is newer than the current summary.

        Returns the conversation after the call, or ``None`` when ``message``
        is still provisional.
        """
        if message.id is None:
            return None
        for attempt in range(1, self._summary_max_attempts + 1):
            document = await self._store.get(CONVERSATIONS_COLLECTION, conversation_id)
            if document is None:
                raise NotFoundError("Conversation not found", code="conversation_not_found")
            conversation = conversation_from_document(document)
            summary = conversation.last_message
            if summary is not None and not summary.is_superseded_by(message):
                return self._remember(conversation)

            updated = conversation.model_copy(update={"last_message": MessageSummary.from_message(message)})
            try:
                stored = await self._store.write(
                    CONVERSATIONS_COLLECTION,
                    conversation_id,
                    conversation_document(updated),
                    expected_version=document.version,
                )
            except ConflictError:
                logger.debug(
                    "Summary update raced conversation_id=%s attempt=%s",
                    conversation_id,
                    attempt,
                )
                continue
            logger.debug(
                "Summary updated conversation_id=%s message_id=%s",
                conversation_id,
                message.id,
            )
            return self._remember(conversation_from_document(stored))
        raise ConflictError("Could not update conversation summary after repeated conflicts")
