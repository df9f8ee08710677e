from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
import logging
from typing import Any, Awaitable, Callable, Generator
import uuid

from chatsync.core.clock import Clock, utcnow
from chatsync.core.errors import (
    ConflictError,
    InvalidArgumentError,
    NotFoundError,
    SyncError,
    TransientNetworkError,
    UnauthorizedError,
)
from chatsync.schemas.identity import Identity
from chatsync.schemas.messages import (
    DELETED_MESSAGE_TEXT,
    MESSAGES_COLLECTION,
    REACTION_MAX_LENGTH,
    REPLY_PREVIEW_MAX_LENGTH,
    Message,
    MessageContent,
    MessageStatus,
    ReplyReference,
    SystemContent,
    TextContent,
    message_document,
    message_from_document,
)
from chatsync.store.base import DocumentStore, StoredDocument
from chatsync.sync.message_store import MessageStore

logger = logging.getLogger(__name__)


@dataclass(eq=False, slots=True)
class Delivery:
    """Awaitable handle for one outbound write; resolves to the stored message."""

    local_id: str
    conversation_id: str
    task: asyncio.Task[Message]

    def done(self) -> bool:
        return self.task.done()

    def __await__(self) -> Generator[Any, None, Message]:
        return self.task.__await__()


@dataclass(slots=True)
class _Outbound:
    conversation_id: str
    document: dict[str, object]
    delivery: Delivery | None = None
    attempts: int = 0
    last_error: str | None = None


class DeliveryCoordinator:
    def __init__(
        self,
        *,
        store: DocumentStore,
        messages: MessageStore,
        identity: Identity,
        write_timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        retry_delay_seconds: float = 0.5,
        clock: Clock = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._messages = messages
        self._identity = identity
        self._write_timeout_seconds = write_timeout_seconds
        self._max_attempts = max(1, max_attempts)
        self._retry_delay_seconds = retry_delay_seconds
        self._clock = clock
        self._sleep = sleep
        self._outbound: dict[str, _Outbound] = {}

    def pending(self) -> list[str]:
        return [local_id for local_id, item in self._outbound.items() if item.delivery and not item.delivery.done()]

    def send(
        self,
        conversation_id: str,
        content: MessageContent | str,
        *,
        reply_to: str | None = None,
    ) -> Delivery:
        if isinstance(content, str):
            text = content.strip()
            if not text:
                raise InvalidArgumentError("Message text must not be blank")
            content = TextContent(text=text)
        if isinstance(content, SystemContent):
            raise InvalidArgumentError("System messages cannot be sent by users")
        reference = self._reply_reference(conversation_id, reply_to) if reply_to is not None else None

        local_id = uuid.uuid4().hex
        provisional = Message(
            local_id=local_id,
            conversation_id=conversation_id,
            sender_id=self._identity.user_id,
            sender_display_name=self._identity.display_name,
            content=content,
            created_at=self._clock(),
            reply_to=reference,
            status=MessageStatus.PENDING,
        )
        self._messages.append(conversation_id, provisional)
        outbound = _Outbound(conversation_id=conversation_id, document=message_document(provisional))
        self._outbound[local_id] = outbound
        logger.info(
            "Message composed conversation_id=%s local_id=%s kind=%s",
            conversation_id,
            local_id,
            provisional.kind.value,
        )
        return self._schedule(local_id, outbound)

    def _reply_reference(self, conversation_id: str, local_id: str) -> ReplyReference:
        target = self._messages.get(conversation_id, local_id)
        if isinstance(target.content, SystemContent):
            raise InvalidArgumentError("Cannot reply to this message")
        return ReplyReference(
            local_id=target.local_id,
            message_id=target.id,
            sender_display_name=target.sender_display_name,
            preview=target.preview()[:REPLY_PREVIEW_MAX_LENGTH],
        )

    def release(self, conversation_id: str) -> int:
        """Forget failed sends of a conversation that is no longer open; in-flight ones are kept."""
        released = [
            local_id
            for local_id, outbound in self._outbound.items()
            if outbound.conversation_id == conversation_id
            and outbound.delivery is not None
            and outbound.delivery.done()
        ]
        for local_id in released:
            self._outbound.pop(local_id, None)
            self._messages.remove(conversation_id, local_id)
        if released:
            logger.info("Failed sends released conversation_id=%s count=%s", conversation_id, len(released))
        return len(released)

    def retry(self, local_id: str) -> Delivery:
        outbound = self._outbound.get(local_id)
        if outbound is None:
            raise NotFoundError("No outbound message with this local_id", details={"local_id": local_id})
        if outbound.delivery is not None and not outbound.delivery.done():
            logger.debug("Retry requested while delivery in flight local_id=%s", local_id)
            return outbound.delivery
        logger.info("Manual retry conversation_id=%s local_id=%s", outbound.conversation_id, local_id)
        self._messages.mark_status(outbound.conversation_id, local_id, MessageStatus.PENDING)
        return self._schedule(local_id, outbound)

    def _schedule(self, local_id: str, outbound: _Outbound) -> Delivery:
        task = asyncio.get_running_loop().create_task(self._deliver(local_id, outbound))
        outbound.delivery = Delivery(local_id=local_id, conversation_id=outbound.conversation_id, task=task)
        return outbound.delivery

    async def _deliver(self, local_id: str, outbound: _Outbound) -> Message:
        conversation_id = outbound.conversation_id
        for attempt in range(1, self._max_attempts + 1):
            outbound.attempts += 1
            try:
                stored = await asyncio.wait_for(self._write(local_id, outbound), timeout=self._write_timeout_seconds)
            except (TransientNetworkError, asyncio.TimeoutError) as exc:
                outbound.last_error = str(exc) or "write timed out"
                logger.warning(
                    "Durable write failed conversation_id=%s local_id=%s attempt=%s/%s error=%s",
                    conversation_id,
                    local_id,
                    attempt,
                    self._max_attempts,
                    outbound.last_error,
                )
                if attempt < self._max_attempts:
                    await self._sleep(self._retry_delay_seconds * (2 ** (attempt - 1)))
                    continue
                return self._fail(local_id, outbound)
            except SyncError as exc:
                outbound.last_error = exc.message
                logger.warning(
                    "Durable write rejected conversation_id=%s local_id=%s code=%s error=%s",
                    conversation_id,
                    local_id,
                    exc.code,
                    exc.message,
                )
                return self._fail(local_id, outbound)

            self._outbound.pop(local_id, None)
            confirmed = self._messages.append(conversation_id, message_from_document(stored))
            logger.info(
                "Message confirmed conversation_id=%s local_id=%s id=%s",
                conversation_id,
                local_id,
                confirmed.id,
            )
            return confirmed
        return self._fail(local_id, outbound)

    async def _write(self, local_id: str, outbound: _Outbound) -> StoredDocument:
        try:
            return await self._store.write(MESSAGES_COLLECTION, local_id, outbound.document, expected_version=0)
        except ConflictError as exc:
            existing = exc.existing
            if (
                existing is not None
                and existing.data.get("sender_id") == self._identity.user_id
                and existing.data.get("conversation_id") == outbound.conversation_id
            ):
                # an earlier attempt landed even though its acknowledgement was lost
                logger.debug("Idempotent send hit local_id=%s message_id=%s", local_id, existing.id)
                return existing
            logger.warning("local_id already used for a different message local_id=%s", local_id)
            raise ConflictError("local_id already used for a different message", code="client_message_conflict") from exc

    def _fail(self, local_id: str, outbound: _Outbound) -> Message:
        message = self._messages.mark_status(outbound.conversation_id, local_id, MessageStatus.FAILED)
        if message.id is not None:
            # the change feed confirmed it while the acknowledgement was outstanding
            self._outbound.pop(local_id, None)
        else:
            logger.warning(
                "Message marked failed conversation_id=%s local_id=%s attempts=%s",
                outbound.conversation_id,
                local_id,
                outbound.attempts,
            )
        return message

    async def edit(self, conversation_id: str, local_id: str, text: str) -> Message:
        body = text.strip()
        if not body:
            raise InvalidArgumentError("Message text must not be blank")
        return await self._update(conversation_id, local_id, TextContent(text=body), require_text=True)

    async def delete(self, conversation_id: str, local_id: str) -> Message:
        return await self._update(conversation_id, local_id, SystemContent(text=DELETED_MESSAGE_TEXT), require_text=False)

    async def add_reaction(self, conversation_id: str, local_id: str, emoji: str) -> Message:
        return await self._react(conversation_id, local_id, emoji, add=True)

    async def remove_reaction(self, conversation_id: str, local_id: str, emoji: str) -> Message:
        return await self._react(conversation_id, local_id, emoji, add=False)

    async def _read(self, local_id: str) -> StoredDocument:
        try:
            document = await asyncio.wait_for(
                self._store.get(MESSAGES_COLLECTION, local_id),
                timeout=self._write_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise TransientNetworkError("Message read timed out") from exc
        if document is None:
            raise NotFoundError("Message not found", details={"local_id": local_id})
        return document

    async def _compare_and_set(self, local_id: str, message: Message, version: int) -> StoredDocument:
        try:
            return await asyncio.wait_for(
                self._store.write(MESSAGES_COLLECTION, local_id, message_document(message), expected_version=version),
                timeout=self._write_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise TransientNetworkError("Message update timed out") from exc

    async def _update(
        self,
        conversation_id: str,
        local_id: str,
        content: MessageContent,
        *,
        require_text: bool,
    ) -> Message:
        current = self._messages.get(conversation_id, local_id)
        if current.sender_id != self._identity.user_id:
            raise UnauthorizedError("Only the sender may modify a message")
        if current.id is None:
            raise InvalidArgumentError("Message is not confirmed yet")
        if require_text and not isinstance(current.content, TextContent):
            raise InvalidArgumentError("Only text messages can be edited")

        for attempt in range(1, self._max_attempts + 1):
            document = await self._read(local_id)
            latest = message_from_document(document)
            edited_at = max(self._clock(), latest.created_at)
            if latest.edited_at is not None and edited_at <= latest.edited_at:
                # edits only apply when strictly newer
                edited_at = latest.edited_at + timedelta(microseconds=1)
            updated = latest.model_copy(update={"content": content, "edited_at": edited_at})
            try:
                stored = await self._compare_and_set(local_id, updated, document.version)
            except ConflictError:
                logger.debug("Message update raced local_id=%s attempt=%s", local_id, attempt)
                continue
            result = self._messages.append(conversation_id, message_from_document(stored))
            logger.info(
                "Message updated conversation_id=%s local_id=%s kind=%s",
                conversation_id,
                local_id,
                result.kind.value,
            )
            return result
        raise ConflictError("Could not update message after repeated conflicts")

    async def _react(self, conversation_id: str, local_id: str, emoji: str, *, add: bool) -> Message:
        symbol = emoji.strip()
        if not symbol or len(symbol) > REACTION_MAX_LENGTH:
            raise InvalidArgumentError("Reaction must be between 1 and 32 characters")
        current = self._messages.get(conversation_id, local_id)
        if current.id is None:
            raise InvalidArgumentError("Message is not confirmed yet")
        user_id = self._identity.user_id

        for attempt in range(1, self._max_attempts + 1):
            document = await self._read(local_id)
            latest = message_from_document(document)
            if isinstance(latest.content, SystemContent):
                raise InvalidArgumentError("Cannot react to this message")
            users = set(latest.reactions.get(symbol, ()))
            if (user_id in users) == add:
                return self._messages.append(conversation_id, latest)
            if add:
                users.add(user_id)
            else:
                users.discard(user_id)
            reactions = {key: value for key, value in latest.reactions.items() if key != symbol}
            if users:
                reactions[symbol] = tuple(sorted(users))
            try:
                stored = await self._compare_and_set(
                    local_id,
                    latest.model_copy(update={"reactions": reactions}),
                    document.version,
                )
            except ConflictError:
                logger.debug("Reaction update raced local_id=%s attempt=%s", local_id, attempt)
                continue
            result = self._messages.append(conversation_id, message_from_document(stored))
            logger.info(
                "Reaction %s conversation_id=%s local_id=%s emoji=%s",
                "added" if add else "removed",
                conversation_id,
                local_id,
                symbol,
            )
            return result
        raise ConflictError("Could not update reactions after repeated conflicts")
