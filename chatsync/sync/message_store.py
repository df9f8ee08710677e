"""Per-session, ordered and deduplicated message log.

Each conversation keeps its messages sorted by ``(created_at, id)``, with
``local_id`` standing in for ``id`` while a message is still provisional.
``local_id`` is the dedup key: appending a message whose ``local_id`` is
already stored merges into the existing entry instead of inserting a second
one, which makes :meth:`MessageStore.append` idempotent and lets a confirmed
copy replace its optimistic placeholder.
"""

from __future__ import annotations

import bisect
from dataclasses import dataclass, field
from enum import Enum
import logging
from typing import Callable

from chatsync.core.errors import InvalidArgumentError, NotFoundError
from chatsync.schemas.messages import Message, MessageCursor, MessageStatus

logger = logging.getLogger(__name__)


class MessageEventType(str, Enum):
    APPENDED = "message.appended"
    MERGED = "message.merged"
    STATUS = "message.status"
    REMOVED = "message.removed"


@dataclass(frozen=True, slots=True)
class MessageEvent:
    type: MessageEventType
    conversation_id: str
    message: Message


MessageListener = Callable[[MessageEvent], None]
AppendHook = Callable[[str, Message], None]


@dataclass(eq=False, slots=True)
class ListenerHandle:
    conversation_id: str
    listener_id: int
    _store: MessageStore
    active: bool = True

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        self._store._remove_listener(self)


@dataclass(slots=True)
class _ConversationLog:
    keys: list[MessageCursor] = field(default_factory=list)
    messages: list[Message] = field(default_factory=list)
    by_local_id: dict[str, Message] = field(default_factory=dict)
    local_id_by_id: dict[str, str] = field(default_factory=dict)
    listeners: dict[int, MessageListener] = field(default_factory=dict)

    def insert(self, message: Message) -> None:
        key = message.sort_key
        index = bisect.bisect_left(self.keys, key)
        self.keys.insert(index, key)
        self.messages.insert(index, message)
        self.by_local_id[message.local_id] = message
        if message.id is not None:
            self.local_id_by_id[message.id] = message.local_id

    def discard(self, message: Message) -> None:
        key = message.sort_key
        index = bisect.bisect_left(self.keys, key)
        if index < len(self.keys) and self.keys[index] == key:
            del self.keys[index]
            del self.messages[index]
        self.by_local_id.pop(message.local_id, None)
        if message.id is not None:
            self.local_id_by_id.pop(message.id, None)

    def replace(self, current: Message, updated: Message) -> None:
        self.discard(current)
        self.insert(updated)

    def newest_confirmed(self) -> Message | None:
        for message in reversed(self.messages):
            if message.id is not None:
                return message
        return None


def _merge(current: Message, incoming: Message) -> Message | None:
    """Return the entry that should replace ``current``, or ``None`` to keep it."""
    if current.id is not None:
        if incoming.id is None:
            # a confirmed entry never regresses to provisional
            return None
        if current.version and incoming.version:
            if incoming.version <= current.version:
                return None
        elif incoming.edited_at is None or (current.edited_at is not None and incoming.edited_at <= current.edited_at):
            return None
        return current.model_copy(
            update={
                "content": incoming.content,
                "edited_at": incoming.edited_at,
                "reactions": incoming.reactions,
                "version": incoming.version,
            }
        )

    if incoming.id is not None:
        return incoming.model_copy(update={"status": MessageStatus.SENT})
    if incoming == current:
        return None
    return incoming


class MessageStore:
    def __init__(self) -> None:
        self._logs: dict[str, _ConversationLog] = {}
        self._append_hooks: list[AppendHook] = []
        self._next_listener_id = 0

    def add_append_hook(self, hook: AppendHook) -> None:
        """Register a callback invoked when a confirmed message becomes the newest of its conversation."""
        self._append_hooks.append(hook)

    def ensure_conversation(self, conversation_id: str) -> None:
        self._logs.setdefault(conversation_id, _ConversationLog())

    def _require_log(self, conversation_id: str) -> _ConversationLog:
        log = self._logs.get(conversation_id)
        if log is None:
            raise NotFoundError(
                "Conversation is not known locally; open it first",
                code="conversation_not_loaded",
                details={"conversation_id": conversation_id},
            )
        return log

    def append(self, conversation_id: str, message: Message) -> Message:
        if message.conversation_id != conversation_id:
            raise InvalidArgumentError(
                "Message belongs to a different conversation",
                details={"conversation_id": conversation_id, "message_conversation_id": message.conversation_id},
            )
        log = self._logs.setdefault(conversation_id, _ConversationLog())

        current = log.by_local_id.get(message.local_id)
        if current is None and message.id is not None:
            other_local_id = log.local_id_by_id.get(message.id)
            if other_local_id is not None:
                current = log.by_local_id.get(other_local_id)

        if current is None:
            stored = message
            if stored.id is not None and stored.status is not MessageStatus.SENT:
                stored = stored.model_copy(update={"status": MessageStatus.SENT})
            log.insert(stored)
            event_type = MessageEventType.APPENDED
            logger.debug(
                "Message appended conversation_id=%s local_id=%s id=%s",
                conversation_id,
                stored.local_id,
                stored.id,
            )
        else:
            replacement = _merge(current, message)
            if replacement is None:
                logger.debug(
                    "Append was a no-op conversation_id=%s local_id=%s",
                    conversation_id,
                    message.local_id,
                )
                return current
            log.replace(current, replacement)
            stored = replacement
            event_type = MessageEventType.MERGED
            logger.debug(
                "Message merged conversation_id=%s local_id=%s id=%s",
                conversation_id,
                stored.local_id,
                stored.id,
            )

        self._notify(conversation_id, log, event_type, stored)
        if stored.id is not None and log.newest_confirmed() is stored:
            self._run_append_hooks(conversation_id, stored)
        return stored

    def mark_status(self, conversation_id: str, local_id: str, status: MessageStatus) -> Message:
        log = self._require_log(conversation_id)
        current = log.by_local_id.get(local_id)
        if current is None:
            raise NotFoundError("Message not found", details={"local_id": local_id})
        if current.id is not None or current.status is status:
            return current
        updated = current.model_copy(update={"status": status})
        log.replace(current, updated)
        logger.debug(
            "Message status changed conversation_id=%s local_id=%s status=%s",
            conversation_id,
            local_id,
            status.value,
        )
        self._notify(conversation_id, log, MessageEventType.STATUS, updated)
        return updated

    def remove(self, conversation_id: str, local_id: str) -> Message | None:
        log = self._logs.get(conversation_id)
        if log is None:
            return None
        current = log.by_local_id.get(local_id)
        if current is None:
            return None
        log.discard(current)
        logger.debug("Message removed conversation_id=%s local_id=%s", conversation_id, local_id)
        self._notify(conversation_id, log, MessageEventType.REMOVED, current)
        return current

    def get(self, conversation_id: str, local_id: str) -> Message:
        log = self._require_log(conversation_id)
        message = log.by_local_id.get(local_id)
        if message is None:
            raise NotFoundError("Message not found", details={"local_id": local_id})
        return message

    def contains(self, conversation_id: str, local_id: str) -> bool:
        log = self._logs.get(conversation_id)
        return log is not None and local_id in log.by_local_id

    def latest_confirmed(self, conversation_id: str) -> Message | None:
        return self._require_log(conversation_id).newest_confirmed()

    def query(
        self,
        conversation_id: str,
        page_size: int,
        before_cursor: MessageCursor | None = None,
    ) -> list[Message]:
        if page_size < 1:
            raise InvalidArgumentError("page_size must be at least 1")
        log = self._require_log(conversation_id)
        end = len(log.messages) if before_cursor is None else bisect.bisect_left(log.keys, before_cursor)
        start = max(0, end - page_size)
        return list(reversed(log.messages[start:end]))

    def all(self, conversation_id: str) -> list[Message]:
        return list(self._require_log(conversation_id).messages)

    def search(self, conversation_id: str, text: str, *, limit: int = 50) -> list[Message]:
        needle = text.strip().lower()
        if not needle:
            raise InvalidArgumentError("Search text must not be blank")
        log = self._require_log(conversation_id)
        found: list[Message] = []
        for message in reversed(log.messages):
            if needle in message.content.preview().lower():
                found.append(message)
                if len(found) >= limit:
                    break
        return found

    def subscribe(self, conversation_id: str, listener: MessageListener) -> ListenerHandle:
        log = self._logs.setdefault(conversation_id, _ConversationLog())
        self._next_listener_id += 1
        log.listeners[self._next_listener_id] = listener
        return ListenerHandle(conversation_id=conversation_id, listener_id=self._next_listener_id, _store=self)

    def _remove_listener(self, handle: ListenerHandle) -> None:
        log = self._logs.get(handle.conversation_id)
        if log is not None:
            log.listeners.pop(handle.listener_id, None)

    def forget(self, conversation_id: str) -> bool:
        """Drop a conversation's log unless it is still watched or holds a send in flight."""
        log = self._logs.get(conversation_id)
        if log is None:
            return True
        if log.listeners or any(message.status is MessageStatus.PENDING for message in log.messages):
            logger.debug("Conversation log kept conversation_id=%s", conversation_id)
            return False
        self._logs.pop(conversation_id, None)
        logger.debug("Conversation log released conversation_id=%s", conversation_id)
        return True

    def _notify(
        self,
        conversation_id: str,
        log: _ConversationLog,
        event_type: MessageEventType,
        message: Message,
    ) -> None:
        event = MessageEvent(type=event_type, conversation_id=conversation_id, message=message)
        for listener in list(log.listeners.values()):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Message listener failed conversation_id=%s event=%s",
                    conversation_id,
                    event_type.value,
                )

    def _run_append_hooks(self, conversation_id: str, message: Message) -> None:
        for hook in self._append_hooks:
            try:
                hook(conversation_id, message)
            except Exception:
                logger.exception("Append hook failed conversation_id=%s local_id=%s", conversation_id, message.local_id)
