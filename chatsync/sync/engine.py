"""Live, reconciled per-session view of conversations.

A subscription moves through ``idle -> subscribing -> live -> closed``.
While subscribing it opens the change-feed streams first and then reads the
store, so nothing written in between is missed; duplicates are harmless
because appends are idempotent. The first read primes the newest page of
messages. After a dropped stream the subscription goes back to
``subscribing``, reconnects with capped exponential backoff for as long as any
handle keeps it open, and then catches up on every message document updated
since the last one it saw, page by page. Older history is loaded on demand by
:meth:`SyncEngine.load_older`.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
import logging
from typing import Awaitable, Callable, Union

from pydantic import ValidationError

from chatsync.core.clock import Clock, utcnow
from chatsync.core.errors import (
    ConflictError,
    InvalidArgumentError,
    NotFoundError,
    SyncError,
    TransientNetworkError,
    UnauthorizedError,
)
from chatsync.schemas.conversations import Conversation
from chatsync.schemas.identity import Identity
from chatsync.schemas.messages import MESSAGES_COLLECTION, Message, MessageCursor, message_from_document
from chatsync.schemas.presence import (
    PRESENCE_COLLECTION,
    PresenceEntry,
    presence_document,
    presence_from_document,
    presence_key,
)
from chatsync.schemas.receipts import (
    READ_MARKERS_COLLECTION,
    ReadMarker,
    read_marker_document,
    read_marker_from_document,
    read_marker_key,
)
from chatsync.store.base import Change, ChangeStream, ChangeType, DocumentStore, StoredDocument
from chatsync.sync.directory import ConversationDirectory
from chatsync.sync.message_store import ListenerHandle, MessageEvent, MessageStore
from chatsync.sync.presence import PresenceTracker
from chatsync.sync.receipts import ReadReceiptTracker

logger = logging.getLogger(__name__)

# store clocks of concurrent writers are not ordered by commit; re-read a margin
CATCH_UP_OVERLAP = timedelta(seconds=1)


class SubscriptionState(str, Enum):
    IDLE = "idle"
    SUBSCRIBING = "subscribing"
    LIVE = "live"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class StateEvent:
    conversation_id: str
    state: SubscriptionState
    reconnecting: bool = False


@dataclass(frozen=True, slots=True)
class TypingEvent:
    conversation_id: str
    user_ids: frozenset[str]


@dataclass(frozen=True, slots=True)
class ReceiptEvent:
    conversation_id: str
    markers: tuple[ReadMarker, ...]


ViewEvent = Union[MessageEvent, StateEvent, TypingEvent, ReceiptEvent]
ViewListener = Callable[[ViewEvent], None]
TeardownHook = Callable[[str], None]


@dataclass(eq=False, slots=True)
class ConversationHandle:
    conversation_id: str
    listener: ViewListener | None = None
    active: bool = True

    def deliver(self, event: ViewEvent) -> None:
        if not self.active or self.listener is None:
            return
        try:
            self.listener(event)
        except Exception:
            logger.exception("View listener failed conversation_id=%s", self.conversation_id)


@dataclass(eq=False)
class _Subscription:
    conversation_id: str
    handles: list[ConversationHandle] = field(default_factory=list)
    state: SubscriptionState = SubscriptionState.IDLE
    task: asyncio.Task[None] | None = None
    store_listener: ListenerHandle | None = None
    live: asyncio.Event = field(default_factory=asyncio.Event)
    reconnects: int = 0
    primed: bool = False
    # oldest confirmed message of the contiguous loaded window
    oldest: MessageCursor | None = None
    history_complete: bool = False
    # newest updated_at among message documents applied so far
    high_water: datetime | None = None

    @property
    def interested(self) -> bool:
        return self.state is not SubscriptionState.CLOSED and any(handle.active for handle in self.handles)

    def dispatch(self, event: ViewEvent) -> None:
        for handle in list(self.handles):
            handle.deliver(event)


class SyncEngine:
    def __init__(
        self,
        *,
        store: DocumentStore,
        messages: MessageStore,
        presence: PresenceTracker,
        receipts: ReadReceiptTracker,
        directory: ConversationDirectory,
        identity: Identity,
        page_size: int = 50,
        backoff_base_seconds: float = 0.25,
        backoff_max_seconds: float = 5.0,
        marker_max_attempts: int = 5,
        clock: Clock = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._messages = messages
        self._presence = presence
        self._receipts = receipts
        self._directory = directory
        self._identity = identity
        self._page_size = page_size
        self._backoff_base_seconds = backoff_base_seconds
        self._backoff_max_seconds = backoff_max_seconds
        self._marker_max_attempts = marker_max_attempts
        self._clock = clock
        self._sleep = sleep
        self._subscriptions: dict[str, _Subscription] = {}
        self._summary_tasks: set[asyncio.Task[None]] = set()
        self._teardown_hooks: list[TeardownHook] = []
        self._messages.add_append_hook(self._on_newest_message)

    def add_teardown_hook(self, hook: TeardownHook) -> None:
        """Register a callback invoked with the conversation id when its subscription is torn down."""
        self._teardown_hooks.append(hook)

    def backoff_delay(self, attempt: int) -> float:
        return min(self._backoff_max_seconds, self._backoff_base_seconds * (2**attempt))

    def state(self, conversation_id: str) -> SubscriptionState:
        subscription = self._subscriptions.get(conversation_id)
        return subscription.state if subscription is not None else SubscriptionState.IDLE

    def reference_count(self, conversation_id: str) -> int:
        subscription = self._subscriptions.get(conversation_id)
        if subscription is None:
            return 0
        return sum(1 for handle in subscription.handles if handle.active)

    async def _participant_conversation(self, conversation_id: str) -> Conversation:
        conversation = self._directory.cached(conversation_id) or await self._directory.get(conversation_id)
        if not conversation.has_participant(self._identity.user_id):
            raise UnauthorizedError("Not a participant of this conversation", code="forbidden_conversation")
        return conversation

    async def open_conversation(
        self,
        conversation_id: str,
        listener: ViewListener | None = None,
    ) -> ConversationHandle:
        subscription = self._subscriptions.get(conversation_id)
        if subscription is not None and subscription.state is not SubscriptionState.CLOSED:
            handle = ConversationHandle(conversation_id=conversation_id, listener=listener)
            subscription.handles.append(handle)
            logger.debug(
                "Conversation subscription shared conversation_id=%s refs=%s",
                conversation_id,
                len(subscription.handles),
            )
            return handle

        conversation = await self._directory.get(conversation_id)
        if not conversation.has_participant(self._identity.user_id):
            logger.warning(
                "Open rejected for non-participant conversation_id=%s user_id=%s",
                conversation_id,
                self._identity.user_id,
            )
            raise UnauthorizedError("Not a participant of this conversation", code="forbidden_conversation")

        # another open may have won while the directory lookup was in flight
        subscription = self._subscriptions.get(conversation_id)
        if subscription is not None and subscription.state is not SubscriptionState.CLOSED:
            handle = ConversationHandle(conversation_id=conversation_id, listener=listener)
            subscription.handles.append(handle)
            return handle

        subscription = _Subscription(conversation_id=conversation_id)
        handle = ConversationHandle(conversation_id=conversation_id, listener=listener)
        subscription.handles.append(handle)
        self._subscriptions[conversation_id] = subscription
        self._messages.ensure_conversation(conversation_id)
        subscription.store_listener = self._messages.subscribe(conversation_id, subscription.dispatch)
        subscription.task = asyncio.create_task(self._run(subscription))
        logger.info("Conversation subscription started conversation_id=%s", conversation_id)
        return handle

    def close_conversation(self, conversation_id: str, handle: ConversationHandle | None = None) -> None:
        subscription = self._subscriptions.get(conversation_id)
        if subscription is None:
            return
        active = [item for item in subscription.handles if item.active]
        if handle is None:
            if not active:
                return
            handle = active[-1]
        if handle not in subscription.handles:
            return
        handle.active = False
        subscription.handles.remove(handle)
        logger.debug(
            "Conversation handle closed conversation_id=%s refs=%s",
            conversation_id,
            len(subscription.handles),
        )
        if subscription.handles:
            return
        self._teardown(subscription)

    def _teardown(self, subscription: _Subscription) -> None:
        conversation_id = subscription.conversation_id
        subscription.state = SubscriptionState.CLOSED
        if subscription.store_listener is not None:
            subscription.store_listener.cancel()
            subscription.store_listener = None
        task = subscription.task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        if self._subscriptions.get(conversation_id) is subscription:
            self._subscriptions.pop(conversation_id, None)
            for hook in self._teardown_hooks:
                try:
                    hook(conversation_id)
                except Exception:
                    logger.exception("Teardown hook failed conversation_id=%s", conversation_id)
            self._presence.clear(conversation_id)
            self._receipts.clear(conversation_id)
            self._messages.forget(conversation_id)
        logger.info("Conversation subscription closed conversation_id=%s", conversation_id)

    async def wait_live(self, conversation_id: str, timeout: float | None = None) -> bool:
        subscription = self._subscriptions.get(conversation_id)
        if subscription is None:
            return False
        try:
            await asyncio.wait_for(subscription.live.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return subscription.state is SubscriptionState.LIVE

    def _set_state(self, subscription: _Subscription, state: SubscriptionState) -> None:
        if subscription.state is SubscriptionState.CLOSED or subscription.state is state:
            return
        reconnecting = state is SubscriptionState.SUBSCRIBING and subscription.reconnects > 0
        subscription.state = state
        if state is SubscriptionState.LIVE:
            subscription.live.set()
        else:
            subscription.live.clear()
        logger.info(
            "Conversation subscription state conversation_id=%s state=%s reconnecting=%s",
            subscription.conversation_id,
            state.value,
            reconnecting,
        )
        subscription.dispatch(
            StateEvent(conversation_id=subscription.conversation_id, state=state, reconnecting=reconnecting)
        )

    async def _run(self, subscription: _Subscription) -> None:
        attempt = 0
        conversation_id = subscription.conversation_id
        filters = {"conversation_id": conversation_id}
        while subscription.interested:
            self._set_state(subscription, SubscriptionState.SUBSCRIBING)
            streams: list[ChangeStream] = []
            try:
                streams.append(await self._store.subscribe(MESSAGES_COLLECTION, filters))
                streams.append(await self._store.subscribe(PRESENCE_COLLECTION, filters))
                streams.append(await self._store.subscribe(READ_MARKERS_COLLECTION, filters))
                if subscription.primed:
                    await self._catch_up(subscription)
                else:
                    await self._prime(subscription)
                await self._load_side_state(subscription)
                subscription.primed = True
                attempt = 0
                self._set_state(subscription, SubscriptionState.LIVE)
                await self._consume(subscription, streams)
            except TransientNetworkError as exc:
                logger.warning(
                    "Change feed interrupted conversation_id=%s attempt=%s error=%s",
                    conversation_id,
                    attempt,
                    exc.message,
                )
            except SyncError as exc:
                logger.error(
                    "Conversation subscription stopped conversation_id=%s code=%s error=%s",
                    conversation_id,
                    exc.code,
                    exc.message,
                )
                self._set_state(subscription, SubscriptionState.CLOSED)
                for handle in subscription.handles:
                    handle.active = False
                subscription.handles.clear()
                self._teardown(subscription)
                return
            except Exception:
                logger.exception("Unexpected change feed failure conversation_id=%s", conversation_id)
            finally:
                for stream in streams:
                    await stream.close()

            if not subscription.interested:
                break
            subscription.reconnects += 1
            delay = self.backoff_delay(attempt)
            attempt += 1
            self._set_state(subscription, SubscriptionState.SUBSCRIBING)
            logger.info("Resubscribing conversation_id=%s in %.2fs", conversation_id, delay)
            await self._sleep(delay)

    async def _prime(self, subscription: _Subscription) -> None:
        conversation_id = subscription.conversation_id
        documents = await self._store.query(
            MESSAGES_COLLECTION,
            {"conversation_id": conversation_id},
            order_by=("created_at", "id"),
            descending=True,
            limit=self._page_size,
        )
        for document in reversed(documents):
            self._apply_message_change(subscription, Change(type=ChangeType.INSERTED, document=document))
        subscription.history_complete = len(documents) < self._page_size
        if documents:
            subscription.oldest = (documents[-1].created_at, documents[-1].id)
        logger.debug(
            "Conversation primed conversation_id=%s messages=%s complete=%s",
            conversation_id,
            len(documents),
            subscription.history_complete,
        )

    async def _catch_up(self, subscription: _Subscription) -> None:
        conversation_id = subscription.conversation_id
        cursor: tuple[object, ...] | None = None
        if subscription.high_water is not None:
            cursor = (subscription.high_water - CATCH_UP_OVERLAP, "")
        fetched = 0
        while True:
            documents = await self._store.query(
                MESSAGES_COLLECTION,
                {"conversation_id": conversation_id},
                order_by=("updated_at", "id"),
                limit=self._page_size,
                cursor=cursor,
            )
            for document in documents:
                self._apply_message_change(subscription, Change(type=ChangeType.UPDATED, document=document))
            fetched += len(documents)
            if len(documents) < self._page_size:
                break
            cursor = (documents[-1].updated_at, documents[-1].id)
        logger.info("Conversation caught up conversation_id=%s messages=%s", conversation_id, fetched)

    async def _load_side_state(self, subscription: _Subscription) -> None:
        conversation_id = subscription.conversation_id
        presence_documents = await self._store.query(PRESENCE_COLLECTION, {"conversation_id": conversation_id})
        for document in presence_documents:
            self._apply_presence_change(subscription, Change(type=ChangeType.UPDATED, document=document))
        marker_documents = await self._store.query(READ_MARKERS_COLLECTION, {"conversation_id": conversation_id})
        advanced = False
        for document in marker_documents:
            advanced = self._apply_marker(document) or advanced
        if advanced:
            self._dispatch_receipts(subscription)

    async def load_older(
        self,
        conversation_id: str,
        before_cursor: MessageCursor | None = None,
        limit: int | None = None,
    ) -> list[Message]:
        """Fetch up to ``limit`` confirmed messages older than the cursor from the store into the log."""
        subscription = self._subscriptions.get(conversation_id)
        if subscription is None or subscription.state is SubscriptionState.CLOSED:
            raise NotFoundError(
                "Conversation is not open",
                code="conversation_not_open",
                details={"conversation_id": conversation_id},
            )
        limit = limit or self._page_size
        boundary = before_cursor if before_cursor is not None else subscription.oldest
        documents = await self._store.query(
            MESSAGES_COLLECTION,
            {"conversation_id": conversation_id},
            order_by=("created_at", "id"),
            descending=True,
            limit=limit,
            cursor=boundary,
        )
        loaded: list[Message] = []
        for document in documents:
            message = self._apply_message_change(
                subscription,
                Change(type=ChangeType.INSERTED, document=document),
                backfill=True,
            )
            if message is not None:
                loaded.append(message)
        # a page fetched below a gap does not extend the contiguous window
        if subscription.oldest is None or boundary is None or boundary >= subscription.oldest:
            if documents:
                last = (documents[-1].created_at, documents[-1].id)
                subscription.oldest = last if subscription.oldest is None else min(subscription.oldest, last)
            if len(documents) < limit:
                subscription.history_complete = True
        logger.debug(
            "Older messages loaded conversation_id=%s count=%s complete=%s",
            conversation_id,
            len(loaded),
            subscription.history_complete,
        )
        return loaded

    async def load_page(
        self,
        conversation_id: str,
        page_size: int,
        before_cursor: MessageCursor | None = None,
    ) -> list[Message]:
        """Like :meth:`MessageStore.query`, backfilling from the store when the local log runs short."""
        page = self._messages.query(conversation_id, page_size, before_cursor)
        subscription = self._subscriptions.get(conversation_id)
        if len(page) >= page_size or subscription is None or subscription.history_complete:
            return page
        boundary = page[-1].sort_key if page else before_cursor
        await self.load_older(conversation_id, boundary, page_size - len(page))
        return self._messages.query(conversation_id, page_size, before_cursor)

    async def _consume(self, subscription: _Subscription, streams: list[ChangeStream]) -> None:
        tasks = [asyncio.create_task(self._pump(subscription, stream)) for stream in streams]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        for task in done:
            if not task.cancelled():
                task.result()

    async def _pump(self, subscription: _Subscription, stream: ChangeStream) -> None:
        async for change in stream:
            if not subscription.interested:
                return
            collection = change.document.collection
            if collection == PRESENCE_COLLECTION:
                self._apply_presence_change(subscription, change)
            elif collection == READ_MARKERS_COLLECTION:
                if change.type is not ChangeType.REMOVED and self._apply_marker(change.document):
                    self._dispatch_receipts(subscription)
            else:
                self._apply_message_change(subscription, change)
        raise TransientNetworkError("Change feed stream ended")

    def _apply_message_change(
        self,
        subscription: _Subscription,
        change: Change,
        *,
        backfill: bool = False,
    ) -> Message | None:
        if not subscription.interested:
            return None
        conversation_id = subscription.conversation_id
        document = change.document
        if subscription.high_water is None or document.updated_at > subscription.high_water:
            subscription.high_water = document.updated_at
        if change.type is ChangeType.REMOVED:
            local_id = document.data.get("local_id")
            if isinstance(local_id, str):
                self._messages.remove(conversation_id, local_id)
            return None
        try:
            message = message_from_document(document)
        except (KeyError, ValidationError) as exc:
            logger.warning("Skipping malformed message document key=%s error=%s", document.key, exc)
            return None
        if message.conversation_id != conversation_id:
            return None
        if (
            not backfill
            and not subscription.history_complete
            and subscription.oldest is not None
            and message.sort_key < subscription.oldest
            and not self._messages.contains(conversation_id, message.local_id)
        ):
            # outside the loaded window; load_older picks it up with the rest of its page
            logger.debug("Skipping update below loaded window conversation_id=%s key=%s", conversation_id, document.key)
            return None
        return self._messages.append(conversation_id, message)

    def _apply_presence_change(self, subscription: _Subscription, change: Change) -> None:
        if not subscription.interested:
            return
        try:
            entry = presence_from_document(change.document)
        except (KeyError, ValueError) as exc:
            logger.warning("Skipping malformed presence document key=%s error=%s", change.document.key, exc)
            return
        if change.type is ChangeType.REMOVED:
            entry = PresenceEntry(
                conversation_id=entry.conversation_id,
                user_id=entry.user_id,
                is_typing=False,
                expires_at=entry.expires_at,
            )
        if self._presence.apply(entry):
            self._dispatch_typing(subscription)

    def _apply_marker(self, document: StoredDocument) -> bool:
        try:
            marker = read_marker_from_document(document)
        except (KeyError, ValueError) as exc:
            logger.warning("Skipping malformed read marker key=%s error=%s", document.key, exc)
            return False
        return self._receipts.apply(marker)

    def _dispatch_typing(self, subscription: _Subscription) -> None:
        user_ids = frozenset(self._presence.get_typing(subscription.conversation_id))
        subscription.dispatch(TypingEvent(conversation_id=subscription.conversation_id, user_ids=user_ids))

    def _dispatch_receipts(self, subscription: _Subscription) -> None:
        markers = tuple(self._receipts.markers(subscription.conversation_id))
        subscription.dispatch(ReceiptEvent(conversation_id=subscription.conversation_id, markers=markers))

    def get_typing(self, conversation_id: str) -> set[str]:
        return self._presence.get_typing(conversation_id)

    async def set_typing(self, conversation_id: str, is_typing: bool) -> PresenceEntry:
        await self._participant_conversation(conversation_id)
        entry = self._presence.set_typing(conversation_id, self._identity.user_id, is_typing)
        subscription = self._subscriptions.get(conversation_id)
        if subscription is not None:
            self._dispatch_typing(subscription)
        key = presence_key(conversation_id, self._identity.user_id)
        try:
            if is_typing:
                await self._store.write(PRESENCE_COLLECTION, key, presence_document(entry))
            else:
                await self._store.delete(PRESENCE_COLLECTION, key)
        except TransientNetworkError as exc:
            # typing indicators are best-effort
            logger.warning("Typing update not published conversation_id=%s error=%s", conversation_id, exc.message)
        return entry

    def get_receipts(self, conversation_id: str) -> list[ReadMarker]:
        return self._receipts.markers(conversation_id)

    async def mark_read(self, conversation_id: str, local_id: str | None = None) -> ReadMarker:
        """Advance the session user's read marker to ``local_id`` (default: newest confirmed message)."""
        await self._participant_conversation(conversation_id)
        if local_id is None:
            message = self._messages.latest_confirmed(conversation_id)
            if message is None:
                raise NotFoundError("No confirmed message to mark as read", code="message_not_found")
        else:
            message = self._messages.get(conversation_id, local_id)
            if message.id is None:
                raise InvalidArgumentError("Message is not confirmed yet")

        user_id = self._identity.user_id
        key = read_marker_key(conversation_id, user_id)
        for attempt in range(1, self._marker_max_attempts + 1):
            document = await self._store.get(READ_MARKERS_COLLECTION, key)
            if document is not None:
                current = read_marker_from_document(document)
                self._receipts.apply(current)
                if message.sort_key <= current.cursor:
                    logger.debug("Read marker already past message conversation_id=%s", conversation_id)
                    return current
            marker = ReadMarker(
                conversation_id=conversation_id,
                user_id=user_id,
                message_id=message.id,
                message_local_id=message.local_id,
                message_created_at=message.created_at,
                read_at=self._clock(),
            )
            try:
                stored = await self._store.write(
                    READ_MARKERS_COLLECTION,
                    key,
                    read_marker_document(marker),
                    expected_version=document.version if document is not None else 0,
                )
            except ConflictError:
                logger.debug("Read marker write raced conversation_id=%s attempt=%s", conversation_id, attempt)
                continue
            marker = read_marker_from_document(stored)
            if self._receipts.apply(marker):
                subscription = self._subscriptions.get(conversation_id)
                if subscription is not None:
                    self._dispatch_receipts(subscription)
            logger.info(
                "Conversation marked read conversation_id=%s user_id=%s message_id=%s",
                conversation_id,
                user_id,
                marker.message_id,
            )
            return marker
        raise ConflictError("Could not advance read marker after repeated conflicts")

    def _on_newest_message(self, conversation_id: str, message: Message) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self._update_summary(conversation_id, message))
        except RuntimeError:
            logger.debug("No running loop; summary update skipped conversation_id=%s", conversation_id)
            return
        self._summary_tasks.add(task)
        task.add_done_callback(self._summary_tasks.discard)

    async def _update_summary(self, conversation_id: str, message: Message) -> None:
        try:
            await self._directory.update_summary(conversation_id, message)
        except NotFoundError:
            logger.warning("Summary update for unknown conversation conversation_id=%s", conversation_id)
        except SyncError as exc:
            logger.warning(
                "Summary update failed conversation_id=%s message_id=%s error=%s",
                conversation_id,
                message.id,
                exc.message,
            )

    async def drain(self) -> None:
        while self._summary_tasks:
            await asyncio.gather(*list(self._summary_tasks), return_exceptions=True)

    async def close(self) -> None:
        subscriptions = list(self._subscriptions.values())
        for subscription in subscriptions:
            for handle in subscription.handles:
                handle.active = False
            subscription.handles.clear()
            self._teardown(subscription)
        tasks = [subscription.task for subscription in subscriptions if subscription.task is not None]
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.drain()
        logger.info("Sync engine closed user_id=%s", self._identity.user_id)
