from __future__ import annotations

import asyncio
import logging

from chatsync.core.clock import Clock, utcnow
from chatsync.core.settings import Settings
from chatsync.schemas.identity import Identity
from chatsync.store.base import DocumentStore
from chatsync.sync.delivery import DeliveryCoordinator
from chatsync.sync.directory import ConversationDirectory
from chatsync.sync.engine import SyncEngine
from chatsync.sync.message_store import MessageStore
from chatsync.sync.presence import PresenceTracker
from chatsync.sync.receipts import ReadReceiptTracker

logger = logging.getLogger(__name__)


class SyncSession:
    """Everything one signed-in user needs, wired from :class:`Settings`."""

    def __init__(
        self,
        *,
        identity: Identity,
        store: DocumentStore,
        settings: Settings,
        clock: Clock = utcnow,
    ) -> None:
        self.identity = identity
        self.store = store
        self.messages = MessageStore()
        self.presence = PresenceTracker(ttl_seconds=settings.typing_ttl_seconds, clock=clock)
        self.receipts = ReadReceiptTracker()
        self.directory = ConversationDirectory(
            store,
            identity=identity,
            clock=clock,
            summary_max_attempts=settings.summary_max_attempts,
        )
        self.engine = SyncEngine(
            store=store,
            messages=self.messages,
            presence=self.presence,
            receipts=self.receipts,
            directory=self.directory,
            identity=identity,
            page_size=settings.message_page_size,
            backoff_base_seconds=settings.resubscribe_backoff_base_seconds,
            backoff_max_seconds=settings.resubscribe_backoff_max_seconds,
            marker_max_attempts=settings.summary_max_attempts,
            clock=clock,
        )
        self.delivery = DeliveryCoordinator(
            store=store,
            messages=self.messages,
            identity=identity,
            write_timeout_seconds=settings.write_timeout_seconds,
            max_attempts=settings.send_max_attempts,
            retry_delay_seconds=settings.send_retry_delay_seconds,
            clock=clock,
        )
        self.engine.add_teardown_hook(self.delivery.release)

    async def close(self) -> None:
        await self.engine.close()
        logger.info("Sync session closed user_id=%s", self.identity.user_id)


class SessionRegistry:
    def __init__(self, *, store: DocumentStore, settings: Settings, clock: Clock = utcnow) -> None:
        self._store = store
        self._settings = settings
        self._clock = clock
        self._sessions: dict[str, SyncSession] = {}

    def get_or_create(self, identity: Identity) -> SyncSession:
        session = self._sessions.get(identity.user_id)
        if session is None:
            session = SyncSession(identity=identity, store=self._store, settings=self._settings, clock=self._clock)
            self._sessions[identity.user_id] = session
            logger.info("Sync session created user_id=%s", identity.user_id)
        return session

    def get(self, user_id: str) -> SyncSession | None:
        return self._sessions.get(user_id)

    def __len__(self) -> int:
        return len(self._sessions)

    async def close_all(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        await asyncio.gather(*(session.close() for session in sessions), return_exceptions=True)
