"""Outbox relay from the ``change_events`` table to the in-process feed.

Rows are claimed oldest first. A row whose payload cannot be decoded is
retired with ``last_error`` set so it never blocks the rows behind it; a
row the feed refuses is rescheduled with exponential backoff.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
import json
import logging
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from chatsync.core.errors import TransientNetworkError
from chatsync.models import ChangeEventRecord
from chatsync.store.base import Change, ChangeType, StoredDocument
from chatsync.store.change_feed import ChangeFeed

logger = logging.getLogger(__name__)

RETRY_BASE_SECONDS = 0.5
RETRY_MAX_SECONDS = 30.0


def change_from_record(event: ChangeEventRecord) -> Change:
    payload = json.loads(event.payload_json)
    if not isinstance(payload, dict):
        raise ValueError("Change event payload must decode to an object")
    return Change(type=ChangeType(event.change_type), document=StoredDocument.from_payload(payload))


def retry_delay(attempts: int) -> timedelta:
    return timedelta(seconds=min(RETRY_MAX_SECONDS, RETRY_BASE_SECONDS * 2 ** (attempts - 1)))


class ChangeFeedDispatcher:
    def __init__(
        self,
        *,
        feed: ChangeFeed,
        session_factory: Callable[[], Session],
        poll_interval_sec: float,
        batch_size: int,
    ) -> None:
        self._feed = feed
        self._session_factory = session_factory
        self._poll_interval_sec = poll_interval_sec
        self._batch_size = batch_size
        self._stopping = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None

    async def start(self) -> None:
        if self._task is not None:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._loop(), name="change-feed-dispatcher")
        logger.info("Change feed dispatcher started batch_size=%s", self._batch_size)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        self._stopping.set()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Change feed dispatcher stopped")

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                handled = await self.process_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Change feed dispatch pass failed")
                handled = 0
            if handled == 0:
                await asyncio.sleep(self._poll_interval_sec)

    def _due(self, db: Session, now: datetime) -> list[ChangeEventRecord]:
        return list(
            db.scalars(
                select(ChangeEventRecord)
                .where(ChangeEventRecord.published_at.is_(None), ChangeEventRecord.next_attempt_at <= now)
                .order_by(ChangeEventRecord.id)
                .limit(self._batch_size)
            )
        )

    async def process_once(self) -> int:
        """Relay one batch of due outbox rows; returns how many rows were handled."""
        with self._session_factory() as db:
            events = self._due(db, datetime.now(UTC))
            for event in events:
                try:
                    change = change_from_record(event)
                except (KeyError, TypeError, ValueError) as exc:
                    logger.error("Dropping undecodable change event event_id=%s error=%s", event.event_id, exc)
                    self._mark_published(event, error=f"undecodable payload: {exc}"[:1000])
                    continue
                try:
                    delivered = self._feed.publish(change)
                except TransientNetworkError as exc:
                    self._defer(event, exc)
                    continue
                self._mark_published(event)
                logger.debug(
                    "Change relayed event_id=%s collection=%s key=%s delivered=%s",
                    event.event_id,
                    event.collection,
                    event.document_key,
                    delivered,
                )
            if events:
                db.commit()
            return len(events)

    def _mark_published(self, event: ChangeEventRecord, *, error: str | None = None) -> None:
        event.published_at = datetime.now(UTC)
        event.last_error = error

    def _defer(self, event: ChangeEventRecord, exc: Exception) -> None:
        event.attempts += 1
        event.next_attempt_at = datetime.now(UTC) + retry_delay(event.attempts)
        event.last_error = str(exc)[:1000]
        logger.warning(
            "Change relay deferred event_id=%s attempts=%s error=%s",
            event.event_id,
            event.attempts,
            exc,
        )
