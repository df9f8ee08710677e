from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select

from chatsync.core.errors import TransientNetworkError
from chatsync.models import ChangeEventRecord
from chatsync.store import Change, ChangeFeed, ChangeFeedDispatcher, ChangeType, SqlDocumentStore, StoredDocument


class _FlakyFeed(ChangeFeed):
    def __init__(self, *, failures: int = 0) -> None:
        super().__init__()
        self._remaining_failures = failures
        self.published_keys: list[str] = []

    def publish(self, change) -> int:
        if self._remaining_failures > 0:
            self._remaining_failures -= 1
            raise TransientNetworkError("simulated publish failure")
        self.published_keys.append(change.document.key)
        return super().publish(change)


def _write_conversation(store: SqlDocumentStore) -> None:
    asyncio.run(
        store.write(
            "conversations",
            "c1",
            {"participant_ids": ["alice", "bob"], "is_group": False, "created_by": "alice"},
            expected_version=0,
        )
    )


def test_dispatcher_marks_events_as_published(database):
    feed = _FlakyFeed()
    store = SqlDocumentStore(session_factory=database.open_session, feed=feed)
    _write_conversation(store)

    dispatcher = ChangeFeedDispatcher(
        feed=feed,
        session_factory=database.open_session,
        poll_interval_sec=0.01,
        batch_size=50,
    )
    processed = asyncio.run(dispatcher.process_once())
    assert processed == 1
    assert asyncio.run(dispatcher.process_once()) == 0

    with database.open_session() as db:
        event = db.scalar(select(ChangeEventRecord))
        assert event is not None
        assert event.published_at is not None
        assert event.attempts == 0
        assert event.change_type == ChangeType.INSERTED.value
    assert feed.published_keys == ["c1"]


def test_dispatcher_retries_after_publish_failure(database):
    feed = _FlakyFeed(failures=1)
    store = SqlDocumentStore(session_factory=database.open_session, feed=feed)
    _write_conversation(store)

    dispatcher = ChangeFeedDispatcher(
        feed=feed,
        session_factory=database.open_session,
        poll_interval_sec=0.01,
        batch_size=50,
    )
    first_processed = asyncio.run(dispatcher.process_once())
    assert first_processed == 1

    with database.open_session() as db:
        event = db.scalar(select(ChangeEventRecord))
        assert event is not None
        assert event.published_at is None
        assert event.attempts == 1
        assert event.last_error == "simulated publish failure"
        now = datetime.now(UTC)
        if event.next_attempt_at.tzinfo is None:
            now = now.replace(tzinfo=None)
        assert event.next_attempt_at > now
        event.next_attempt_at = now - timedelta(seconds=1)
        db.commit()

    second_processed = asyncio.run(dispatcher.process_once())
    assert second_processed == 1

    with database.open_session() as db:
        event = db.scalar(select(ChangeEventRecord))
        assert event is not None
        assert event.published_at is not None
        assert event.attempts == 1
    assert feed.published_keys == ["c1"]


def test_slow_stream_is_disconnected_and_raises_transient():
    async def scenario():
        feed = ChangeFeed(max_pending_per_stream=2)
        stream = feed.open_stream("messages", {"conversation_id": "c1"})
        now = datetime.now(UTC)
        document = StoredDocument(
            collection="messages",
            key="l1",
            id="m1",
            data={"conversation_id": "c1"},
            version=1,
            created_at=now,
            updated_at=now,
        )
        delivered = [feed.publish(Change(type=ChangeType.INSERTED, document=document)) for _ in range(3)]

        assert delivered == [1, 1, 0]
        assert stream.disconnected
        assert feed.stream_count() == 0
        with pytest.raises(TransientNetworkError):
            await stream.__anext__()

    asyncio.run(scenario())


def test_unavailable_feed_refuses_new_streams():
    feed = ChangeFeed()
    feed.set_available(False)

    with pytest.raises(TransientNetworkError):
        feed.open_stream("messages")


def test_unavailable_feed_defers_events_until_it_returns(database):
    feed = ChangeFeed()
    store = SqlDocumentStore(session_factory=database.open_session, feed=feed)
    dispatcher = ChangeFeedDispatcher(
        feed=feed,
        session_factory=database.open_session,
        poll_interval_sec=0.01,
        batch_size=50,
    )

    async def scenario():
        feed.set_available(False)
        await store.write(
            "conversations",
            "c1",
            {"participant_ids": ["alice", "bob"], "is_group": False, "created_by": "alice"},
            expected_version=0,
        )
        await dispatcher.process_once()
        feed.set_available(True)
        stream = feed.open_stream("conversations")
        with database.open_session() as db:
            event = db.scalar(select(ChangeEventRecord))
            deferred = (event.published_at, event.attempts, event.last_error)
            event.next_attempt_at = datetime.now(UTC) - timedelta(seconds=1)
            db.commit()
        await dispatcher.process_once()
        change = await asyncio.wait_for(stream.__anext__(), timeout=1)
        await stream.close()
        return deferred, change

    deferred, change = asyncio.run(scenario())
    assert deferred == (None, 1, "Change feed is unavailable")
    assert change.document.key == "c1"


def test_undecodable_event_is_retired_without_blocking_later_ones(database):
    feed = _FlakyFeed()
    store = SqlDocumentStore(session_factory=database.open_session, feed=feed)
    with database.open_session() as db:
        db.add(
            ChangeEventRecord(
                change_type=ChangeType.INSERTED.value,
                collection="conversations",
                document_key="broken",
                payload_json="[1, 2]",
            )
        )
        db.commit()
    _write_conversation(store)

    dispatcher = ChangeFeedDispatcher(
        feed=feed,
        session_factory=database.open_session,
        poll_interval_sec=0.01,
        batch_size=50,
    )
    assert asyncio.run(dispatcher.process_once()) == 2

    with database.open_session() as db:
        broken = db.scalar(select(ChangeEventRecord).where(ChangeEventRecord.document_key == "broken"))
        assert broken is not None
        assert broken.published_at is not None
        assert broken.last_error.startswith("undecodable payload")
    assert feed.published_keys == ["c1"]


def test_unavailable_feed_refuses_publish():
    feed = ChangeFeed()
    feed.set_available(False)
    now = datetime.now(UTC)
    document = StoredDocument(
        collection="messages",
        key="l1",
        id="m1",
        data={"conversation_id": "c1"},
        version=1,
        created_at=now,
        updated_at=now,
    )

    with pytest.raises(TransientNetworkError):
        feed.publish(Change(type=ChangeType.INSERTED, document=document))


def test_retry_delay_doubles_up_to_the_cap():
    from chatsync.store.dispatcher import retry_delay

    assert retry_delay(1) == timedelta(seconds=0.5)
    assert retry_delay(2) == timedelta(seconds=1)
    assert retry_delay(4) == timedelta(seconds=4)
    assert retry_delay(20) == timedelta(seconds=30)
