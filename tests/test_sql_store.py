from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import select

from chatsync.core.errors import ConflictError, InvalidArgumentError, NotFoundError, UnauthorizedError
from chatsync.models import DocumentRecord
from chatsync.store import ChangeType, Contains


def _conversation(*participants: str) -> dict[str, object]:
    return {"participant_ids": sorted(participants), "is_group": False, "created_by": participants[0]}


def _message(local_id: str, *, sender: str = "alice", text: str = "hi", edited_at: str | None = None):
    return {
        "local_id": local_id,
        "conversation_id": "c1",
        "sender_id": sender,
        "sender_display_name": sender.title(),
        "content": {"kind": "text", "text": text},
        "edited_at": edited_at,
    }


def test_create_only_write_conflicts_with_existing_document(harness):
    store = harness.store

    async def scenario():
        first = await store.write("conversations", "c1", _conversation("alice", "bob"), expected_version=0)
        with pytest.raises(ConflictError) as exc_info:
            await store.write("conversations", "c1", _conversation("alice", "carol"), expected_version=0)
        return first, exc_info.value

    first, conflict = asyncio.run(scenario())
    assert first.version == 1
    assert conflict.existing is not None
    assert conflict.existing.id == first.id
    assert conflict.existing.data["participant_ids"] == ["alice", "bob"]


def test_compare_and_set_rejects_stale_version(harness):
    store = harness.store

    async def scenario():
        created = await store.write("conversations", "c1", _conversation("alice", "bob"), expected_version=0)
        updated = await store.write(
            "conversations",
            "c1",
            {**created.data, "name": "renamed"},
            expected_version=created.version,
        )
        with pytest.raises(ConflictError) as exc_info:
            await store.write("conversations", "c1", {**created.data, "name": "stale"}, expected_version=created.version)
        with pytest.raises(NotFoundError):
            await store.write("conversations", "missing", _conversation("alice", "bob"), expected_version=3)
        return updated, exc_info.value

    updated, conflict = asyncio.run(scenario())
    assert updated.version == 2
    assert conflict.existing is not None
    assert conflict.existing.data["name"] == "renamed"


def test_upsert_and_delete_enqueue_changes(harness):
    store = harness.store

    async def scenario():
        await store.write("conversations", "c1", _conversation("alice", "bob"), expected_version=0)
        stream = await store.subscribe("presence", {"conversation_id": "c1"})
        document = {"conversation_id": "c1", "user_id": "bob", "is_typing": True, "expires_at": None}
        await store.write("presence", "c1/bob", document)
        await store.write("presence", "c1/bob", document)
        await store.delete("presence", "c1/bob")
        await harness.dispatcher.process_once()
        changes = []
        async for change in stream:
            changes.append(change)
            if len(changes) == 3:
                break
        await stream.close()
        return changes, await store.get("presence", "c1/bob")

    changes, remaining = asyncio.run(scenario())
    assert [change.type for change in changes] == [ChangeType.INSERTED, ChangeType.UPDATED, ChangeType.REMOVED]
    assert [change.document.version for change in changes] == [1, 2, 2]
    assert remaining is None


def test_message_rules(harness):
    store = harness.store

    async def scenario():
        await store.write("conversations", "c1", _conversation("alice", "bob"), expected_version=0)
        stored = await store.write("messages", "l1", _message("l1"), expected_version=0)

        with pytest.raises(UnauthorizedError):
            await store.write("messages", "l2", _message("l2", sender="mallory"), expected_version=0)
        with pytest.raises(InvalidArgumentError):
            await store.write("messages", "other-key", _message("l3"), expected_version=0)
        with pytest.raises(UnauthorizedError):
            await store.write("messages", "l1", _message("l1", sender="bob"), expected_version=stored.version)

        edited = await store.write(
            "messages",
            "l1",
            _message("l1", text="edited", edited_at="2024-05-01T12:05:00+00:00"),
            expected_version=stored.version,
        )
        with pytest.raises(InvalidArgumentError):
            await store.write(
                "messages",
                "l1",
                _message("l1", text="older", edited_at="2024-05-01T12:01:00+00:00"),
                expected_version=edited.version,
            )

        missing = {**_message("l9"), "conversation_id": "nope"}
        with pytest.raises(NotFoundError):
            await store.write("messages", "l9", missing, expected_version=0)
        return edited

    edited = asyncio.run(scenario())
    assert edited.data["content"] == {"kind": "text", "text": "edited"}


def test_query_filters_orders_and_pages(harness):
    store = harness.store

    async def scenario():
        await store.write("conversations", "c1", _conversation("alice", "bob"), expected_version=0)
        await store.write("conversations", "c2", _conversation("alice", "carol"), expected_version=0)
        await store.write("conversations", "c3", _conversation("bob", "carol"), expected_version=0)
        for index in range(4):
            await store.write("messages", f"l{index}", _message(f"l{index}"), expected_version=0)

        alice = await store.query("conversations", {"participant_ids": Contains("alice")})
        newest = await store.query("messages", {"conversation_id": "c1"}, descending=True, limit=2)
        older = await store.query(
            "messages",
            {"conversation_id": "c1"},
            descending=True,
            limit=10,
            cursor=(newest[-1].created_at, newest[-1].id),
        )
        return alice, newest, older

    alice, newest, older = asyncio.run(scenario())
    assert sorted(document.key for document in alice) == ["c1", "c2"]
    assert [document.key for document in newest] == ["l3", "l2"]
    assert [document.key for document in older] == ["l1", "l0"]


def _marker(message_id: str, created_at: str, *, user: str = "bob") -> dict[str, object]:
    return {
        "conversation_id": "c1",
        "user_id": user,
        "message_id": message_id,
        "message_local_id": f"local-{message_id}",
        "message_created_at": created_at,
        "read_at": "2024-05-01T13:00:00+00:00",
    }


def test_read_marker_rules(harness):
    store = harness.store

    async def scenario():
        await store.write("conversations", "c1", _conversation("alice", "bob"), expected_version=0)
        marker = _marker("m2", "2024-05-01T12:02:00+00:00")
        first = await store.write("read_markers", "c1/bob", marker, expected_version=0)

        with pytest.raises(InvalidArgumentError):
            await store.write("read_markers", "c1/alice", marker, expected_version=0)
        with pytest.raises(UnauthorizedError):
            await store.write(
                "read_markers",
                "c1/mallory",
                _marker("m2", "2024-05-01T12:02:00+00:00", user="mallory"),
                expected_version=0,
            )
        with pytest.raises(InvalidArgumentError):
            await store.write(
                "read_markers",
                "c1/bob",
                _marker("m1", "2024-05-01T12:01:00+00:00"),
                expected_version=first.version,
            )
        missing = {**_marker("m2", "2024-05-01T12:02:00+00:00"), "conversation_id": "nope"}
        with pytest.raises(NotFoundError):
            await store.write("read_markers", "nope/bob", missing, expected_version=0)

        return await store.write(
            "read_markers",
            "c1/bob",
            _marker("m3", "2024-05-01T12:03:00+00:00"),
            expected_version=first.version,
        )

    advanced = asyncio.run(scenario())
    assert advanced.version == 2
    assert advanced.data["message_id"] == "m3"


def test_reactions_are_limited_to_participants(harness):
    store = harness.store

    async def scenario():
        await store.write("conversations", "c1", _conversation("alice", "bob"), expected_version=0)
        stored = await store.write("messages", "l1", _message("l1"), expected_version=0)
        with pytest.raises(UnauthorizedError):
            await store.write(
                "messages",
                "l1",
                {**_message("l1"), "reactions": {"👍": ["mallory"]}},
                expected_version=stored.version,
            )
        return await store.write(
            "messages",
            "l1",
            {**_message("l1"), "reactions": {"👍": ["bob"]}},
            expected_version=stored.version,
        )

    reacted = asyncio.run(scenario())
    assert reacted.data["reactions"] == {"👍": ["bob"]}


def test_query_filters_conversation_in_sql_and_pages_by_update_time(harness, database):
    store = harness.store

    async def scenario():
        await store.write("conversations", "c1", _conversation("alice", "bob"), expected_version=0)
        await store.write("conversations", "c2", _conversation("alice", "carol"), expected_version=0)
        first = await store.write("messages", "l0", _message("l0"), expected_version=0)
        await store.write("messages", "l1", _message("l1"), expected_version=0)
        await store.write("messages", "x0", {**_message("x0"), "conversation_id": "c2"}, expected_version=0)
        await store.write("messages", "l2", _message("l2"), expected_version=0)
        edit = _message("l0", text="edited", edited_at="2024-05-01T12:05:00+00:00")
        await store.write("messages", "l0", edit, expected_version=first.version)

        pages = []
        cursor = None
        while True:
            page = await store.query(
                "messages",
                {"conversation_id": "c1"},
                order_by=("updated_at", "id"),
                limit=2,
                cursor=cursor,
            )
            pages.append([document.key for document in page])
            if len(page) < 2:
                break
            cursor = (page[-1].updated_at, page[-1].id)
        since = await store.query(
            "messages",
            {"conversation_id": "c1"},
            order_by=("updated_at", "id"),
            cursor=(first.updated_at, ""),
        )
        carol = await store.query("conversations", {"participant_ids": Contains("carol")}, limit=1)
        return pages, [document.key for document in since], [document.key for document in carol]

    pages, since, carol = asyncio.run(scenario())
    assert pages == [["l1", "l2"], ["l0"]]
    assert since == ["l1", "l2", "l0"]
    assert carol == ["c2"]

    with database.open_session() as db:
        rows = db.execute(
            select(DocumentRecord.key, DocumentRecord.conversation_id).where(DocumentRecord.collection == "messages")
        ).all()
        columns = dict(rows)
    assert columns == {"l0": "c1", "l1": "c1", "x0": "c2", "l2": "c1"}
