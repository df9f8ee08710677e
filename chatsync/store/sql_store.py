from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
import json
import logging
import uuid
from typing import Callable

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from chatsync.core.clock import ensure_utc
from chatsync.core.errors import ConflictError, NotFoundError, TransientNetworkError
from chatsync.models import ChangeEventRecord, DocumentRecord
from chatsync.store.base import ChangeType, Filters, StoredDocument, matches
from chatsync.store.change_feed import ChangeFeed, FeedStream
from chatsync.store.rules import AccessRules

logger = logging.getLogger(__name__)


def _encode(document: Mapping[str, object]) -> str:
    return json.dumps(dict(document), separators=(",", ":"), sort_keys=True)


def _to_stored(record: DocumentRecord) -> StoredDocument:
    return StoredDocument(
        collection=record.collection,
        key=record.key,
        id=record.id,
        data=json.loads(record.body_json),
        version=record.version,
        created_at=ensure_utc(record.created_at),
        updated_at=ensure_utc(record.updated_at),
    )


def _sort_value(value: object) -> tuple[int, object]:
    # None sorts first and never gets compared against real values
    if value is None:
        return (0, "")
    return (1, value)


# non-nullable record columns, safe to sort and page on in SQL
_ORDER_COLUMNS: dict[str, ColumnElement] = {
    "id": DocumentRecord.id,
    "key": DocumentRecord.key,
    "version": DocumentRecord.version,
    "created_at": DocumentRecord.created_at,
    "updated_at": DocumentRecord.updated_at,
}
_FILTER_COLUMNS: dict[str, ColumnElement] = {**_ORDER_COLUMNS, "conversation_id": DocumentRecord.conversation_id}


def _conversation_id(document: Mapping[str, object]) -> str | None:
    value = document.get("conversation_id")
    return value if isinstance(value, str) else None


def _bind_value(value: object) -> object:
    if isinstance(value, datetime):
        return ensure_utc(value)
    return value


def _beyond(columns: Sequence[ColumnElement], values: Sequence[object], descending: bool) -> ColumnElement:
    """Row-value comparison ``(columns) > (values)`` (``<`` when descending) spelled as an OR chain."""
    clauses = []
    for index, column in enumerate(columns):
        equal = [columns[prior] == values[prior] for prior in range(index)]
        past = column < values[index] if descending else column > values[index]
        clauses.append(and_(*equal, past))
    return or_(*clauses)


class SqlDocumentStore:
    """:class:`DocumentStore` on top of SQLAlchemy.

    Every write appends a row to the ``change_events`` outbox in the same
    transaction; :class:`ChangeFeedDispatcher` publishes those rows to the
    in-process :class:`ChangeFeed` that backs :meth:`subscribe`.
    """

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        feed: ChangeFeed,
        rules: AccessRules | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._feed = feed
        self._rules = rules or AccessRules()

    @property
    def feed(self) -> ChangeFeed:
        return self._feed

    def _load(self, db: Session, collection: str, key: str) -> DocumentRecord | None:
        return db.scalar(
            select(DocumentRecord).where(
                DocumentRecord.collection == collection,
                DocumentRecord.key == key,
            )
        )

    def _enqueue_change(self, db: Session, *, change_type: ChangeType, document: StoredDocument) -> None:
        db.add(
            ChangeEventRecord(
                change_type=change_type.value,
                collection=document.collection,
                document_key=document.key,
                payload_json=json.dumps(document.to_payload(), separators=(",", ":"), sort_keys=True),
                next_attempt_at=datetime.now(UTC),
            )
        )

    async def get(self, collection: str, key: str) -> StoredDocument | None:
        logger.debug("Get document collection=%s key=%s", collection, key)
        try:
            with self._session_factory() as db:
                record = self._load(db, collection, key)
                return _to_stored(record) if record is not None else None
        except OperationalError as exc:
            raise TransientNetworkError("Document store unavailable") from exc

    async def write(
        self,
        collection: str,
        key: str,
        document: Mapping[str, object],
        *,
        expected_version: int | None = None,
    ) -> StoredDocument:
        logger.debug(
            "Write document collection=%s key=%s expected_version=%s",
            collection,
            key,
            expected_version,
        )
        try:
            return self._write(collection, key, document, expected_version=expected_version)
        except OperationalError as exc:
            logger.warning("Document store write failed collection=%s key=%s error=%s", collection, key, exc)
            raise TransientNetworkError("Document store unavailable") from exc

    def _write(
        self,
        collection: str,
        key: str,
        document: Mapping[str, object],
        *,
        expected_version: int | None,
    ) -> StoredDocument:
        with self._session_factory() as db:

            def load(other_collection: str, other_key: str) -> StoredDocument | None:
                other = self._load(db, other_collection, other_key)
                return _to_stored(other) if other is not None else None

            record = self._load(db, collection, key)
            existing = _to_stored(record) if record is not None else None
            now = datetime.now(UTC)

            if existing is None:
                if expected_version not in (None, 0):
                    raise NotFoundError("Document not found", details={"collection": collection, "key": key})
                self._rules.check_write(
                    collection=collection,
                    key=key,
                    document=document,
                    existing=None,
                    load=load,
                )
                record = DocumentRecord(
                    id=str(uuid.uuid4()),
                    collection=collection,
                    key=key,
                    conversation_id=_conversation_id(document),
                    body_json=_encode(document),
                    version=1,
                    created_at=now,
                    updated_at=now,
                )
                db.add(record)
                stored = _to_stored(record)
                change_type = ChangeType.INSERTED
            else:
                if expected_version == 0:
                    logger.debug("Create-only write hit existing document collection=%s key=%s", collection, key)
                    raise ConflictError("Document already exists", existing=existing)
                self._rules.check_write(
                    collection=collection,
                    key=key,
                    document=document,
                    existing=existing,
                    load=load,
                )
                statement = (
                    update(DocumentRecord)
                    .where(DocumentRecord.collection == collection, DocumentRecord.key == key)
                    .values(
                        body_json=_encode(document),
                        conversation_id=_conversation_id(document),
                        version=existing.version + 1,
                        updated_at=now,
                    )
                )
                if expected_version is not None:
                    statement = statement.where(DocumentRecord.version == expected_version)
                else:
                    statement = statement.where(DocumentRecord.version == existing.version)
                result = db.execute(statement)
                if result.rowcount != 1:
                    db.rollback()
                    current = self._load(db, collection, key)
                    logger.debug(
                        "Compare-and-set lost collection=%s key=%s expected_version=%s",
                        collection,
                        key,
                        expected_version,
                    )
                    raise ConflictError(
                        "Document version mismatch",
                        existing=_to_stored(current) if current is not None else None,
                    )
                stored = StoredDocument(
                    collection=collection,
                    key=key,
                    id=existing.id,
                    data=json.loads(_encode(document)),
                    version=existing.version + 1,
                    created_at=existing.created_at,
                    updated_at=now,
                )
                change_type = ChangeType.UPDATED

            self._enqueue_change(db, change_type=change_type, document=stored)
            try:
                db.commit()
            except IntegrityError:
                logger.warning(
                    "IntegrityError on write; resolving as create conflict collection=%s key=%s",
                    collection,
                    key,
                )
                db.rollback()
                winner = self._load(db, collection, key)
                if winner is None:
                    raise
                raise ConflictError("Document already exists", existing=_to_stored(winner)) from None

            logger.info(
                "Document %s collection=%s key=%s version=%s",
                change_type.value,
                collection,
                key,
                stored.version,
            )
            return stored

    async def delete(self, collection: str, key: str) -> StoredDocument | None:
        logger.debug("Delete document collection=%s key=%s", collection, key)
        try:
            with self._session_factory() as db:
                record = self._load(db, collection, key)
                if record is None:
                    return None
                stored = _to_stored(record)
                db.execute(
                    delete(DocumentRecord).where(
                        DocumentRecord.collection == collection,
                        DocumentRecord.key == key,
                    )
                )
                self._enqueue_change(db, change_type=ChangeType.REMOVED, document=stored)
                db.commit()
                logger.info("Document removed collection=%s key=%s", collection, key)
                return stored
        except OperationalError as exc:
            raise TransientNetworkError("Document store unavailable") from exc

    async def query(
        self,
        collection: str,
        filters: Filters | None = None,
        *,
        order_by: Sequence[str] = ("created_at", "id"),
        descending: bool = False,
        limit: int | None = None,
        cursor: Sequence[object] | None = None,
    ) -> list[StoredDocument]:
        """Run a filtered, ordered query.

        Equality filters on record columns, the ordering, the cursor and the
        limit are evaluated by the database. Filters on body fields (and
        :class:`Contains`) are checked in Python afterwards, in which case the
        limit is applied after filtering as well.
        """
        logger.debug(
            "Query documents collection=%s filters=%s order_by=%s descending=%s limit=%s",
            collection,
            dict(filters or {}),
            list(order_by),
            descending,
            limit,
        )
        statement = select(DocumentRecord).where(DocumentRecord.collection == collection)
        residual: dict[str, object] = {}
        for name, expected in (filters or {}).items():
            column = _FILTER_COLUMNS.get(name)
            if column is None or expected is None or not isinstance(expected, (str, int, datetime)):
                residual[name] = expected
            else:
                statement = statement.where(column == _bind_value(expected))

        order_columns = [_ORDER_COLUMNS.get(name) for name in order_by]
        sql_ordered = all(column is not None for column in order_columns)
        sql_cursor = False
        if sql_ordered:
            columns = [column for column in order_columns if column is not None]
            statement = statement.order_by(*(column.desc() if descending else column.asc() for column in columns))
            if cursor is not None and len(cursor) == len(columns) and all(value is not None for value in cursor):
                statement = statement.where(_beyond(columns, [_bind_value(value) for value in cursor], descending))
                sql_cursor = True
            if limit is not None and not residual and (cursor is None or sql_cursor):
                statement = statement.limit(limit)

        try:
            with self._session_factory() as db:
                documents = [_to_stored(record) for record in db.scalars(statement).all()]
        except OperationalError as exc:
            raise TransientNetworkError("Document store unavailable") from exc

        def sort_key(document: StoredDocument) -> tuple[tuple[int, object], ...]:
            return tuple(_sort_value(document.field(name)) for name in order_by)

        selected = [document for document in documents if matches(document, residual)]
        if not sql_ordered:
            selected.sort(key=sort_key, reverse=descending)
        if cursor is not None and not sql_cursor:
            boundary = tuple(_sort_value(value) for value in cursor)
            if descending:
                selected = [document for document in selected if sort_key(document) < boundary]
            else:
                selected = [document for document in selected if sort_key(document) > boundary]
        if limit is not None:
            selected = selected[:limit]
        return selected

    async def subscribe(self, collection: str, filters: Filters | None = None) -> FeedStream:
        return self._feed.open_stream(collection, filters)
