"""Boundary contract of the durable document store.

The sync core only talks to persistence through :class:`DocumentStore`.
Writes take an ``expected_version`` that selects the write mode:

* ``None`` - unconditional upsert (only used for ephemeral documents),
* ``0`` - create only; an existing key raises :class:`ConflictError` carrying
  the stored document,
* ``n > 0`` - compare-and-set against the stored version.

Subscriptions deliver :class:`Change` records at least once; consumers are
expected to apply them idempotently.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Protocol

from chatsync.core.clock import parse_datetime, serialize_datetime


class ChangeType(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    REMOVED = "removed"


@dataclass(frozen=True, slots=True)
class StoredDocument:
    collection: str
    key: str
    id: str
    data: dict[str, object]
    version: int
    created_at: datetime
    updated_at: datetime

    def field(self, name: str) -> object:
        if name == "id":
            return self.id
        if name == "key":
            return self.key
        if name == "version":
            return self.version
        if name == "created_at":
            return self.created_at
        if name == "updated_at":
            return self.updated_at
        return self.data.get(name)

    def to_payload(self) -> dict[str, object]:
        return {
            "collection": self.collection,
            "key": self.key,
            "id": self.id,
            "data": self.data,
            "version": self.version,
            "created_at": serialize_datetime(self.created_at),
            "updated_at": serialize_datetime(self.updated_at),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "StoredDocument":
        data = payload.get("data")
        created_at = parse_datetime(payload.get("created_at"))  # type: ignore[arg-type]
        updated_at = parse_datetime(payload.get("updated_at"))  # type: ignore[arg-type]
        if not isinstance(data, dict) or created_at is None or updated_at is None:
            raise ValueError("Stored document payload is missing required fields")
        return cls(
            collection=str(payload["collection"]),
            key=str(payload["key"]),
            id=str(payload["id"]),
            data=data,
            version=int(payload["version"]),  # type: ignore[arg-type]
            created_at=created_at,
            updated_at=updated_at,
        )


@dataclass(frozen=True, slots=True)
class Change:
    type: ChangeType
    document: StoredDocument


@dataclass(frozen=True, slots=True)
class Contains:
    """Filter operator: the document field is a list holding ``value``."""

    value: object


Filters = Mapping[str, object]


def matches(document: StoredDocument, filters: Filters | None) -> bool:
    if not filters:
        return True
    for name, expected in filters.items():
        actual = document.field(name)
        if isinstance(expected, Contains):
            if not isinstance(actual, (list, tuple)) or expected.value not in actual:
                return False
        elif actual != expected:
            return False
    return True


class ChangeStream(Protocol):
    def __aiter__(self) -> AsyncIterator[Change]: ...

    async def close(self) -> None: ...


class DocumentStore(Protocol):
    async def get(self, collection: str, key: str) -> StoredDocument | None: ...

    async def write(
        self,
        collection: str,
        key: str,
        document: Mapping[str, object],
        *,
        expected_version: int | None = None,
    ) -> StoredDocument: ...

    async def delete(self, collection: str, key: str) -> StoredDocument | None: ...

    async def query(
        self,
        collection: str,
        filters: Filters | None = None,
        *,
        order_by: Sequence[str] = ("created_at", "id"),
        descending: bool = False,
        limit: int | None = None,
        cursor: Sequence[object] | None = None,
    ) -> list[StoredDocument]: ...

    async def subscribe(self, collection: str, filters: Filters | None = None) -> ChangeStream: ...
