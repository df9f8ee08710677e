from chatsync.store.base import Change, ChangeType, Contains, DocumentStore, StoredDocument
from chatsync.store.change_feed import ChangeFeed, FeedStream
from chatsync.store.dispatcher import ChangeFeedDispatcher
from chatsync.store.rules import AccessRules
from chatsync.store.sql_store import SqlDocumentStore

__all__ = [
    "AccessRules",
    "Change",
    "ChangeFeed",
    "ChangeFeedDispatcher",
    "ChangeType",
    "Contains",
    "DocumentStore",
    "FeedStream",
    "SqlDocumentStore",
    "StoredDocument",
]
