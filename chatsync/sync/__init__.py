from chatsync.sync.delivery import Delivery, DeliveryCoordinator
from chatsync.sync.directory import ConversationDirectory, direct_conversation_key
from chatsync.sync.engine import (
    ConversationHandle,
    ReceiptEvent,
    StateEvent,
    SubscriptionState,
    SyncEngine,
    TypingEvent,
    ViewEvent,
)
from chatsync.sync.message_store import MessageEvent, MessageEventType, MessageStore
from chatsync.sync.presence import PresenceTracker
from chatsync.sync.receipts import ReadReceiptTracker
from chatsync.sync.session import SessionRegistry, SyncSession

__all__ = [
    "ConversationDirectory",
    "ConversationHandle",
    "Delivery",
    "DeliveryCoordinator",
    "MessageEvent",
    "MessageEventType",
    "MessageStore",
    "PresenceTracker",
    "ReadReceiptTracker",
    "ReceiptEvent",
    "SessionRegistry",
    "StateEvent",
    "SubscriptionState",
    "SyncEngine",
    "SyncSession",
    "TypingEvent",
    "ViewEvent",
    "direct_conversation_key",
]
