from __future__ import annotations

from datetime import timedelta
import logging

from chatsync.core.clock import Clock, utcnow
from chatsync.schemas.presence import PresenceEntry

logger = logging.getLogger(__name__)


class PresenceTracker:
    """Ephemeral typing state per conversation.

    Entries are never trusted past ``expires_at``: :meth:`get_typing` checks
    expiry at read time, so a client that disconnects mid-type drops out after
    one TTL even if no stop signal ever arrives. :meth:`sweep` only reclaims
    memory.
    """

    def __init__(self, *, ttl_seconds: float = 5.0, clock: Clock = utcnow) -> None:
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._entries: dict[str, dict[str, PresenceEntry]] = {}

    def set_typing(self, conversation_id: str, user_id: str, is_typing: bool) -> PresenceEntry:
        now = self._clock()
        entry = PresenceEntry(
            conversation_id=conversation_id,
            user_id=user_id,
            is_typing=is_typing,
            expires_at=now + self._ttl if is_typing else now,
        )
        self.apply(entry)
        return entry

    def apply(self, entry: PresenceEntry) -> bool:
        """Store or clear ``entry``; returns whether the visible typing set changed."""
        before = self.get_typing(entry.conversation_id)
        conversation = self._entries.setdefault(entry.conversation_id, {})
        if entry.is_active(self._clock()):
            conversation[entry.user_id] = entry
        else:
            conversation.pop(entry.user_id, None)
            if not conversation:
                self._entries.pop(entry.conversation_id, None)
        changed = before != self.get_typing(entry.conversation_id)
        if changed:
            logger.debug(
                "Typing state changed conversation_id=%s user_id=%s is_typing=%s",
                entry.conversation_id,
                entry.user_id,
                entry.is_typing,
            )
        return changed

    def get_typing(self, conversation_id: str) -> set[str]:
        now = self._clock()
        entries = self._entries.get(conversation_id, {})
        return {user_id for user_id, entry in entries.items() if entry.is_active(now)}

    def sweep(self) -> int:
        now = self._clock()
        removed = 0
        for conversation_id in list(self._entries):
            conversation = self._entries[conversation_id]
            for user_id in [user_id for user_id, entry in conversation.items() if not entry.is_active(now)]:
                conversation.pop(user_id, None)
                removed += 1
            if not conversation:
                self._entries.pop(conversation_id, None)
        if removed:
            logger.debug("Presence sweep removed %s expired entries", removed)
        return removed

    def clear(self, conversation_id: str) -> None:
        if self._entries.pop(conversation_id, None) is not None:
            logger.debug("Typing state released conversation_id=%s", conversation_id)
