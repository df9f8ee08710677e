from __future__ import annotations

import logging
from collections import defaultdict, deque
from time import monotonic

from fastapi import Depends

from chatsync.api.deps import get_identity
from chatsync.core.errors import SyncError
from chatsync.core.settings import get_settings
from chatsync.schemas.identity import Identity

logger = logging.getLogger(__name__)


class RateLimitedError(SyncError):
    status_code = 429
    default_code = "rate_limited"


class InMemoryRateLimiter:
    def __init__(self, *, window_seconds: int, max_requests: int) -> None:
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self._events: dict[str, deque[float]] = defaultdict(deque)

    def hit(self, key: str) -> bool:
        now = monotonic()
        events = self._events[key]
        cutoff = now - self.window_seconds
        while events and events[0] <= cutoff:
            events.popleft()
        if len(events) >= self.max_requests:
            return False
        events.append(now)
        return True

    def reset(self) -> None:
        self._events.clear()


settings = get_settings()
send_limiter = InMemoryRateLimiter(
    window_seconds=settings.send_rate_limit_window_seconds,
    max_requests=settings.send_rate_limit_max_requests,
)


def enforce_send_rate_limit(identity: Identity = Depends(get_identity)) -> Identity:
    logger.debug("Send rate limit check user_id=%s", identity.user_id)
    if not send_limiter.hit(identity.user_id):
        logger.warning("Send rate limit exceeded user_id=%s", identity.user_id)
        raise RateLimitedError("Too many messages sent, slow down")
    return identity
