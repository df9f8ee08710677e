from __future__ import annotations

import asyncio
import logging
import uuid

from chatsync.core.errors import TransientNetworkError
from chatsync.store.base import Change, Filters, matches

logger = logging.getLogger(__name__)


class FeedStream:
    """One subscriber of the change feed, backed by a bounded queue.

    A stream that falls behind is disconnected rather than allowed to grow;
    the consumer sees :class:`TransientNetworkError` and is expected to
    resubscribe and re-read current state.
    """

    def __init__(
        self,
        *,
        feed: ChangeFeed,
        collection: str,
        filters: Filters | None,
        max_pending: int,
    ) -> None:
        self.stream_id = str(uuid.uuid4())
        self.collection = collection
        self.filters = dict(filters or {})
        self._feed = feed
        self._queue: asyncio.Queue[Change | None] = asyncio.Queue(maxsize=max_pending)
        self._closed = False
        self._disconnect_reason: str | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def disconnected(self) -> bool:
        return self._disconnect_reason is not None

    def wants(self, change: Change) -> bool:
        return change.document.collection == self.collection and matches(change.document, self.filters)

    def offer(self, change: Change) -> bool:
        if self._closed or self.disconnected:
            return False
        try:
            self._queue.put_nowait(change)
            return True
        except asyncio.QueueFull:
            logger.warning("Slow change feed consumer disconnected stream_id=%s", self.stream_id)
            self.disconnect("consumer fell behind")
            return False

    def disconnect(self, reason: str) -> None:
        if self._closed or self.disconnected:
            return
        self._disconnect_reason = reason
        self._feed.detach(self)
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass
        logger.info("Change feed stream disconnected stream_id=%s reason=%s", self.stream_id, reason)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._feed.detach(self)
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass
        logger.debug("Change feed stream closed stream_id=%s", self.stream_id)

    def __aiter__(self) -> FeedStream:
        return self

    async def __anext__(self) -> Change:
        if self._closed:
            raise StopAsyncIteration
        if self.disconnected:
            raise TransientNetworkError(f"Change feed disconnected: {self._disconnect_reason}")
        item = await self._queue.get()
        if item is None:
            if self._closed:
                raise StopAsyncIteration
            raise TransientNetworkError(f"Change feed disconnected: {self._disconnect_reason}")
        return item


class ChangeFeed:
    def __init__(self, *, max_pending_per_stream: int = 500) -> None:
        self._max_pending_per_stream = max_pending_per_stream
        self._streams: dict[str, FeedStream] = {}
        self._available = True

    @property
    def available(self) -> bool:
        return self._available

    def set_available(self, available: bool) -> None:
        self._available = available
        if not available:
            self.disconnect_all("feed unavailable")

    def open_stream(self, collection: str, filters: Filters | None = None) -> FeedStream:
        if not self._available:
            raise TransientNetworkError("Change feed is unavailable")
        stream = FeedStream(
            feed=self,
            collection=collection,
            filters=filters,
            max_pending=self._max_pending_per_stream,
        )
        self._streams[stream.stream_id] = stream
        logger.debug(
            "Change feed stream opened stream_id=%s collection=%s filters=%s",
            stream.stream_id,
            collection,
            stream.filters,
        )
        return stream

    def detach(self, stream: FeedStream) -> None:
        self._streams.pop(stream.stream_id, None)

    def publish(self, change: Change) -> int:
        if not self._available:
            raise TransientNetworkError("Change feed is unavailable")
        delivered = 0
        for stream in list(self._streams.values()):
            if stream.wants(change) and stream.offer(change):
                delivered += 1
        return delivered

    def disconnect_all(self, reason: str) -> int:
        streams = list(self._streams.values())
        for stream in streams:
            stream.disconnect(reason)
        return len(streams)

    def stream_count(self) -> int:
        return len(self._streams)
