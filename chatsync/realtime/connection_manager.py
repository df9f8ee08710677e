from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field

from fastapi import WebSocket

from chatsync.sync.engine import ConversationHandle
from chatsync.sync.session import SyncSession

logger = logging.getLogger(__name__)


@dataclass
class ConnectionContext:
    connection_id: str
    session: SyncSession
    websocket: WebSocket
    outgoing_queue: asyncio.Queue[dict[str, object]]
    writer_task: asyncio.Task[None] | None
    handles: dict[str, ConversationHandle] = field(default_factory=dict)

    @property
    def user_id(self) -> str:
        return self.session.identity.user_id


class ConnectionManager:
    """Tracks live sockets and the conversation handles each one holds open.

    Engine listeners are synchronous, so frames go through a bounded
    per-connection queue drained by a writer task. A client that stops
    reading is closed with 1013 instead of buffering without limit.
    """

    def __init__(self, *, max_open_per_connection: int, outgoing_queue_size: int = 200) -> None:
        self._max_open_per_connection = max_open_per_connection
        self._outgoing_queue_size = outgoing_queue_size
        self._connections: dict[str, ConnectionContext] = {}
        self._closing: set[asyncio.Task[None]] = set()
        self._lock = asyncio.Lock()

    async def register(self, websocket: WebSocket, *, session: SyncSession) -> ConnectionContext:
        connection_id = str(uuid.uuid4())
        queue: asyncio.Queue[dict[str, object]] = asyncio.Queue(maxsize=self._outgoing_queue_size)
        context = ConnectionContext(
            connection_id=connection_id,
            session=session,
            websocket=websocket,
            outgoing_queue=queue,
            writer_task=None,
        )

        async with self._lock:
            self._connections[connection_id] = context
            context.writer_task = asyncio.create_task(self._writer_loop(connection_id))
        logger.info("WebSocket connection registered connection_id=%s user_id=%s", connection_id, context.user_id)
        return context

    async def unregister(self, connection_id: str, *, close_socket: bool = True, close_code: int = 1000) -> None:
        async with self._lock:
            context = self._connections.pop(connection_id, None)
            if context is None:
                return

        for conversation_id, handle in list(context.handles.items()):
            context.session.engine.close_conversation(conversation_id, handle)
        context.handles.clear()

        current_task = asyncio.current_task()
        if context.writer_task is not None and context.writer_task is not current_task:
            context.writer_task.cancel()
            try:
                await context.writer_task
            except asyncio.CancelledError:
                pass

        if close_socket:
            try:
                await context.websocket.close(code=close_code)
            except Exception:
                logger.debug("WebSocket already closed connection_id=%s", connection_id)
        logger.info("WebSocket connection unregistered connection_id=%s user_id=%s", connection_id, context.user_id)

    async def _writer_loop(self, connection_id: str) -> None:
        while True:
            async with self._lock:
                context = self._connections.get(connection_id)
            if context is None:
                return

            try:
                payload = await context.outgoing_queue.get()
                await context.websocket.send_json(payload)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(
                    "WebSocket writer failed connection_id=%s user_id=%s error=%s",
                    connection_id,
                    context.user_id,
                    exc,
                )
                await self.unregister(connection_id, close_socket=False)
                return

    def send_nowait(self, connection_id: str, payload: dict[str, object]) -> bool:
        context = self._connections.get(connection_id)
        if context is None:
            return False

        try:
            context.outgoing_queue.put_nowait(payload)
            return True
        except asyncio.QueueFull:
            logger.warning("Slow WebSocket client disconnected connection_id=%s", connection_id)
            task = asyncio.get_running_loop().create_task(
                self.unregister(connection_id, close_socket=True, close_code=1013)
            )
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)
            return False

    async def send(self, connection_id: str, payload: dict[str, object]) -> bool:
        return self.send_nowait(connection_id, payload)

    def track(self, connection_id: str, handle: ConversationHandle) -> None:
        context = self._connections.get(connection_id)
        if context is None:
            raise ValueError("Unknown connection")
        if handle.conversation_id not in context.handles and len(context.handles) >= self._max_open_per_connection:
            raise ValueError("Open conversation limit exceeded")
        context.handles[handle.conversation_id] = handle

    def untrack(self, connection_id: str, conversation_id: str) -> ConversationHandle | None:
        context = self._connections.get(connection_id)
        if context is None:
            return None
        return context.handles.pop(conversation_id, None)

    def is_open(self, connection_id: str, conversation_id: str) -> bool:
        context = self._connections.get(connection_id)
        return context is not None and conversation_id in context.handles

    def can_open(self, connection_id: str) -> bool:
        context = self._connections.get(connection_id)
        return context is not None and len(context.handles) < self._max_open_per_connection

    async def connection_count(self) -> int:
        async with self._lock:
            return len(self._connections)
