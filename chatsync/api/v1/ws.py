from __future__ import annotations

import asyncio
from collections import deque
import logging
from time import monotonic

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from chatsync.core.errors import AuthenticationError, SyncError
from chatsync.core.security import identity_from_token
from chatsync.core.settings import get_settings
from chatsync.realtime.connection_manager import ConnectionContext, ConnectionManager
from chatsync.realtime.protocol import (
    CloseCommand,
    OpenCommand,
    PingCommand,
    ProtocolError,
    ReadCommand,
    TypingCommand,
    ack_frame,
    error_frame,
    event_frame,
    parse_command,
    pong_frame,
    welcome_frame,
)
from chatsync.sync.engine import ViewEvent
from chatsync.sync.session import SessionRegistry

logger = logging.getLogger(__name__)
router = APIRouter(tags=["ws"])


def _extract_access_token(websocket: WebSocket) -> str | None:
    auth_header = websocket.headers.get("authorization")
    if auth_header and auth_header.lower().startswith("bearer "):
        return auth_header.split(" ", 1)[1].strip()
    return websocket.query_params.get("access_token")


def _command_allowed(events: deque[float], *, now: float, window_seconds: int, max_commands: int) -> bool:
    cutoff = now - window_seconds
    while events and events[0] <= cutoff:
        events.popleft()
    if len(events) >= max_commands:
        return False
    events.append(now)
    return True


def _forwarder(connection_manager: ConnectionManager, connection_id: str):
    def forward(event: ViewEvent) -> None:
        connection_manager.send_nowait(connection_id, event_frame(event))

    return forward


async def _handle_open(
    connection_manager: ConnectionManager,
    context: ConnectionContext,
    command: OpenCommand,
    *,
    timeout: float,
) -> None:
    conversation_id = command.conversation_id
    engine = context.session.engine
    if not connection_manager.is_open(context.connection_id, conversation_id):
        if not connection_manager.can_open(context.connection_id):
            await connection_manager.send(
                context.connection_id,
                error_frame(code="INVALID_COMMAND", message="Open conversation limit exceeded"),
            )
            return
        handle = await engine.open_conversation(
            conversation_id,
            _forwarder(connection_manager, context.connection_id),
        )
        connection_manager.track(context.connection_id, handle)
    live = await engine.wait_live(conversation_id, timeout=timeout)
    await connection_manager.send(
        context.connection_id,
        ack_frame(
            op="open",
            details={
                "conversation_id": conversation_id,
                "state": engine.state(conversation_id).value,
                "live": live,
            },
        ),
    )


async def _handle_close(connection_manager: ConnectionManager, context: ConnectionContext, command: CloseCommand) -> None:
    handle = connection_manager.untrack(context.connection_id, command.conversation_id)
    if handle is not None:
        context.session.engine.close_conversation(command.conversation_id, handle)
    await connection_manager.send(
        context.connection_id,
        ack_frame(op="close", details={"conversation_id": command.conversation_id}),
    )


async def _handle_typing(connection_manager: ConnectionManager, context: ConnectionContext, command: TypingCommand) -> None:
    await context.session.engine.set_typing(command.conversation_id, command.is_typing)
    await connection_manager.send(
        context.connection_id,
        ack_frame(
            op="typing",
            details={"conversation_id": command.conversation_id, "is_typing": command.is_typing},
        ),
    )


async def _handle_read(connection_manager: ConnectionManager, context: ConnectionContext, command: ReadCommand) -> None:
    marker = await context.session.engine.mark_read(command.conversation_id, command.local_id)
    await connection_manager.send(
        context.connection_id,
        ack_frame(
            op="read",
            details={"conversation_id": command.conversation_id, "message_id": marker.message_id},
        ),
    )


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    settings = get_settings()
    token = _extract_access_token(websocket)
    if not token:
        await websocket.close(code=1008)
        return

    try:
        identity = identity_from_token(token)
    except AuthenticationError:
        await websocket.close(code=1008)
        return

    registry: SessionRegistry | None = getattr(websocket.app.state, "sessions", None)
    connection_manager: ConnectionManager | None = getattr(websocket.app.state, "connection_manager", None)
    if registry is None or connection_manager is None:
        await websocket.close(code=1011)
        return

    await websocket.accept()
    session = registry.get_or_create(identity)
    context = await connection_manager.register(websocket, session=session)
    await connection_manager.send(
        context.connection_id,
        welcome_frame(
            connection_id=context.connection_id,
            user_id=identity.user_id,
            heartbeat_sec=settings.ws_heartbeat_sec,
        ),
    )

    rate_events: deque[float] = deque()
    try:
        while True:
            try:
                raw_text = await asyncio.wait_for(websocket.receive_text(), timeout=settings.ws_idle_timeout_sec)
            except asyncio.TimeoutError:
                break
            except WebSocketDisconnect:
                break

            if not _command_allowed(
                rate_events,
                now=monotonic(),
                window_seconds=settings.ws_rate_limit_window_sec,
                max_commands=settings.ws_rate_limit_max_commands,
            ):
                await connection_manager.send(
                    context.connection_id,
                    error_frame(code="RATE_LIMITED", message="Command rate limit exceeded"),
                )
                continue

            try:
                command = parse_command(raw_text, max_bytes=settings.ws_max_command_bytes)
            except ProtocolError as exc:
                await connection_manager.send(context.connection_id, error_frame(code=exc.code, message=exc.message))
                continue

            if isinstance(command, PingCommand):
                await connection_manager.send(context.connection_id, pong_frame(ts=command.ts))
                continue

            try:
                if isinstance(command, OpenCommand):
                    await _handle_open(connection_manager, context, command, timeout=settings.ws_open_timeout_sec)
                elif isinstance(command, CloseCommand):
                    await _handle_close(connection_manager, context, command)
                elif isinstance(command, TypingCommand):
                    await _handle_typing(connection_manager, context, command)
                elif isinstance(command, ReadCommand):
                    await _handle_read(connection_manager, context, command)
            except SyncError as exc:
                logger.info(
                    "WebSocket command rejected connection_id=%s op=%s code=%s",
                    context.connection_id,
                    command.op,
                    exc.code,
                )
                await connection_manager.send(
                    context.connection_id,
                    error_frame(code=exc.code.upper(), message=exc.message),
                )
    finally:
        await connection_manager.unregister(context.connection_id, close_socket=True)
        logger.info("WebSocket session closed connection_id=%s user_id=%s", context.connection_id, identity.user_id)
