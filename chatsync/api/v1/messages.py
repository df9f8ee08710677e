from __future__ import annotations

from datetime import datetime
import logging

from fastapi import APIRouter, Depends, Query, status

from chatsync.api.deps import get_session
from chatsync.core.clock import ensure_utc
from chatsync.core.errors import InvalidArgumentError, UnauthorizedError, success_response
from chatsync.core.rate_limit import enforce_send_rate_limit
from chatsync.schemas.identity import Identity
from chatsync.schemas.messages import (
    EditMessageRequest,
    Message,
    MessageRead,
    MessageStatus,
    SendMessageRequest,
)
from chatsync.sync.delivery import Delivery
from chatsync.sync.session import SyncSession

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/conversations/{conversation_id}/messages", tags=["messages"])


def message_payload(message: Message) -> dict[str, object]:
    return MessageRead.model_validate(message).model_dump(mode="json")


async def _require_participant(session: SyncSession, conversation_id: str) -> None:
    conversation = session.directory.cached(conversation_id) or await session.directory.get(conversation_id)
    if not conversation.has_participant(session.identity.user_id):
        logger.warning(
            "Message access denied user_id=%s conversation_id=%s",
            session.identity.user_id,
            conversation_id,
        )
        raise UnauthorizedError("Not a participant of this conversation", code="forbidden_conversation")


async def _delivery_response(session: SyncSession, delivery: Delivery, wait: bool):
    if not wait:
        provisional = session.messages.get(delivery.conversation_id, delivery.local_id)
        return success_response(message_payload(provisional), status_code=status.HTTP_202_ACCEPTED)
    message = await delivery
    status_code = status.HTTP_201_CREATED if message.status is MessageStatus.SENT else status.HTTP_200_OK
    return success_response(message_payload(message), status_code=status_code)


@router.get("")
async def list_messages(
    conversation_id: str,
    limit: int = Query(default=50, ge=1, le=100),
    before_created_at: datetime | None = Query(default=None),
    before_id: str | None = Query(default=None, max_length=64),
    session: SyncSession = Depends(get_session),
):
    if (before_created_at is None) != (before_id is None):
        raise InvalidArgumentError("before_created_at and before_id must be given together")
    cursor = (ensure_utc(before_created_at), before_id) if before_created_at is not None and before_id else None
    logger.debug(
        "List messages endpoint hit user_id=%s conversation_id=%s limit=%s",
        session.identity.user_id,
        conversation_id,
        limit,
    )
    messages = await session.engine.load_page(conversation_id, limit, cursor)
    return success_response({"messages": [message_payload(message) for message in messages]})


@router.get("/search")
async def search_messages(
    conversation_id: str,
    q: str = Query(min_length=1, max_length=200),
    limit: int = Query(default=50, ge=1, le=100),
    session: SyncSession = Depends(get_session),
):
    messages = session.messages.search(conversation_id, q, limit=limit)
    return success_response({"messages": [message_payload(message) for message in messages]})


@router.post("")
async def send_message(
    conversation_id: str,
    payload: SendMessageRequest,
    wait: bool = Query(default=False),
    _: Identity = Depends(enforce_send_rate_limit),
    session: SyncSession = Depends(get_session),
):
    await _require_participant(session, conversation_id)
    logger.info(
        "Send message endpoint hit user_id=%s conversation_id=%s kind=%s",
        session.identity.user_id,
        conversation_id,
        payload.content.kind,
    )
    delivery = session.delivery.send(conversation_id, payload.content, reply_to=payload.reply_to_local_id)
    return await _delivery_response(session, delivery, wait)


@router.post("/{local_id}/retry")
async def retry_message(
    conversation_id: str,
    local_id: str,
    wait: bool = Query(default=False),
    session: SyncSession = Depends(get_session),
):
    logger.info("Retry message endpoint hit user_id=%s local_id=%s", session.identity.user_id, local_id)
    delivery = session.delivery.retry(local_id)
    if delivery.conversation_id != conversation_id:
        raise InvalidArgumentError("Message belongs to a different conversation")
    return await _delivery_response(session, delivery, wait)


@router.patch("/{local_id}")
async def edit_message(
    conversation_id: str,
    local_id: str,
    payload: EditMessageRequest,
    session: SyncSession = Depends(get_session),
):
    logger.info("Edit message endpoint hit user_id=%s local_id=%s", session.identity.user_id, local_id)
    message = await session.delivery.edit(conversation_id, local_id, payload.text)
    return success_response(message_payload(message))


@router.delete("/{local_id}")
async def delete_message(
    conversation_id: str,
    local_id: str,
    session: SyncSession = Depends(get_session),
):
    logger.info("Delete message endpoint hit user_id=%s local_id=%s", session.identity.user_id, local_id)
    message = await session.delivery.delete(conversation_id, local_id)
    return success_response(message_payload(message))


@router.put("/{local_id}/reactions/{emoji}")
async def add_reaction(
    conversation_id: str,
    local_id: str,
    emoji: str,
    session: SyncSession = Depends(get_session),
):
    logger.info("Add reaction endpoint hit user_id=%s local_id=%s", session.identity.user_id, local_id)
    message = await session.delivery.add_reaction(conversation_id, local_id, emoji)
    return success_response(message_payload(message))


@router.delete("/{local_id}/reactions/{emoji}")
async def remove_reaction(
    conversation_id: str,
    local_id: str,
    emoji: str,
    session: SyncSession = Depends(get_session),
):
    logger.info("Remove reaction endpoint hit user_id=%s local_id=%s", session.identity.user_id, local_id)
    message = await session.delivery.remove_reaction(conversation_id, local_id, emoji)
    return success_response(message_payload(message))
