from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, status

from chatsync.api.deps import get_session
from chatsync.core.errors import success_response
from chatsync.core.settings import get_settings
from chatsync.schemas.conversations import (
    AddParticipantsRequest,
    Conversation,
    ConversationSummary,
    DirectConversationCreateRequest,
    GroupConversationCreateRequest,
)
from chatsync.sync.session import SyncSession

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/conversations", tags=["conversations"])


def conversation_payload(conversation: Conversation, viewer_id: str) -> dict[str, object]:
    summary = ConversationSummary(
        id=conversation.id,
        participant_ids=conversation.participant_ids,
        is_group=conversation.is_group,
        name=conversation.name,
        display_name=conversation.display_name(viewer_id),
        last_message=conversation.last_message,
        created_at=conversation.created_at,
        created_by=conversation.created_by,
    )
    return summary.model_dump(mode="json")


@router.get("")
async def list_conversations(session: SyncSession = Depends(get_session)):
    user_id = session.identity.user_id
    logger.info("List conversations endpoint hit user_id=%s", user_id)
    conversations = await session.directory.list(user_id)
    return success_response([conversation_payload(item, user_id) for item in conversations])


@router.post("/direct")
async def open_or_create_direct(
    payload: DirectConversationCreateRequest,
    session: SyncSession = Depends(get_session),
):
    user_id = session.identity.user_id
    logger.info(
        "Open/create direct conversation endpoint hit user_id=%s other_user_id=%s",
        user_id,
        payload.other_user_id,
    )
    conversation = await session.directory.get_or_create_direct([user_id, payload.other_user_id])
    return success_response(conversation_payload(conversation, user_id))


@router.post("/groups")
async def create_group(
    payload: GroupConversationCreateRequest,
    session: SyncSession = Depends(get_session),
):
    user_id = session.identity.user_id
    logger.info("Create group endpoint hit user_id=%s participants=%s", user_id, len(payload.participant_ids))
    conversation = await session.directory.create_group(payload.participant_ids, payload.name)
    return success_response(conversation_payload(conversation, user_id), status_code=status.HTTP_201_CREATED)


@router.post("/{conversation_id}/participants")
async def add_participants(
    conversation_id: str,
    payload: AddParticipantsRequest,
    session: SyncSession = Depends(get_session),
):
    user_id = session.identity.user_id
    logger.info("Add participants endpoint hit user_id=%s conversation_id=%s", user_id, conversation_id)
    conversation = await session.directory.add_participants(conversation_id, payload.participant_ids)
    return success_response(conversation_payload(conversation, user_id))


@router.post("/{conversation_id}/open")
async def open_conversation(conversation_id: str, session: SyncSession = Depends(get_session)):
    settings = get_settings()
    user_id = session.identity.user_id
    logger.info("Open conversation endpoint hit user_id=%s conversation_id=%s", user_id, conversation_id)
    await session.engine.open_conversation(conversation_id)
    live = await session.engine.wait_live(conversation_id, timeout=settings.ws_open_timeout_sec)
    conversation = session.directory.cached(conversation_id) or await session.directory.get(conversation_id)
    return success_response(
        {
            "conversation": conversation_payload(conversation, user_id),
            "state": session.engine.state(conversation_id).value,
            "live": live,
            "refs": session.engine.reference_count(conversation_id),
        }
    )


@router.post("/{conversation_id}/close")
async def close_conversation(conversation_id: str, session: SyncSession = Depends(get_session)):
    logger.info(
        "Close conversation endpoint hit user_id=%s conversation_id=%s",
        session.identity.user_id,
        conversation_id,
    )
    session.engine.close_conversation(conversation_id)
    return success_response(
        {
            "conversation_id": conversation_id,
            "state": session.engine.state(conversation_id).value,
            "refs": session.engine.reference_count(conversation_id),
        }
    )
