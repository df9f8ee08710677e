from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from chatsync.api.deps import get_session
from chatsync.core.errors import success_response
from chatsync.schemas.presence import TypingRead, TypingRequest
from chatsync.sync.session import SyncSession

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/conversations/{conversation_id}/typing", tags=["presence"])


def _typing_payload(conversation_id: str, user_ids: set[str]) -> dict[str, object]:
    return TypingRead(conversation_id=conversation_id, user_ids=sorted(user_ids)).model_dump(mode="json")


@router.get("")
async def get_typing(conversation_id: str, session: SyncSession = Depends(get_session)):
    return success_response(_typing_payload(conversation_id, session.engine.get_typing(conversation_id)))


@router.put("")
async def set_typing(
    conversation_id: str,
    payload: TypingRequest,
    session: SyncSession = Depends(get_session),
):
    logger.debug(
        "Set typing endpoint hit user_id=%s conversation_id=%s is_typing=%s",
        session.identity.user_id,
        conversation_id,
        payload.is_typing,
    )
    await session.engine.set_typing(conversation_id, payload.is_typing)
    return success_response(_typing_payload(conversation_id, session.engine.get_typing(conversation_id)))
