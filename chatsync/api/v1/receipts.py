from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from chatsync.api.deps import get_session
from chatsync.core.errors import success_response
from chatsync.schemas.receipts import MarkReadRequest, ReadMarkerRead, ReceiptsRead
from chatsync.sync.session import SyncSession

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/conversations/{conversation_id}/read", tags=["receipts"])


@router.get("")
async def get_receipts(conversation_id: str, session: SyncSession = Depends(get_session)):
    markers = session.engine.get_receipts(conversation_id)
    payload = ReceiptsRead(
        conversation_id=conversation_id,
        markers=[ReadMarkerRead.model_validate(marker) for marker in markers],
    )
    return success_response(payload.model_dump(mode="json"))


@router.post("")
async def mark_read(
    conversation_id: str,
    payload: MarkReadRequest,
    session: SyncSession = Depends(get_session),
):
    logger.info(
        "Mark read endpoint hit user_id=%s conversation_id=%s local_id=%s",
        session.identity.user_id,
        conversation_id,
        payload.local_id,
    )
    marker = await session.engine.mark_read(conversation_id, payload.local_id)
    return success_response(ReadMarkerRead.model_validate(marker).model_dump(mode="json"))
