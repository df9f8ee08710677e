from fastapi import APIRouter

from chatsync.api.v1 import conversations, messages, presence, receipts, ws

api_router = APIRouter()
api_router.include_router(conversations.router)
api_router.include_router(messages.router)
api_router.include_router(presence.router)
api_router.include_router(receipts.router)
api_router.include_router(ws.router)
