from __future__ import annotations

import logging

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer

from chatsync.core.security import identity_from_token
from chatsync.schemas.identity import Identity
from chatsync.sync.session import SessionRegistry, SyncSession

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/v1/token")


def get_identity(token: str = Depends(oauth2_scheme)) -> Identity:
    logger.debug("Resolving identity from access token")
    identity = identity_from_token(token)
    logger.debug("Resolved identity user_id=%s", identity.user_id)
    return identity


def get_registry(request: Request) -> SessionRegistry:
    registry: SessionRegistry | None = getattr(request.app.state, "sessions", None)
    if registry is None:
        raise RuntimeError("Session registry is not configured")
    return registry


def get_session(
    identity: Identity = Depends(get_identity),
    registry: SessionRegistry = Depends(get_registry),
) -> SyncSession:
    return registry.get_or_create(identity)
