from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from jose import JWTError, jwt

from chatsync.core.errors import AuthenticationError
from chatsync.core.settings import get_settings
from chatsync.schemas.identity import Identity

logger = logging.getLogger(__name__)


def create_access_token(*, subject: str, display_name: str, expires_delta: timedelta | None = None) -> str:
    settings = get_settings()
    now = datetime.now(UTC)
    expire = now + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    payload = {
        "sub": subject,
        "name": display_name,
        "type": "access",
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
    }
    logger.debug("Creating access token subject=%s expires_at=%s", subject, expire.isoformat())
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> dict[str, object]:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        logger.warning("Access token decode failed")
        raise AuthenticationError("Invalid or expired access token") from exc

    if payload.get("type") != "access":
        logger.warning("Invalid token type in access token payload")
        raise AuthenticationError("Invalid token type")

    logger.debug("Access token decoded subject=%s", payload.get("sub"))
    return payload


def identity_from_token(token: str) -> Identity:
    payload = decode_access_token(token)
    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        logger.warning("Token subject is invalid")
        raise AuthenticationError("Token payload is invalid")
    name = payload.get("name")
    display_name = name if isinstance(name, str) and name.strip() else subject
    return Identity(user_id=subject, display_name=display_name)
