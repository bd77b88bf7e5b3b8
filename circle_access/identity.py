"""
Caller Identity
===============

Resolves the caller of a request to a stable user id:

1. `Authorization: Bearer <jwt>` (preferred when present, `sub` = user id)
2. `X-User-Id` header (trusted gateway / development, see ALLOW_HEADER_IDENTITY)

The id is only a claim; the profile behind it is loaded by the relationship
index for every decision.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

import jwt

from .config import get_settings

logger = logging.getLogger(__name__)


def create_access_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token for a profile id"""
    settings = get_settings()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes))
    payload = {"sub": user_id, "exp": expire, "type": "access"}
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate a JWT token"""
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError as e:
        logger.warning(f"Invalid JWT token: {e}")
        return None


def resolve_caller_id(authorization: Optional[str], x_user_id: Optional[str]) -> Optional[str]:
    """
    Pick the caller id from request headers.

    A bearer token that fails validation yields None even if X-User-Id is
    also present.
    """
    if authorization and authorization.lower().startswith("bearer "):
        payload = decode_token(authorization.split(" ", 1)[1].strip())
        if not payload or payload.get("type") != "access":
            return None
        return payload.get("sub")

    if x_user_id and get_settings().allow_header_identity:
        return x_user_id.strip() or None

    return None
