"""
Auth utilities for the gameloop API.

Validates HS256 JWTs (`sub` is the user id) signed with JWT_SECRET.
Falls back to the X-User-Id header when AUTH_ALLOW_USER_HEADER is enabled
(local development and tests).
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
import logging

import jwt
from fastapi import Header

from gameloop.core.config import settings
from gameloop.core.errors import AuthError

logger = logging.getLogger("gameloop.api")

ALGORITHM = "HS256"


def issue_token(user_id: str, *, secret: Optional[str] = None, expires_in: timedelta = timedelta(hours=1)) -> str:
    key = secret or settings.JWT_SECRET
    if not key:
        raise AuthError("JWT_SECRET is not configured", code="auth_not_configured", status_code=500)
    now = datetime.now(timezone.utc)
    return jwt.encode({"sub": user_id, "iat": now, "exp": now + expires_in}, key, algorithm=ALGORITHM)


def verify_token(token: str, *, secret: Optional[str] = None) -> str:
    """Return the user id carried by `token` or raise AuthError."""
    key = secret or settings.JWT_SECRET
    if not key:
        raise AuthError("Bearer tokens are not accepted: JWT_SECRET is not configured")
    try:
        payload = jwt.decode(token, key, algorithms=[ALGORITHM], options={"require": ["sub"]})
    except jwt.ExpiredSignatureError:
        raise AuthError("Token has expired", code="token_expired")
    except jwt.InvalidTokenError as exc:
        logger.warning("invalid bearer token", extra={"error_code": "invalid_token", "reason": str(exc)})
        raise AuthError("Invalid token", code="invalid_token")
    user_id = str(payload.get("sub") or "").strip()
    if not user_id:
        raise AuthError("Token has no subject", code="invalid_token")
    return user_id


def get_current_user_id(
    authorization: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
) -> str:
    """FastAPI dependency resolving the calling user."""
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise AuthError("Authorization header must be 'Bearer <token>'")
        return verify_token(token.strip())

    if settings.AUTH_ALLOW_USER_HEADER and x_user_id and x_user_id.strip():
        return x_user_id.strip()

    raise AuthError("Authentication required")
