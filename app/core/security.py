"""
Security Module
===============

Bearer tokens are issued by the account service; this service only
verifies them and reads the user id from ``sub``. Scheduler and admin
calls authenticate with a shared service key instead.
"""

from datetime import datetime, timedelta, timezone
import hmac
import uuid
from typing import Any, Optional

from jose import JWTError, jwt

from app.config import settings

ACCESS_TOKEN_TYPE = "access"


def create_access_token(
    data: dict[str, Any],
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Sign a short-lived access token. Used by local tooling and tests."""
    issued_at = datetime.now(timezone.utc)
    claims = {
        **data,
        "iat": issued_at,
        "exp": issued_at + (expires_delta or timedelta(minutes=15)),
        "type": ACCESS_TOKEN_TYPE,
    }
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> Optional[dict[str, Any]]:
    """Return the verified claims, or None for a bad signature or expired token."""
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None


def user_id_from_token(token: str) -> Optional[uuid.UUID]:
    """
    Resolve the caller of a bearer token.

    Tokens without a ``type`` claim are treated as access tokens; refresh
    tokens and tokens whose ``sub`` is not a UUID are rejected.
    """
    claims = decode_token(token)
    if claims is None or claims.get("type", ACCESS_TOKEN_TYPE) != ACCESS_TOKEN_TYPE:
        return None

    subject = claims.get("sub")
    if not subject:
        return None
    try:
        return uuid.UUID(str(subject))
    except ValueError:
        return None


def verify_service_key(provided: Optional[str]) -> bool:
    """Constant-time check of an internal service key. Unset key disables the routes."""
    if not settings.SERVICE_API_KEY or not provided:
        return False
    return hmac.compare_digest(provided.encode(), settings.SERVICE_API_KEY.encode())
