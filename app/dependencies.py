"""
Common Dependencies
===================

Request-scoped database session, the authenticated user id, and the
service-key guard for internal routes.
"""

import logging
from typing import Annotated, Optional
import uuid

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import AuthenticationError, ErrorCodes, ForbiddenError
from app.core.security import user_id_from_token, verify_service_key
from app.db.session import get_db

logger = logging.getLogger(__name__)

DBSession = Annotated[AsyncSession, Depends(get_db)]

# auto_error=False so a missing header gets our error body, not FastAPI's
security = HTTPBearer(auto_error=False)


async def get_current_user_id(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> uuid.UUID:
    """User id from the account service's bearer token; 401 otherwise."""
    if credentials is None:
        raise AuthenticationError(code=ErrorCodes.UNAUTHORIZED, message="Not authenticated")

    user_id = user_id_from_token(credentials.credentials)
    if user_id is None:
        raise AuthenticationError(message="Invalid or expired token")

    return user_id


async def require_service_key(
    x_service_key: Annotated[Optional[str], Header(alias="X-Service-Key")] = None,
) -> None:
    """Guard for internal endpoints (job triggers, failed-event listing)."""
    if not verify_service_key(x_service_key):
        logger.warning("Rejected internal request with missing or wrong service key")
        raise ForbiddenError(message="Invalid service key")


CurrentUserId = Annotated[uuid.UUID, Depends(get_current_user_id)]
ServiceKey = Depends(require_service_key)
