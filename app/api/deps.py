"""
API dependency injection module.

Provides the database session, the authenticated user id and the realtime
and notification collaborators to endpoints. Tokens are issued by the
account service; this service only verifies them.
"""

import logging
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import settings
from app.db.async_session import get_async_db
from app.services.notification import NotificationSink, get_notification_sink
from app.services.realtime import RealtimeHub, get_realtime_hub

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

__all__ = [
    "get_async_db",
    "get_current_user_id",
    "decode_access_token",
    "get_realtime_hub",
    "get_notification_sink",
    "RealtimeHub",
    "NotificationSink",
]


def decode_access_token(token: str) -> str:
    """
    Verify a bearer token and return its subject (the user id).

    Raises:
        HTTPException: 401 if the token is invalid, expired or has no subject
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except jwt.PyJWTError as e:
        logger.info(f"Rejected token: {e}")
        raise credentials_exception

    user_id = payload.get("sub")
    if not user_id:
        raise credentials_exception
    return str(user_id)


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    """Get the current authenticated user id from the bearer token."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return decode_access_token(credentials.credentials)
