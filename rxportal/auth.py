"""JWT bearer authentication for the portal API.

Tokens carry ``sub`` (the user id) and ``role``.  Users with the ``admin``
role pass every role check.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from rxportal.config import get_settings

ACCESS_TOKEN_EXPIRE_MINUTES = 60

security = HTTPBearer(auto_error=False)


def create_access_token(
    user_id: str,
    role: str,
    *,
    expires_minutes: int | None = None,
) -> str:
    """Create a signed JWT access token for ``user_id``."""
    settings = get_settings()
    minutes = expires_minutes or ACCESS_TOKEN_EXPIRE_MINUTES
    payload = {
        "sub": user_id,
        "role": role,
        "type": "access",
        "exp": datetime.now(timezone.utc) + timedelta(minutes=minutes),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str, required_role: str | None = None) -> Dict[str, Any]:
    """Decode ``token`` and optionally enforce ``required_role``."""
    settings = get_settings()
    try:
        data = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    if not data.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    if required_role and data.get("role") not in (required_role, "admin"):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient privileges",
        )
    return data


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> Dict[str, Any]:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return decode_token(credentials.credentials)


def require_role(role: str):
    """Dependency factory ensuring the current user has a given role."""

    def checker(
        credentials: HTTPAuthorizationCredentials | None = Depends(security),
    ) -> Dict[str, Any]:
        if credentials is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Not authenticated",
            )
        return decode_token(credentials.credentials, required_role=role)

    return checker


__all__ = [
    "ACCESS_TOKEN_EXPIRE_MINUTES",
    "create_access_token",
    "decode_token",
    "get_current_user",
    "require_role",
]
