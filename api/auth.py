"""
JWT bearer authentication dependency for the exposure API.

The engine trusts the user identity it is given; this layer only checks that
the caller holds a valid token.
"""

from __future__ import annotations

from typing import Any

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer

from config.settings import settings

security = HTTPBearer()


async def require_auth(credentials=Depends(security)) -> dict[str, Any]:
    try:
        return jwt.decode(
            credentials.credentials,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")
