"""
Session lookup.

Callers present a bearer JWT (e.g. a Supabase access token). The only thing
the service needs from it is an opaque user id, taken from the `sub` claim.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from . import config
from .errors import Unauthenticated

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def decode_user_id(token: str, settings: config.Settings) -> str:
    if not settings.jwt_secret:
        logger.warning("JWT_SECRET is not configured; rejecting session")
        raise Unauthenticated("Session verification is not configured")

    options = {"verify_aud": settings.jwt_audience is not None}
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            options=options,
        )
    except JWTError as exc:
        logger.debug("Rejected token: %s", exc)
        raise Unauthenticated("Invalid session token") from exc

    sub = payload.get("sub")
    if not isinstance(sub, str) or not sub.strip():
        raise Unauthenticated("Token missing 'sub' claim")
    return sub


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    settings: config.Settings = Depends(config.get_settings),
) -> str:
    if credentials is None or not credentials.credentials:
        raise Unauthenticated("Missing bearer token")
    return decode_user_id(credentials.credentials, settings)
