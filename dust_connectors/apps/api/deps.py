from __future__ import annotations

import hmac
from typing import AsyncGenerator

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from dust_connectors.core.config import get_settings
from dust_connectors.persistence.db import get_session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=message,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


async def require_api_secret(authorization: str | None = Header(default=None)) -> None:
    # The front service authenticates with one shared secret; fail closed when it is unset.
    expected = get_settings().connectors_api_secret
    token = _parse_bearer_token(authorization)
    if not expected or token is None:
        raise _auth_error("Missing or invalid bearer token")
    if not hmac.compare_digest(expected.encode("utf-8"), token.encode("utf-8")):
        raise _auth_error("Missing or invalid bearer token")
