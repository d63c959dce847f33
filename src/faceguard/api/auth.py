"""Operator authentication for the FaceGuard API.

The console authenticates with one shared key, ``FACEGUARD_API_KEY``, sent
as a Bearer token. Leaving the key unset turns authentication off.
"""

from __future__ import annotations

import logging
import secrets
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

logger = logging.getLogger(__name__)

_operator_token = HTTPBearer(auto_error=False, description="Operator API key")


def _key_matches(presented: str, expected: str) -> bool:
    return secrets.compare_digest(presented.encode(), expected.encode())


async def require_operator(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_operator_token)],
) -> None:
    expected: str | None = request.app.state.settings.api_key
    if expected is None:
        return
    if credentials is not None and _key_matches(credentials.credentials, expected):
        return

    logger.warning("Rejected %s %s: bad operator key", request.method, request.url.path)
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing API key",
        headers={"WWW-Authenticate": "Bearer"},
    )
