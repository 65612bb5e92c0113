"""API key check for the gateway's /api routes."""

from __future__ import annotations

import secrets

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import config

_bearer = HTTPBearer(auto_error=False)


def _is_gateway_key(candidate: str | None) -> bool:
    if not candidate:
        return False
    return secrets.compare_digest(candidate.encode(), config.api_key.encode())


async def require_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> None:
    """Accept the key as a Bearer token or as a ?token= query parameter."""
    presented = [credentials.credentials if credentials else None, request.query_params.get("token")]
    if any(_is_gateway_key(key) for key in presented):
        return
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing API key",
        headers={"WWW-Authenticate": "Bearer"},
    )
