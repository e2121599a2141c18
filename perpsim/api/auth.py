"""Bearer-token guard for the backtest routers.

``PERPSIM_API_KEY`` empty means a local run and every request is let through.
"""
from __future__ import annotations

import logging
import secrets

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings

logger = logging.getLogger(__name__)
bearer_scheme = HTTPBearer(auto_error=False)


def require_api_key(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> None:
    api_key = settings.api_key.strip()
    if not api_key:
        return

    supplied = credentials.credentials if credentials else ""
    if secrets.compare_digest(supplied.encode(), api_key.encode()):
        return

    client = request.client.host if request.client else "unknown"
    logger.warning("Rejected %s %s from %s: %s token", request.method, request.url.path, client,
                   "bad" if supplied else "missing")
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing API token",
        headers={"WWW-Authenticate": "Bearer"},
    )
