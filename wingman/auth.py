"""Admin authentication for the session inspection endpoints.

The relay WebSocket itself is open to browsers; only the admin surface
(session listing, live debug stream, runtime config) is guarded.

  ADMIN_API_KEY set + valid token   → allow
  ADMIN_API_KEY set + wrong/missing → 401 (HTTP) / close 4001 (WS)
  ADMIN_API_KEY empty + DEBUG=true  → allow (local dev convenience)
  ADMIN_API_KEY empty + DEBUG=false → 403 (HTTP) / close 4003 (WS)
"""

from __future__ import annotations

import hmac
import logging

from fastapi import Depends, HTTPException, Query, WebSocket, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from wingman.config import settings

log = logging.getLogger("wingman.auth")

_bearer_scheme = HTTPBearer(auto_error=False)

WS_CLOSE_UNAUTHORIZED = 4001
WS_CLOSE_NOT_CONFIGURED = 4003


def check_admin_token(token: str | None) -> int | None:
    """Return None if the token is acceptable, else the HTTP status to reject with."""
    key = settings.admin_api_key
    if not key:
        return None if settings.debug else status.HTTP_403_FORBIDDEN
    if not token or not hmac.compare_digest(token, key):
        return status.HTTP_401_UNAUTHORIZED
    return None


async def require_admin_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> None:
    """FastAPI dependency that protects HTTP admin endpoints with a bearer token."""
    rejected = check_admin_token(credentials.credentials if credentials else None)
    if rejected == status.HTTP_403_FORBIDDEN:
        raise HTTPException(
            status_code=rejected,
            detail="Admin API key not configured. Set ADMIN_API_KEY in .env.",
        )
    if rejected == status.HTTP_401_UNAUTHORIZED:
        raise HTTPException(
            status_code=rejected,
            detail="Invalid or missing admin token.",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def require_admin_ws(websocket: WebSocket, token: str = Query(default="")) -> bool:
    """WebSocket auth via ?token= (browsers can't set headers on WebSockets).

    Closes the socket and returns False when rejected.
    """
    rejected = check_admin_token(token)
    if rejected is None:
        return True
    if rejected == status.HTTP_403_FORBIDDEN:
        await websocket.close(code=WS_CLOSE_NOT_CONFIGURED, reason="Admin API key not configured")
    else:
        log.warning("Rejected admin WebSocket: bad token")
        await websocket.close(code=WS_CLOSE_UNAUTHORIZED, reason="Unauthorized")
    return False
