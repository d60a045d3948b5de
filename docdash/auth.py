# docdash/auth.py
import logging
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, WebSocket, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from docdash.config import settings

logger = logging.getLogger(__name__)

_bearer = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class SessionContext:
    """The signed-in user, passed explicitly to everything that acts on their behalf."""

    user_id: str
    email: Optional[str] = None
    access_token: Optional[str] = None


def decode_access_token(token: str) -> dict:
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=["HS256"],
        audience=settings.jwt_audience,
    )


def context_from_token(token: Optional[str]) -> SessionContext:
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    try:
        claims = decode_access_token(token)
    except jwt.PyJWTError as e:
        logger.info("Rejected access token: %s", e)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")
    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token has no subject")
    return SessionContext(user_id=str(user_id), email=claims.get("email"), access_token=token)


# FastAPI dependency
def get_session_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
) -> SessionContext:
    return context_from_token(credentials.credentials if credentials else None)


def websocket_session_context(websocket: WebSocket) -> SessionContext:
    return context_from_token(websocket.query_params.get("token"))
