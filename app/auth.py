from __future__ import annotations

import logging
from typing import Optional

import jwt
from fastapi import Request

from chat.core.errors import Unauthorized


logger = logging.getLogger("chatapp.auth")


def _read_token(request: Request, cookie_name: str) -> Optional[str]:
    token = request.cookies.get(cookie_name)
    if token:
        return token
    header = request.headers.get("Authorization", "")
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return None


def get_current_user_id(request: Request) -> str:
    """Return the user id carried by the session token.

    Tokens are issued by the login service; this only verifies them.
    """
    settings = request.app.state.settings
    token = _read_token(request, settings.auth_cookie_name)
    if not token:
        raise Unauthorized("Token Not Received")
    if not settings.jwt_secret:
        logger.error("JWT_SECRET is not configured")
        raise Unauthorized("Token verification unavailable")

    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        logger.warning("Token has expired")
        raise Unauthorized("Token Expired")
    except jwt.InvalidTokenError:
        logger.warning("Invalid token provided")
        raise Unauthorized("Invalid token")

    user_id = payload.get("id")
    if not user_id:
        raise Unauthorized("Invalid token")
    return str(user_id)
