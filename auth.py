"""
Login sessions as signed JWTs, and the FastAPI dependencies that protect
routes.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, Header, Request, Response

from database import get_db, now
from errors import AuthError, ForbiddenError
import settings
import users

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
COOKIE_NAME = "jwt"


def sign_token(user_id) -> str:
    issued = now()
    payload = {
        "id": str(user_id),
        "iat": int(issued.timestamp()),
        "exp": int((issued + timedelta(days=settings.JWT_EXPIRES_IN_DAYS)).timestamp()),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthError("Your token has expired! Please log in again.")
    except jwt.PyJWTError:
        raise AuthError("Invalid token. Please log in again!")


def send_token(response: Response, user: Dict[str, Any]) -> Dict[str, Any]:
    """Issue a token for `user`, set it as an http-only cookie and build the response body."""
    token = sign_token(user["_id"])
    response.set_cookie(
        COOKIE_NAME,
        token,
        max_age=settings.JWT_EXPIRES_IN_DAYS * 24 * 60 * 60,
        httponly=True,
        secure=settings.JWT_COOKIE_SECURE,
        samesite="lax",
    )
    return {"status": "success", "token": token, "data": {"user": users.public(user)}}


def clear_token(response: Response) -> None:
    response.set_cookie(COOKIE_NAME, "loggedout", max_age=10, httponly=True)


def _token_from(request: Request, authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1].strip()
    cookie = request.cookies.get(COOKIE_NAME)
    if cookie and cookie != "loggedout":
        return cookie
    return None


def get_current_user(request: Request, authorization: Optional[str] = Header(None), db=Depends(get_db)):
    token = _token_from(request, authorization)
    if not token:
        raise AuthError("You are not logged in! Please log in to get access.")
    payload = decode_token(token)
    if not payload.get("id"):
        raise AuthError("Invalid token. Please log in again!")
    user = users.find_user_record(db, payload["id"])
    if not user:
        raise AuthError("The user belonging to this token does no longer exist.")
    if users.changed_password_after(user, payload.get("iat", 0)):
        raise AuthError("User recently changed password! Please log in again.")
    return users.public(user)


def restrict_to(*roles: str):
    """Dependency factory: only let the given roles through."""
    def checker(current=Depends(get_current_user)):
        if current.get("role") not in roles:
            logger.info("User %s (%s) denied, needs one of %s", current.get("id"), current.get("role"), roles)
            raise ForbiddenError("You do not have permission to perform this action")
        return current
    return checker
