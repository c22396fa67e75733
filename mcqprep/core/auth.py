"""
Auth utilities for the user-facing API.

Validates identity-issued JWTs and extracts user_id from request context.
Falls back to X-User-Id header when no JWT secret is configured (local dev, tests).
"""
import logging
from typing import Optional

import jwt
from fastapi import Header, HTTPException, Request

from mcqprep.core.config import settings

logger = logging.getLogger("mcqprep")


def verify_user_jwt(token: str) -> Optional[str]:
    """
    Verify a user JWT and extract the user id from its 'sub' claim.

    Returns None when no AUTH_JWT_SECRET is configured.

    Raises:
        HTTPException 401: invalid or expired token
    """
    if not settings.AUTH_JWT_SECRET:
        return None

    try:
        payload = jwt.decode(token, settings.AUTH_JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Token has no subject")
    return user_id


def _extract_user_id(request: Request, x_user_id: Optional[str]) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        user_id = verify_user_jwt(auth_header[7:].strip())
        if user_id:
            return user_id

    if x_user_id and not settings.AUTH_JWT_SECRET:
        return x_user_id

    return None


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Local/test user ID"),
) -> str:
    """
    Priority:
    1. Bearer JWT from Authorization header
    2. X-User-Id header (only when AUTH_JWT_SECRET is unset)
    3. 401
    """
    user_id = _extract_user_id(request, x_user_id)
    if user_id:
        return user_id

    raise HTTPException(
        status_code=401,
        detail="Missing Authorization (Bearer JWT) or X-User-Id header",
    )


async def get_optional_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Local/test user ID"),
) -> Optional[str]:
    """Like get_current_user_id but returns None for anonymous (guest) callers."""
    return _extract_user_id(request, x_user_id)
