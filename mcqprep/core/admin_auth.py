"""
Admin authentication for subscription overrides and reconciliation.

Supports hybrid authentication:
- Bearer JWT (preferred): HS256 token signed with ADMIN_JWT_SECRET, role=admin
- Legacy X-Admin-Key: shared secret

Auth modes (ADMIN_AUTH_MODE):
- "jwt": only Bearer JWT allowed
- "legacy": only X-Admin-Key allowed
- "hybrid": both allowed (default)

Every admin action is audited with the actor identity returned here.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Optional, Literal

import jwt
from fastapi import Request, HTTPException

from mcqprep.core.config import settings

logger = logging.getLogger("mcqprep")


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_type: Literal["jwt", "legacy_key"]
    actor_id: str  # JWT subject or "legacy:<hash>"
    actor_email: Optional[str] = None
    auth_mechanism: Literal["bearer_jwt", "x_admin_key"] = "bearer_jwt"


def verify_legacy_key(request: Request) -> Optional[AdminActor]:
    """Verify the X-Admin-Key header. Returns None if absent or wrong."""
    expected_key = settings.ADMIN_API_KEY
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key, expected_key):
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(
        actor_type="legacy_key",
        actor_id=f"legacy:{key_hash}",
        auth_mechanism="x_admin_key",
    )


def verify_admin_jwt(request: Request) -> Optional[AdminActor]:
    """Verify a Bearer JWT carrying role=admin. Returns None if absent or invalid."""
    secret = settings.ADMIN_JWT_SECRET
    if not secret:
        return None

    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    token = auth_header[7:].strip()
    if not token:
        return None

    try:
        claims = jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.InvalidTokenError as e:
        logger.info(f"admin.jwt.rejected: {e}")
        return None

    role = claims.get("role") or (claims.get("public_metadata") or {}).get("role")
    if role != "admin":
        return None

    return AdminActor(
        actor_type="jwt",
        actor_id=claims.get("sub", "unknown"),
        actor_email=claims.get("email"),
        auth_mechanism="bearer_jwt",
    )


def get_admin_actor(request: Request) -> Optional[AdminActor]:
    """
    Attempt to authenticate admin from request (does not raise).

    JWT is tried first when the mode allows it, then the legacy key.
    """
    mode = settings.ADMIN_AUTH_MODE.lower()

    if mode in {"jwt", "hybrid"}:
        actor = verify_admin_jwt(request)
        if actor:
            return actor

    if mode in {"legacy", "hybrid"}:
        actor = verify_legacy_key(request)
        if actor:
            return actor

    return None


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: require admin authentication.

    503 when no admin credential is configured at all, 401 otherwise.
    """
    actor = get_admin_actor(request)
    if actor:
        return actor

    if not settings.ADMIN_JWT_SECRET and not settings.ADMIN_API_KEY:
        raise HTTPException(
            status_code=503,
            detail="Admin authentication not configured",
        )

    raise HTTPException(
        status_code=401,
        detail="Unauthorized: invalid or missing admin credentials",
    )
