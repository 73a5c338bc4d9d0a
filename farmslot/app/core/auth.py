"""
Caller identification.

The storefront authenticates users and hands us a signed bearer token whose
claims carry the user id (`sub`) and role. Identity is only ever taken from
that token, never from request bodies.
"""
from datetime import timedelta
from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException
from pydantic import BaseModel

from farmslot.app.core.constants import ROLE_ADMIN, VALID_ROLES, utcnow
from farmslot.app.core.logging import bind_request_context, get_logger
from farmslot.app.core.settings import get_settings

logger = get_logger(__name__)

JWT_ALGORITHM = "HS256"
JWT_EXPIRY_HOURS = 24


class Caller(BaseModel):
    """Authenticated identity consumed by the reservation engine."""
    id: int
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def _jwt_secret() -> str:
    secret = get_settings().JWT_SECRET
    if not secret:
        raise HTTPException(status_code=500, detail="Server configuration error: JWT_SECRET not set")
    return secret


def create_access_token(user_id: int, role: str, expires_hours: int = JWT_EXPIRY_HOURS) -> str:
    """
    Create a bearer token for a user.

    Issued by the storefront's login flow; exposed here for tooling and tests.
    """
    if role not in VALID_ROLES:
        raise ValueError(f"Unknown role: {role}")
    now = utcnow()
    payload = {
        "sub": str(user_id),
        "role": role,
        "iat": now,
        "exp": now + timedelta(hours=expires_hours),
    }
    return jwt.encode(payload, _jwt_secret(), algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> Optional[Caller]:
    """Decode a bearer token. Returns None if it is invalid, expired or carries an unknown role."""
    try:
        payload = jwt.decode(token, _jwt_secret(), algorithms=[JWT_ALGORITHM])
        role = payload.get("role")
        if role not in VALID_ROLES:
            return None
        return Caller(id=int(payload["sub"]), role=role)
    except (jwt.InvalidTokenError, ValueError, KeyError):
        return None


async def get_current_caller(
    authorization: Optional[str] = Header(None),
) -> Caller:
    """
    FastAPI dependency resolving the caller from "Authorization: Bearer <token>".

    Raises:
        HTTPException 401: If the header is missing or the token is invalid
    """
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(
            status_code=401,
            detail="Invalid Authorization header format. Expected: Bearer <token>",
        )

    caller = decode_access_token(parts[1])
    if caller is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    bind_request_context(caller_id=caller.id, role=caller.role)
    return caller


async def get_optional_caller(
    authorization: Optional[str] = Header(None),
) -> Optional[Caller]:
    """Like get_current_caller but returns None instead of failing."""
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return decode_access_token(parts[1])


async def require_admin_or_scheduler(
    x_internal_key: Optional[str] = Header(None, alias="X-Internal-Key"),
    caller: Optional[Caller] = Depends(get_optional_caller),
) -> str:
    """
    Allow an admin token or the external scheduler's internal key.
    Returns who triggered the call, for audit logging.
    """
    settings = get_settings()
    if settings.INTERNAL_API_KEY and x_internal_key and x_internal_key == settings.INTERNAL_API_KEY:
        return "scheduler"
    if caller is not None and caller.is_admin:
        return f"admin:{caller.id}"
    if caller is None and not x_internal_key:
        raise HTTPException(status_code=401, detail="Missing admin token or internal API key")
    logger.warning("Rejected maintenance call", caller_id=caller.id if caller else None)
    raise HTTPException(status_code=403, detail="Admin role or internal API key required")


async def get_caller_or_scheduler(
    x_internal_key: Optional[str] = Header(None, alias="X-Internal-Key"),
    caller: Optional[Caller] = Depends(get_optional_caller),
) -> Optional[Caller]:
    """
    For maintenance endpoints open to users and the scheduler alike.
    Returns None for the scheduler; role checks are left to the service.
    """
    settings = get_settings()
    if settings.INTERNAL_API_KEY and x_internal_key and x_internal_key == settings.INTERNAL_API_KEY:
        return None
    if caller is None:
        raise HTTPException(status_code=401, detail="Missing token or internal API key")
    bind_request_context(caller_id=caller.id, role=caller.role)
    return caller
