"""Admin authentication for the head office API.

Tokens are HS256 JWTs signed with ``JWT_SECRET``. The guard is stateless: it
only checks the signature, expiry and that the ``role`` claim is one of
``ADMIN_ROLES``. User management lives outside this service.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from headoffice.config import settings
from headoffice.utils.time import utc_now

logger = logging.getLogger("headoffice.auth")

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AdminPrincipal:
    subject: str
    role: str


def _safe_str(value: object, fallback: str = "") -> str:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped if stripped else fallback
    return fallback


def create_access_token(subject: str, role: str = "admin", expires_minutes: int = 60) -> str:
    """Issue a signed admin token (used by tooling and tests)."""
    payload = {
        "sub": subject,
        "role": role,
        "exp": utc_now() + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise HTTPException(status_code=401, detail=f"Invalid token: {exc}")


async def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[AdminPrincipal]:
    """Decode the bearer token; None when no token was sent."""
    if credentials is None:
        return None

    payload = decode_token(credentials.credentials)
    subject = _safe_str(payload.get("sub"))
    if not subject:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    return AdminPrincipal(subject=subject, role=_safe_str(payload.get("role")).lower())


async def require_auth(
    principal: Optional[AdminPrincipal] = Depends(get_current_principal),
) -> AdminPrincipal:
    """Strict auth dependency; rejects unauthenticated requests."""
    if principal is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return principal


async def require_admin(principal: AdminPrincipal = Depends(require_auth)) -> AdminPrincipal:
    if principal.role not in settings.admin_roles_set:
        logger.warning("Rejected non-admin principal %s (role=%s)", principal.subject, principal.role)
        raise HTTPException(
            status_code=403,
            detail=f"Requires one of: {', '.join(sorted(settings.admin_roles_set))}",
        )
    return principal
