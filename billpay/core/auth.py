"""
Bill Pay caller identity

Authentication is external. Requests arrive either with a Bearer JWT
issued by the identity provider (signed with ``BILLPAY_SECRET_KEY``) or
through a trusted gateway that forwards ``X-Organization-ID``,
``X-User-ID`` and ``X-User-Roles`` headers.
"""

import os
import secrets
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import jwt
from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

SECRET_KEY = os.getenv("BILLPAY_SECRET_KEY", secrets.token_urlsafe(32))
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60

security = HTTPBearer(auto_error=False)


class CallerIdentity(BaseModel):
    """Who is calling, on behalf of which organization."""
    user_id: str
    organization_id: str
    roles: List[str] = Field(default_factory=list)


def create_access_token(
    user_id: str,
    organization_id: str,
    roles: Optional[List[str]] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create a JWT access token (used by tests and service-to-service callers)."""
    if expires_delta is None:
        expires_delta = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "org": organization_id,
        "roles": list(roles or []),
        "exp": now + expires_delta,
        "iat": now,
        "type": "access",
    }
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT token."""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token has expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def _split_roles(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


def get_caller(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    x_organization_id: Optional[str] = Header(None, alias="X-Organization-ID"),
    x_user_id: Optional[str] = Header(None, alias="X-User-ID"),
    x_user_roles: Optional[str] = Header(None, alias="X-User-Roles"),
) -> CallerIdentity:
    """
    Resolve the caller from a Bearer token or gateway headers.

    Supports:
    - Bearer token: Authorization: Bearer <jwt>
    - Gateway headers: X-Organization-ID, X-User-ID, X-User-Roles (comma separated)
    """
    if credentials and credentials.credentials:
        payload = decode_token(credentials.credentials)
        if payload.get("type") != "access":
            raise HTTPException(status_code=401, detail="Invalid token type")
        if not payload.get("sub") or not payload.get("org"):
            raise HTTPException(status_code=401, detail="Token missing subject or organization")
        return CallerIdentity(
            user_id=payload["sub"],
            organization_id=payload["org"],
            roles=list(payload.get("roles") or []),
        )

    if x_organization_id and x_user_id:
        return CallerIdentity(
            user_id=x_user_id,
            organization_id=x_organization_id,
            roles=_split_roles(x_user_roles),
        )

    raise HTTPException(
        status_code=401,
        detail="Not authenticated. Provide Bearer token or X-Organization-ID/X-User-ID headers.",
    )
