"""
InvoiceFlow Authentication

JWT bearer tokens carry the caller's identity and workflow role.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel

import jwt

from invoiceflow.core.audit import RequestMetadata
from invoiceflow.core.config import get_settings
from invoiceflow.services.errors import AuthenticationError

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60

# Bearer token security
security = HTTPBearer(auto_error=False)


class Actor(BaseModel):
    """Authenticated caller. `role` is kept as presented; authorization normalizes it."""
    user_id: str
    role: str
    name: Optional[str] = None
    vendor_id: Optional[str] = None


def create_access_token(
    user_id: str,
    role: str,
    name: Optional[str] = None,
    vendor_id: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create a JWT access token."""
    if expires_delta is None:
        expires_delta = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)

    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "role": role,
        "name": name,
        "vendor_id": vendor_id,
        "exp": now + expires_delta,
        "iat": now,
        "type": "access",
    }

    return jwt.encode(payload, get_settings().secret_key, algorithm=ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    """Decode and validate a JWT token."""
    try:
        return jwt.decode(token, get_settings().secret_key, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired")
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token")


def get_current_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Actor:
    """Resolve the caller from `Authorization: Bearer <jwt>`."""
    if not credentials or not credentials.credentials:
        raise AuthenticationError()

    payload = decode_token(credentials.credentials)
    if payload.get("type") != "access":
        raise AuthenticationError("Invalid token type")
    if not payload.get("sub") or not payload.get("role"):
        raise AuthenticationError("Token is missing subject or role")

    return Actor(
        user_id=str(payload["sub"]),
        role=str(payload["role"]),
        name=payload.get("name"),
        vendor_id=payload.get("vendor_id"),
    )


def get_request_metadata(request: Request) -> RequestMetadata:
    """Client IP (first X-Forwarded-For hop, then X-Real-IP, then socket) and user agent."""
    forwarded = request.headers.get("x-forwarded-for")
    ip_address = None
    if forwarded:
        ip_address = forwarded.split(",")[0].strip() or None
    if not ip_address:
        ip_address = request.headers.get("x-real-ip")
    if not ip_address and request.client:
        ip_address = request.client.host
    return RequestMetadata(
        ip_address=ip_address or "unknown",
        user_agent=request.headers.get("user-agent") or "unknown",
    )
