"""
Verified identity claims and bus API key helpers
"""

import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from pydantic import BaseModel

from .errors import AuthorizationError

USER_ADMIN = "ADMIN"
USER_DRIVER = "DRIVER"


class AuthContext(BaseModel):
    """Claims taken from a verified access token"""
    sub: str
    user_type: str
    organization_id: Optional[str] = None
    bus_id: Optional[str] = None


def generate_api_key(length: int = 32) -> str:
    return secrets.token_hex(length)


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def create_access_token(
    secret: str,
    sub: str,
    user_type: str,
    organization_id: Optional[str] = None,
    bus_id: Optional[str] = None,
    algorithm: str = "HS256",
    expires_minutes: int = 15
) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": sub,
        "userType": user_type,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=expires_minutes)).timestamp()),
    }
    if organization_id:
        payload["organizationId"] = organization_id
    if bus_id:
        payload["busId"] = bus_id
    return jwt.encode(payload, secret, algorithm=algorithm)


def verify_token(token: Optional[str], secret: str, algorithm: str = "HS256") -> AuthContext:
    """Decode and verify an access token, raising AuthorizationError on any failure"""
    if not token:
        raise AuthorizationError("Access token required")
    try:
        payload = jwt.decode(token, secret, algorithms=[algorithm])
    except jwt.ExpiredSignatureError:
        raise AuthorizationError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthorizationError("Invalid token")

    sub = payload.get("sub") or payload.get("userId")
    user_type = payload.get("userType")
    if not sub or not user_type:
        raise AuthorizationError("Invalid token")
    return AuthContext(
        sub=str(sub),
        user_type=user_type,
        organization_id=payload.get("organizationId"),
        bus_id=payload.get("busId"),
    )
