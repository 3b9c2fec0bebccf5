"""
Security and Authentication Module

This module provides the two authentication schemes of the Citizen Alerts
API: bearer JWTs identifying citizens, and a shared service key presented by
downstream services pushing status updates.
"""

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, Optional

import jwt
import structlog
from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import settings
from app.core.exceptions import UnauthorizedError

# =============================================================================
# Logger Setup
# =============================================================================

logger = structlog.get_logger(__name__)

# =============================================================================
# Security Configuration
# =============================================================================

ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24

SERVICE_KEY_HEADER = "x-service-key"

# HTTP Bearer token scheme
security = HTTPBearer(auto_error=False)


@dataclass
class Principal:
    """Authenticated citizen. ``sub`` is the stable citizen identifier."""
    sub: str
    claims: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# JWT Token Operations
# =============================================================================

def create_access_token(
    subject: str,
    expires_delta: Optional[timedelta] = None,
    additional_claims: Optional[Dict[str, Any]] = None
) -> str:
    """
    Create a citizen access token.

    Tokens are normally issued by the identity provider; this is used by
    tooling and tests.
    """
    now = datetime.now(timezone.utc)
    to_encode = {
        "exp": now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)),
        "sub": str(subject),
        "iat": now,
    }
    if additional_claims:
        to_encode.update(additional_claims)

    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    """
    Decode and validate a JWT.

    Raises:
        UnauthorizedError: invalid signature, expired, or missing subject
    """
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM]
        )
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Token has expired")
    except jwt.PyJWTError as e:
        logger.debug("JWT decode error", error=str(e))
        raise UnauthorizedError("Invalid token")

    if not payload.get("sub"):
        raise UnauthorizedError("Token missing subject")

    return payload


# =============================================================================
# Authentication Dependencies
# =============================================================================

async def get_current_citizen(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> Principal:
    """
    Require a valid citizen token.

    Raises:
        UnauthorizedError: 401 if no valid bearer token is presented
    """
    if not credentials:
        raise UnauthorizedError()

    payload = decode_token(credentials.credentials)
    principal = Principal(sub=str(payload["sub"]), claims=payload)

    logger.debug("Citizen authenticated", citizen_id=principal.sub)
    return principal


def is_valid_service_key(candidate: Optional[str]) -> bool:
    """Constant-time comparison against the configured service key."""
    expected = settings.SERVICE_API_KEY
    if not expected or not candidate:
        return False
    return secrets.compare_digest(candidate.encode(), expected.encode())


async def verify_service_key(
    x_service_key: Optional[str] = Header(None, alias=SERVICE_KEY_HEADER)
) -> None:
    """
    Require the shared service key.

    Raises:
        UnauthorizedError: key missing, wrong, or not configured
    """
    if not is_valid_service_key(x_service_key):
        logger.warning("Rejected service call", key_present=bool(x_service_key))
        raise UnauthorizedError("Invalid service key", scheme=None)


__all__ = [
    "Principal",
    "create_access_token",
    "decode_token",
    "get_current_citizen",
    "is_valid_service_key",
    "verify_service_key",
]
