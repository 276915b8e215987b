"""
Password hashing and bearer token helpers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import bcrypt
import jwt

from love_health.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenClaims:
    """Decoded bearer token payload."""

    principal_id: int
    username: str
    issued_at: int
    expires_at: int


def hash_password(password: str, rounds: int = 10) -> str:
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Stored value is not a bcrypt hash.
        logger.warning("Malformed password hash encountered")
        return False


def issue_token(
    principal_id: int,
    username: str,
    settings: Settings,
    expires_in: Optional[int] = None,
) -> str:
    """Return a signed token carrying the principal id and username."""
    now = datetime.now(timezone.utc)
    lifetime = expires_in if expires_in is not None else settings.jwt_expires_in
    payload: Dict[str, Any] = {
        "sub": str(principal_id),
        "username": username,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=lifetime)).timestamp()),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: Settings) -> Optional[TokenClaims]:
    """Verify signature and expiry. Returns None for any invalid token."""
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError:
        logger.info("Rejected expired token")
        return None
    except jwt.InvalidTokenError as exc:
        logger.info("Rejected invalid token: %s", exc)
        return None

    try:
        principal_id = int(payload["sub"])
    except (TypeError, ValueError):
        logger.info("Rejected token with non-numeric subject")
        return None
    return TokenClaims(
        principal_id=principal_id,
        username=payload.get("username", ""),
        issued_at=int(payload.get("iat", 0)),
        expires_at=int(payload["exp"]),
    )


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    """Return the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        return None
    return parts[1]
