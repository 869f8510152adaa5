"""Bearer token handling: JWT in, Principal out."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from config import settings
from model import Principal, Role


class InvalidTokenError(Exception):
    """The token is missing, malformed, expired or names an unknown role."""


@dataclass(frozen=True)
class TokenClaims:
    principal: Principal
    expires_at: datetime

    def seconds_left(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (self.expires_at - now).total_seconds()


def create_access_token(principal: Principal, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token.

    Only used to seed a development admin and by the tests; real tokens are
    issued by the identity provider and share the same secret.
    """
    expire = datetime.now(timezone.utc) + (expires_delta or settings.token_lifetime)
    to_encode = {
        "sub": str(principal.id),
        "role": principal.role.value,
        "exp": expire,
    }
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.token_algorithm)


def decode_access_token(token: str) -> TokenClaims:
    """Decode and verify a JWT access token.

    Raises:
        InvalidTokenError: when the signature, expiry or claims do not check out.
    """
    if not token:
        raise InvalidTokenError("Missing token.")
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.token_algorithm])
    except jwt.ExpiredSignatureError as exc:
        raise InvalidTokenError("Token expired.") from exc
    except jwt.InvalidTokenError as exc:
        raise InvalidTokenError("Invalid token.") from exc

    try:
        principal = Principal(id=uuid.UUID(payload["sub"]), role=Role(payload["role"]))
        expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
    except (KeyError, ValueError, TypeError) as exc:
        raise InvalidTokenError("Token claims are incomplete.") from exc
    return TokenClaims(principal=principal, expires_at=expires_at)
