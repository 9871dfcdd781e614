"""Session token issuance.

Tokens are HS256 JWTs carrying the username, a fixed role and the standard
``iat``/``exp`` claims. Issuance is stateless; nothing is stored.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt

from ..core.config import settings
from ..core.errors import InvalidRequest


@dataclass(frozen=True, slots=True)
class Identity:
    """Verified identity attached to a signaling connection."""

    identifier: str
    role: str


@dataclass(slots=True)
class IssuedToken:
    token: str
    identity: Identity
    issued_at: datetime
    expires_at: datetime


def issue(identifier: str | None, *, now: datetime | None = None) -> IssuedToken:
    """Sign a token for ``identifier`` valid for ``settings.token_ttl_seconds``."""

    if not identifier or not identifier.strip():
        raise InvalidRequest("Username required")

    issued_at = (now or datetime.now(timezone.utc)).replace(microsecond=0)
    expires_at = issued_at + timedelta(seconds=settings.token_ttl_seconds)
    identity = Identity(identifier=identifier, role=settings.token_role)
    claims = {
        "username": identity.identifier,
        "role": identity.role,
        "iat": issued_at,
        "exp": expires_at,
    }
    token = jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return IssuedToken(token=token, identity=identity, issued_at=issued_at, expires_at=expires_at)
