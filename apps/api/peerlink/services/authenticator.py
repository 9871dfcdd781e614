"""Connection-time token verification."""
from __future__ import annotations

import logging

import jwt

from ..core.config import settings
from ..core.errors import AuthError, AuthErrorReason
from .credentials import Identity

logger = logging.getLogger(__name__)


def authenticate(presented_token: str | None) -> Identity:
    """Verify a presented token and return the identity it asserts.

    Expiry is only checked here, once per connection.
    """

    if not presented_token:
        raise AuthError(AuthErrorReason.MISSING)

    try:
        claims = jwt.decode(
            presented_token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["exp", "iat"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthError(AuthErrorReason.INVALID, "Token expired") from exc
    except jwt.InvalidTokenError as exc:
        logger.debug("Rejected token: %s", exc)
        raise AuthError(AuthErrorReason.INVALID) from exc

    username = claims.get("username")
    role = claims.get("role")
    if not isinstance(username, str) or not username or not isinstance(role, str) or not role:
        raise AuthError(AuthErrorReason.INVALID, "Token is missing identity claims")

    return Identity(identifier=username, role=role)
