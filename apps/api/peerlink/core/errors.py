"""Error taxonomy shared by the relay and the negotiation client."""
from __future__ import annotations

import enum


class PeerlinkError(Exception):
    """Base class for all service errors."""


class InvalidRequest(PeerlinkError):
    """A required request field was missing or empty."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthErrorReason(str, enum.Enum):
    MISSING = "missing"
    INVALID = "invalid"


class AuthError(PeerlinkError):
    """A connection presented no token or a token that failed verification."""

    def __init__(self, reason: AuthErrorReason, detail: str | None = None) -> None:
        self.reason = reason
        self.detail = detail or ("Missing token" if reason is AuthErrorReason.MISSING else "Invalid token")
        super().__init__(self.detail)


class RouteTargetNotFound(PeerlinkError):
    """The addressed connection is not live."""

    def __init__(self, target: str) -> None:
        super().__init__(f"No live connection {target!r}")
        self.target = target


class NegotiationError(PeerlinkError):
    """A negotiation message arrived in a state that cannot accept it."""
