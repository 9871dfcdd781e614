"""Login endpoint issuing signaling tokens."""
from __future__ import annotations

from fastapi import APIRouter

from ..schemas.auth import ErrorResponse, LoginRequest, LoginResponse
from ..services import credentials

router = APIRouter()


@router.post("/login", response_model=LoginResponse, responses={400: {"model": ErrorResponse}})
async def login(payload: LoginRequest | None = None) -> LoginResponse:
    """Return a signed session token for the given username."""

    issued = credentials.issue(payload.username if payload else None)
    return LoginResponse(token=issued.token, username=issued.identity.identifier)
