"""Data contracts for the login endpoint."""
from __future__ import annotations

from pydantic import BaseModel, Field


class LoginRequest(BaseModel):
    username: str | None = Field(default=None, description="Display name to embed in the token")


class LoginResponse(BaseModel):
    token: str = Field(..., description="Signed session token for the signaling socket")
    username: str


class ErrorResponse(BaseModel):
    message: str
