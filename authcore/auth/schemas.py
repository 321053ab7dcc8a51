"""
authcore - Authentication Request/Response Schemas

Pydantic models for API request validation and response serialization.
Separates API contracts from database models.
"""

import re
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from authcore.auth.tokens import TokenPair

_EMAIL_RE = re.compile(r"^[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+$")


class LoginRequest(BaseModel):
    """Request body for POST /auth/login."""
    email: str = Field(..., description="User email address")
    password: str = Field(..., min_length=1, description="User password")

    @field_validator("email")
    @classmethod
    def email_format(cls, v: str) -> str:
        """Basic email format validation (allows .local for development)."""
        v = v.strip()
        if not _EMAIL_RE.match(v):
            raise ValueError("Invalid email format")
        return v.lower()


class LoginResponse(BaseModel):
    """
    Response body for POST /auth/login.

    Either tokens are present (status "authenticated"), or
    requires_challenge is set and the client must call /auth/verify-ip.
    """
    status: str
    requires_challenge: bool = False
    tokens: Optional[TokenPair] = None
    user_id: Optional[UUID] = None
    masked_destination: Optional[str] = None


class VerifyChallengeRequest(BaseModel):
    """Request body for POST /auth/verify-ip."""
    user_id: UUID
    code: str = Field(..., min_length=4, max_length=10)

    @field_validator("code")
    @classmethod
    def digits_only(cls, v: str) -> str:
        v = v.strip()
        if not v.isdigit():
            raise ValueError("Code must be numeric")
        return v


class TokenResponse(BaseModel):
    tokens: TokenPair


class RefreshRequest(BaseModel):
    """Request body for POST /auth/refresh."""
    refresh_token: str = Field(..., min_length=1, description="Refresh token")


class LogoutRequest(BaseModel):
    """Request body for POST /auth/logout (optional)."""
    refresh_token: Optional[str] = Field(
        default=None, description="Refresh token to revoke; defaults to the cookie"
    )
    all_sessions: bool = Field(
        default=False,
        description="Revoke every refresh token (logout everywhere)",
    )


class LogoutResponse(BaseModel):
    """Response body for logout."""
    message: str = Field(default="Logged out")
    tokens_revoked: int = Field(default=0)


class UserResponse(BaseModel):
    """Response body for GET /auth/me."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    first_name: str
    last_name: str
    role: str
    custom_role_id: Optional[UUID] = None
    is_active: bool
    last_login_at: Optional[datetime] = None
    created_at: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""
    detail: str
    error_code: Optional[str] = None
    request_id: Optional[str] = None
    attempts_remaining: Optional[int] = None
    expired: Optional[bool] = None
    retry_after: Optional[int] = None
