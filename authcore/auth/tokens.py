"""
authcore - Token Issuer

Creates and validates signed JWTs:
- Access tokens: short-lived (30 minutes), carry identity claims
- Refresh tokens: long-lived (7 days), signed with a separate key and
  persisted as RefreshToken rows

Security:
- Claims are HMAC-signed so they cannot be forged client-side
- Every token has a random jti, which also keeps refresh token values
  unique when two are minted within the same second
- The persisted RefreshToken row, not the JWT expiry, decides whether a
  refresh token is still usable
"""

import secrets
from datetime import datetime, timedelta
from typing import Optional

from jose import JWTError, jwt
from pydantic import BaseModel, Field
from sqlmodel import Session as DBSession

from authcore.auth.errors import AccessTokenInvalid, TokenExpiredOrUnknown
from authcore.auth.models import RefreshToken, User, utcnow
from authcore.config import Settings, settings as default_settings

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


class IdentityClaims(BaseModel):
    """
    Minimal identity claim set carried inside tokens.

    Attributes:
        sub: User ID
        email: Login identifier
        name: Display name
        role: Built-in role
        custom_role_id: Custom role ID, if one is assigned
    """
    sub: str
    email: str
    name: str
    role: str
    custom_role_id: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "IdentityClaims":
        return cls(
            sub=str(user.id),
            email=user.email,
            name=user.display_name,
            role=user.role.value,
            custom_role_id=str(user.custom_role_id) if user.custom_role_id else None,
        )


class TokenPayload(IdentityClaims):
    """Decoded JWT payload."""
    type: str
    jti: str
    exp: datetime
    iat: datetime


class TokenPair(BaseModel):
    """Access + refresh token handed to the client."""
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int = Field(..., description="Seconds until the access token expires")


def _encode(
    claims: IdentityClaims, token_type: str, expire: datetime, now: datetime, key: str, algorithm: str
) -> tuple[str, str]:
    if not key:
        raise RuntimeError("Token signing key is not configured")
    token_id = secrets.token_hex(16)
    payload = {
        **claims.model_dump(),
        "type": token_type,
        "jti": token_id,
        "iat": now,
        "exp": expire,
    }
    return jwt.encode(payload, key, algorithm=algorithm), token_id


def _decode(token: str, key: str, algorithm: str) -> TokenPayload:
    if not key:
        # A blank key would accept tokens anyone can sign
        raise JWTError("Token signing key is not configured")
    return TokenPayload(**jwt.decode(token, key, algorithms=[algorithm]))


def create_access_token(
    claims: IdentityClaims,
    expires_delta: Optional[timedelta] = None,
    settings: Optional[Settings] = None,
) -> tuple[str, str]:
    """
    Create a new access token.

    Returns:
        Tuple of (encoded JWT string, token ID)
    """
    s = settings or default_settings
    now = utcnow()
    expire = now + (expires_delta or timedelta(minutes=s.ACCESS_TOKEN_EXPIRE_MINUTES))
    return _encode(claims, ACCESS_TOKEN_TYPE, expire, now, s.SECRET_KEY, s.JWT_ALGORITHM)


def create_refresh_token(
    claims: IdentityClaims, settings: Optional[Settings] = None
) -> tuple[str, str, datetime]:
    """
    Create a new refresh token.

    Returns:
        Tuple of (encoded JWT string, token ID, expiry)
    """
    s = settings or default_settings
    now = utcnow()
    expire = now + timedelta(days=s.REFRESH_TOKEN_EXPIRE_DAYS)
    token, token_id = _encode(
        claims, REFRESH_TOKEN_TYPE, expire, now, s.REFRESH_SECRET_KEY, s.JWT_ALGORITHM
    )
    return token, token_id, expire


def verify_access_token(token: str, settings: Optional[Settings] = None) -> TokenPayload:
    """
    Verify and decode an access token.

    Raises:
        AccessTokenInvalid: If the token is malformed, expired, signed with
            the wrong key, or is not an access token
    """
    s = settings or default_settings
    try:
        decoded = _decode(token, s.SECRET_KEY, s.JWT_ALGORITHM)
    except (JWTError, ValueError) as e:
        raise AccessTokenInvalid() from e

    if decoded.type != ACCESS_TOKEN_TYPE:
        raise AccessTokenInvalid()
    return decoded


def verify_refresh_token(token: str, settings: Optional[Settings] = None) -> TokenPayload:
    """
    Check a refresh token's signature, expiry and type.

    Only a gate in front of the RefreshToken row lookup; passing it does
    not make the token usable.

    Raises:
        TokenExpiredOrUnknown: Malformed, expired, wrong key, or an access token
    """
    s = settings or default_settings
    try:
        decoded = _decode(token, s.REFRESH_SECRET_KEY, s.JWT_ALGORITHM)
    except (JWTError, ValueError) as e:
        raise TokenExpiredOrUnknown() from e

    if decoded.type != REFRESH_TOKEN_TYPE:
        raise TokenExpiredOrUnknown()
    return decoded


def get_token_expiry_seconds(settings: Optional[Settings] = None) -> int:
    """Access token lifetime in seconds, for responses and cookies."""
    return (settings or default_settings).ACCESS_TOKEN_EXPIRE_MINUTES * 60


def issue_access_token(user: User, settings: Optional[Settings] = None) -> str:
    token, _ = create_access_token(IdentityClaims.from_user(user), settings=settings)
    return token


def issue_token_pair(
    db: DBSession, user: User, settings: Optional[Settings] = None
) -> tuple[TokenPair, RefreshToken]:
    """
    Mint an access/refresh pair and stage the RefreshToken row.

    The row is added and flushed but not committed; the caller owns the
    transaction so that rotation can commit claim and successor together.
    """
    claims = IdentityClaims.from_user(user)
    access_token, _ = create_access_token(claims, settings=settings)
    refresh_token, _, expires_at = create_refresh_token(claims, settings=settings)

    row = RefreshToken(user_id=user.id, token=refresh_token, expires_at=expires_at)
    db.add(row)
    db.flush()

    pair = TokenPair(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=get_token_expiry_seconds(settings),
    )
    return pair, row
