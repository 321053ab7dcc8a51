"""
authcore - Identity Store Models

SQLModel-based models for users, trust ledger, OTP challenges,
refresh tokens and admin-defined custom roles.
Uses PostgreSQL for production, SQLite for local development.

Security:
- Passwords and OTP codes stored as bcrypt hashes only
- Refresh token rows are the source of truth for token validity
- All timestamps are naive UTC
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Boolean, Column, DateTime, String, UniqueConstraint
from sqlalchemy import Enum as SQLEnum
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Current time as naive UTC, matching what the database hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Role(str, Enum):
    """
    Built-in roles.

    Each has a fixed module/action grant set in gateway/policies.yaml.
    Admins can additionally define CustomRole rows at runtime.
    """
    ADMIN = "ADMIN"
    DIR_COMMERCIALE = "DIR_COMMERCIALE"
    DIR_TECNICO = "DIR_TECNICO"
    DIR_SUPPORT = "DIR_SUPPORT"
    COMMERCIALE = "COMMERCIALE"
    PM = "PM"
    DEVELOPER = "DEVELOPER"
    CONTENT = "CONTENT"
    SUPPORT = "SUPPORT"
    CLIENT = "CLIENT"


class CustomRole(SQLModel, table=True):
    """
    Admin-defined role.

    Attributes:
        permissions: {module: [action, ...]}; parsed through an allow-list
            before use, unknown entries are ignored
        is_system: System roles cannot be deleted
    """
    __tablename__ = "custom_roles"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str = Field(
        sa_column=Column(String(100), unique=True, nullable=False),
        description="Unique role name",
    )
    description: Optional[str] = Field(default=None, max_length=500)
    permissions: dict = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
        description="Module to action list mapping",
    )
    is_system: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, default=False),
    )
    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, nullable=False)


class User(SQLModel, table=True):
    """
    User account for authentication.

    Attributes:
        email: Login identifier (unique, stored lower-case)
        password_hash: bcrypt hash (never store plaintext)
        role: Built-in role
        custom_role_id: Optional custom role; overrides the built-in role
            for permission checks when set
        is_active: Inactive users cannot log in or refresh
        last_login_at / last_ip_address: Updated on every successful login
    """
    __tablename__ = "users"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    email: str = Field(
        sa_column=Column(String(255), unique=True, index=True, nullable=False),
        description="User email address (login identifier)",
    )
    password_hash: str = Field(
        sa_column=Column(String(255), nullable=False),
        description="bcrypt password hash",
    )
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)
    role: Role = Field(
        default=Role.CLIENT,
        sa_column=Column(SQLEnum(Role), nullable=False, default=Role.CLIENT),
    )
    custom_role_id: Optional[UUID] = Field(
        default=None, foreign_key="custom_roles.id", index=True, nullable=True
    )
    is_active: bool = Field(
        default=True,
        sa_column=Column(Boolean, nullable=False, default=True),
    )
    last_login_at: Optional[datetime] = Field(default=None)
    last_ip_address: Optional[str] = Field(default=None, max_length=45)
    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow),
    )

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip() or self.email


class TrustedOrigin(SQLModel, table=True):
    """
    An origin address from which the user has completed an OTP challenge.

    At most one row per (user_id, ip_address).
    """
    __tablename__ = "trusted_origins"
    __table_args__ = (
        UniqueConstraint("user_id", "ip_address", name="uq_trusted_origin_user_ip"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(foreign_key="users.id", index=True, ondelete="CASCADE")
    ip_address: str = Field(max_length=45)
    user_agent: Optional[str] = Field(default=None, max_length=500)
    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    last_used_at: datetime = Field(default_factory=utcnow, nullable=False)


class OtpChallenge(SQLModel, table=True):
    """
    One-time passcode bound to a user and origin address.

    Terminal states are both represented by is_used=True: consumed
    (code matched) or abandoned (superseded, expired, attempts exhausted).
    """
    __tablename__ = "otp_challenges"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(foreign_key="users.id", index=True, ondelete="CASCADE")
    ip_address: str = Field(max_length=45, index=True)
    otp_hash: str = Field(sa_column=Column(String(255), nullable=False))
    attempts: int = Field(default=0, nullable=False)
    max_attempts: int = Field(default=5, nullable=False)
    expires_at: datetime = Field(nullable=False)
    is_used: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, default=False),
    )
    user_agent: Optional[str] = Field(default=None, max_length=500)
    created_at: datetime = Field(default_factory=utcnow, nullable=False)


class RefreshToken(SQLModel, table=True):
    """
    Persisted refresh token.

    The signed token value is the lookup key. The row decides validity:
    a revoked or missing row rejects the token even if its signature and
    embedded expiry are still good.
    """
    __tablename__ = "refresh_tokens"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(foreign_key="users.id", index=True, ondelete="CASCADE")
    token: str = Field(
        sa_column=Column(String(1024), unique=True, index=True, nullable=False),
    )
    expires_at: datetime = Field(nullable=False)
    revoked: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, default=False),
    )
    revoked_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, nullable=False, index=True)
