"""
authcore - Configuration Management

Centralized configuration using Pydantic Settings.
All secrets and connection strings are loaded from environment variables.

Security: No secrets are hardcoded. Use .env for local development.
"""

import secrets
from typing import List, Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_SIGNING_KEY_LENGTH = 16


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Attributes:
        ENVIRONMENT: "development" skips the IP trust check on login
        SECRET_KEY: JWT signing key for access tokens
        REFRESH_SECRET_KEY: JWT signing key for refresh tokens
        REFRESH_GRACE_SECONDS: Window in which reuse of a rotated refresh
            token is treated as a concurrent-refresh race instead of theft
        DATABASE_URL: SQLAlchemy URL for the identity store
        ALLOWED_ORIGINS: CORS allowed origins for the frontend
        TRUSTED_PROXIES: Peer addresses or networks (CIDR) whose
            X-Forwarded-For / X-Real-IP headers are believed
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    ENVIRONMENT: str = "production"

    # Security
    SECRET_KEY: str = ""  # Required outside development
    REFRESH_SECRET_KEY: str = ""  # Required outside development
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7
    REFRESH_GRACE_SECONDS: int = 60
    BCRYPT_WORK_FACTOR: int = 12

    # One-time passcodes
    OTP_LENGTH: int = 6
    OTP_EXPIRE_MINUTES: int = 10
    OTP_MAX_ATTEMPTS: int = 5

    # Rate limits (count per window in seconds)
    LOGIN_RATE_LIMIT: int = 5
    LOGIN_RATE_WINDOW_SECONDS: int = 60
    OTP_ISSUE_RATE_LIMIT: int = 3
    OTP_ISSUE_RATE_WINDOW_SECONDS: int = 600
    OTP_VERIFY_RATE_LIMIT: int = 5
    OTP_VERIFY_RATE_WINDOW_SECONDS: int = 300

    # Database (PostgreSQL for production, SQLite for development)
    DATABASE_URL: str = "sqlite:///./authcore.db"

    # HTTP
    ALLOWED_ORIGINS: List[str] = ["http://localhost:3000"]
    TRUSTED_PROXIES: List[str] = []
    LOGIN_PATH: str = "/login"
    ACCESS_COOKIE_NAME: str = "authcore_access"
    REFRESH_COOKIE_NAME: str = "authcore_refresh"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    def signing_key_problem(self) -> Optional[str]:
        """Why the signing keys are unusable, or None if they are fine."""
        for name in ("SECRET_KEY", "REFRESH_SECRET_KEY"):
            if len(getattr(self, name) or "") < MIN_SIGNING_KEY_LENGTH:
                return f"{name} must be set to at least {MIN_SIGNING_KEY_LENGTH} characters"
        if self.SECRET_KEY == self.REFRESH_SECRET_KEY:
            return "SECRET_KEY and REFRESH_SECRET_KEY must differ"
        return None

    @model_validator(mode="after")
    def check_signing_keys(self) -> "Settings":
        # Development gets random per-process keys when none are configured
        if self.is_development:
            if not self.SECRET_KEY:
                self.SECRET_KEY = secrets.token_urlsafe(32)
            if not self.REFRESH_SECRET_KEY:
                self.REFRESH_SECRET_KEY = secrets.token_urlsafe(32)

        problem = self.signing_key_problem()
        if problem:
            raise ValueError(problem)
        return self

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"


settings = Settings()
