"""
authcore - Authentication & Authorization Errors

Every failure the core can report is an AuthError carrying the HTTP
status and a stable error code. The HTTP layer renders them through a
single exception handler (see authcore.app).

Authentication failures (401) and authorization failures (403) are
separate branches and never share a class.
"""

from typing import Optional


class AuthError(Exception):
    """Base class for errors mapped to HTTP responses."""

    status_code: int = 400
    error_code: str = "bad_request"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class InvalidCredentials(AuthError):
    """Unknown user, inactive user, or wrong password.

    All three produce the same message so the response cannot be used
    to enumerate accounts.
    """
    status_code = 401
    error_code = "invalid_credentials"

    def __init__(self) -> None:
        super().__init__("Invalid credentials")


class RateLimited(AuthError):
    """Too many attempts for a rate-limited key."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, retry_after: int, message: str = "Too many attempts. Try again later.") -> None:
        super().__init__(message, detail={"retry_after": retry_after})
        self.retry_after = retry_after


class ChallengeExpired(AuthError):
    """No actionable OTP challenge; the caller must log in again."""
    status_code = 400
    error_code = "challenge_expired"

    def __init__(self, message: str = "Code expired or invalid. Please log in again.") -> None:
        super().__init__(message, detail={"expired": True})


class ChallengeAttemptsExhausted(ChallengeExpired):
    """The challenge used up its attempt budget."""
    error_code = "challenge_exhausted"

    def __init__(self) -> None:
        super().__init__("Too many wrong codes. Please log in again.")


class InvalidChallengeCode(AuthError):
    """Wrong OTP code; the challenge is still usable."""
    status_code = 400
    error_code = "invalid_code"

    def __init__(self, attempts_remaining: int) -> None:
        super().__init__(
            f"Wrong code. {attempts_remaining} attempts remaining.",
            detail={"attempts_remaining": attempts_remaining},
        )
        self.attempts_remaining = attempts_remaining


class TokenExpiredOrUnknown(AuthError):
    """Refresh token absent, expired, revoked, or its user is gone."""
    status_code = 401
    error_code = "token_expired"

    def __init__(self, message: str = "Session expired. Please log in again.") -> None:
        super().__init__(message)


class ReuseDetected(TokenExpiredOrUnknown):
    """A rotated refresh token was replayed outside the grace window.

    Rendered to the client exactly like TokenExpiredOrUnknown; the
    distinction only shows in the security log.
    """


class PermissionDenied(AuthError):
    """Authenticated, but not authorized for the requested action."""
    status_code = 403
    error_code = "forbidden"


class NotFound(AuthError):
    status_code = 404
    error_code = "not_found"


class RoleConflict(AuthError):
    status_code = 409
    error_code = "conflict"


class AccessTokenInvalid(AuthError):
    """Missing, malformed, or expired access token."""
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "Invalid or expired token") -> None:
        super().__init__(message)


__all__ = [
    "AuthError",
    "InvalidCredentials",
    "RateLimited",
    "ChallengeExpired",
    "ChallengeAttemptsExhausted",
    "InvalidChallengeCode",
    "TokenExpiredOrUnknown",
    "ReuseDetected",
    "PermissionDenied",
    "NotFound",
    "RoleConflict",
    "AccessTokenInvalid",
]
