"""
authcore - Authentication Package

- bcrypt password hashing
- IP trust ledger with OTP challenges for new origins
- JWT access tokens with rotating, reuse-detecting refresh tokens
"""

from authcore.auth.errors import AuthError
from authcore.auth.models import Role, User
from authcore.auth.service import AuthService, LoginResult

__all__ = [
    "AuthError",
    "AuthService",
    "LoginResult",
    "Role",
    "User",
]
