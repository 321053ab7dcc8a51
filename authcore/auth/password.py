"""
authcore - Password and Passcode Hashing

bcrypt hashing for passwords and one-time passcodes.
Work factor comes from settings (default 12).

Security:
- Never log or expose plaintext passwords or codes
- bcrypt includes salt automatically
- Supports hash upgrades on login
"""

from typing import Optional

import bcrypt

from authcore.config import settings

_dummy_hash: Optional[str] = None


def hash_password(password: str, rounds: Optional[int] = None) -> str:
    """
    Hash a password (or OTP code) using bcrypt.

    Args:
        password: Plaintext secret
        rounds: Work factor override; defaults to settings.BCRYPT_WORK_FACTOR

    Returns:
        bcrypt hash string (includes salt)
    """
    salt = bcrypt.gensalt(rounds=rounds or settings.BCRYPT_WORK_FACTOR)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a secret against a bcrypt hash in constant time.

    Returns:
        True if it matches, False otherwise (including malformed hashes
        and inputs bcrypt refuses, such as secrets over 72 bytes)
    """
    try:
        return bcrypt.checkpw(
            plain_password.encode("utf-8"), hashed_password.encode("utf-8")
        )
    except (ValueError, TypeError):
        return False


def burn_verification_time(plain_password: str) -> None:
    """
    Run a bcrypt comparison against a throwaway hash.

    Called when the user does not exist so that the response time does
    not reveal whether an account is registered.
    """
    global _dummy_hash
    if _dummy_hash is None:
        _dummy_hash = hash_password("authcore-timing-equalizer")
    verify_password(plain_password, _dummy_hash)


def needs_rehash(hashed_password: str, target_work_factor: Optional[int] = None) -> bool:
    """
    Check if a password hash should be regenerated with a higher work factor.

    Example:
        # After increasing BCRYPT_WORK_FACTOR from 10 to 12:
        >>> needs_rehash(old_hash)  # Generated with factor 10
        True
    """
    target = target_work_factor or settings.BCRYPT_WORK_FACTOR
    try:
        # bcrypt hash format: $2b$XX$...
        _, work_factor_str, _ = hashed_password.split("$")[1:4]
        return int(work_factor_str) < target
    except (ValueError, IndexError):
        # Not a valid bcrypt hash, definitely needs rehash
        return True
