"""
authcore - Credential Verifier

Checks a username/password pair against the stored bcrypt hash.

Security:
- Unknown user, inactive user and wrong password raise the same
  InvalidCredentials error
- Unknown users still pay for a bcrypt comparison
- Callers must have passed the per-IP login rate limit first
"""

from sqlmodel import Session as DBSession, select

from authcore.auth.errors import InvalidCredentials
from authcore.auth.models import User, utcnow
from authcore.auth.password import (
    burn_verification_time,
    hash_password,
    needs_rehash,
    verify_password,
)
from authcore.logging import get_logger

logger = get_logger(__name__)


def normalize_username(username: str) -> str:
    return username.strip().lower()


async def verify_credentials(db: DBSession, username: str, password: str) -> User:
    """
    Authenticate a username/password pair.

    Args:
        db: Database session
        username: Login identifier (email), any case
        password: Plaintext password

    Returns:
        The matching active User; IdentityClaims.from_user() gives the
        claim set minted into tokens

    Raises:
        InvalidCredentials: For every failure reason
    """
    email = normalize_username(username)
    user = db.exec(select(User).where(User.email == email)).first()

    if user is None:
        burn_verification_time(password)
        logger.info("login_failed", reason="user_not_found")
        raise InvalidCredentials()

    if not verify_password(password, user.password_hash):
        logger.info("login_failed", reason="invalid_password", user_id=str(user.id))
        raise InvalidCredentials()

    if not user.is_active:
        logger.info("login_failed", reason="account_inactive", user_id=str(user.id))
        raise InvalidCredentials()

    # Work factor upgrade
    if needs_rehash(user.password_hash):
        user.password_hash = hash_password(password)
        user.updated_at = utcnow()
        db.add(user)
        db.commit()
        db.refresh(user)

    return user
