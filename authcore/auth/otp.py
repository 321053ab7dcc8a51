"""
authcore - OTP Challenge Manager

Issues and verifies one-time passcodes for logins from untrusted origins.

Two independent throttles protect each challenge:
- Per-challenge attempt budget (default 5), enforced with a conditional
  UPDATE so concurrent guesses cannot overrun it
- Per-origin verification rate limit (default 5 per 5 minutes)

Issuance is separately rate-limited per user (default 3 per 10 minutes)
to stop mail flooding.
"""

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import delete, update
from sqlmodel import Session as DBSession, select

from authcore.auth import trust
from authcore.auth.errors import (
    ChallengeAttemptsExhausted,
    ChallengeExpired,
    InvalidChallengeCode,
    RateLimited,
)
from authcore.auth.models import OtpChallenge, User, utcnow
from authcore.auth.password import hash_password, verify_password
from authcore.auth.rate_limit import RateLimiter
from authcore.config import Settings, settings as default_settings
from authcore.logging import get_logger
from authcore.notifications import OtpNotifier, mask_email

logger = get_logger(__name__)


@dataclass
class IssuedChallenge:
    """A freshly issued challenge. The plaintext code is only ever here."""
    challenge_id: UUID
    code: str
    masked_destination: str
    expires_at: datetime


def generate_code(length: int) -> str:
    """Numeric code of exactly `length` digits from a CSPRNG."""
    return f"{secrets.randbelow(10 ** length):0{length}d}"


class OtpChallengeManager:
    """
    Usage:
        issued = await otp.issue(db, user, ip, user_agent)
        ...
        await otp.verify(db, user.id, ip, code, user_agent)
    """

    def __init__(
        self,
        limiter: RateLimiter,
        notifier: OtpNotifier,
        settings: Optional[Settings] = None,
    ) -> None:
        self.limiter = limiter
        self.notifier = notifier
        self.settings = settings or default_settings

    def _throttle(self, key: str, limit: int, window: int) -> None:
        if not self.limiter.allow(key, limit, window):
            raise RateLimited(self.limiter.retry_after(key, window))

    async def issue(
        self,
        db: DBSession,
        user: User,
        ip_address: str,
        user_agent: Optional[str] = None,
    ) -> IssuedChallenge:
        """
        Invalidate older challenges for (user, origin), store a new one and
        hand the code to the notifier.

        Raises:
            RateLimited: Too many challenges issued for this user
        """
        s = self.settings
        self._throttle(
            f"otp-issue:{user.id}", s.OTP_ISSUE_RATE_LIMIT, s.OTP_ISSUE_RATE_WINDOW_SECONDS
        )

        now = utcnow()
        db.exec(
            update(OtpChallenge)
            .where(
                OtpChallenge.user_id == user.id,
                OtpChallenge.ip_address == ip_address,
                OtpChallenge.is_used == False,
                OtpChallenge.expires_at > now,
            )
            .values(is_used=True)
        )

        code = generate_code(s.OTP_LENGTH)
        challenge = OtpChallenge(
            user_id=user.id,
            ip_address=ip_address,
            otp_hash=hash_password(code),
            attempts=0,
            max_attempts=s.OTP_MAX_ATTEMPTS,
            expires_at=now + timedelta(minutes=s.OTP_EXPIRE_MINUTES),
            is_used=False,
            user_agent=user_agent,
            created_at=now,
        )
        db.add(challenge)
        db.commit()
        db.refresh(challenge)

        try:
            self.notifier.send_login_code(user.email, code, ip_address, challenge.expires_at)
        except Exception:
            # The user can log in again to get a new code
            logger.exception("otp_delivery_failed", user_id=str(user.id))

        logger.info("otp_issued", user_id=str(user.id), ip_address=ip_address)
        return IssuedChallenge(
            challenge_id=challenge.id,
            code=code,
            masked_destination=mask_email(user.email),
            expires_at=challenge.expires_at,
        )

    def _latest_actionable(
        self, db: DBSession, user_id: UUID, ip_address: str, now: datetime
    ) -> Optional[OtpChallenge]:
        # Lazy cleanup of expired rows for this pair
        db.exec(
            delete(OtpChallenge).where(
                OtpChallenge.user_id == user_id,
                OtpChallenge.ip_address == ip_address,
                OtpChallenge.expires_at <= now,
            )
        )
        statement = (
            select(OtpChallenge)
            .where(
                OtpChallenge.user_id == user_id,
                OtpChallenge.ip_address == ip_address,
                OtpChallenge.is_used == False,
                OtpChallenge.expires_at > now,
            )
            .order_by(OtpChallenge.created_at.desc())
        )
        return db.exec(statement).first()

    async def verify(
        self,
        db: DBSession,
        user_id: UUID,
        ip_address: str,
        code: str,
        user_agent: Optional[str] = None,
    ) -> OtpChallenge:
        """
        Check a code against the newest actionable challenge for
        (user, origin). On success the challenge is consumed and the
        origin is recorded in the trust ledger.

        Returns:
            The consumed challenge

        Raises:
            RateLimited: Too many verifications from this origin
            ChallengeExpired: No usable challenge (expired, consumed, superseded)
            ChallengeAttemptsExhausted: Attempt budget already spent
            InvalidChallengeCode: Wrong code, with attempts remaining
        """
        s = self.settings
        self._throttle(
            f"verify-ip:{ip_address}", s.OTP_VERIFY_RATE_LIMIT, s.OTP_VERIFY_RATE_WINDOW_SECONDS
        )

        now = utcnow()
        challenge = self._latest_actionable(db, user_id, ip_address, now)
        if challenge is None:
            db.commit()
            raise ChallengeExpired()

        if challenge.attempts >= challenge.max_attempts:
            challenge.is_used = True
            db.add(challenge)
            db.commit()
            logger.info("otp_rejected", user_id=str(user_id), reason="attempts_exhausted")
            raise ChallengeAttemptsExhausted()

        if not verify_password(code, challenge.otp_hash):
            result = db.exec(
                update(OtpChallenge)
                .where(
                    OtpChallenge.id == challenge.id,
                    OtpChallenge.is_used == False,
                    OtpChallenge.attempts < OtpChallenge.max_attempts,
                )
                .values(attempts=OtpChallenge.attempts + 1)
            )
            counted = result.rowcount
            db.commit()
            if counted != 1:
                # Consumed or exhausted by a concurrent request
                raise ChallengeExpired()
            db.refresh(challenge)
            remaining = max(0, challenge.max_attempts - challenge.attempts)
            logger.info(
                "otp_rejected",
                user_id=str(user_id),
                reason="wrong_code",
                attempts_remaining=remaining,
            )
            raise InvalidChallengeCode(remaining)

        result = db.exec(
            update(OtpChallenge)
            .where(OtpChallenge.id == challenge.id, OtpChallenge.is_used == False)
            .values(is_used=True)
        )
        consumed = result.rowcount
        db.commit()
        if consumed != 1:
            raise ChallengeExpired()

        db.refresh(challenge)
        await trust.mark_trusted(db, user_id, ip_address, user_agent)
        logger.info("otp_verified", user_id=str(user_id), ip_address=ip_address)
        return challenge
