"""
authcore - Login Orchestration

Adaptive login:

    login --> rate limit (per IP) --> credentials --> trust ledger
        trusted origin   --> tokens
        untrusted origin --> OTP issued, result asks for a challenge
    verify_challenge --> OTP verified, origin trusted --> tokens

Refresh and logout delegate to the RefreshRotationEngine.
"""

from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlmodel import Session as DBSession

from authcore.audit.activity import ActivityLog
from authcore.auth import trust
from authcore.auth.credentials import verify_credentials
from authcore.auth.errors import ChallengeExpired, RateLimited
from authcore.auth.models import User, utcnow
from authcore.auth.otp import OtpChallengeManager
from authcore.auth.rate_limit import RateLimiter
from authcore.auth.refresh import RefreshRotationEngine
from authcore.auth.tokens import TokenPair, issue_token_pair
from authcore.config import Settings, settings as default_settings
from authcore.logging import get_logger

logger = get_logger(__name__)

AUTHENTICATED = "authenticated"
CHALLENGE_REQUIRED = "challenge_required"


@dataclass
class LoginResult:
    """
    Outcome of a successful credential check.

    A challenge is not a failure: the client must collect the code and
    call verify_challenge with user_id.
    """
    status: str
    tokens: Optional[TokenPair] = None
    user_id: Optional[UUID] = None
    masked_destination: Optional[str] = None

    @property
    def requires_challenge(self) -> bool:
        return self.status == CHALLENGE_REQUIRED


class AuthService:
    """
    Usage:
        result = await auth.login(db, email, password, ip, user_agent)
        if result.requires_challenge:
            tokens = await auth.verify_challenge(db, result.user_id, ip, code)
    """

    def __init__(
        self,
        limiter: RateLimiter,
        otp: OtpChallengeManager,
        rotation: RefreshRotationEngine,
        activity: Optional[ActivityLog] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.limiter = limiter
        self.otp = otp
        self.rotation = rotation
        self.activity = activity or ActivityLog()
        self.settings = settings or default_settings

    async def login(
        self,
        db: DBSession,
        username: str,
        password: str,
        ip_address: str,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        """
        Raises:
            RateLimited: Too many login attempts from this origin, or too
                many challenges issued for this user
            InvalidCredentials: Unknown user, wrong password, inactive user
        """
        s = self.settings
        key = f"login:{ip_address}"
        if not self.limiter.allow(key, s.LOGIN_RATE_LIMIT, s.LOGIN_RATE_WINDOW_SECONDS):
            logger.warning("login_rate_limited", ip_address=ip_address)
            raise RateLimited(self.limiter.retry_after(key, s.LOGIN_RATE_WINDOW_SECONDS))

        user = await verify_credentials(db, username, password)

        if not s.is_development:
            if not await trust.is_trusted(db, user.id, ip_address):
                issued = await self.otp.issue(db, user, ip_address, user_agent)
                self.activity.log(
                    "OTP_SENT",
                    user_id=str(user.id),
                    metadata={"ip_address": ip_address},
                )
                logger.info("login_challenge_required", user_id=str(user.id))
                return LoginResult(
                    status=CHALLENGE_REQUIRED,
                    user_id=user.id,
                    masked_destination=issued.masked_destination,
                )
            await trust.mark_trusted(db, user.id, ip_address, user_agent)

        tokens = self._complete_login(db, user, ip_address, "LOGIN")
        return LoginResult(status=AUTHENTICATED, tokens=tokens, user_id=user.id)

    async def verify_challenge(
        self,
        db: DBSession,
        user_id: UUID,
        ip_address: str,
        code: str,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        """
        Raises:
            RateLimited, ChallengeExpired, ChallengeAttemptsExhausted,
            InvalidChallengeCode: see OtpChallengeManager.verify
        """
        await self.otp.verify(db, user_id, ip_address, code, user_agent)

        user = db.get(User, user_id)
        if user is None or not user.is_active:
            raise ChallengeExpired()

        self.activity.log(
            "IP_VERIFIED",
            user_id=str(user.id),
            metadata={"ip_address": ip_address},
        )
        return self._complete_login(db, user, ip_address, "LOGIN_VERIFIED")

    def _complete_login(
        self, db: DBSession, user: User, ip_address: str, action: str
    ) -> TokenPair:
        user.last_login_at = utcnow()
        user.last_ip_address = ip_address
        db.add(user)
        pair, _ = issue_token_pair(db, user, self.settings)
        db.commit()

        self.activity.log(action, user_id=str(user.id), metadata={"ip_address": ip_address})
        logger.info("login_succeeded", user_id=str(user.id), ip_address=ip_address)
        return pair

    async def refresh(self, db: DBSession, refresh_token: str) -> TokenPair:
        return await self.rotation.rotate(db, refresh_token)

    async def logout(
        self,
        db: DBSession,
        user_id: UUID,
        refresh_token: Optional[str] = None,
        all_sessions: bool = False,
    ) -> int:
        """
        Revoke one refresh token, or all of the user's.

        Returns:
            Number of refresh tokens revoked
        """
        if all_sessions:
            count = await self.rotation.revoke_all(db, user_id)
        elif refresh_token:
            count = 1 if await self.rotation.revoke(db, refresh_token, user_id) else 0
        else:
            count = 0

        self.activity.log(
            "LOGOUT",
            user_id=str(user_id),
            metadata={"all_sessions": all_sessions, "revoked": count},
        )
        return count
