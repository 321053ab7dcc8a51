"""
authcore - Refresh Rotation Engine

Every refresh token is single-use. Presenting one rotates it: the row is
revoked and a successor is minted. Presenting an already-rotated token is
either a benign race or a replay of a stolen token:

    Active --rotate--> Rotated --reuse, recent sibling--> (race: reuse sibling)
                               --reuse, no sibling-----> ReuseDetected
    Active/Rotated --expiry--> Expired (row deleted on next lookup)

Race vs. theft is decided by the grace window (REFRESH_GRACE_SECONDS,
default 60): a browser firing two refreshes at once (tab focus plus a
background timer) produces a second request within a few seconds while
the first one's successor is fresh. The window is a tunable trade-off,
not a correctness boundary: widening it tolerates slower clients and
gives a replayed token more room to pass as a race.

Concurrency:
- The Active -> Rotated transition is a conditional UPDATE
  (WHERE NOT revoked) checked by affected row count, so two concurrent
  rotations of one token cannot both succeed
- Claim and successor are committed in one transaction; a concurrent
  loser that blocked on the claim sees the committed successor as its
  recent sibling
"""

from datetime import timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session as DBSession, select

from authcore.auth.errors import ReuseDetected, TokenExpiredOrUnknown
from authcore.auth.models import RefreshToken, User, utcnow
from authcore.auth.tokens import (
    TokenPair,
    get_token_expiry_seconds,
    issue_access_token,
    issue_token_pair,
    verify_refresh_token,
)
from authcore.config import Settings, settings as default_settings
from authcore.logging import get_logger

logger = get_logger(__name__)


class RefreshRotationEngine:
    """
    Usage:
        engine = RefreshRotationEngine()
        pair = await engine.rotate(db, refresh_token)
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or default_settings

    @property
    def grace_period(self) -> timedelta:
        return timedelta(seconds=self.settings.REFRESH_GRACE_SECONDS)

    async def rotate(self, db: DBSession, token: str) -> TokenPair:
        """
        Consume a refresh token and return the tokens the client should use.

        Raises:
            TokenExpiredOrUnknown: Unknown, expired, or user gone/inactive
            ReuseDetected: Rotated token replayed outside the grace window;
                every refresh token of the user has been revoked
        """
        try:
            return self._rotate(db, token)
        except TokenExpiredOrUnknown:
            raise
        except SQLAlchemyError as e:
            # Storage trouble never grants access
            db.rollback()
            logger.error("refresh_storage_error", error=str(e))
            raise TokenExpiredOrUnknown() from e

    def _rotate(self, db: DBSession, token: str) -> TokenPair:
        now = utcnow()
        row = db.exec(select(RefreshToken).where(RefreshToken.token == token)).first()

        if row is None or row.expires_at <= now:
            if row is not None:
                db.delete(row)
                db.commit()
            raise TokenExpiredOrUnknown()

        # The row decides usability; a value signed with a retired key is dead
        verify_refresh_token(token, self.settings)

        claim = db.exec(
            update(RefreshToken)
            .where(RefreshToken.id == row.id, RefreshToken.revoked == False)
            .values(revoked=True, revoked_at=now)
        )
        claimed = claim.rowcount == 1

        if claimed:
            return self._issue_successor(db, row.user_id)
        return self._handle_reuse(db, row.user_id, now)

    def _load_active_user(self, db: DBSession, user_id: UUID) -> Optional[User]:
        # Re-read so role changes and deactivation apply immediately
        user = db.get(User, user_id)
        if user is None or not user.is_active:
            return None
        return user

    def _issue_successor(self, db: DBSession, user_id: UUID) -> TokenPair:
        user = self._load_active_user(db, user_id)
        if user is None:
            self._revoke_user_tokens(db, user_id)
            db.commit()
            logger.warning("refresh_denied_inactive_user", user_id=str(user_id))
            raise TokenExpiredOrUnknown()

        pair, _ = issue_token_pair(db, user, self.settings)
        db.commit()
        logger.info("refresh_rotated", user_id=str(user_id))
        return pair

    def _handle_reuse(self, db: DBSession, user_id: UUID, now) -> TokenPair:
        sibling = db.exec(
            select(RefreshToken)
            .where(
                RefreshToken.user_id == user_id,
                RefreshToken.revoked == False,
                RefreshToken.expires_at > now,
                RefreshToken.created_at >= now - self.grace_period,
            )
            .order_by(RefreshToken.created_at.desc())
        ).first()

        if sibling is None:
            revoked = self._revoke_user_tokens(db, user_id)
            db.commit()
            logger.warning(
                "refresh_token_reuse_detected",
                user_id=str(user_id),
                revoked_count=revoked,
                grace_seconds=self.settings.REFRESH_GRACE_SECONDS,
            )
            raise ReuseDetected()

        user = self._load_active_user(db, user_id)
        if user is None:
            self._revoke_user_tokens(db, user_id)
            db.commit()
            raise TokenExpiredOrUnknown()

        sibling_token = sibling.token
        db.commit()
        logger.info("refresh_race_tolerated", user_id=str(user_id))
        return TokenPair(
            access_token=issue_access_token(user, self.settings),
            refresh_token=sibling_token,
            expires_in=get_token_expiry_seconds(self.settings),
        )

    def _revoke_user_tokens(self, db: DBSession, user_id: UUID) -> int:
        result = db.exec(
            update(RefreshToken)
            .where(RefreshToken.user_id == user_id, RefreshToken.revoked == False)
            .values(revoked=True, revoked_at=utcnow())
        )
        return result.rowcount

    async def revoke(
        self, db: DBSession, token: str, user_id: Optional[UUID] = None
    ) -> bool:
        """
        Revoke a single refresh token (logout). With user_id, only a token
        owned by that user is revoked.

        Returns:
            True if an active token was revoked
        """
        statement = update(RefreshToken).where(
            RefreshToken.token == token, RefreshToken.revoked == False
        )
        if user_id is not None:
            statement = statement.where(RefreshToken.user_id == user_id)
        result = db.exec(statement.values(revoked=True, revoked_at=utcnow()))
        revoked = result.rowcount == 1
        db.commit()
        return revoked

    async def revoke_all(self, db: DBSession, user_id: UUID) -> int:
        """
        Revoke every refresh token of a user (logout everywhere,
        deactivation).

        Returns:
            Number of tokens revoked
        """
        count = self._revoke_user_tokens(db, user_id)
        db.commit()
        return count
