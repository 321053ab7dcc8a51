"""
authcore - Trust Ledger

Records (user, origin address) pairs that have completed an OTP
challenge. A login from a recorded origin skips the challenge.

An empty or "unknown" origin is never trusted and never recorded: a
request whose address cannot be determined always gets challenged.
"""

from typing import Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session as DBSession, select

from authcore.auth.models import TrustedOrigin, utcnow
from authcore.logging import get_logger

logger = get_logger(__name__)

UNKNOWN_ORIGIN = "unknown"


def is_known_origin(ip_address: Optional[str]) -> bool:
    return bool(ip_address) and ip_address.strip().lower() != UNKNOWN_ORIGIN


def get_trusted_origin(db: DBSession, user_id: UUID, ip_address: str) -> Optional[TrustedOrigin]:
    statement = select(TrustedOrigin).where(
        TrustedOrigin.user_id == user_id,
        TrustedOrigin.ip_address == ip_address,
    )
    return db.exec(statement).first()


async def is_trusted(db: DBSession, user_id: UUID, ip_address: Optional[str]) -> bool:
    """True if the user has previously verified from this origin."""
    if not is_known_origin(ip_address):
        return False
    return get_trusted_origin(db, user_id, ip_address) is not None


async def mark_trusted(
    db: DBSession,
    user_id: UUID,
    ip_address: Optional[str],
    user_agent: Optional[str] = None,
) -> Optional[TrustedOrigin]:
    """
    Upsert the ledger entry for (user, origin).

    An existing entry gets last_used_at and user_agent refreshed; it is
    never recreated. Returns None for unknown origins.
    """
    if not is_known_origin(ip_address):
        logger.warning("trust_skipped_unknown_origin", user_id=str(user_id))
        return None

    now = utcnow()
    entry = get_trusted_origin(db, user_id, ip_address)
    if entry is None:
        entry = TrustedOrigin(
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
            last_used_at=now,
        )
        db.add(entry)
        try:
            db.commit()
        except IntegrityError:
            # A concurrent verification created the row first
            db.rollback()
            entry = get_trusted_origin(db, user_id, ip_address)
            if entry is None:
                raise
        else:
            db.refresh(entry)
            return entry

    entry.last_used_at = now
    if user_agent is not None:
        entry.user_agent = user_agent
    db.add(entry)
    db.commit()
    db.refresh(entry)
    return entry
