"""
authcore - Activity Log

Fire-and-forget audit events for login, OTP and role administration.
Persistence belongs to an external sink; a failing sink never fails the
request that produced the event.
"""

from typing import Any, Dict, Optional, Protocol

from authcore.logging import get_logger

logger = get_logger(__name__)


class ActivitySink(Protocol):
    def record(
        self,
        action: str,
        user_id: Optional[str],
        entity_type: str,
        entity_id: Optional[str],
        metadata: Dict[str, Any],
    ) -> None:
        ...


class LogActivitySink:
    """Default sink: writes audit events to the structured log."""

    def record(
        self,
        action: str,
        user_id: Optional[str],
        entity_type: str,
        entity_id: Optional[str],
        metadata: Dict[str, Any],
    ) -> None:
        logger.info(
            "activity",
            action=action,
            user_id=user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            **metadata,
        )


class ActivityLog:
    """
    Front for the configured sink.

    Usage:
        activity.log("LOGIN", user_id=str(user.id), metadata={"ip": ip})
    """

    def __init__(self, sink: Optional[ActivitySink] = None) -> None:
        self._sink = sink or LogActivitySink()

    def log(
        self,
        action: str,
        user_id: Optional[str] = None,
        entity_type: str = "AUTH",
        entity_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            self._sink.record(action, user_id, entity_type, entity_id or user_id, metadata or {})
        except Exception:
            # Audit is off the critical path
            logger.exception("activity_log_failed", action=action, user_id=user_id)
