"""
authcore - OTP Delivery

Out-of-band delivery of one-time passcodes. Real delivery (SMTP,
transactional email API) lives outside the core; it plugs in through the
OtpNotifier protocol and is passed to create_app(notifier=...).
"""

from datetime import datetime
from typing import Protocol

from authcore.logging import get_logger

logger = get_logger(__name__)


def mask_email(email: str) -> str:
    """
    Mask an address for display in responses.

    Example:
        >>> mask_email("mario.rossi@example.com")
        'm***i@example.com'
    """
    if "@" not in email:
        return "***"
    local, domain = email.split("@", 1)
    if len(local) <= 2:
        return f"{local[:1]}***@{domain}"
    return f"{local[0]}***{local[-1]}@{domain}"


class OtpNotifier(Protocol):
    def send_login_code(
        self, email: str, code: str, ip_address: str, expires_at: datetime
    ) -> None:
        ...


class LogOtpNotifier:
    """
    Development notifier: records that a code was sent, never the code.
    """

    def send_login_code(
        self, email: str, code: str, ip_address: str, expires_at: datetime
    ) -> None:
        logger.info(
            "otp_delivery_stub",
            destination=mask_email(email),
            ip_address=ip_address,
            expires_at=expires_at.isoformat(),
        )
