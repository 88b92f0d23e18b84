"""
Authentication dependencies.

Job triggers and the service-facing goal/contact endpoints are called by
trusted backends (cron, the app's own API), not by end users. They share
one secret, sent in the X-Cron-Secret header.
"""
import hmac
import logging
from typing import Optional

from fastapi import Header

from rundown.core.config import settings
from rundown.core.exceptions import UnauthorizedError

logger = logging.getLogger(__name__)


def require_service_key(
    x_cron_secret: Optional[str] = Header(None, alias="X-Cron-Secret"),
) -> None:
    """
    Reject requests without the shared secret.

    With no CRON_SECRET configured (local development only; production
    refuses to start without one) every request is accepted.
    """
    expected = settings.CRON_SECRET
    if not expected:
        logger.warning("CRON_SECRET not set; service endpoints are unauthenticated")
        return
    if not x_cron_secret or not hmac.compare_digest(x_cron_secret, expected):
        raise UnauthorizedError("Invalid or missing X-Cron-Secret")
