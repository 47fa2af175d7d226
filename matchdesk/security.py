"""Security: rate limiting and X-Cron-Secret verification for trigger endpoints."""

import hmac
import logging
from typing import Optional

from fastapi import HTTPException, Security
from fastapi.security import APIKeyHeader
from slowapi import Limiter
from slowapi.util import get_remote_address

from matchdesk.config import get_settings

logger = logging.getLogger(__name__)

CRON_SECRET_HEADER = "X-Cron-Secret"

# Rate limiter using client IP
limiter = Limiter(key_func=get_remote_address)

cron_secret_header = APIKeyHeader(name=CRON_SECRET_HEADER, auto_error=False)


def rate_limit() -> str:
    """Per-route limit string, read at request time so tests can override it."""
    return get_settings().RATE_LIMIT_PER_MINUTE


def is_production() -> bool:
    return get_settings().ENVIRONMENT.lower() == "production"


async def verify_cron_secret(
    secret: Optional[str] = Security(cron_secret_header),
) -> bool:
    """
    Verify the shared secret on trigger endpoints.

    SECURITY: In production, CRON_SECRET must be configured. Empty CRON_SECRET
    blocks every trigger (fail-closed). In development, empty CRON_SECRET
    allows all requests for convenience.
    """
    expected = get_settings().CRON_SECRET

    # FAIL-CLOSED: In production, require CRON_SECRET to be configured
    if not expected:
        if is_production():
            logger.error("CRON_SECRET not configured in production - blocking trigger access")
            raise HTTPException(
                status_code=503,
                detail="Service misconfigured. Trigger access disabled.",
            )
        return True

    if not secret:
        raise HTTPException(
            status_code=401,
            detail=f"Missing secret. Provide it via {CRON_SECRET_HEADER} header.",
        )

    if not hmac.compare_digest(secret.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Invalid cron secret attempt")
        raise HTTPException(status_code=401, detail="Invalid cron secret")

    return True
