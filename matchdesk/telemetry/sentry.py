"""
Sentry integration for error tracking.

Provides:
- Automatic exception capture with stacktrace
- FastAPI request context
- Pipeline run context tagging

Security:
- Trigger secret headers are scrubbed before sending
- Request bodies (uploaded PDFs) are NOT captured
- PII is disabled
"""

import logging
from contextlib import contextmanager
from typing import Optional

from matchdesk.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Module-level flag to track initialization
_sentry_initialized = False

SENSITIVE_HEADERS = ("x-cron-secret", "authorization", "cookie", "set-cookie")


def scrub_sensitive_data(event: dict, hint: dict) -> Optional[dict]:
    """Remove secrets and request bodies from Sentry events."""
    request = event.get("request") or {}

    headers = request.get("headers") or {}
    for key in list(headers.keys()):
        if key.lower() in SENSITIVE_HEADERS:
            headers[key] = "[REDACTED]"
    request["headers"] = headers

    if "data" in request:
        request["data"] = "[SCRUBBED]"

    event["request"] = request
    return event


def init_sentry(settings: Optional[Settings] = None) -> bool:
    """
    Initialize Sentry SDK if SENTRY_DSN is configured.

    Returns True if Sentry was initialized, False otherwise.
    """
    global _sentry_initialized

    if _sentry_initialized:
        logger.debug("Sentry already initialized, skipping")
        return True

    settings = settings or get_settings()
    if not settings.SENTRY_DSN:
        logger.info("Sentry not configured (SENTRY_DSN not set)")
        return False

    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            LoggingIntegration(level=logging.ERROR, event_level=logging.ERROR),
        ],
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        send_default_pii=False,
        before_send=scrub_sensitive_data,
    )

    _sentry_initialized = True
    logger.info(f"Sentry initialized: env={settings.ENVIRONMENT}")
    return True


def is_sentry_enabled() -> bool:
    return _sentry_initialized


@contextmanager
def sentry_run_context(kind: str, **extra_tags):
    """
    Tag everything captured inside a pipeline run with its kind.

    Usage:
        with sentry_run_context("SUMULA_INGEST", document_id=doc_id):
            ...

    Exceptions are captured with the run context and re-raised.
    """
    if not _sentry_initialized:
        yield None
        return

    import sentry_sdk

    with sentry_sdk.new_scope() as scope:
        scope.set_tag("run_kind", kind)
        scope.set_context("run", {"kind": kind, **{k: str(v) for k, v in extra_tags.items()}})
        for key, value in extra_tags.items():
            if value is not None:
                scope.set_tag(key, str(value))

        try:
            yield scope
        except Exception as e:
            sentry_sdk.capture_exception(e)
            raise
