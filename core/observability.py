"""
core/observability.py -- Sentry error reporting.

Only unexpected failures are reported: GitHub outages, store errors, bugs.
Expected auth rejections (bad key, expired token, not allow-listed) are
normal traffic and never reach Sentry.

send_default_pii is off so request headers -- which carry the service
credential and the session token -- are not attached to events.

Layer rule: core/ may not import from api/, web/, or auth/.
"""

import logging

import sentry_sdk

from core.config import Settings

logger = logging.getLogger("gatehouse.observability")


def init_sentry(settings: Settings) -> bool:
    """Initialise the Sentry SDK when SENTRY_DSN is set. Returns True if enabled."""
    if not settings.sentry_dsn:
        logger.info("Sentry disabled (SENTRY_DSN not set)")
        return False
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.sentry_environment,
        send_default_pii=False,
    )
    logger.info("Sentry enabled (environment=%s)", settings.sentry_environment)
    return True


def report_exception(exc: BaseException) -> None:
    # No-op when the SDK was never initialised.
    sentry_sdk.capture_exception(exc)
