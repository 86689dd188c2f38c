"""Sentry initialization and configuration."""

import os

import sentry_sdk
import structlog
from sentry_sdk.integrations.logging import LoggingIntegration

from leadpilot import __version__
from leadpilot.config import Settings

logger = structlog.get_logger(__name__)


def init_sentry(settings: Settings) -> bool:
    """
    Initialize Sentry if DSN is configured.

    Returns True if Sentry was initialized, False otherwise.
    """
    if not settings.sentry_dsn:
        return False

    # Only ERROR+ logs become Sentry events
    sentry_logging = LoggingIntegration(level=None, event_level="ERROR")

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.sentry_environment,
        release=os.environ.get("GIT_SHA", f"leadpilot@{__version__}"),
        integrations=[sentry_logging],
        send_default_pii=False,
        attach_stacktrace=True,
    )
    sentry_sdk.set_tag("service", "leadpilot")
    sentry_sdk.set_tag("accounts", ",".join(a.id for a in settings.accounts))

    logger.info("sentry_initialized", environment=settings.sentry_environment)
    return True
