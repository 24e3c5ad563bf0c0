"""
Sentry Error Tracking
=====================

Error reporting for the relay's two processes: the FastAPI app that ingests
events and the ARQ worker that delivers them.

What gets reported:
- Events reaching `deadletter` (Deadlettered, captured by the delivery worker)
- Cron runs skipped for missing Meta credentials (warning message)
- Unexpected exceptions in request handlers and worker jobs
- ERROR log records, via the logging integration

Secrets: Meta access tokens and the internal shared secrets travel in request
bodies and headers. `scrub_secrets` replaces them before anything leaves the
process.

Environment Variables:
- SENTRY_DSN: Sentry project DSN (unset = reporting disabled, local logs only)
- ENVIRONMENT: Environment name (production, staging, development)
- RELEASE_VERSION: Release identifier (set via CI/CD)
"""

from __future__ import annotations

import os
import logging
from typing import Any, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

logger = logging.getLogger(__name__)

SCRUBBED = "[scrubbed]"

# Keys (case-insensitive) whose values never leave the process
SECRET_KEYS = frozenset({
    "access_token",
    "meta_access_token",
    "x-internal-token",
    "x-cron-secret",
    "x-shopify-hmac-sha256",
    "authorization",
    "cookie",
})


def scrub_secrets(value: Any) -> Any:
    """Return a copy of `value` with secret-bearing keys replaced."""
    if isinstance(value, dict):
        return {
            k: SCRUBBED if str(k).lower() in SECRET_KEYS else scrub_secrets(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [scrub_secrets(v) for v in value]
    return value


def _before_send(event: dict, hint: dict) -> dict:
    for section in ("request", "extra", "contexts"):
        if section in event:
            event[section] = scrub_secrets(event[section])
    return event


def init_sentry(component: str = "api") -> bool:
    """
    Initialize Sentry SDK for one process.

    Args:
        component: "api" or "worker"; attached as a tag to every event

    Returns:
        True if Sentry was initialized, False when no DSN is configured
        or initialization failed.
    """
    dsn = os.environ.get("SENTRY_DSN") or None
    if not dsn:
        logger.info(f"[SENTRY] SENTRY_DSN not set - {component} errors are logged locally only")
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                RedisIntegration(),
                LoggingIntegration(
                    level=logging.INFO,        # INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            # Event payloads carry hashed customer identifiers; keep request PII out
            send_default_pii=False,
            before_send=_before_send,
            release=os.environ.get("RELEASE_VERSION"),
        )
        sentry_sdk.set_tag("component", component)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False

    logger.info(f"[SENTRY] Reporting {component} errors for {environment}")
    return True


def capture_exception(exception: BaseException, extra: Optional[dict] = None) -> None:
    """
    Report a handled exception, e.g. an event reaching `deadletter`.

    Example:
        capture_exception(
            Deadlettered(event_id, attempts, last_error),
            extra={"tenant_id": str(tenant_id)},
        )
    """
    if not sentry_sdk.is_initialized():
        logger.error(f"[SENTRY] (disabled) {exception}", extra=scrub_secrets(extra or {}))
        return

    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in scrub_secrets(extra or {}).items():
                scope.set_extra(key, value)
            scope.capture_exception(exception)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture exception: {e}")


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """Report a message at `level` (debug, info, warning, error, fatal)."""
    if not sentry_sdk.is_initialized():
        logger.log(
            logging.getLevelName(level.upper()),
            f"[SENTRY] (disabled) {message}",
            extra=scrub_secrets(extra or {}),
        )
        return

    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in scrub_secrets(extra or {}).items():
                scope.set_extra(key, value)
            scope.capture_message(message, level=level)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture message: {e}")
