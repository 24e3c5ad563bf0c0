"""
Telemetry Module
================

Error tracking for the conversion pipeline.

Components:
- sentry.py: Error tracking (dead-lettered events, unexpected worker failures)

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays disabled when unset)
- ENVIRONMENT: Environment name (production, staging, development)

Usage:
    from capi_relay.telemetry import init_sentry, capture_exception

Related modules:
- capi_relay/main.py: Initializes Sentry on startup
- capi_relay/workers/arq_worker.py: Initializes Sentry in the worker process
- capi_relay/services/delivery_worker.py: Reports dead-lettered events
"""

from capi_relay.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
    scrub_secrets,
)


__all__ = [
    "init_sentry",
    "capture_exception",
    "capture_message",
    "scrub_secrets",
]
