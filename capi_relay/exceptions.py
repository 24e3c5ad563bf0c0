"""
Pipeline Exceptions
===================

Error taxonomy for the conversion ingestion and delivery pipeline.

Ingestion-side errors (ValidationError, AuthError, OriginNotAllowed,
MissingCredentials, EventNotFound, InvalidEventState) are raised inside
request handlers and rendered by the exception handler in capi_relay/main.py as
`{"ok": false, "error": ...}` with the class' status code.

Delivery-side errors (NoMatchKeys, TransientDeliveryError,
PlatformRejection, Deadlettered) never reach an HTTP caller. The delivery
worker catches them and records them on the event row.

RELATED FILES
-------------
- capi_relay/services/normalizer.py: Raises ValidationError
- capi_relay/services/signature.py / routers: Raise AuthError
- capi_relay/services/meta_capi_service.py: Raises ConversionsDeliveryError subclasses
- capi_relay/services/delivery_worker.py: Catches delivery errors
"""

from typing import Optional


class PipelineError(Exception):
    """
    Base exception for all errors surfaced to HTTP callers.

    PARAMETERS:
        message: Human-readable error description
        details: Optional extra context (e.g. database error text)
    """

    status_code = 500

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(PipelineError):
    """Malformed ingestion body. Nothing is written to the store."""

    status_code = 400


class AuthError(PipelineError):
    """Bad or missing webhook signature / internal secret."""

    status_code = 401


class OriginNotAllowed(PipelineError):
    """Storefront call from an origin outside EVENT_ALLOWED_ORIGINS."""

    status_code = 403


class MissingCredentials(PipelineError):
    """No pixel id or access token in tenant settings or process defaults."""

    status_code = 400


class EventNotFound(PipelineError):
    status_code = 404


class InvalidEventState(PipelineError):
    """Operator action not allowed from the event's current status."""

    status_code = 409


# =============================================================================
# DELIVERY-SIDE ERRORS
# =============================================================================

class ConversionsDeliveryError(Exception):
    """
    Base class for a failed delivery attempt.

    Every subclass consumes one retry slot. `detail` is what ends up in
    ConversionEvent.last_error.
    """

    def __init__(self, detail: str, status_code: Optional[int] = None):
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


class NoMatchKeys(ConversionsDeliveryError):
    """user_data carries no identity field Meta can match on."""

    def __init__(self):
        super().__init__("no_match_keys")


class TransientDeliveryError(ConversionsDeliveryError):
    """Network failure, timeout or 5xx from the platform."""


class PlatformRejection(ConversionsDeliveryError):
    """Platform returned a structured business error (4xx or error in body)."""


class Deadlettered(Exception):
    """
    An event exhausted its retry budget.

    Reported to Sentry by the worker; the row stays in `deadletter` until
    an operator requeues it.
    """

    def __init__(self, event_id: str, attempts: int, last_error: Optional[str]):
        super().__init__(
            f"CAPI event {event_id} dead-lettered after {attempts} attempts: {last_error}"
        )
        self.event_id = event_id
        self.attempts = attempts
        self.last_error = last_error
