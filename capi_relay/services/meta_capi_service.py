"""Meta Conversions API (CAPI) client.

WHAT:
    Thin adapter that POSTs a batch body to Meta's events endpoint and
    classifies the outcome.

WHY:
    - The delivery worker needs one call that either succeeds or raises a
      ConversionsDeliveryError it can turn into retry/deadletter accounting
    - Meta's structured error bodies are kept verbatim (capped) on the event
      row so operators can see exactly why a payload was rejected

HOW:
    Uses Meta's Conversions API endpoint:
    POST https://graph.facebook.com/{version}/{pixel_id}/events

    Outcome classification:
    - 2xx without an `error` field        -> success (response JSON returned)
    - 5xx, timeout, connection failure    -> TransientDeliveryError
    - 4xx, or 2xx carrying `error`        -> PlatformRejection

    Both failure types are retried identically by the worker.

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/conversions-api
"""

import json
import logging
from typing import Any, Dict, Optional

import httpx

from capi_relay.exceptions import PlatformRejection, TransientDeliveryError

logger = logging.getLogger(__name__)

META_GRAPH_BASE_URL = "https://graph.facebook.com"
DEFAULT_API_VERSION = "v18.0"
MAX_ERROR_DETAIL_LENGTH = 1000


class MetaCAPIService:
    """Client for Meta's server-side events endpoint.

    Usage:
        ```python
        service = MetaCAPIService(pixel_id="123456", access_token="token")
        result = await service.send_events({"data": [event]})
        ```
    """

    def __init__(
        self,
        pixel_id: str,
        access_token: str,
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize CAPI client with pixel credentials.

        Args:
            pixel_id: Meta Pixel ID (from Meta Business Manager)
            access_token: System user token with ads_management permission
            api_version: Graph API version
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.pixel_id = pixel_id
        self.access_token = access_token
        self.timeout = timeout
        self.transport = transport
        self.events_url = f"{META_GRAPH_BASE_URL}/{api_version}/{pixel_id}/events"

    async def send_events(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """Send one batch body to Meta Conversions API.

        Args:
            body: {"data": [...events], "test_event_code"?: ...}

        Returns:
            API response with events_received and fbtrace_id

        Raises:
            TransientDeliveryError: Network failure, timeout, or 5xx
            PlatformRejection: Meta returned a business error
        """
        request_body = dict(body)
        request_body["access_token"] = self.access_token

        events = body.get("data") or []
        logger.info(
            f"[META_CAPI] Sending {len(events)} event(s) to pixel {self.pixel_id}",
            extra={
                "event_names": [e.get("event_name") for e in events if isinstance(e, dict)],
                "event_ids": [e.get("event_id") for e in events if isinstance(e, dict)],
                "test_mode": bool(body.get("test_event_code")),
            }
        )

        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                response = await client.post(self.events_url, json=request_body)
        except httpx.HTTPError as e:
            message = str(e) or e.__class__.__name__
            logger.error(f"[META_CAPI] Network error: {message}")
            raise TransientDeliveryError(message)

        result = _parse_json(response)

        if response.is_success and not (isinstance(result, dict) and result.get("error")):
            logger.info(
                f"[META_CAPI] Success: {result.get('events_received', 0)} event(s) received",
                extra={
                    "events_received": result.get("events_received", 0),
                    "fbtrace_id": result.get("fbtrace_id", ""),
                }
            )
            return result

        detail = _error_detail(response, result)
        logger.error(
            f"[META_CAPI] API error: {response.status_code} - {detail}",
            extra={"status_code": response.status_code}
        )
        if response.status_code >= 500:
            raise TransientDeliveryError(detail, status_code=response.status_code)
        raise PlatformRejection(detail, status_code=response.status_code)


def _parse_json(response: httpx.Response) -> Dict[str, Any]:
    if not response.content:
        return {}
    try:
        parsed = response.json()
    except ValueError:
        return {"raw": response.text}
    return parsed if isinstance(parsed, dict) else {"raw": parsed}


def _error_detail(response: httpx.Response, result: Dict[str, Any]) -> str:
    """Prefer Meta's structured error body verbatim, capped for storage."""
    if result.get("error") is not None:
        detail = json.dumps({"error": result["error"]}, separators=(",", ":"), default=str)
    elif result:
        detail = json.dumps(result, separators=(",", ":"), default=str)
    else:
        detail = f"Meta API request failed: {response.status_code}"
    return detail[:MAX_ERROR_DETAIL_LENGTH]
