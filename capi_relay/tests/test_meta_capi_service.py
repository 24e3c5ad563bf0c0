"""Unit tests for the Meta CAPI client.

WHAT:
    Request shape and outcome classification, using httpx.MockTransport.

WHY:
    The worker's retry/deadletter accounting depends on the client raising
    the right error type with a useful detail.

REFERENCES:
    - capi_relay/services/meta_capi_service.py (module under test)
"""

import asyncio
import json

import httpx
import pytest

from capi_relay.exceptions import ConversionsDeliveryError, PlatformRejection, TransientDeliveryError
from capi_relay.services.meta_capi_service import MAX_ERROR_DETAIL_LENGTH, MetaCAPIService

BODY = {"data": [{"event_name": "Purchase", "event_id": "shopify_purchase_1", "user_data": {"fbp": "fb.1.x"}}]}


def _service(handler) -> MetaCAPIService:
    return MetaCAPIService(
        pixel_id="1234567890",
        access_token="test-meta-token",
        api_version="v18.0",
        transport=httpx.MockTransport(handler),
    )


class TestSendEvents:
    def test_success_returns_response_json(self):
        """WHAT: 200 without `error` is a success.
        WHY: Baseline; also checks URL and token placement.
        """
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"events_received": 1, "fbtrace_id": "AbC"})

        result = asyncio.run(_service(handler).send_events(BODY))

        assert result["events_received"] == 1
        assert seen["url"] == "https://graph.facebook.com/v18.0/1234567890/events"
        assert seen["body"]["access_token"] == "test-meta-token"
        assert seen["body"]["data"] == BODY["data"]

    def test_caller_body_is_not_mutated(self):
        def handler(request):
            return httpx.Response(200, json={"events_received": 1})

        body = {"data": [{"event_name": "PageView"}]}
        asyncio.run(_service(handler).send_events(body))
        assert "access_token" not in body

    def test_4xx_is_platform_rejection_with_verbatim_error(self):
        error = {"message": "Invalid parameter", "type": "OAuthException", "code": 100, "fbtrace_id": "X"}

        def handler(request):
            return httpx.Response(400, json={"error": error})

        with pytest.raises(PlatformRejection) as exc_info:
            asyncio.run(_service(handler).send_events(BODY))

        assert exc_info.value.status_code == 400
        assert json.loads(exc_info.value.detail) == {"error": error}

    def test_error_in_200_body_is_platform_rejection(self):
        """WHAT: A 200 carrying an `error` object still fails.
        WHY: Graph API occasionally reports business errors with 200.
        """
        def handler(request):
            return httpx.Response(200, json={"error": {"message": "Unsupported post request"}})

        with pytest.raises(PlatformRejection):
            asyncio.run(_service(handler).send_events(BODY))

    def test_5xx_is_transient(self):
        def handler(request):
            return httpx.Response(503, text="upstream unavailable")

        with pytest.raises(TransientDeliveryError) as exc_info:
            asyncio.run(_service(handler).send_events(BODY))
        assert exc_info.value.status_code == 503

    def test_transport_failure_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientDeliveryError) as exc_info:
            asyncio.run(_service(handler).send_events(BODY))
        assert "connection refused" in exc_info.value.detail

    def test_long_error_detail_is_capped(self):
        def handler(request):
            return httpx.Response(400, json={"error": {"message": "x" * 5000}})

        with pytest.raises(ConversionsDeliveryError) as exc_info:
            asyncio.run(_service(handler).send_events(BODY))
        assert len(exc_info.value.detail) == MAX_ERROR_DETAIL_LENGTH

    def test_empty_error_body_uses_status(self):
        def handler(request):
            return httpx.Response(404)

        with pytest.raises(PlatformRejection) as exc_info:
            asyncio.run(_service(handler).send_events(BODY))
        assert exc_info.value.detail == "Meta API request failed: 404"
