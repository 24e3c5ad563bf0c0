"""HTTP-level tests for the storefront, webhook and internal routes.

WHAT:
    Drives the FastAPI app through TestClient against in-memory SQLite.

WHY:
    Status codes, auth and origin checks, and "nothing written on reject"
    are properties of the routes, not of the services behind them.

REFERENCES:
    - capi_relay/routers/events.py
    - capi_relay/routers/shopify_webhooks.py
    - capi_relay/routers/capi_internal.py
"""

import json
import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

from capi_relay.deps import get_settings
from capi_relay.models import ConversionEvent, Touchpoint
from capi_relay.services import event_store
from capi_relay.services.meta_capi_service import MetaCAPIService
from capi_relay.tests.conftest import ALLOWED_ORIGIN, CRON_HEADERS, INTERNAL_HEADERS, TENANT_ID, sign

BROWSER_UA = "Mozilla/5.0 (Linux; Android 14) AppleWebKit/537.36 Chrome/126.0 Mobile Safari/537.36"
STOREFRONT_HEADERS = {"Origin": ALLOWED_ORIGIN, "User-Agent": BROWSER_UA}

ORDER = {
    "id": 5551234,
    "email": "asha@example.com",
    "currency": "INR",
    "total_price": "1299.00",
    "processed_at": "2026-10-16T10:15:00+05:30",
    "browser_ip": "198.51.100.23",
    "line_items": [{"variant_id": 44012345678901, "quantity": 1}],
    "note_attributes": [{"name": "session_id", "value": "sess-web"}],
}


def _events(db):
    return db.query(ConversionEvent).all()


def _seed_event(db, event_id: str) -> None:
    event_store.upsert_queued(
        db,
        TENANT_ID,
        event_id,
        {"event_name": "AddToCart", "event_id": event_id, "user_data": {"fbp": "fb.1.x"}},
        event_name="AddToCart",
        event_time=datetime(2026, 10, 16, tzinfo=timezone.utc),
    )


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestTouchpointRoute:
    def test_touchpoint_upserts_and_enqueues_page_view(self, client, test_db_session):
        """WHAT: Touchpoint -> touchpoint row + queued PageView linked to it.
        WHY: Landing-page sighting is the attribution anchor for the session.
        """
        response = client.post(
            "/events/touchpoint",
            json={
                "session_id": "sess-web",
                "utm_source": "facebook",
                "fbc": "fb.1.1700000000.AbCd",
                "landing_url": "https://shop.example/products/kurta",
            },
            headers=STOREFRONT_HEADERS,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert response.headers["access-control-allow-origin"] == ALLOWED_ORIGIN

        touchpoint = test_db_session.query(Touchpoint).one()
        assert str(touchpoint.id) == data["touchpoint_id"]
        assert touchpoint.utm_source == "facebook"
        assert touchpoint.click_id_primary == "fb.1.1700000000.AbCd"

        events = _events(test_db_session)
        assert len(events) == 1
        assert events[0].event_name == "PageView"
        assert events[0].touchpoint_id == touchpoint.id
        assert events[0].status == "queued"

    def test_disallowed_origin_is_rejected(self, client, test_db_session):
        response = client.post(
            "/events/touchpoint",
            json={"session_id": "sess-web"},
            headers={"Origin": "https://evil.example", "User-Agent": BROWSER_UA},
        )

        assert response.status_code == 403
        assert response.json()["ok"] is False
        assert test_db_session.query(Touchpoint).count() == 0

    def test_blank_session_id_is_rejected(self, client, test_db_session):
        response = client.post("/events/touchpoint", json={"session_id": "   "}, headers=STOREFRONT_HEADERS)

        assert response.status_code == 400
        assert test_db_session.query(Touchpoint).count() == 0

    def test_bot_sighting_records_touchpoint_only(self, client, test_db_session):
        response = client.post(
            "/events/touchpoint",
            json={"session_id": "sess-bot"},
            headers={"Origin": ALLOWED_ORIGIN, "User-Agent": "facebookexternalhit/1.1"},
        )

        assert response.status_code == 200
        assert test_db_session.query(Touchpoint).count() == 1
        assert _events(test_db_session) == []


class TestPreflight:
    def test_allowed_origin(self, client):
        response = client.options(
            "/events/add-to-cart",
            headers={"Origin": ALLOWED_ORIGIN, "Access-Control-Request-Method": "POST"},
        )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == ALLOWED_ORIGIN
        assert "POST" in response.headers["access-control-allow-methods"]

    def test_disallowed_origin(self, client):
        response = client.options(
            "/events/initiate-checkout",
            headers={"Origin": "https://evil.example", "Access-Control-Request-Method": "POST"},
        )

        assert response.status_code == 403
        assert "access-control-allow-origin" not in response.headers


class TestAddToCartRoute:
    def test_cookie_fbp_is_used(self, client, test_db_session):
        response = client.post(
            "/events/add-to-cart",
            json={"session_id": "sess-web", "sku": "KURTA-M", "value": 1299, "currency": "inr"},
            headers={**STOREFRONT_HEADERS, "Cookie": "_fbp=fb.1.1700000000.42"},
        )

        assert response.status_code == 200
        row_id = response.json()["event_row_id"]
        event = test_db_session.query(ConversionEvent).one()
        assert str(event.id) == row_id
        assert event.event_name == "AddToCart"
        assert event.payload["user_data"]["fbp"] == "fb.1.1700000000.42"
        assert event.payload["custom_data"]["currency"] == "INR"

    def test_touchpoint_fills_missing_click_ids(self, client, test_db_session):
        """WHAT: AddToCart without click ids inherits them from the session touchpoint.
        WHY: Storefront scripts only send fbc on the landing page.
        """
        client.post(
            "/events/touchpoint",
            json={"session_id": "sess-web", "fbc": "fb.1.1700000000.AbCd"},
            headers=STOREFRONT_HEADERS,
        )
        touchpoint_id = test_db_session.query(Touchpoint).one().id

        response = client.post(
            "/events/add-to-cart",
            json={"session_id": "sess-web", "shopify_variant_id": 44012345678901},
            headers=STOREFRONT_HEADERS,
        )

        assert response.status_code == 200
        event = test_db_session.get(ConversionEvent, uuid.UUID(response.json()["event_row_id"]))
        assert event.payload["user_data"]["fbc"] == "fb.1.1700000000.AbCd"
        assert event.touchpoint_id == touchpoint_id

    def test_repeat_call_is_idempotent(self, client, test_db_session):
        body = {"session_id": "sess-web", "sku": "KURTA-M", "event_id": "atc-fixed"}
        first = client.post("/events/add-to-cart", json=body, headers=STOREFRONT_HEADERS)
        second = client.post("/events/add-to-cart", json=body, headers=STOREFRONT_HEADERS)

        assert first.json()["event_row_id"] == second.json()["event_row_id"]
        assert len(_events(test_db_session)) == 1

    def test_bot_is_acknowledged_not_enqueued(self, client, test_db_session):
        response = client.post(
            "/events/add-to-cart",
            json={"session_id": "sess-web", "sku": "KURTA-M"},
            headers={"Origin": ALLOWED_ORIGIN, "User-Agent": "Googlebot/2.1"},
        )

        assert response.status_code == 200
        assert response.json()["event_row_id"] == "bot_ignored"
        assert _events(test_db_session) == []

    def test_missing_item_id_is_rejected(self, client, test_db_session):
        response = client.post(
            "/events/add-to-cart", json={"session_id": "sess-web"}, headers=STOREFRONT_HEADERS
        )

        assert response.status_code == 400
        assert response.json()["ok"] is False
        assert _events(test_db_session) == []

    def test_invalid_json_is_rejected(self, client, test_db_session):
        response = client.post(
            "/events/add-to-cart",
            content=b"{not json",
            headers={**STOREFRONT_HEADERS, "Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert _events(test_db_session) == []


class TestInitiateCheckoutRoute:
    def test_checkout_enqueued(self, client, test_db_session):
        response = client.post(
            "/events/initiate-checkout",
            json={
                "session_id": "sess-web",
                "currency": "INR",
                "value": 2598,
                "contents": [{"id": "KURTA-M", "quantity": 2, "item_price": 1299}],
            },
            headers=STOREFRONT_HEADERS,
        )

        assert response.status_code == 200
        event = test_db_session.query(ConversionEvent).one()
        assert event.event_name == "InitiateCheckout"
        assert event.payload["custom_data"]["contents"] == [{"id": "KURTA-M", "quantity": 2, "item_price": 1299.0}]

    def test_empty_contents_rejected(self, client, test_db_session):
        response = client.post(
            "/events/initiate-checkout",
            json={"session_id": "sess-web", "currency": "INR", "value": 10, "contents": []},
            headers=STOREFRONT_HEADERS,
        )

        assert response.status_code == 400
        assert _events(test_db_session) == []


class TestOrderPaidWebhook:
    def _post(self, client, body: bytes, signature: str = None):
        return client.post(
            "/webhooks/order-paid",
            content=body,
            headers={
                "Content-Type": "application/json",
                "X-Shopify-Hmac-SHA256": signature if signature is not None else sign(body),
                "X-Shopify-Shop-Domain": "shop.myshopify.com",
            },
        )

    def test_signed_order_enqueues_purchase(self, client, test_db_session):
        response = self._post(client, json.dumps(ORDER).encode("utf-8"))

        assert response.status_code == 200
        assert response.json() == {"ok": True}
        event = test_db_session.query(ConversionEvent).one()
        assert event.event_id == "shopify_purchase_5551234"
        assert event.event_name == "Purchase"
        assert event.payload["custom_data"]["value"] == 1299.0

    def test_redelivery_keeps_one_row(self, client, test_db_session):
        body = json.dumps(ORDER).encode("utf-8")
        self._post(client, body)
        self._post(client, body)

        assert len(_events(test_db_session)) == 1

    def test_order_is_linked_to_storefront_touchpoint(self, client, test_db_session):
        client.post(
            "/events/touchpoint",
            json={"session_id": "sess-web", "fbc": "fb.1.1700000000.AbCd"},
            headers=STOREFRONT_HEADERS,
        )
        touchpoint_id = test_db_session.query(Touchpoint).one().id

        self._post(client, json.dumps(ORDER).encode("utf-8"))

        event = event_store.get_event(test_db_session, TENANT_ID, "shopify_purchase_5551234")
        assert event.touchpoint_id == touchpoint_id
        assert event.payload["user_data"]["fbc"] == "fb.1.1700000000.AbCd"

    def test_tampered_body_is_rejected(self, client, test_db_session):
        body = json.dumps(ORDER).encode("utf-8")
        tampered = body.replace(b"1299.00", b"1.00")

        response = self._post(client, tampered, signature=sign(body))

        assert response.status_code == 401
        assert _events(test_db_session) == []

    def test_missing_signature_is_rejected(self, client, test_db_session):
        response = self._post(client, json.dumps(ORDER).encode("utf-8"), signature="")

        assert response.status_code == 401
        assert _events(test_db_session) == []

    def test_signed_invalid_json_is_rejected(self, client, test_db_session):
        response = self._post(client, b"not json")

        assert response.status_code == 400
        assert _events(test_db_session) == []


class TestWorkerEndpoint:
    def test_requires_internal_token(self, client):
        response = client.post("/internal/capi/worker")
        assert response.status_code == 401

    def test_wrong_token_rejected(self, client):
        response = client.post("/internal/capi/worker", headers={"X-Internal-Token": "nope"})
        assert response.status_code == 401

    def test_drains_queue(self, client, test_db_session):
        _seed_event(test_db_session, "atc_1")
        _seed_event(test_db_session, "atc_2")

        send = AsyncMock(return_value={"events_received": 1})
        with patch.object(MetaCAPIService, "send_events", send):
            response = client.post("/internal/capi/worker?limit=10", headers=INTERNAL_HEADERS)

        assert response.status_code == 200
        assert response.json() == {"ok": True, "processed": 2, "sent": 2, "failed": 0, "deadlettered": 0}
        assert send.await_count == 2
        assert event_store.count_by_status(test_db_session, TENANT_ID) == {"sent": 2}

    def test_limit_out_of_range(self, client):
        assert client.post("/internal/capi/worker?limit=0", headers=INTERNAL_HEADERS).status_code == 400
        assert client.post("/internal/capi/worker?limit=101", headers=INTERNAL_HEADERS).status_code == 400

    def test_missing_credentials(self, client, test_db_session, monkeypatch):
        monkeypatch.setenv("META_PIXEL_ID", "")
        get_settings.cache_clear()

        response = client.post("/internal/capi/worker", headers=INTERNAL_HEADERS)

        assert response.status_code == 400
        assert response.json()["ok"] is False


class TestSendBatchEndpoint:
    def test_requires_cron_secret(self, client):
        assert client.post("/internal/capi/send-batch", headers=INTERNAL_HEADERS).status_code == 401

    def test_failures_counted_as_retry(self, client, test_db_session):
        _seed_event(test_db_session, "atc_1")
        event_store.upsert_queued(
            test_db_session,
            TENANT_ID,
            "atc_unmatchable",
            {"event_name": "AddToCart", "event_id": "atc_unmatchable", "user_data": {}},
            event_name="AddToCart",
            event_time=datetime(2026, 10, 16, tzinfo=timezone.utc),
        )

        with patch.object(MetaCAPIService, "send_events", AsyncMock(return_value={})):
            response = client.post("/internal/capi/send-batch?batch_size=50", headers=CRON_HEADERS)

        assert response.status_code == 200
        assert response.json() == {"ok": True, "processed": 2, "sent": 1, "retry": 1, "failed": 0}


class TestOperatorEndpoints:
    def test_list_events_with_filter(self, client, test_db_session):
        _seed_event(test_db_session, "atc_1")
        _seed_event(test_db_session, "atc_2")
        event_store.mark_sent(test_db_session, TENANT_ID, "atc_2")

        response = client.get("/internal/capi/events?status=queued", headers=INTERNAL_HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert [e["event_id"] for e in data["events"]] == ["atc_1"]
        assert data["status_counts"] == {"queued": 1, "sent": 1}

    def test_list_events_rejects_unknown_status(self, client):
        response = client.get("/internal/capi/events?status=bogus", headers=INTERNAL_HEADERS)
        assert response.status_code == 400

    def test_requeue_deadlettered_event(self, client, test_db_session):
        _seed_event(test_db_session, "atc_1")
        event_store.mark_failed(test_db_session, TENANT_ID, "atc_1", "boom", deadletter=True)

        response = client.post("/internal/capi/events/atc_1/requeue", headers=INTERNAL_HEADERS)

        assert response.status_code == 200
        assert response.json() == {"ok": True, "event_id": "atc_1", "status": "queued"}
        assert event_store.get_event(test_db_session, TENANT_ID, "atc_1").attempt_count == 0

    def test_requeue_sent_event_conflicts(self, client, test_db_session):
        _seed_event(test_db_session, "atc_1")
        event_store.mark_sent(test_db_session, TENANT_ID, "atc_1")

        response = client.post("/internal/capi/events/atc_1/requeue", headers=INTERNAL_HEADERS)
        assert response.status_code == 409

    def test_requeue_unknown_event(self, client):
        response = client.post("/internal/capi/events/missing/requeue", headers=INTERNAL_HEADERS)
        assert response.status_code == 404

    def test_settings_roundtrip_hides_token(self, client):
        response = client.put(
            "/internal/capi/settings",
            json={"meta_pixel_id": "999", "meta_access_token": "secret-token", "meta_test_event_code": "TEST1"},
            headers=INTERNAL_HEADERS,
        )
        assert response.status_code == 200

        data = client.get("/internal/capi/settings", headers=INTERNAL_HEADERS).json()
        assert data["meta_pixel_id"] == "999"
        assert data["has_access_token"] is True
        assert data["meta_test_event_code"] == "TEST1"
        assert "secret-token" not in json.dumps(data)

    def test_tenant_settings_override_env(self, client, test_db_session):
        client.put(
            "/internal/capi/settings",
            json={"meta_pixel_id": "999", "meta_access_token": "tenant-token"},
            headers=INTERNAL_HEADERS,
        )
        _seed_event(test_db_session, "atc_1")
        built = []
        original_init = MetaCAPIService.__init__

        def recording_init(self, *args, **kwargs):
            original_init(self, *args, **kwargs)
            built.append(self)

        with patch.object(MetaCAPIService, "__init__", recording_init), \
                patch.object(MetaCAPIService, "send_events", AsyncMock(return_value={})):
            client.post("/internal/capi/worker", headers=INTERNAL_HEADERS)

        assert built[0].pixel_id == "999"
        assert built[0].access_token == "tenant-token"


class TestNonFiniteNumbers:
    def _post(self, client, path: str, raw: bytes):
        return client.post(
            path,
            content=raw,
            headers={**STOREFRONT_HEADERS, "Content-Type": "application/json"},
        )

    def test_nan_value_rejected(self, client, test_db_session):
        """WHAT: NaN/Infinity amounts are a 400, nothing stored.
        WHY: Non-finite numbers cannot be encoded into the CAPI request.
        """
        response = self._post(
            client, "/events/add-to-cart", b'{"session_id": "s1", "sku": "SKU-1", "value": NaN}'
        )

        assert response.status_code == 400
        assert _events(test_db_session) == []

    def test_infinite_item_price_rejected(self, client, test_db_session):
        response = self._post(
            client,
            "/events/initiate-checkout",
            b'{"session_id": "s1", "currency": "INR", "value": 10,'
            b' "contents": [{"id": "SKU-1", "quantity": 1, "item_price": Infinity}]}',
        )

        assert response.status_code == 400
        assert _events(test_db_session) == []

    def test_infinite_sku_rejected(self, client, test_db_session):
        response = self._post(client, "/events/add-to-cart", b'{"session_id": "s1", "sku": Infinity}')

        assert response.status_code == 400
        assert _events(test_db_session) == []

    def test_fractional_numeric_id_rejected(self, client, test_db_session):
        response = self._post(client, "/events/add-to-cart", b'{"session_id": "s1", "variant_id": 1.5}')

        assert response.status_code == 400
        assert _events(test_db_session) == []

    def test_whole_float_id_is_stringified(self, client, test_db_session):
        response = self._post(
            client, "/events/add-to-cart", b'{"session_id": "s1", "shopify_variant_id": 44012345678901.0}'
        )

        assert response.status_code == 200
        event = test_db_session.query(ConversionEvent).one()
        assert event.payload["custom_data"]["contents"][0]["id"] == "44012345678901"
