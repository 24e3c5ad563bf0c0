"""Unit tests for attribution value extraction.

WHAT:
    Click-id strategy chain (body -> user_data -> cookie -> chunked cookie ->
    header) and IP / user agent resolution.

REFERENCES:
    - capi_relay/services/attribution.py (module under test)
"""

from starlette.requests import Request

from capi_relay.services.attribution import (
    FBC,
    FBP,
    ExtractionContext,
    extract_request_signals,
    first_forwarded_ip,
    resolve_click_id,
)


def _ctx(body=None, cookies=None, headers=None) -> ExtractionContext:
    return ExtractionContext(body=body or {}, cookies=cookies or {}, headers=headers or {})


def _request(headers=None, client=("203.0.113.7", 51515)) -> Request:
    raw_headers = [
        (name.lower().encode("latin-1"), value.encode("latin-1"))
        for name, value in (headers or {}).items()
    ]
    return Request({
        "type": "http",
        "method": "POST",
        "path": "/events/add-to-cart",
        "query_string": b"",
        "headers": raw_headers,
        "client": client,
    })


class TestClickIdChain:
    """First non-empty strategy wins."""

    def test_body_beats_cookie(self):
        ctx = _ctx(body={"fbp": "fb.1.body"}, cookies={"_fbp": "fb.1.cookie"})
        assert resolve_click_id(ctx, FBP) == "fb.1.body"

    def test_user_data_used_when_top_level_missing(self):
        ctx = _ctx(body={"user_data": {"fbc": "fb.1.nested"}}, cookies={"_fbc": "fb.1.cookie"})
        assert resolve_click_id(ctx, FBC) == "fb.1.nested"

    def test_blank_body_value_falls_through_to_cookie(self):
        """WHAT: Whitespace-only body values do not count.
        WHY: Theme scripts often send "" when the cookie is unreadable client-side.
        """
        ctx = _ctx(body={"fbp": "  "}, cookies={"_fbp": "fb.1.cookie"})
        assert resolve_click_id(ctx, FBP) == "fb.1.cookie"

    def test_cookie_is_url_decoded(self):
        ctx = _ctx(cookies={"_fbc": "fb.1.1700000000.Ab%2FCd"})
        assert resolve_click_id(ctx, FBC) == "fb.1.1700000000.Ab/Cd"

    def test_chunked_cookie_is_joined_in_order(self):
        """WHAT: _fbc.0, _fbc.1, ... are concatenated.
        WHY: Some consent tools split long cookies to stay under size limits.
        """
        ctx = _ctx(cookies={"_fbc.0": "fb.1.1700", "_fbc.1": "000000.AbCd"})
        assert resolve_click_id(ctx, FBC) == "fb.1.1700000000.AbCd"

    def test_header_is_last_resort(self):
        ctx = _ctx(headers={"X-FB-Browser-Id": "fb.1.header"})
        assert resolve_click_id(ctx, FBP) == "fb.1.header"

    def test_nothing_found_returns_none(self):
        assert resolve_click_id(_ctx(), FBP) is None


class TestForwardedIp:
    def test_first_hop_wins(self):
        assert first_forwarded_ip("198.51.100.1, 10.0.0.1") == "198.51.100.1"

    def test_ipv4_mapped_prefix_is_stripped(self):
        assert first_forwarded_ip("::ffff:198.51.100.1") == "198.51.100.1"

    def test_empty_value(self):
        assert first_forwarded_ip(None) is None
        assert first_forwarded_ip("") is None


class TestExtractRequestSignals:
    def test_explicit_values_beat_network_values(self):
        """WHAT: Caller-supplied IP/UA win over X-Forwarded-For and User-Agent.
        WHY: Server-to-server callers forward the shopper's values explicitly.
        """
        request = _request(headers={
            "X-Forwarded-For": "198.51.100.1",
            "User-Agent": "Mozilla/5.0 (proxy)",
        })
        signals = extract_request_signals(
            request, {}, explicit_ip="192.0.2.44", explicit_user_agent="Mozilla/5.0 (shopper)"
        )
        assert signals.client_ip == "192.0.2.44"
        assert signals.user_agent == "Mozilla/5.0 (shopper)"

    def test_forwarded_for_beats_peer_address(self):
        request = _request(headers={"X-Forwarded-For": "198.51.100.1, 10.0.0.1"})
        signals = extract_request_signals(request, {})
        assert signals.client_ip == "198.51.100.1"

    def test_peer_address_fallback(self):
        signals = extract_request_signals(_request(), {})
        assert signals.client_ip == "203.0.113.7"

    def test_click_ids_from_cookies(self):
        request = _request(headers={"Cookie": "_fbp=fb.1.111.222; _fbc=fb.1.333.AbCd"})
        signals = extract_request_signals(request, {})
        assert signals.fbp == "fb.1.111.222"
        assert signals.fbc == "fb.1.333.AbCd"
