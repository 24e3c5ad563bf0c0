"""Attribution value extraction for storefront requests.

WHAT:
    Resolves Meta browser/click identifiers (fbp, fbc), client IP and user
    agent from an incoming request.

WHY:
    Browsers deliver these values in different places depending on theme
    scripts, consent tools and cookie size limits. Each value is resolved by
    a prioritized list of strategies; the first non-empty result wins.

    Click-id chain:
        1. request body top-level field        (fbp / fbc)
        2. request body `user_data` object     (user_data.fbp / user_data.fbc)
        3. direct cookie                       (_fbp / _fbc)
        4. chunked cookie                      (_fbp.0, _fbp.1, ... joined)
        5. header fallback                     (X-FB-Browser-Id / X-FB-Click-Id)

    Network values: the explicit caller-supplied value always beats the one
    inferred from the network layer.
"""

from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Sequence
from urllib.parse import unquote

from fastapi import Request


@dataclass(frozen=True)
class ClickIdSource:
    """Where one click identifier may be found."""
    body_key: str
    cookie_name: str
    header_name: str


FBP = ClickIdSource(body_key="fbp", cookie_name="_fbp", header_name="X-FB-Browser-Id")
FBC = ClickIdSource(body_key="fbc", cookie_name="_fbc", header_name="X-FB-Click-Id")

# Chunked cookies are split as name.0, name.1, ... up to this many parts
MAX_COOKIE_CHUNKS = 10


@dataclass
class ExtractionContext:
    """Everything a strategy may look at."""
    body: Mapping[str, Any]
    cookies: Mapping[str, str]
    headers: Mapping[str, str]


Strategy = Callable[[ExtractionContext, ClickIdSource], Optional[str]]


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _decode_cookie(raw: Optional[str]) -> Optional[str]:
    raw = _clean(raw)
    if raw is None:
        return None
    try:
        return _clean(unquote(raw, errors="strict"))
    except UnicodeDecodeError:
        return raw


def from_body(ctx: ExtractionContext, source: ClickIdSource) -> Optional[str]:
    return _clean(ctx.body.get(source.body_key))


def from_body_user_data(ctx: ExtractionContext, source: ClickIdSource) -> Optional[str]:
    user_data = ctx.body.get("user_data")
    if not isinstance(user_data, Mapping):
        return None
    return _clean(user_data.get(source.body_key))


def from_cookie(ctx: ExtractionContext, source: ClickIdSource) -> Optional[str]:
    return _decode_cookie(ctx.cookies.get(source.cookie_name))


def from_chunked_cookie(ctx: ExtractionContext, source: ClickIdSource) -> Optional[str]:
    parts = []
    for index in range(MAX_COOKIE_CHUNKS):
        chunk = ctx.cookies.get(f"{source.cookie_name}.{index}")
        if chunk is None:
            break
        parts.append(chunk)
    if not parts:
        return None
    return _decode_cookie("".join(parts))


def from_header(ctx: ExtractionContext, source: ClickIdSource) -> Optional[str]:
    return _clean(ctx.headers.get(source.header_name))


CLICK_ID_STRATEGIES: Sequence[Strategy] = (
    from_body,
    from_body_user_data,
    from_cookie,
    from_chunked_cookie,
    from_header,
)


def resolve_click_id(
    ctx: ExtractionContext,
    source: ClickIdSource,
    strategies: Sequence[Strategy] = CLICK_ID_STRATEGIES,
) -> Optional[str]:
    """Run strategies in order and return the first non-empty value."""
    for strategy in strategies:
        value = strategy(ctx, source)
        if value:
            return value
    return None


def first_forwarded_ip(value: Any) -> Optional[str]:
    """First hop of an X-Forwarded-For style value, IPv4-mapped prefix stripped."""
    if not value:
        return None
    text = ",".join(value) if isinstance(value, (list, tuple)) else str(value)
    first = text.split(",")[0].strip()
    if first.startswith("::ffff:"):
        first = first[len("::ffff:"):]
    return first or None


@dataclass
class RequestSignals:
    """Identity hints resolved from a storefront request."""
    fbp: Optional[str]
    fbc: Optional[str]
    client_ip: Optional[str]
    user_agent: Optional[str]


def extract_request_signals(
    request: Request,
    body: Mapping[str, Any],
    explicit_ip: Optional[str] = None,
    explicit_user_agent: Optional[str] = None,
) -> RequestSignals:
    """Resolve click ids, IP and user agent for one request.

    Args:
        request: Incoming FastAPI request (cookies, headers, peer address)
        body: Parsed request body as a plain dict
        explicit_ip: Caller-supplied IP (wins over network values)
        explicit_user_agent: Caller-supplied UA (wins over the header)
    """
    ctx = ExtractionContext(body=body, cookies=request.cookies, headers=request.headers)

    client_ip = _clean(explicit_ip) or first_forwarded_ip(request.headers.get("x-forwarded-for"))
    if not client_ip and request.client:
        client_ip = _clean(request.client.host)

    return RequestSignals(
        fbp=resolve_click_id(ctx, FBP),
        fbc=resolve_click_id(ctx, FBC),
        client_ip=client_ip,
        user_agent=_clean(explicit_user_agent) or _clean(request.headers.get("user-agent")),
    )
