"""HTTP header processing for the capfilter proxy.

  - build_upstream_headers(): strips hop-by-hop headers from the client request,
    injects X-Request-ID, forwards all remaining request headers unchanged.

  - build_client_response_headers(): strips hop-by-hop headers and the body
    framing headers from upstream responses, forwards the rest unchanged.

RFC 7230 §6.1 — hop-by-hop headers MUST NOT be forwarded by intermediaries.
"""

from __future__ import annotations

from typing import Iterable

import httpx

from capfilter.constants import REQUEST_ID_HEADER

# ─── Constants ────────────────────────────────────────────────────────────────

# httpx sets content-length from content=; host comes from the upstream URL.
HOP_BY_HOP_HEADERS: frozenset[str] = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "host",
        "content-length",
    }
)

# httpx hands back a decoded body, and a filtered capability statement is a
# different body altogether. Neither may keep the upstream's encoding header.
_BODY_FRAMING_HEADERS: frozenset[str] = frozenset({"content-encoding"})

_REQUEST_ID_HEADER_LOWER: str = REQUEST_ID_HEADER.lower()

# ─── Public API ───────────────────────────────────────────────────────────────


def build_upstream_headers(
    request_headers: Iterable[tuple[str, str]],
    request_id: str,
) -> dict[str, str]:
    """Build the header dict to send to the upstream FHIR server.

    Hop-by-hop headers are dropped, any client X-Request-ID is replaced by
    ``request_id`` (the value already bound to the logging context), and
    every other header (authorization, accept, prefer, ...) passes through.
    """
    headers: dict[str, str] = {}

    for name, value in request_headers:
        lower_name = name.lower()
        if lower_name in HOP_BY_HOP_HEADERS or lower_name == _REQUEST_ID_HEADER_LOWER:
            continue
        headers[name] = value

    headers[REQUEST_ID_HEADER] = request_id
    return headers


def build_client_response_headers(
    upstream_headers: httpx.Headers,
) -> dict[str, str]:
    """Build the header dict returned to the client from an upstream response.

    Strips hop-by-hop headers, content-encoding and any upstream X-Request-ID
    (the proxy sets its own); everything else (etag, last-modified, location,
    content-type, ...) is forwarded unchanged.
    """
    headers: dict[str, str] = {}
    for name, value in upstream_headers.items():
        lower_name = name.lower()
        if (
            lower_name in HOP_BY_HOP_HEADERS
            or lower_name in _BODY_FRAMING_HEADERS
            or lower_name == _REQUEST_ID_HEADER_LOWER
        ):
            continue
        headers[name] = value
    return headers
