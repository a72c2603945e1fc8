"""Async HTTP proxy handler for capfilter.

Sits in front of the FHIR server and owns one route: the catch-all
``/{path:path}``. Requests are classified by their path relative to the
configured FHIR base path (``proxy.base_path``, default ``/fhir``):

  GET  {base}/metadata → host.metadata_handler (the registered CapabilityFilter)
                         → filtered CapabilityStatement, application/fhir+json;
                           an unchanged document is relayed as the upstream's
                           original bytes and headers (ETag, charset, decimals)
  any  {base}/...      → forwarded to the upstream FHIR server unchanged
  anything else        → 404 OperationOutcome

Failure mode separation:
  - httpx.ConnectError / TimeoutException / RemoteProtocolError → HTTP 502
  - httpx.InvalidURL / UnsupportedProtocol (bad upstream URL)     → HTTP 500
  - Upstream HTTP 4xx/5xx → passed through as-is (never converted to 502)
  - Non-JSON metadata reply → passed through as-is (HostResponseError)

The capability filter itself never fails a request: every filter-side problem
degrades to the unfiltered document inside CapabilityFilter.
"""

from __future__ import annotations

from typing import Optional

import httpx
from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from capfilter.config import Config
from capfilter.constants import FHIR_JSON_MEDIA_TYPE, REQUEST_ID_HEADER
from capfilter.host import HostResponseError, MetadataRequest, UpstreamFhirHost
from capfilter.models.outcome import (
    build_config_error_response,
    build_not_found_response,
    build_upstream_unavailable_response,
)
from capfilter.proxy.headers import build_client_response_headers, build_upstream_headers
from capfilter.utils.logger import get_logger
from capfilter.utils.ulid import generate_ulid

logger = get_logger(__name__)

# ─── Router ───────────────────────────────────────────────────────────────────

router = APIRouter(tags=["proxy"])

_CONNECTIVITY_ERRORS = (httpx.ConnectError, httpx.TimeoutException, httpx.RemoteProtocolError)
_CONFIG_ERRORS = (httpx.InvalidURL, httpx.UnsupportedProtocol)

METADATA_PATH = "metadata"


# ─── Path handling ────────────────────────────────────────────────────────────


def relative_fhir_path(path: str, base_path: str) -> Optional[str]:
    """Return ``path`` relative to the FHIR base, or None if it lies outside.

    Args:
        path:      Path captured by the catch-all route (no leading slash).
        base_path: Normalised base path (``"/fhir"``, or ``""`` for root).

    Examples (base_path="/fhir"):
        "fhir/metadata"     → "metadata"
        "fhir/Patient/123"  → "Patient/123"
        "fhir"              → ""
        "fhirx/metadata"    → None
    """
    normalized = "/" + path.lstrip("/")
    if not base_path:
        return normalized.lstrip("/")
    if normalized == base_path:
        return ""
    if normalized.startswith(base_path + "/"):
        return normalized[len(base_path) + 1:]
    return None


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or generate_ulid()


# ─── Proxy handler ────────────────────────────────────────────────────────────


@router.api_route(
    "/{path:path}",
    methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD"],
)
async def proxy_handler(request: Request, path: str) -> Response:
    """Route one request to the metadata filter or the transparent forwarder.

    Readiness is enforced by the router-level ``require_ready`` dependency
    registered in create_app().
    """
    config: Config = request.app.state.config
    request_id = _request_id(request)

    fhir_path = relative_fhir_path(path, config.proxy.base_path)
    if fhir_path is None:
        logger.info("path_outside_fhir_base", path=path, base_path=config.proxy.base_path)
        return build_not_found_response(path, request_id)

    if request.method == "GET" and fhir_path.rstrip("/") == METADATA_PATH:
        return await _metadata_response(request, request_id)

    return await _forward(request, fhir_path, request_id)


# ─── Metadata ─────────────────────────────────────────────────────────────────


async def _metadata_response(request: Request, request_id: str) -> Response:
    host: UpstreamFhirHost = request.app.state.host
    context = MetadataRequest(
        request_id=request_id,
        query_params=list(request.query_params.multi_items()),
        headers=list(request.headers.items()),
    )

    try:
        document = await host.metadata_handler(context)
    except HostResponseError as exc:
        logger.warning(
            "upstream_metadata_passthrough",
            upstream=host.metadata_url,
            status_code=exc.status_code,
            reason=exc.reason,
        )
        return Response(
            status_code=exc.status_code,
            content=exc.content,
            headers=build_client_response_headers(exc.headers),
        )
    except _CONNECTIVITY_ERRORS as exc:
        logger.warning(
            "upstream_unavailable",
            upstream=host.metadata_url,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return build_upstream_unavailable_response(request_id, reason=type(exc).__name__)
    except _CONFIG_ERRORS as exc:
        logger.error("invalid_upstream_url", upstream=host.metadata_url, error=str(exc))
        return build_config_error_response(request_id)

    reply = context.upstream_reply
    if reply is not None and document is reply.document:
        headers = build_client_response_headers(reply.headers)
        headers[REQUEST_ID_HEADER] = request_id
        return Response(status_code=reply.status_code, content=reply.content, headers=headers)

    response = JSONResponse(content=document, media_type=FHIR_JSON_MEDIA_TYPE)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


# ─── Transparent forwarding ───────────────────────────────────────────────────


async def _forward(request: Request, fhir_path: str, request_id: str) -> Response:
    """Forward a non-metadata request to the upstream and relay its reply."""
    config: Config = request.app.state.config
    http_client: httpx.AsyncClient = request.app.state.http_client

    base_url = config.upstream.base_url
    upstream_url = f"{base_url}/{fhir_path}" if fhir_path else base_url
    body: bytes = await request.body()

    try:
        upstream_request = http_client.build_request(
            method=request.method,
            url=upstream_url,
            headers=build_upstream_headers(request.headers.items(), request_id),
            content=body,
            params=list(request.query_params.multi_items()),
        )
        upstream_response = await http_client.send(upstream_request)
    except _CONNECTIVITY_ERRORS as exc:
        logger.warning(
            "upstream_unavailable",
            upstream=upstream_url,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return build_upstream_unavailable_response(request_id, reason=type(exc).__name__)
    except _CONFIG_ERRORS as exc:
        logger.error("invalid_upstream_url", upstream=upstream_url, error=str(exc))
        return build_config_error_response(request_id)

    logger.info(
        "request_proxied",
        method=request.method,
        path=fhir_path,
        upstream=upstream_url,
        status_code=upstream_response.status_code,
    )

    headers = build_client_response_headers(upstream_response.headers)
    headers[REQUEST_ID_HEADER] = request_id
    return Response(
        status_code=upstream_response.status_code,
        content=upstream_response.content,
        headers=headers,
    )
