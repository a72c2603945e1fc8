"""Host extension point — where the capability filter plugs into the FHIR server.

The FHIR server is a black box reached over HTTP. This module gives it a
small typed interface:

  produce_document(context) — fetch the server's own, unfiltered
                               CapabilityStatement for this request
  register_filter(filter)    — install the filter that post-processes it

The filter is registered explicitly at startup (see main.lifespan); nothing is
discovered by name at runtime.

Host failures are not the filter's business and propagate unchanged:
  - httpx.ConnectError / TimeoutException / RemoteProtocolError → the route
    answers 502.
  - a non-2xx or non-JSON upstream reply → HostResponseError, which the route
    forwards to the client verbatim.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Protocol, runtime_checkable

import httpx

from capfilter.constants import (
    FHIR_JSON_MEDIA_TYPE,
    POOL_KEEPALIVE_EXPIRY,
    POOL_MAX_CONNECTIONS,
    POOL_MAX_KEEPALIVE,
    UPSTREAM_TIMEOUT,
)
from capfilter.proxy.headers import build_upstream_headers
from capfilter.utils.logger import get_logger

if TYPE_CHECKING:
    from capfilter.capability.filter import CapabilityFilter

logger = get_logger(__name__)

# FHIR format override parameter. The filter only understands JSON, so it is
# never forwarded; the upstream is always asked for JSON.
_FORMAT_PARAM = "_format"


# ─── Request context ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class UpstreamReply:
    """The raw upstream reply behind a parsed capability document."""

    document: Any
    status_code: int
    content: bytes
    headers: httpx.Headers


@dataclass
class MetadataRequest:
    """One incoming metadata request.

    ``upstream_reply`` is filled in by produce_document(). When the document
    that comes back from the handler is still ``upstream_reply.document``,
    the route relays the upstream bytes and headers instead of re-encoding.
    """

    request_id: str
    query_params: list[tuple[str, str]] = field(default_factory=list)
    headers: list[tuple[str, str]] = field(default_factory=list)
    upstream_reply: Optional[UpstreamReply] = None


MetadataHandler = Callable[[MetadataRequest], Awaitable[Any]]


# ─── Errors ───────────────────────────────────────────────────────────────────


class HostResponseError(Exception):
    """The upstream answered, but not with a JSON document.

    Carries the upstream reply so it can be forwarded as-is.
    """

    def __init__(self, status_code: int, content: bytes, headers: httpx.Headers, reason: str) -> None:
        super().__init__(f"upstream metadata reply unusable: {reason} (HTTP {status_code})")
        self.status_code = status_code
        self.content = content
        self.headers = headers
        self.reason = reason


# ─── Protocol ─────────────────────────────────────────────────────────────────


@runtime_checkable
class CapabilityHost(Protocol):
    """The extension point a FHIR server exposes to the capability filter."""

    async def produce_document(self, context: MetadataRequest) -> Any:
        ...

    def register_filter(self, capability_filter: "CapabilityFilter") -> None:
        ...


# ─── httpx.AsyncClient factory ────────────────────────────────────────────────


def create_http_client(timeout_s: float = UPSTREAM_TIMEOUT) -> httpx.AsyncClient:
    """Create the shared upstream client.

    Created once at lifespan startup and stored in app.state.http_client;
    never instantiated per request.
    """
    return httpx.AsyncClient(
        limits=httpx.Limits(
            max_connections=POOL_MAX_CONNECTIONS,
            max_keepalive_connections=POOL_MAX_KEEPALIVE,
            keepalive_expiry=POOL_KEEPALIVE_EXPIRY,
        ),
        timeout=httpx.Timeout(timeout_s),
        follow_redirects=False,
    )


# ─── UpstreamFhirHost ─────────────────────────────────────────────────────────


class UpstreamFhirHost:
    """CapabilityHost backed by a FHIR server reachable over HTTP.

    Args:
        base_url:    FHIR base URL of the upstream server (no trailing slash).
        http_client: Shared httpx.AsyncClient.
    """

    def __init__(self, base_url: str, http_client: httpx.AsyncClient) -> None:
        self._base_url = base_url.rstrip("/")
        self._http_client = http_client
        self._filter: Optional["CapabilityFilter"] = None

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def metadata_url(self) -> str:
        return f"{self._base_url}/metadata"

    def register_filter(self, capability_filter: "CapabilityFilter") -> None:
        if self._filter is not None:
            logger.warning(
                "capability_filter_replaced",
                previous=type(self._filter).__name__,
                current=type(capability_filter).__name__,
            )
        self._filter = capability_filter
        logger.info("capability_filter_registered", filter=type(capability_filter).__name__)

    @property
    def metadata_handler(self) -> MetadataHandler:
        """The callable that answers metadata requests.

        The registered filter when there is one, otherwise the host's own
        unfiltered document.
        """
        if self._filter is not None:
            return self._filter.on_metadata_request
        return self.produce_document

    async def produce_document(self, context: MetadataRequest) -> Any:
        """Fetch the unfiltered CapabilityStatement from the upstream server.

        Raises:
            HostResponseError: the upstream replied non-2xx or with a body that
                               is not JSON.
            httpx.HTTPError:   connectivity failures, propagated unchanged.
        """
        headers = {
            name: value
            for name, value in build_upstream_headers(context.headers, context.request_id).items()
            if name.lower() != "accept"
        }
        headers["accept"] = FHIR_JSON_MEDIA_TYPE
        params = [(key, value) for key, value in context.query_params if key != _FORMAT_PARAM]

        response = await self._http_client.get(self.metadata_url, params=params, headers=headers)

        if not response.is_success:
            raise HostResponseError(
                response.status_code, response.content, response.headers, "non-success status"
            )
        try:
            document = response.json()
        except ValueError:
            raise HostResponseError(
                response.status_code, response.content, response.headers, "body is not JSON"
            )

        context.upstream_reply = UpstreamReply(
            document=document,
            status_code=response.status_code,
            content=response.content,
            headers=response.headers,
        )
        logger.debug(
            "upstream_metadata_fetched",
            upstream=self.metadata_url,
            status_code=response.status_code,
            resource_type=document.get("resourceType") if isinstance(document, dict) else None,
        )
        return document
