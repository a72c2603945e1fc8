"""Request ID middleware for capfilter.

Every request gets an ID before any route runs:
  - a client-supplied ``X-Request-ID`` is reused when it is short printable ASCII
  - otherwise a fresh ULID is minted

The ID is stored on ``request.state.request_id``, bound to the logging context
for the duration of the request (so the allow-list load and the filter pass log
it), forwarded to the upstream FHIR server, and echoed on the response.
"""

from __future__ import annotations

from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from capfilter.constants import MAX_REQUEST_ID_LENGTH, REQUEST_ID_HEADER
from capfilter.utils.logger import clear_request_id, get_logger, set_request_id
from capfilter.utils.ulid import generate_ulid

logger = get_logger(__name__)


def _accept_client_request_id(value: Optional[str]) -> Optional[str]:
    if not value or len(value) > MAX_REQUEST_ID_LENGTH:
        return None
    if not (value.isascii() and value.isprintable()):
        return None
    return value


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Starlette middleware assigning a request ID to every request.

    Registration (in create_app() in capfilter/main.py):
        application.add_middleware(RequestIdMiddleware)
    """

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        request_id = _accept_client_request_id(request.headers.get(REQUEST_ID_HEADER))
        if request_id is None:
            request_id = generate_ulid()

        request.state.request_id = request_id
        set_request_id(request_id)
        try:
            response = await call_next(request)
        finally:
            clear_request_id()

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
