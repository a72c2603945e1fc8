"""Unit tests for capfilter/proxy/middleware.py — RequestIdMiddleware.

Tests the middleware in isolation using a minimal Starlette app that reports
the request ID seen by the route and by the logging context.
"""

from __future__ import annotations

import re

import pytest
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route
from starlette.testclient import TestClient

from capfilter.proxy.middleware import RequestIdMiddleware
from capfilter.utils.logger import current_request_id

ULID_PATTERN = re.compile(r"^[0-9A-HJKMNP-TV-Z]{26}$")

# ─── Minimal test app ─────────────────────────────────────────────────────────


async def _echo_request_id(request: Request) -> Response:
    return JSONResponse({"state": request.state.request_id, "context": current_request_id()})


def _make_test_app() -> Starlette:
    app = Starlette(routes=[Route("/echo", _echo_request_id)])
    app.add_middleware(RequestIdMiddleware)
    return app


@pytest.fixture
def client() -> TestClient:
    return TestClient(_make_test_app())


class TestRequestIdMiddleware:
    def test_generates_ulid_when_absent(self, client: TestClient) -> None:
        response = client.get("/echo")
        request_id = response.headers["x-request-id"]
        assert ULID_PATTERN.match(request_id)
        assert response.json() == {"state": request_id, "context": request_id}

    def test_reuses_client_id(self, client: TestClient) -> None:
        response = client.get("/echo", headers={"X-Request-ID": "abc-123"})
        assert response.headers["x-request-id"] == "abc-123"
        assert response.json()["state"] == "abc-123"

    def test_rejects_oversized_client_id(self, client: TestClient) -> None:
        response = client.get("/echo", headers={"X-Request-ID": "a" * 129})
        assert ULID_PATTERN.match(response.headers["x-request-id"])

    def test_unique_per_request(self, client: TestClient) -> None:
        ids = {client.get("/echo").headers["x-request-id"] for _ in range(20)}
        assert len(ids) == 20
