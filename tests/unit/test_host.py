"""Unit tests for capfilter/host.py — UpstreamFhirHost over an httpx.MockTransport."""

from __future__ import annotations

import json

import httpx
import pytest

from capfilter.capability import CapabilityFilter
from capfilter.host import (
    CapabilityHost,
    HostResponseError,
    MetadataRequest,
    UpstreamFhirHost,
    create_http_client,
)

BASE_URL = "http://hapi.test/fhir"


class _Upstream:
    """Records requests and replies with a configurable response."""

    def __init__(self, response: httpx.Response) -> None:
        self.response = response
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.response

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


class _StoreStub:
    async def load_allowlist(self) -> frozenset[str]:
        return frozenset({"Patient"})


def _json_response(document, status_code: int = 200) -> httpx.Response:
    return httpx.Response(
        status_code,
        content=json.dumps(document).encode(),
        headers={"content-type": "application/fhir+json"},
    )


class TestProduceDocument:
    async def test_fetches_metadata_as_json(self, make_statement) -> None:
        document = make_statement(["Patient"])
        upstream = _Upstream(_json_response(document))
        context = MetadataRequest(
            request_id="req-1",
            query_params=[("_format", "xml"), ("mode", "full")],
            headers=[("Accept", "application/fhir+xml"), ("Authorization", "Bearer t"), ("Host", "proxy")],
        )
        async with upstream.client() as client:
            host = UpstreamFhirHost(BASE_URL + "/", client)
            result = await host.produce_document(context)

        assert result == document
        reply = context.upstream_reply
        assert reply is not None
        assert reply.document is result
        assert reply.status_code == 200
        assert json.loads(reply.content) == document
        assert reply.headers["content-type"] == "application/fhir+json"
        (sent,) = upstream.requests
        assert str(sent.url) == f"{BASE_URL}/metadata?mode=full"
        assert sent.headers["accept"] == "application/fhir+json"
        assert sent.headers["authorization"] == "Bearer t"
        assert sent.headers["x-request-id"] == "req-1"
        assert sent.headers["host"] == "hapi.test"

    async def test_non_success_raises_host_response_error(self) -> None:
        outcome = {"resourceType": "OperationOutcome", "issue": [{"severity": "error"}]}
        upstream = _Upstream(_json_response(outcome, status_code=503))
        async with upstream.client() as client:
            host = UpstreamFhirHost(BASE_URL, client)
            with pytest.raises(HostResponseError) as exc_info:
                await host.produce_document(MetadataRequest(request_id="req-2"))
        assert exc_info.value.status_code == 503
        assert json.loads(exc_info.value.content) == outcome

    async def test_non_json_body_raises_host_response_error(self) -> None:
        upstream = _Upstream(httpx.Response(200, content=b"<CapabilityStatement/>"))
        async with upstream.client() as client:
            host = UpstreamFhirHost(BASE_URL, client)
            with pytest.raises(HostResponseError) as exc_info:
                await host.produce_document(MetadataRequest(request_id="req-3"))
        assert exc_info.value.reason == "body is not JSON"
        assert exc_info.value.content == b"<CapabilityStatement/>"

    async def test_connect_error_propagates(self) -> None:
        def _refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(_refuse)) as client:
            host = UpstreamFhirHost(BASE_URL, client)
            with pytest.raises(httpx.ConnectError):
                await host.produce_document(MetadataRequest(request_id="req-4"))


class TestRegistration:
    async def test_handler_without_filter_is_produce_document(self, make_statement) -> None:
        upstream = _Upstream(_json_response(make_statement(["Patient", "Encounter"])))
        async with upstream.client() as client:
            host = UpstreamFhirHost(BASE_URL, client)
            result = await host.metadata_handler(MetadataRequest(request_id="r"))
        assert [r["type"] for r in result["rest"][0]["resource"]] == ["Patient", "Encounter"]

    async def test_handler_uses_registered_filter(self, make_statement) -> None:
        upstream = _Upstream(_json_response(make_statement(["Patient", "Encounter"])))
        async with upstream.client() as client:
            host = UpstreamFhirHost(BASE_URL, client)
            host.register_filter(CapabilityFilter(host=host, store=_StoreStub(), enabled=True))
            result = await host.metadata_handler(MetadataRequest(request_id="r"))
        assert [r["type"] for r in result["rest"][0]["resource"]] == ["Patient"]

    async def test_register_replaces_previous_filter(self) -> None:
        async with httpx.AsyncClient() as client:
            host = UpstreamFhirHost(BASE_URL, client)
            first = CapabilityFilter(host=host, store=_StoreStub(), enabled=True)
            second = CapabilityFilter(host=host, store=_StoreStub(), enabled=False)
            host.register_filter(first)
            host.register_filter(second)
            assert host.metadata_handler == second.on_metadata_request

    async def test_urls(self) -> None:
        async with httpx.AsyncClient() as client:
            host = UpstreamFhirHost(BASE_URL + "/", client)
        assert host.base_url == BASE_URL
        assert host.metadata_url == f"{BASE_URL}/metadata"
        assert isinstance(host, CapabilityHost)


class TestCreateHttpClient:
    async def test_client_settings(self) -> None:
        client = create_http_client(timeout_s=7.5)
        try:
            assert client.timeout.read == 7.5
            assert client.follow_redirects is False
        finally:
            await client.aclose()
