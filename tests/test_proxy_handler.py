from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from uplink_relay.telemetry_proxy.handler import ProxyHandler
from uplink_relay.telemetry_proxy.response_cache import ResponseCache
from uplink_relay.telemetry_proxy.secrets import SecretCache
from uplink_relay.telemetry_proxy.upstream import UpstreamClient
from tests.utils.fakes import FakeSecretStore, UpstreamStub, ndjson_response


BODY = '{"result": {"end_device_ids": {"device_id": "soil-01"}}}\nnot-json\n{"result": {"end_device_ids": {"device_id": "soil-02"}}}\n'


def _handler(http_client, secret_store, clock, *, variant="storage", auth_scheme="bearer", cache_ttl=30.0):
    secrets = SecretCache(secret_store, "ttn-app-key", ttl_seconds=60, clock=clock)
    upstream = UpstreamClient(
        http_client,
        variant=variant,
        auth_scheme=auth_scheme,
        cluster="eu1",
        domain="cloud.thethings.network",
        app_id="soil-sensors",
    )
    cache = ResponseCache(cache_ttl, clock=clock)
    return ProxyHandler(secrets, upstream, cache), secrets, cache


@pytest.mark.asyncio
async def test_success_parses_and_caches(secret_store, clock):
    stub = UpstreamStub(lambda request: ndjson_response(BODY))
    async with httpx.AsyncClient(transport=stub.transport) as http_client:
        handler, _, cache = _handler(http_client, secret_store, clock)
        first = await handler.handle({"last": "1h"})
        second = await handler.handle({"last": "1h"})

    assert first.ok and first.status_code == 200
    assert [r["result"]["end_device_ids"]["device_id"] for r in first.records] == ["soil-01", "soil-02"]
    assert first.cached is False
    assert second.cached is True
    assert json.dumps(first.payload()) == json.dumps(second.payload())
    assert len(stub.requests) == 1
    assert cache.keys() == 1


@pytest.mark.asyncio
async def test_different_windows_do_not_share_cache_entries(secret_store, clock):
    stub = UpstreamStub(lambda request: ndjson_response(f'{{"last": "{request.url.params["last"]}"}}\n'))
    async with httpx.AsyncClient(transport=stub.transport) as http_client:
        handler, _, _ = _handler(http_client, secret_store, clock)
        short = await handler.handle([("last", "1h")])
        long = await handler.handle([("last", "24h")])

    assert short.records == [{"last": "1h"}]
    assert long.records == [{"last": "24h"}]
    assert len(stub.requests) == 2


@pytest.mark.asyncio
async def test_cache_expiry_triggers_new_upstream_call(secret_store, clock):
    stub = UpstreamStub(lambda request: ndjson_response('{"a": 1}\n'))
    async with httpx.AsyncClient(transport=stub.transport) as http_client:
        handler, _, _ = _handler(http_client, secret_store, clock)
        await handler.handle({"last": "1h"})
        clock.advance(31)
        result = await handler.handle({"last": "1h"})

    assert result.cached is False
    assert len(stub.requests) == 2
    assert secret_store.calls == 1


@pytest.mark.asyncio
async def test_upstream_status_is_relayed_with_details(secret_store, clock):
    stub = UpstreamStub(lambda request: httpx.Response(429, text='{"message":"rate limited"}'))
    async with httpx.AsyncClient(transport=stub.transport) as http_client:
        handler, _, cache = _handler(http_client, secret_store, clock)
        result = await handler.handle({"last": "1h"})

    assert result.status_code == 429
    assert result.records is None
    assert result.payload() == {"error": "upstream error", "status": 429, "details": {"message": "rate limited"}}
    assert cache.keys() == 0


@pytest.mark.asyncio
async def test_plain_text_error_body_is_relayed_verbatim(secret_store, clock):
    stub = UpstreamStub(lambda request: httpx.Response(503, text="Service Unavailable"))
    async with httpx.AsyncClient(transport=stub.transport) as http_client:
        handler, _, _ = _handler(http_client, secret_store, clock)
        result = await handler.handle({})

    assert result.status_code == 503
    assert result.payload()["details"] == "Service Unavailable"


@pytest.mark.asyncio
async def test_empty_body_is_success(secret_store, clock):
    stub = UpstreamStub(lambda request: ndjson_response(""))
    async with httpx.AsyncClient(transport=stub.transport) as http_client:
        handler, _, _ = _handler(http_client, secret_store, clock)
        result = await handler.handle({"last": "1h"})

    assert result.ok
    assert result.payload() == []


@pytest.mark.asyncio
async def test_secret_failure_is_502_without_data(clock):
    store = FakeSecretStore()
    store.failures_remaining = 1
    stub = UpstreamStub(lambda request: ndjson_response(BODY))
    async with httpx.AsyncClient(transport=stub.transport) as http_client:
        handler, _, cache = _handler(http_client, store, clock)
        result = await handler.handle({"last": "1h"})

    assert result.status_code == 502
    assert result.records is None
    payload = result.payload()
    assert payload["error"] == "secret unavailable"
    assert set(payload) == {"error", "details"}
    assert stub.requests == []
    assert cache.keys() == 0


@pytest.mark.asyncio
async def test_network_failure_is_502(secret_store, clock):
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused")

    async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as http_client:
        handler, _, _ = _handler(http_client, secret_store, clock)
        result = await handler.handle({"last": "1h"})

    assert result.status_code == 502
    assert result.payload()["error"] == "upstream unreachable"
    assert "connection refused" in result.payload()["details"]


@pytest.mark.asyncio
async def test_unauthorized_invalidates_cached_secret(secret_store, clock):
    statuses = iter([401, 200])

    def respond(request: httpx.Request) -> httpx.Response:
        code = next(statuses)
        if code == 401:
            return httpx.Response(401, json={"code": 16, "message": "error:pkg/auth:token_expired"})
        return ndjson_response('{"ok": true}\n')

    stub = UpstreamStub(respond)
    async with httpx.AsyncClient(transport=stub.transport) as http_client:
        handler, _, _ = _handler(http_client, secret_store, clock)
        rejected = await handler.handle({"last": "1h"})
        accepted = await handler.handle({"last": "1h"})

    assert rejected.status_code == 401
    assert rejected.payload()["details"]["message"] == "error:pkg/auth:token_expired"
    assert accepted.records == [{"ok": True}]
    assert secret_store.calls == 2


@pytest.mark.asyncio
async def test_legacy_variant_parses_json_document(secret_store, clock):
    stub = UpstreamStub(lambda request: httpx.Response(200, json=[{"device_id": "soil-01"}, {"device_id": "soil-02"}]))
    async with httpx.AsyncClient(transport=stub.transport) as http_client:
        handler, _, _ = _handler(http_client, secret_store, clock, variant="query", auth_scheme="key")
        result = await handler.handle({"last": "2h"})

    assert result.records == [{"device_id": "soil-01"}, {"device_id": "soil-02"}]
    assert stub.requests[0].headers["Authorization"] == "key NNSXS.test-key"


@pytest.mark.asyncio
async def test_disabled_cache_always_calls_upstream(secret_store, clock):
    stub = UpstreamStub(lambda request: ndjson_response('{"a": 1}\n'))
    async with httpx.AsyncClient(transport=stub.transport) as http_client:
        handler, _, _ = _handler(http_client, secret_store, clock, cache_ttl=0)
        first = await handler.handle({"last": "1h"})
        second = await handler.handle({"last": "1h"})

    assert first.payload() == second.payload() == [{"a": 1}]
    assert len(stub.requests) == 2


@pytest.mark.asyncio
async def test_concurrent_requests_call_upstream_at_most_twice(secret_store, clock):
    stub = UpstreamStub(lambda request: ndjson_response(BODY))
    async with httpx.AsyncClient(transport=stub.transport) as http_client:
        handler, _, _ = _handler(http_client, secret_store, clock)
        first, second = await asyncio.gather(handler.handle({"last": "1h"}), handler.handle({"last": "1h"}))

    assert first.ok and second.ok
    assert first.payload() == second.payload()
    assert 1 <= len(stub.requests) <= 2
    assert secret_store.calls == 1


@pytest.mark.asyncio
async def test_non_finite_records_are_dropped_before_caching(secret_store, clock):
    stub = UpstreamStub(lambda request: ndjson_response('{"a": 1}\n{"v": NaN}\n{"big": 1e400}\n'))
    async with httpx.AsyncClient(transport=stub.transport) as http_client:
        handler, _, cache = _handler(http_client, secret_store, clock)
        result = await handler.handle({"last": "1h"})

    assert result.records == [{"a": 1}]
    assert json.dumps(result.payload(), allow_nan=False) == '[{"a": 1}]'
    assert cache.keys() == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("upstream_status", [204, 304])
async def test_bodiless_upstream_status_becomes_502(secret_store, clock, upstream_status):
    stub = UpstreamStub(lambda request: httpx.Response(upstream_status))
    async with httpx.AsyncClient(transport=stub.transport) as http_client:
        handler, _, cache = _handler(http_client, secret_store, clock)
        result = await handler.handle({"last": "1h"})

    assert result.status_code == 502
    assert result.payload() == {
        "error": "upstream error",
        "details": {"upstream_status": upstream_status, "body": None},
    }
    assert cache.keys() == 0


@pytest.mark.asyncio
async def test_error_details_with_non_finite_numbers_fall_back_to_text(secret_store, clock):
    stub = UpstreamStub(lambda request: httpx.Response(500, text='{"load": NaN}'))
    async with httpx.AsyncClient(transport=stub.transport) as http_client:
        handler, _, _ = _handler(http_client, secret_store, clock)
        result = await handler.handle({})

    assert result.status_code == 500
    assert result.payload()["details"] == '{"load": NaN}'
