from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from listing_sync.clients.sink import CoreServiceSink
from listing_sync.config import SinkSettings
from listing_sync.domain.errors import DomainInvariantError, SinkError
from listing_sync.domain.listing import ListingDetail
from listing_sync.domain.normalization import normalize_listing


def _record():
    return normalize_listing(ListingDetail.model_validate({"id": "1", "title": "Flat"}), country="poland")


@pytest.mark.unit
def test_ingest_posts_bearer_authenticated_payload() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"ok": True})

    async def _run() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            sink = CoreServiceSink(SinkSettings(api_url="https://core.test/api/", api_key="key-1"), client=client)
            await sink.ingest(catalog="otodom", item_id="1", country="poland", record=_record(), raw={"id": "1"})
            await sink.mark_inactive(catalog="otodom", item_id="1", country="poland", reason="not_found")

    asyncio.run(_run())

    assert [str(request.url) for request in requests] == [
        "https://core.test/api/properties/ingest",
        "https://core.test/api/properties/mark-inactive",
    ]
    assert requests[0].headers["Authorization"] == "Bearer key-1"
    ingest_body = json.loads(requests[0].content)
    assert ingest_body["portal"] == "otodom"
    assert ingest_body["portal_id"] == "1"
    assert ingest_body["data"]["source_id"] == "1"
    assert ingest_body["raw_data"] == {"id": "1"}
    assert json.loads(requests[1].content)["reason"] == "not_found"


@pytest.mark.unit
def test_sink_without_api_key_skips_calls() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    async def _run() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            sink = CoreServiceSink(SinkSettings(api_key=None), client=client)
            await sink.ingest(catalog="otodom", item_id="1", country="poland", record=_record(), raw={})
            await sink.mark_inactive(catalog="otodom", item_id="1", country="poland", reason="not_found")

    asyncio.run(_run())


@pytest.mark.unit
@pytest.mark.parametrize("status", [400, 503])
def test_sink_error_statuses_raise(status: int) -> None:
    async def _run() -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(status))
        async with httpx.AsyncClient(transport=transport) as client:
            sink = CoreServiceSink(SinkSettings(api_key="key"), client=client)
            await sink.mark_inactive(catalog="otodom", item_id="1", country="poland", reason="not_found")

    with pytest.raises(SinkError):
        asyncio.run(_run())


@pytest.mark.unit
def test_sink_without_http_client_raises_invariant_error() -> None:
    async def _run() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200))) as client:
            sink = CoreServiceSink(SinkSettings(api_url="https://core.test/api", api_key="key-1"), client=client)
            sink.client = None
            with pytest.raises(DomainInvariantError):
                await sink.ingest(catalog="otodom", item_id="1", country="poland", record=_record(), raw={})

    asyncio.run(_run())
