"""
Encyclopedia client tests

All HTTP goes through httpx.MockTransport; each test gets its own breaker.
"""

import httpx
import pytest

from common.errors import CircuitOpenError, ExternalServiceError
from knowledge.circuit_breaker import BreakerPhase, CircuitBreaker
from knowledge.encyclopedia_client import EncyclopediaClient, drug_summary, search_result_to_items
from knowledge.types import KnowledgeSource

SEARCH_PAYLOAD = {
    "diseases": [
        {"slug": "chronic-kidney-disease", "nameEn": "Chronic kidney disease", "nameZh": "慢性腎病",
         "description": "Progressive loss of nephron function."},
    ],
    "drugs": [
        {"slug": "benazepril", "nameEn": "Benazepril", "classification": "ACE inhibitor",
         "formulation": "Tablet", "supportedSpecies": ["dog", "cat"]},
    ],
}


def _client(handler, *, breaker=None, max_retries=0):
    return EncyclopediaClient(
        base_url="https://vetpro.test",
        api_key="k",
        max_retries=max_retries,
        retry_delay_s=0,
        breaker=breaker or CircuitBreaker("vetpro-test", failure_threshold=2, cooldown_s=60),
        transport=httpx.MockTransport(handler),
    )


class TestItemMapping:
    def test_search_result_to_items(self):
        items = search_result_to_items(SEARCH_PAYLOAD)
        assert [i.title for i in items] == ["Chronic kidney disease", "Benazepril"]
        assert items[0].title_localized == "慢性腎病"
        assert items[0].citation.source == "VetPro Encyclopedia"
        assert items[1].citation.source == "VetPro Drug Database"
        assert all(i.source is KnowledgeSource.ENCYCLOPEDIA for i in items)

    def test_drug_summary(self):
        assert drug_summary(SEARCH_PAYLOAD["drugs"][0]) == "ACE inhibitor. Tablet. Species: dog, cat"


class TestEncyclopediaClient:
    @pytest.mark.asyncio
    async def test_search_sends_key_and_query(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = request.url
            seen["key"] = request.headers.get("x-api-key")
            return httpx.Response(200, json=SEARCH_PAYLOAD)

        items = await _client(handler).search("  kidney  ")
        assert len(items) == 2
        assert seen["url"].path == "/api/v1/search"
        assert seen["url"].params["q"] == "kidney"
        assert seen["key"] == "k"

    @pytest.mark.asyncio
    async def test_unconfigured_search_returns_empty(self):
        client = EncyclopediaClient(base_url="", api_key="", breaker=CircuitBreaker("x"))
        assert await client.search("kidney") == []

    @pytest.mark.asyncio
    async def test_server_errors_open_breaker(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503, text="down")

        breaker = CircuitBreaker("vetpro-test", failure_threshold=2, cooldown_s=60)
        client = _client(handler, breaker=breaker)
        assert await client.search("a") == []
        assert await client.search("b") == []
        assert breaker.phase is BreakerPhase.OPEN

        # open breaker short-circuits: no further HTTP traffic
        assert await client.search("c") == []
        assert len(calls) == 2
        with pytest.raises(CircuitOpenError):
            await client.search_raw("d")

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        responses = iter([httpx.Response(500), httpx.Response(200, json={"diseases": [], "drugs": []})])

        def handler(request):
            return next(responses)

        breaker = CircuitBreaker("vetpro-test", failure_threshold=1, cooldown_s=60)
        client = _client(handler, breaker=breaker, max_retries=1)
        assert await client.search_raw("x") == {"diseases": [], "drugs": []}
        assert breaker.phase is BreakerPhase.CLOSED

    @pytest.mark.asyncio
    async def test_client_error_does_not_trip_breaker(self):
        breaker = CircuitBreaker("vetpro-test", failure_threshold=1, cooldown_s=60)
        client = _client(lambda r: httpx.Response(404, text="no such drug"), breaker=breaker)
        with pytest.raises(ExternalServiceError) as exc:
            await client.get_drug_detail("nope")
        assert exc.value.status_code == 404
        assert breaker.phase is BreakerPhase.CLOSED

    @pytest.mark.asyncio
    async def test_slug_is_path_escaped(self):
        seen = {}

        def handler(request):
            seen["raw_path"] = request.url.raw_path
            return httpx.Response(200, json={"slug": "a/b"})

        await _client(handler).get_disease_detail("a/b")
        assert seen["raw_path"] == b"/api/v1/diseases/a%2Fb"

    @pytest.mark.asyncio
    async def test_ddx_params(self):
        seen = {}

        def handler(request):
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"differentials": []})

        await _client(handler).get_ddx(["s1", "s2"], ["l1"], species="dog", exclude=["d9"])
        assert seen["params"] == {"symptoms": "s1,s2", "labs": "l1", "species": "dog", "exclude": "d9"}
