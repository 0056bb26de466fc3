"""
Knowledge fusion tests

Weighting, deduplication, ranking and per-source isolation.
"""

import asyncio

import httpx
import pytest

from common.errors import ExternalServiceError
from conftest import FakeEncyclopedia, FakeGateway, make_item
from knowledge.circuit_breaker import BreakerPhase, CircuitBreaker
from knowledge.encyclopedia_client import RETRY_BUDGET_S, EncyclopediaClient
from knowledge.fusion import (
    SOURCE_TIMEOUT_S,
    KnowledgeFusionEngine,
    apply_weights,
    deduplicate,
    rank,
    title_similarity,
)
from knowledge.types import KnowledgeSearchOptions, KnowledgeSource

E, V, B = KnowledgeSource.ENCYCLOPEDIA, KnowledgeSource.VECTOR, KnowledgeSource.BIBLIOGRAPHIC


class TestWeighting:
    def test_position_decay_with_floor(self):
        items = [make_item(f"t{i}") for i in range(9)]
        scores = [i.relevance_score for i in apply_weights(items, 0.5)]
        assert scores[0] == pytest.approx(0.5)
        assert scores[1] == pytest.approx(0.45)
        assert scores[6] == pytest.approx(0.5 * 0.4)
        assert scores[7] == pytest.approx(0.15)
        assert scores[8] == pytest.approx(0.15)


class TestDeduplication:
    def test_title_similarity(self):
        assert title_similarity("Canine CKD", "canine ckd") == 1.0
        assert title_similarity("", "anything") == 0.0
        assert title_similarity("feline asthma therapy", "canine asthma therapy") == pytest.approx(0.5)

    def test_same_slug_first_wins(self):
        a = make_item("Pancreatitis", E, slug="pancreatitis")
        b = make_item("Acute pancreatitis overview", E, slug="pancreatitis")
        assert deduplicate([a, b]) == [a]

    def test_similar_titles_keep_higher_score(self):
        low = apply_weights([make_item("Canine chronic kidney disease")], 0.5)[0]
        high = apply_weights([make_item("canine chronic kidney disease", E)], 1.0)[0]
        assert deduplicate([low, high]) == [high]
        assert deduplicate([high, low]) == [high]

    def test_no_two_survivors_are_near_duplicates(self):
        items = apply_weights([
            make_item("alpha beta gamma delta"),
            make_item("alpha beta gamma delta epsilon"),
            make_item("zeta eta"),
        ], 1.0)
        result = deduplicate(items)
        for i, a in enumerate(result):
            for b in result[i + 1:]:
                assert title_similarity(a.title, b.title) <= 0.7

    def test_rank_orders_and_truncates(self):
        enc = apply_weights([make_item("a one", E), make_item("b two", E)], 1.0)
        vec = apply_weights([make_item("c three"), make_item("d four")], 0.7)
        ranked = rank(vec + enc, 3)
        assert [i.title for i in ranked] == ["a one", "b two", "c three"]


class TestFusionEngine:
    @pytest.mark.asyncio
    async def test_merges_sources_by_trust(self):
        engine = KnowledgeFusionEngine(
            encyclopedia=FakeGateway([make_item("Hyperthyroidism", E, slug="hyperthyroidism")]),
            vector=FakeGateway([make_item("Methimazole dosing in cats")]),
            bibliographic=FakeGateway([make_item("Radioiodine outcomes", B)]),
        )
        items = await engine.merge_knowledge_results("feline hyperthyroidism")
        assert [i.source for i in items] == [E, V]
        assert items[0].relevance_score == pytest.approx(1.0)
        assert items[1].relevance_score == pytest.approx(0.7)

    @pytest.mark.asyncio
    async def test_bibliographic_is_opt_in(self):
        bib = FakeGateway([make_item("Radioiodine outcomes", B)])
        engine = KnowledgeFusionEngine(bibliographic=bib)
        assert await engine.merge_knowledge_results("x") == []
        assert bib.calls == []
        items = await engine.merge_knowledge_results("x", KnowledgeSearchOptions(include_secondary_source=True))
        assert [i.source for i in items] == [B]
        assert bib.calls[0]["limit"] == 5

    @pytest.mark.asyncio
    async def test_failing_source_is_isolated(self):
        engine = KnowledgeFusionEngine(
            encyclopedia=FakeGateway(error=ExternalServiceError("vetpro", "boom")),
            vector=FakeGateway([make_item("Still here")]),
        )
        items = await engine.merge_knowledge_results("q")
        assert [i.title for i in items] == ["Still here"]

    @pytest.mark.asyncio
    async def test_slow_source_times_out(self):
        engine = KnowledgeFusionEngine(
            encyclopedia=FakeGateway([make_item("late", E)], delay=1.0),
            vector=FakeGateway([make_item("on time")]),
            source_timeout_s=0.05,
        )
        items = await engine.merge_knowledge_results("q")
        assert [i.title for i in items] == ["on time"]

    @pytest.mark.asyncio
    async def test_unconfigured_sources_skipped(self):
        vec = FakeGateway([make_item("x")], configured=False)
        engine = KnowledgeFusionEngine(vector=vec)
        assert await engine.merge_knowledge_results("q") == []
        assert vec.calls == []

    @pytest.mark.asyncio
    async def test_merge_drug_results(self):
        enc = FakeEncyclopedia()
        enc.drugs["meloxicam"] = [{"slug": "meloxicam", "nameEn": "Meloxicam", "classification": "NSAID"}]
        vec = FakeGateway([make_item("Meloxicam safety in cats")])
        engine = KnowledgeFusionEngine(encyclopedia=enc, vector=vec)
        items = await engine.merge_drug_results("meloxicam", species="cat")
        assert [i.title for i in items] == ["Meloxicam", "Meloxicam safety in cats"]
        assert items[0].citation.source == "VetPro Drug Database"
        assert vec.calls[0]["query"] == "meloxicam veterinary pharmacology"


class _Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestFusionWithBreaker:
    @pytest.mark.asyncio
    async def test_cancelled_half_open_call_reopens_breaker(self):
        async def hang(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(10)
            return httpx.Response(200, json={})

        clock = _Clock()
        breaker = CircuitBreaker("vetpro-test", failure_threshold=2, cooldown_s=60, clock=clock)
        for _ in range(2):
            breaker.before_call()
            breaker.record_failure()
        clock.now += 61
        assert breaker.phase is BreakerPhase.HALF_OPEN

        client = EncyclopediaClient(
            base_url="https://vetpro.test", api_key="k", max_retries=0,
            breaker=breaker, transport=httpx.MockTransport(hang),
        )
        engine = KnowledgeFusionEngine(encyclopedia=client, source_timeout_s=0.05)
        assert await engine.merge_knowledge_results("hyperthyroidism") == []

        assert breaker.phase is BreakerPhase.OPEN
        clock.now += 61
        assert breaker.phase is BreakerPhase.HALF_OPEN
        breaker.before_call()

    def test_source_timeout_covers_encyclopedia_retries(self):
        assert SOURCE_TIMEOUT_S > RETRY_BUDGET_S
