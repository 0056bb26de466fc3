# libs/knowledge/fusion.py
"""
Knowledge fusion: fan a query out to every configured source concurrently,
weight each source's own ranking by how much we trust the source, collapse
duplicates and return one ranked list.

    score = source_weight * max(0.3, 1 - 0.1 * position_in_source)
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import replace
from typing import Awaitable, Dict, List, Optional, Protocol, Sequence, Set

from common.env import float_from_env
from .bibliographic_client import PubMedClient
from .encyclopedia_client import RETRY_BUDGET_S, EncyclopediaClient, drug_summary
from .types import KnowledgeCitation, KnowledgeItem, KnowledgeSearchOptions, KnowledgeSource
from .vector_client import VectorSearchClient

log = logging.getLogger("vet-knowledge.fusion")

SOURCE_WEIGHTS: Dict[KnowledgeSource, float] = {
    KnowledgeSource.ENCYCLOPEDIA: 1.0,
    KnowledgeSource.VECTOR: 0.7,
    KnowledgeSource.BIBLIOGRAPHIC: 0.5,
}
POSITION_DECAY = 0.1
POSITION_FLOOR = 0.3
TITLE_DUPLICATE_THRESHOLD = 0.7
PER_SOURCE_LIMIT = 5
# at least the encyclopedia worst case, so a hung VetPro still counts against its breaker
SOURCE_TIMEOUT_S = float_from_env("KNOWLEDGE_SOURCE_TIMEOUT_S", max(12.0, RETRY_BUDGET_S + 1.0))

_TOKEN_RE = re.compile(r"\w+")


class KnowledgeGateway(Protocol):
    def is_configured(self) -> bool: ...

    async def search(self, query: str, options: Optional[KnowledgeSearchOptions] = None) -> List[KnowledgeItem]: ...


# ── Pure helpers ─────────────────────────────────────────────────────────────
def apply_weights(items: Sequence[KnowledgeItem], source_weight: float) -> List[KnowledgeItem]:
    return [
        replace(item, relevance_score=source_weight * max(POSITION_FLOOR, 1 - POSITION_DECAY * i))
        for i, item in enumerate(items)
    ]


def title_tokens(title: str) -> Set[str]:
    return set(_TOKEN_RE.findall((title or "").lower()))


def title_similarity(a: str, b: str) -> float:
    """Token-level Jaccard similarity of two titles (Unicode word tokens)."""
    ta, tb = title_tokens(a), title_tokens(b)
    if not ta or not tb:
        return 0.0
    return len(ta & tb) / len(ta | tb)


def deduplicate(items: Sequence[KnowledgeItem]) -> List[KnowledgeItem]:
    """
    Same slug: first seen wins. Near-identical titles (Jaccard > 0.7): the
    higher score wins and takes the loser's position. A newcomer is checked
    against every survivor, so no two survivors exceed the threshold.
    """
    result: List[KnowledgeItem] = []
    seen_slugs: Set[str] = set()

    for item in items:
        if item.slug:
            if item.slug in seen_slugs:
                continue
            seen_slugs.add(item.slug)

        clashes = [
            i for i, kept in enumerate(result)
            if title_similarity(item.title, kept.title) > TITLE_DUPLICATE_THRESHOLD
        ]
        if not clashes:
            result.append(item)
            continue
        if all(item.relevance_score > result[i].relevance_score for i in clashes):
            result[clashes[0]] = item
            for i in reversed(clashes[1:]):
                del result[i]

    return result


def rank(items: Sequence[KnowledgeItem], max_results: int) -> List[KnowledgeItem]:
    # sorted() is stable: equal scores keep source order
    return sorted(deduplicate(items), key=lambda it: it.relevance_score, reverse=True)[:max_results]


# ── Engine ───────────────────────────────────────────────────────────────────
class KnowledgeFusionEngine:
    def __init__(
        self,
        encyclopedia: Optional[KnowledgeGateway] = None,
        vector: Optional[KnowledgeGateway] = None,
        bibliographic: Optional[KnowledgeGateway] = None,
        *,
        source_timeout_s: float = SOURCE_TIMEOUT_S,
    ):
        self.encyclopedia = encyclopedia
        self.vector = vector
        self.bibliographic = bibliographic
        self.source_timeout_s = source_timeout_s

    async def _isolated(self, source: KnowledgeSource, call: Awaitable[List[KnowledgeItem]]) -> List[KnowledgeItem]:
        try:
            return await asyncio.wait_for(call, timeout=self.source_timeout_s)
        except asyncio.TimeoutError:
            log.warning("knowledge_source_timeout", extra={"source": source.value, "timeout_s": self.source_timeout_s})
        except Exception as e:  # isolate: a failing source contributes []
            log.warning("knowledge_source_failed", extra={"source": source.value, "err": str(e) or type(e).__name__})
        return []

    @staticmethod
    def _eligible(gateway: Optional[KnowledgeGateway]) -> bool:
        return gateway is not None and gateway.is_configured()

    async def merge_knowledge_results(
        self,
        query: str,
        options: Optional[KnowledgeSearchOptions] = None,
    ) -> List[KnowledgeItem]:
        options = options or KnowledgeSearchOptions()
        calls: Dict[KnowledgeSource, Awaitable[List[KnowledgeItem]]] = {}

        if self._eligible(self.encyclopedia):
            calls[KnowledgeSource.ENCYCLOPEDIA] = self.encyclopedia.search(query, options)
        if options.include_vector and self._eligible(self.vector):
            calls[KnowledgeSource.VECTOR] = self.vector.search(query, options, limit=PER_SOURCE_LIMIT)
        if options.include_secondary_source and self._eligible(self.bibliographic):
            calls[KnowledgeSource.BIBLIOGRAPHIC] = self.bibliographic.search(query, options, limit=PER_SOURCE_LIMIT)

        if not calls:
            log.info("knowledge_no_sources", extra={"query": query})
            return []

        results = await asyncio.gather(*(self._isolated(src, c) for src, c in calls.items()))

        weighted: List[KnowledgeItem] = []
        counts: Dict[str, int] = {}
        for source, items in zip(calls.keys(), results):
            counts[source.value] = len(items)
            weighted.extend(apply_weights(items, SOURCE_WEIGHTS[source]))

        merged = rank(weighted, options.max_results)
        log.info("knowledge_merged", extra={"query": query, "per_source": counts, "returned": len(merged)})
        return merged

    async def merge_drug_results(
        self,
        drug_name: str,
        species: Optional[str] = None,
        max_results: int = 5,
    ) -> List[KnowledgeItem]:
        """Encyclopedia drug list first, literature as a lower-trust supplement."""

        async def _drugs() -> List[KnowledgeItem]:
            raw = await self.encyclopedia.search_drugs(drug_name, species=species)
            items = []
            for d in (raw.get("drugs") or [])[:max_results]:
                title = d.get("nameEn") or d.get("slug") or drug_name
                items.append(KnowledgeItem(
                    source=KnowledgeSource.ENCYCLOPEDIA,
                    title=title,
                    title_localized=d.get("nameZh") or None,
                    content=drug_summary(d),
                    slug=d.get("slug"),
                    citation=KnowledgeCitation(
                        title=title, source="VetPro Drug Database", source_type=KnowledgeSource.ENCYCLOPEDIA,
                    ),
                ))
            return items

        calls: Dict[KnowledgeSource, Awaitable[List[KnowledgeItem]]] = {}
        if self._eligible(self.encyclopedia) and hasattr(self.encyclopedia, "search_drugs"):
            calls[KnowledgeSource.ENCYCLOPEDIA] = _drugs()
        if self._eligible(self.vector):
            calls[KnowledgeSource.VECTOR] = self.vector.search(
                f"{drug_name} veterinary pharmacology", KnowledgeSearchOptions(species=species), limit=3,
            )
        if not calls:
            return []

        results = await asyncio.gather(*(self._isolated(src, c) for src, c in calls.items()))
        weighted: List[KnowledgeItem] = []
        for source, items in zip(calls.keys(), results):
            weighted.extend(apply_weights(items, SOURCE_WEIGHTS[source]))
        return rank(weighted, max_results)


_default_engine: Optional[KnowledgeFusionEngine] = None


def get_fusion_engine() -> KnowledgeFusionEngine:
    global _default_engine
    if _default_engine is None:
        _default_engine = KnowledgeFusionEngine(
            encyclopedia=EncyclopediaClient(),
            vector=VectorSearchClient(),
            bibliographic=PubMedClient(),
        )
    return _default_engine
