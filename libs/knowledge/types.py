# libs/knowledge/types.py
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


class KnowledgeSource(str, enum.Enum):
    ENCYCLOPEDIA = "encyclopedia"   # curated structured encyclopedia (VetPro)
    VECTOR = "vector"               # pgvector literature store
    BIBLIOGRAPHIC = "bibliographic" # PubMed


def _compact(d: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in d.items() if v is not None}


@dataclass(frozen=True)
class KnowledgeCitation:
    title: str
    source: str
    source_type: KnowledgeSource
    year: Optional[int] = None
    url: Optional[str] = None
    pmid: Optional[str] = None
    journal: Optional[str] = None
    source_org: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _compact({
            "title": self.title,
            "source": self.source,
            "sourceType": self.source_type.value,
            "year": self.year,
            "url": self.url,
            "pmid": self.pmid,
            "journal": self.journal,
            "sourceOrg": self.source_org,
        })


@dataclass(frozen=True)
class KnowledgeItem:
    source: KnowledgeSource
    title: str
    content: str
    citation: KnowledgeCitation
    relevance_score: float = 0.0
    title_localized: Optional[str] = None
    slug: Optional[str] = None
    year: Optional[int] = None
    similarity: Optional[float] = None
    degraded: bool = False  # produced by the keyword fallback, not a vector match

    def to_dict(self) -> Dict[str, Any]:
        d = _compact({
            "source": self.source.value,
            "title": self.title,
            "titleLocalized": self.title_localized,
            "content": self.content,
            "relevanceScore": round(self.relevance_score, 4),
            "slug": self.slug,
            "year": self.year,
            "similarity": self.similarity,
            "citation": self.citation.to_dict(),
        })
        if self.degraded:
            d["degraded"] = True
        return d


@dataclass(frozen=True)
class KnowledgeSearchOptions:
    species: Optional[str] = None
    max_results: int = 10
    include_vector: bool = True
    include_secondary_source: bool = False  # external bibliographic API is opt-in
    category: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)
