# libs/vet_agent/citations.py
"""
Citation engine: turn knowledge_search hits into numbered, deduplicated,
evidence-graded and cross-referenced citations.

Pipeline (each stage consumes the previous stage's output):
    extract -> deduplicate (renumber 1..N) -> grade evidence -> cross-reference

Citation ids are only stable within one response.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .types import ToolCallRecord

LITERATURE_TOOL = "knowledge_search"
EXCERPT_MAX_CHARS = 300
FINGERPRINT_CHARS = 100
CROSS_REFERENCE_THRESHOLD = 0.3
MIN_KEYWORD_LEN = 3
ABBREVIATION_MAX_LEN = 3

# checked in this order; first family that matches wins
EVIDENCE_FAMILIES: List[Tuple[str, str, Tuple[str, ...]]] = [
    ("I", "Systematic review / meta-analysis",
     ("meta-analysis", "meta-analyses", "meta analysis", "meta analyses",
      "systematic review", "cochrane", "系統性回顧", "統合分析")),
    ("II", "Randomized controlled trial (RCT)",
     ("randomized", "randomised", "rct", "controlled trial", "隨機對照")),
    ("III", "Non-randomized controlled study",
     ("cohort", "case-control", "prospective", "retrospective", "世代研究")),
    ("IV", "Case series / expert opinion",
     ("case report", "case series", "病例報告")),
]
DEFAULT_EVIDENCE = ("V", "Textbook / clinical experience")

STOP_WORDS = {
    "the", "a", "an", "is", "are", "was", "were", "be", "been",
    "has", "have", "had", "do", "does", "did", "will", "would",
    "should", "can", "could", "may", "might", "of", "in", "to",
    "for", "with", "on", "at", "by", "from", "and", "or", "not",
    "this", "that", "these", "those",
    "的", "是", "在", "了", "和", "與", "為", "有", "不", "可",
}

_WS_RE = re.compile(r"\s+")
_WORD_RE = re.compile(r"\w+")


def _term_pattern(term: str) -> re.Pattern:
    # ASCII terms start on a word boundary and may carry a suffix ("case reports",
    # "cohorts"); abbreviations such as "rct" must also end on one.
    # CJK terms have no word boundaries and match as substrings
    if term.isascii():
        tail = r"(?![a-z0-9])" if len(term) <= ABBREVIATION_MAX_LEN else ""
        return re.compile(r"(?<![a-z0-9])" + re.escape(term) + tail)
    return re.compile(re.escape(term))


_FAMILY_PATTERNS = [
    (level, desc, [_term_pattern(t) for t in terms]) for level, desc, terms in EVIDENCE_FAMILIES
]


@dataclass
class EnrichedCitation:
    id: int
    title: str
    source: str
    year: Optional[int] = None
    excerpt: str = ""
    similarity: Optional[float] = None
    url: Optional[str] = None
    evidence_level: Optional[str] = None
    evidence_description: Optional[str] = None
    cross_references: List[int] = field(default_factory=list)
    duplicate_of: Optional[int] = None
    raw_id: int = 0
    merged_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "source": self.source,
            "excerpt": self.excerpt,
            "evidenceLevel": self.evidence_level,
            "evidenceDescription": self.evidence_description,
            "crossReferences": list(self.cross_references),
        }
        for key, value in (("year", self.year), ("similarity", self.similarity), ("url", self.url)):
            if value is not None:
                d[key] = value
        if self.merged_ids:
            d["mergedIds"] = list(self.merged_ids)
        return d


# ── Stage 1: extraction ──────────────────────────────────────────────────────
def _hits(result: Any) -> Iterable[Dict[str, Any]]:
    if isinstance(result, dict):
        result = result.get("results") or []
    if not isinstance(result, list):
        return []
    return [r for r in result if isinstance(r, dict)]


def extract_citations(tool_calls: Sequence[ToolCallRecord]) -> List[EnrichedCitation]:
    citations: List[EnrichedCitation] = []
    next_id = 1
    for call in tool_calls:
        if call.name != LITERATURE_TOOL:
            continue
        for hit in _hits(call.result):
            meta = hit.get("citation") or {}
            citations.append(EnrichedCitation(
                id=next_id,
                raw_id=next_id,
                title=hit.get("title") or meta.get("title") or "Unknown",
                source=meta.get("source") or hit.get("source") or "Unknown",
                year=hit.get("year") or meta.get("year"),
                excerpt=(hit.get("content") or "")[:EXCERPT_MAX_CHARS],
                similarity=hit.get("similarity"),
                url=meta.get("url"),
            ))
            next_id += 1
    return citations


# ── Stage 2: dedup ───────────────────────────────────────────────────────────
def fingerprint(text: str) -> str:
    return _WS_RE.sub(" ", text or "").strip()[:FINGERPRINT_CHARS].lower()


def deduplicate_citations(
    citations: Sequence[EnrichedCitation],
) -> Tuple[List[EnrichedCitation], List[EnrichedCitation]]:
    """
    First occurrence of a fingerprint is kept; later ones are returned
    separately with `duplicate_of` set to the kept citation's new id.
    """
    unique: List[EnrichedCitation] = []
    duplicates: List[EnrichedCitation] = []
    kept_by_fp: Dict[str, EnrichedCitation] = {}

    for c in citations:
        # no excerpt: fall back to the title so unrelated empty hits do not collapse
        fp = fingerprint(c.excerpt) or "title:" + fingerprint(c.title)
        kept = kept_by_fp.get(fp)
        if kept is None:
            kept_by_fp[fp] = c
            unique.append(c)
        else:
            kept.merged_ids.append(c.raw_id)
            duplicates.append(c)

    for i, c in enumerate(unique, start=1):
        c.id = i
    for dup in duplicates:
        dup.duplicate_of = kept_by_fp[fingerprint(dup.excerpt) or "title:" + fingerprint(dup.title)].id
    return unique, duplicates


# ── Stage 3: evidence grading ────────────────────────────────────────────────
def classify_evidence(text: str) -> Tuple[str, str]:
    lowered = (text or "").lower()
    for level, description, patterns in _FAMILY_PATTERNS:
        if any(p.search(lowered) for p in patterns):
            return level, description
    return DEFAULT_EVIDENCE


def grade_evidence(citations: Sequence[EnrichedCitation]) -> List[EnrichedCitation]:
    for c in citations:
        c.evidence_level, c.evidence_description = classify_evidence(c.excerpt)
    return list(citations)


# ── Stage 4: cross-references ────────────────────────────────────────────────
def extract_keywords(text: str) -> Set[str]:
    return {
        w for w in _WORD_RE.findall((text or "").lower())
        if len(w) >= MIN_KEYWORD_LEN and w not in STOP_WORDS
    }


def find_cross_references(citations: Sequence[EnrichedCitation]) -> List[EnrichedCitation]:
    """Directed: j is related to i when |K_i & K_j| / |K_i| > 0.3."""
    keywords = [extract_keywords(c.excerpt) for c in citations]
    for i, ci in enumerate(citations):
        ki = keywords[i]
        ci.cross_references = []
        if not ki:
            continue
        for j, cj in enumerate(citations):
            if i == j:
                continue
            if len(ki & keywords[j]) / len(ki) > CROSS_REFERENCE_THRESHOLD:
                ci.cross_references.append(cj.id)
    return list(citations)


def process_citations(tool_calls: Sequence[ToolCallRecord]) -> List[EnrichedCitation]:
    unique, _ = deduplicate_citations(extract_citations(tool_calls))
    return find_cross_references(grade_evidence(unique))


def format_for_display(citations: Sequence[EnrichedCitation]) -> str:
    if not citations:
        return ""
    lines = ["## References", ""]
    for c in citations:
        if c.duplicate_of is not None:
            continue
        year = f" ({c.year})" if c.year else ""
        level = f" [Evidence Level {c.evidence_level}]" if c.evidence_level else ""
        related = f" — related: [{', '.join(map(str, c.cross_references))}]" if c.cross_references else ""
        lines.append(f"[{c.id}] {c.title}{year} — {c.source}{level}{related}")
    return "\n".join(lines)
