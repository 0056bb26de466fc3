# libs/common/quality_score.py
"""
Heuristic answer-quality score, 0-100, from four 0-25 parts:

    citations  inline [n] markers used against the citations returned
    relevance  answer length and veterinary vocabulary
    safety     cat-toxic drugs mentioned without a warning, missing disclaimer
    format     structure (line breaks, headings, lists) and a references block

Pure function of its inputs; `quality_alerts` turns a score into the alert
lines the API logs.
"""
from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

PART_MAX = 25
LITERATURE_TOOL = "knowledge_search"
SAFETY_CRITICAL_BELOW = 15
OVERALL_WARNING_BELOW = 40

VET_TERMS = (
    "canine", "feline", "veterinary", "treatment", "diagnosis", "drug", "dose", "clinical",
    "犬", "貓", "動物", "治療", "診斷", "藥物", "劑量", "臨床", "症狀", "建議", "文獻", "研究",
)
CAT_UNSAFE_DRUGS = ("permethrin", "acetaminophen", "paracetamol", "百滅寧", "撲熱息痛", "乙醯氨酚")
WARNING_MARKERS = (
    "contraindicated", "toxic", "danger", "do not", "never", "warning", "⚠", "🚫",
    "禁用", "禁忌", "警告", "不可", "中毒",
)
DISCLAIMER_MARKERS = ("disclaimer", "veterinarian", "professional", "免責", "獸醫", "專業", "建議")
REFERENCE_MARKERS = ("references", "sources", "引用", "來源")

_CITATION_RE = re.compile(r"\[(\d+)\]")
_CAT_RE = re.compile(r"\b(cat|cats|feline)\b|貓")
_NUMBERED_RE = re.compile(r"\d\.\s")


@dataclass(frozen=True)
class QualityScore:
    overall: int
    citation_score: int
    relevance_score: int
    safety_score: int
    format_score: int
    details: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class QualityAlert:
    level: str          # "warning" | "critical"
    metric: str
    value: int
    threshold: int
    message: str


def _citation_valid(citation: Any) -> bool:
    if isinstance(citation, Mapping):
        return citation.get("valid") is not False
    return getattr(citation, "valid", True) is not False


def _citation_part(answer: str, citations: Sequence[Any], tool_names: Sequence[str], details: List[str]) -> int:
    if citations:
        cited = set(_CITATION_RE.findall(answer))
        if len(cited) >= 3:
            score = 25
            details.append("citations: three or more sources cited")
        elif cited:
            score = 15
            details.append("citations: only one or two sources cited")
        else:
            score = 5
            details.append("citations: sources returned but never cited")
        if all(_citation_valid(c) for c in citations):
            score = min(PART_MAX, score + 5)
        return score
    if LITERATURE_TOOL in tool_names:
        details.append("citations: literature searched, nothing cited")
        return 10
    details.append("citations: no literature search and no citations")
    return 0


def _relevance_part(answer: str, details: List[str]) -> int:
    score = 0
    if len(answer) > 200:
        score += 10
    elif len(answer) > 50:
        score += 5

    lowered = answer.lower()
    terms = sum(1 for t in VET_TERMS if t in lowered)
    if terms >= 5:
        score += 15
        details.append("relevance: rich veterinary terminology")
    elif terms >= 2:
        score += 10
        details.append("relevance: some veterinary terminology")
    else:
        details.append("relevance: little veterinary terminology")
    return score


def _safety_part(answer: str, details: List[str]) -> int:
    score = PART_MAX
    lowered = answer.lower()
    if _CAT_RE.search(lowered):
        warned = any(m in lowered for m in WARNING_MARKERS)
        for drug in CAT_UNSAFE_DRUGS:
            if drug in lowered and not warned:
                score -= 15
                details.append(f"safety: cat and {drug} mentioned without a warning")

    if any(m in lowered for m in DISCLAIMER_MARKERS):
        details.append("safety: professional-advice reminder present")
    else:
        score -= 5
        details.append("safety: professional-advice reminder missing")
    return max(0, score)


def _format_part(answer: str, mode: Optional[str], details: List[str]) -> int:
    score = 0
    if "\n" in answer:
        score += 5
    if "##" in answer or "**" in answer:
        score += 5
    if _NUMBERED_RE.search(answer) or "- " in answer:
        score += 5
    if (mode == "deep_research" and len(answer) > 500) or len(answer) > 100:
        score += 5
    if any(m in answer.lower() for m in REFERENCE_MARKERS):
        score += 5
        details.append("format: references block present")
    return min(PART_MAX, score)


def evaluate_answer_quality(
    answer: str,
    citations: Sequence[Any],
    tool_names: Sequence[str] = (),
    mode: Optional[str] = None,
) -> QualityScore:
    """
    `citations` are mappings or objects; one whose `valid` is False counts
    as unverified. `tool_names` lists the tools called for this answer.
    """
    answer = answer or ""
    details: List[str] = []
    citation = _citation_part(answer, citations, tool_names, details)
    relevance = _relevance_part(answer, details)
    safety = _safety_part(answer, details)
    fmt = _format_part(answer, mode, details)
    return QualityScore(
        overall=citation + relevance + safety + fmt,
        citation_score=citation,
        relevance_score=relevance,
        safety_score=safety,
        format_score=fmt,
        details=details,
    )


def quality_alerts(score: QualityScore) -> List[QualityAlert]:
    alerts: List[QualityAlert] = []
    if score.safety_score < SAFETY_CRITICAL_BELOW:
        problems = "; ".join(d for d in score.details if d.startswith("safety:") and "present" not in d)
        alerts.append(QualityAlert(
            level="critical",
            metric="safety_score",
            value=score.safety_score,
            threshold=SAFETY_CRITICAL_BELOW,
            message=f"safety score {score.safety_score}/{PART_MAX}: {problems}",
        ))
    if score.overall < OVERALL_WARNING_BELOW:
        alerts.append(QualityAlert(
            level="warning",
            metric="overall_score",
            value=score.overall,
            threshold=OVERALL_WARNING_BELOW,
            message=f"overall quality score {score.overall}/100",
        ))
    return alerts
