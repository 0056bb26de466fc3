# libs/vet_tools/knowledge_search.py
import logging
from typing import Any, Dict, List, Optional

from common.errors import ExternalServiceError
from knowledge.fusion import KnowledgeFusionEngine
from knowledge.types import KnowledgeSearchOptions, KnowledgeSource

from ._params import required_str, species_param
from .registry import ToolSchema

log = logging.getLogger("vet-tools.knowledge_search")

MAX_RESULTS = 10
NO_DATA_NOTE = (
    "No matching data was found in any knowledge source. Tell the user explicitly that no data "
    "was found for this query; do not answer from memory as if it were sourced."
)

SCHEMA = ToolSchema(
    name="knowledge_search",
    description=(
        "Search veterinary knowledge (disease encyclopedia, textbooks, literature). Returns fused, "
        "ranked results with citations. Prefer English queries, e.g. 'canine CKD treatment'."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "Search query, e.g. 'feline hyperthyroidism methimazole'"},
            "species": {
                "type": "string",
                "enum": ["dog", "cat", "rabbit", "avian", "reptile", "exotic"],
                "description": "Species filter",
            },
            "include_detail": {
                "type": "boolean",
                "description": "Fetch the full encyclopedia entry (treatment, diagnosis, prognosis) of the top disease hit",
            },
            "include_secondary_source": {
                "type": "boolean",
                "description": "Also search PubMed for recent literature (slower)",
            },
        },
        "required": ["query"],
    },
)


async def knowledge_search(params: Dict[str, Any], *, engine: KnowledgeFusionEngine) -> Dict[str, Any]:
    query = required_str(params, "query")
    include_detail = bool(params.get("include_detail", False))
    options = KnowledgeSearchOptions(
        species=species_param(params.get("species")),
        max_results=MAX_RESULTS,
        include_secondary_source=bool(params.get("include_secondary_source", False)),
    )

    items = await engine.merge_knowledge_results(query, options)

    detail: Optional[Dict[str, Any]] = None
    if include_detail and engine.encyclopedia is not None and engine.encyclopedia.is_configured():
        first = next((i for i in items if i.source is KnowledgeSource.ENCYCLOPEDIA and i.slug), None)
        if first is not None:
            try:
                detail = await engine.encyclopedia.get_disease_detail(first.slug)
            except ExternalServiceError as e:
                log.warning("disease_detail_failed", extra={"slug": first.slug, "err": str(e)})

    sources: List[str] = []
    for i in items:
        if i.source.value not in sources:
            sources.append(i.source.value)

    result: Dict[str, Any] = {
        "query": query,
        "totalResults": len(items),
        "results": [i.to_dict() for i in items],
        "sources": sources,
    }
    if include_detail:
        result["diseaseDetail"] = detail
    if not items:
        result["note"] = NO_DATA_NOTE
    return result
