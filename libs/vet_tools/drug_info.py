# libs/vet_tools/drug_info.py
import logging
from typing import Any, Dict, List, Optional

from common.errors import ExternalServiceError
from knowledge.fusion import KnowledgeFusionEngine
from knowledge.types import KnowledgeSearchOptions

from ._params import required_str, species_param, str_list
from .registry import ToolSchema

log = logging.getLogger("vet-tools.drug_info")

LITERATURE_LIMIT = 3

SCHEMA = ToolSchema(
    name="drug_info",
    description=(
        "Look up a veterinary drug: dosing, indications, contraindications, adverse effects. "
        "Accepts generic or brand names. Optionally checks interactions with other drugs."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "drug_name": {"type": "string", "description": "Drug name (generic or brand)"},
            "species": {
                "type": "string",
                "enum": ["dog", "cat", "rabbit", "avian", "reptile", "exotic"],
                "description": "Target species (filters dosing)",
            },
            "check_interactions": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Other drugs the patient receives; interactions are checked automatically",
            },
        },
        "required": ["drug_name"],
    },
)


async def _resolve_drug_id(encyclopedia, name: str, known: Dict[str, str]) -> Optional[str]:
    cached = known.get(name.lower())
    if cached:
        return cached
    try:
        found = await encyclopedia.search_drugs(name)
    except ExternalServiceError as e:
        log.info("interaction_drug_unresolved", extra={"drug": name, "err": str(e)})
        return None
    drugs = found.get("drugs") or []
    if not drugs or not drugs[0].get("id"):
        return None
    known[name.lower()] = drugs[0]["id"]
    return drugs[0]["id"]


async def drug_info(params: Dict[str, Any], *, engine: KnowledgeFusionEngine) -> Dict[str, Any]:
    drug_name = required_str(params, "drug_name")
    species = species_param(params.get("species"))
    others = str_list(params, "check_interactions")

    encyclopedia = engine.encyclopedia
    has_encyclopedia = encyclopedia is not None and encyclopedia.is_configured()
    sources: List[str] = []
    detail: Optional[Dict[str, Any]] = None
    known_ids: Dict[str, str] = {}

    # 1. encyclopedia search + detail of the first match
    if has_encyclopedia:
        try:
            found = await encyclopedia.search_drugs(drug_name, species=species)
            drugs = found.get("drugs") or []
            if drugs:
                sources.append("encyclopedia")
                detail = await encyclopedia.get_drug_detail(drugs[0]["slug"])
                for d in drugs:
                    if d.get("nameEn") and d.get("id"):
                        known_ids[d["nameEn"].lower()] = d["id"]
                    if d.get("nameZh") and d.get("id"):
                        known_ids[d["nameZh"].lower()] = d["id"]
        except ExternalServiceError as e:
            log.warning("drug_search_failed", extra={"drug": drug_name, "err": str(e)})

    # 2. interactions (needs at least two distinct drug ids)
    interactions: List[Dict[str, Any]] = []
    if others and has_encyclopedia:
        ids: List[str] = []
        if detail and detail.get("id"):
            ids.append(detail["id"])
        for name in others:
            drug_id = await _resolve_drug_id(encyclopedia, name, known_ids)
            if drug_id:
                ids.append(drug_id)
        unique_ids = list(dict.fromkeys(ids))
        if len(unique_ids) >= 2:
            try:
                checked = await encyclopedia.check_interactions(unique_ids)
                interactions = checked.get("interactions") or []
            except ExternalServiceError as e:
                log.warning("interaction_check_failed", extra={"drugs": unique_ids, "err": str(e)})

    # 3. literature fallback when the encyclopedia knows nothing
    literature = []
    if detail is None and engine.vector is not None and engine.vector.is_configured():
        literature = await engine.vector.search(
            f"{drug_name} veterinary pharmacology dosage",
            KnowledgeSearchOptions(species=species),
            limit=LITERATURE_LIMIT,
        )
        if literature:
            sources.append("vector")

    result: Dict[str, Any] = {
        "found": bool(detail or literature),
        "drugName": drug_name,
        "drugDetail": detail,
        "sources": sources,
    }
    if interactions:
        result["interactions"] = interactions
    if literature:
        result["literature"] = [i.to_dict() for i in literature]
    return result
