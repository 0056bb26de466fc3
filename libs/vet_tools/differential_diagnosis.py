# libs/vet_tools/differential_diagnosis.py
"""
Differential diagnosis ranking.

Primary: the encyclopedia DDX engine (free-text symptoms/labs resolved to
standard ids, composite symptom + lab scoring).
Fallback: a small built-in table keyed by symptom groups, plus literature
hits from the vector store as supplements.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from common.errors import ExternalServiceError, ToolInputError
from knowledge.fusion import KnowledgeFusionEngine
from knowledge.types import KnowledgeSearchOptions

from ._params import species_param, str_list
from .registry import ToolSchema

log = logging.getLogger("vet-tools.ddx")

MAX_DIFFERENTIALS = 20
LITERATURE_LIMIT = 3

SCHEMA = ToolSchema(
    name="differential_diagnosis",
    description=(
        "Rank differential diagnoses from symptoms, lab abnormalities and species "
        "(composite symptom + lab scoring over the disease encyclopedia)."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "symptoms": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Symptoms in English free text, e.g. ['vomiting', 'diarrhoea', 'lethargy']",
            },
            "labs": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Lab abnormalities in English free text, e.g. ['azotaemia', 'hyperkalaemia']",
            },
            "species": {
                "type": "string",
                "enum": ["dog", "cat", "rabbit", "avian", "reptile", "exotic"],
            },
            "exclude": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Exclude diseases presenting these symptoms",
            },
            "sex": {"type": "string", "description": "e.g. female_intact, male_neutered"},
            "age_years": {"type": "number"},
        },
        "required": ["symptoms"],
    },
)


# ── Fallback table ───────────────────────────────────────────────────────────
@dataclass(frozen=True)
class FallbackEntry:
    condition: str
    condition_localized: str
    likelihood: str            # high | moderate | low
    urgency: str               # emergency | urgent | routine
    key_features: Tuple[str, ...]
    tests: Tuple[str, ...]
    sex_filter: Tuple[str, ...] = ()
    min_age_years: Optional[float] = None
    max_age_years: Optional[float] = None


FALLBACK_DB: Dict[str, Dict[str, List[FallbackEntry]]] = {
    "dog": {
        "polyuria,polydipsia": [
            FallbackEntry("Pyometra", "子宮蓄膿", "high", "emergency",
                          ("Intact female", "vaginal discharge", "lethargy"),
                          ("CBC", "Abdominal ultrasound", "Progesterone"), sex_filter=("female_intact",)),
            FallbackEntry("Diabetes mellitus", "糖尿病", "high", "urgent",
                          ("Hyperglycemia", "glucosuria", "weight loss"),
                          ("Blood glucose", "Fructosamine", "Urinalysis")),
            FallbackEntry("Hyperadrenocorticism (Cushing's)", "庫欣氏症", "high", "routine",
                          ("Pot-bellied appearance", "skin changes", "panting"),
                          ("LDDS test", "ACTH stimulation", "Abdominal ultrasound")),
            FallbackEntry("Chronic kidney disease", "慢性腎病", "high", "urgent",
                          ("Azotemia", "isosthenuria", "weight loss"),
                          ("Creatinine", "SDMA", "Urinalysis with UPC")),
        ],
        "vomiting": [
            FallbackEntry("Foreign body obstruction", "異物阻塞", "high", "emergency",
                          ("Acute onset", "nonproductive retching", "abdominal pain"),
                          ("Abdominal radiographs", "Barium study", "Ultrasound")),
            FallbackEntry("Pancreatitis", "胰臟炎", "high", "urgent",
                          ("Abdominal pain", "anorexia", "diarrhea"),
                          ("cPLI/SNAP cPL", "Ultrasound", "CBC")),
            FallbackEntry("Gastritis", "胃炎", "high", "routine",
                          ("Dietary indiscretion", "self-limiting"),
                          ("Symptomatic treatment trial",)),
        ],
    },
    "cat": {
        "vomiting": [
            FallbackEntry("Inflammatory bowel disease (IBD)", "炎症性腸病", "high", "routine",
                          ("Chronic intermittent", "weight loss"),
                          ("Cobalamin/Folate", "Abdominal ultrasound", "Endoscopy + biopsy")),
            FallbackEntry("Pancreatitis", "胰臟炎", "high", "urgent",
                          ("Anorexia", "lethargy"),
                          ("fPLI/SNAP fPL", "Ultrasound")),
        ],
        "polyuria,polydipsia": [
            FallbackEntry("Chronic kidney disease", "慢性腎病", "high", "urgent",
                          ("Older cat", "weight loss", "azotemia"),
                          ("Creatinine", "SDMA", "UPC", "Urinalysis")),
            FallbackEntry("Diabetes mellitus", "糖尿病", "high", "urgent",
                          ("Overweight cat", "plantigrade stance", "hyperglycemia"),
                          ("Blood glucose", "Fructosamine", "Urinalysis")),
            FallbackEntry("Hyperthyroidism", "甲狀腺功能亢進", "high", "routine",
                          ("Older cat", "weight loss", "tachycardia"),
                          ("Total T4", "Free T4")),
        ],
    },
}

LIKELIHOOD_SCORE = {"high": 3, "moderate": 2, "low": 1}
URGENCY_SCORE = {"emergency": 4, "urgent": 3, "routine": 1}


def match_fallback(
    symptoms: List[str],
    species: str,
    *,
    sex: Optional[str] = None,
    age_years: Optional[float] = None,
) -> List[FallbackEntry]:
    """Symptom-group keys match when any key symptom and any input symptom contain one another."""
    table = FALLBACK_DB.get(species, {})
    normalized = [s.lower().strip() for s in symptoms if s.strip()]
    matched: List[FallbackEntry] = []
    seen = set()
    for key, entries in table.items():
        key_symptoms = key.split(",")
        if not any(k in s or s in k for k in key_symptoms for s in normalized):
            continue
        for e in entries:
            if e.condition in seen:
                continue
            if e.sex_filter and sex and sex not in e.sex_filter:
                continue
            if age_years is not None:
                if e.max_age_years is not None and age_years > e.max_age_years:
                    continue
                if e.min_age_years is not None and age_years < e.min_age_years:
                    continue
            matched.append(e)
            seen.add(e.condition)
    return matched


def _fallback_row(e: FallbackEntry, symptoms: List[str], species: str) -> Dict[str, Any]:
    return {
        "slug": "",
        "nameEn": e.condition,
        "nameZh": e.condition_localized,
        "bodySystem": "",
        "description": None,
        "compositeScore": LIKELIHOOD_SCORE[e.likelihood],
        "urgencyScore": URGENCY_SCORE[e.urgency],
        "matchedSymptoms": list(symptoms),
        "matchedLabs": [],
        "species": [species],
        "keyFeatures": list(e.key_features),
        "suggestedTests": list(e.tests),
    }


def _ddx_row(r: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "slug": r.get("slug"),
        "nameEn": r.get("nameEn"),
        "nameZh": r.get("nameZh"),
        "bodySystem": r.get("bodySystem"),
        "description": r.get("description"),
        "compositeScore": r.get("compositeScore"),
        "urgencyScore": r.get("urgencyScore"),
        "matchedSymptoms": r.get("matchedSymptoms") or [],
        "matchedLabs": r.get("matchedLabs") or [],
        "species": r.get("species") or [],
    }


# ── Id resolution ────────────────────────────────────────────────────────────
async def _resolve_one(lookup, text: str) -> Dict[str, Optional[str]]:
    try:
        matches = await lookup(text)
    except ExternalServiceError as e:
        log.info("ddx_term_unresolved", extra={"term": text, "err": str(e)})
        matches = []
    if matches:
        return {"input": text, "id": matches[0].get("id"), "name": matches[0].get("enName")}
    return {"input": text, "id": None, "name": None}


async def resolve_terms(lookup, terms: List[str]) -> List[Dict[str, Optional[str]]]:
    return list(await asyncio.gather(*(_resolve_one(lookup, t) for t in terms)))


def _ids(resolved: List[Dict[str, Optional[str]]]) -> List[str]:
    return [r["id"] for r in resolved if r["id"]]


async def _encyclopedia_ddx(
    encyclopedia, symptoms: List[str], labs: List[str], exclude: List[str], species: str, notes: List[str],
) -> Optional[Dict[str, Any]]:
    resolved_symptoms, resolved_labs = await asyncio.gather(
        resolve_terms(encyclopedia.search_symptoms, symptoms),
        resolve_terms(encyclopedia.search_lab_findings, labs),
    )
    unresolved_symptoms = [r["input"] for r in resolved_symptoms if not r["id"]]
    unresolved_labs = [r["input"] for r in resolved_labs if not r["id"]]
    if unresolved_symptoms:
        notes.append("No encyclopedia match for symptoms: " + ", ".join(unresolved_symptoms))
    if unresolved_labs:
        notes.append("No encyclopedia match for lab findings: " + ", ".join(unresolved_labs))

    symptom_ids, lab_ids = _ids(resolved_symptoms), _ids(resolved_labs)
    if not symptom_ids and not lab_ids:
        notes.append("None of the symptoms or lab findings could be resolved; using the fallback table and literature search.")
        return None

    exclude_ids = _ids(await resolve_terms(encyclopedia.search_symptoms, exclude)) if exclude else []
    raw = await encyclopedia.get_ddx(
        symptom_ids,
        lab_ids,
        species=species if species != "both" else None,
        exclude=exclude_ids or None,
    )
    rows = [_ddx_row(r) for r in (raw.get("results") or [])[:MAX_DIFFERENTIALS]]
    return {
        "differentials": rows,
        "resolvedSymptoms": resolved_symptoms,
        "resolvedLabs": resolved_labs,
        "species": species,
        "totalResults": raw.get("resultCount", len(rows)),
        "source": "encyclopedia",
        "notes": notes,
    }


async def differential_diagnosis(params: Dict[str, Any], *, engine: KnowledgeFusionEngine) -> Dict[str, Any]:
    symptoms = str_list(params, "symptoms")
    if not symptoms:
        raise ToolInputError("symptoms must contain at least one symptom")
    labs = str_list(params, "labs")
    exclude = str_list(params, "exclude")
    species = species_param(params.get("species")) or "both"
    notes: List[str] = []

    encyclopedia = engine.encyclopedia
    if encyclopedia is not None and encyclopedia.is_configured():
        try:
            primary = await _encyclopedia_ddx(encyclopedia, symptoms, labs, exclude, species, notes)
            if primary is not None:
                return primary
        except ExternalServiceError as e:
            log.warning("ddx_engine_failed", extra={"err": str(e)})
            notes.append("The encyclopedia DDX engine is temporarily unavailable; using the fallback table.")

    age = params.get("age_years")
    try:
        age_years = float(age) if age is not None else None
    except (TypeError, ValueError) as e:
        raise ToolInputError(f"age_years must be a number, got {age!r}") from e

    matched = match_fallback(symptoms, species, sex=params.get("sex"), age_years=age_years)
    if not matched:
        notes.append("No match in the fallback differential table.")

    supplements = []
    if engine.vector is not None and engine.vector.is_configured():
        supplements = await engine.vector.search(
            f"{' '.join(symptoms)} differential diagnosis {species}",
            KnowledgeSearchOptions(species=None if species == "both" else species),
            limit=LITERATURE_LIMIT,
        )

    result: Dict[str, Any] = {
        "differentials": [_fallback_row(e, symptoms, species) for e in matched],
        "resolvedSymptoms": [{"input": s, "id": None, "name": None} for s in symptoms],
        "resolvedLabs": [],
        "species": species,
        "totalResults": len(matched),
        "source": "fallback",
        "notes": notes,
    }
    if supplements:
        result["literatureSupplements"] = [i.to_dict() for i in supplements]
    return result
