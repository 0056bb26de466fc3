# libs/vet_agent/instructions.py
"""
System-instruction assembly.

The instructions are built from named fragments, each with its own
inclusion rule, joined in a fixed order:

    core -> tool_usage -> deep_research -> feline_drugs / mdr1 / ckd
         -> patient_context -> mode_task -> disclaimer

`build()` is a pure function of (mode, context).
"""
from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Tuple

from .safety_rules import CKD_DRUG_WARNINGS, DISCLAIMER, FELINE_CONTRAINDICATED_DRUGS, MDR1_WARNING
from .types import AgentMode, PatientContext

_CANINE = {"dog", "dogs", "canine", "k9", "犬", "狗"}
_FELINE = {"cat", "cats", "feline", "貓", "猫"}
_CKD_MARKERS = ("kidney", "renal", "ckd", "腎")

CORE = """
You are VetEvidence, a clinical decision-support assistant for veterinarians.

CORE PRINCIPLES
1. Evidence first: base every answer on literature or database results returned by your tools; do not speculate without support.
2. Cite sources: attach a numbered citation [n] to every key claim.
3. Species differences: always account for species-specific physiology and pharmacology; cats and dogs differ greatly.
4. Safety first: add an explicit warning to any advice that could endanger the animal.
5. Humility: when evidence is insufficient, say so clearly.

ANSWER FORMAT
- Answer the question directly first.
- Then present the supporting evidence.
- Use [1], [2], [3] markers; even a single source gets [1]. List the full references at the end.
- Recommend further diagnostics or referral when appropriate.
- If a tool returns no results, state explicitly that no data was found. Never invent references, doses or study results.

LANGUAGE
- Reply in the language of the user's question.
""".strip()

TOOL_USAGE = """
TOOL RULES
- For any clinical question you MUST call knowledge_search before answering; do not skip retrieval.
- Write knowledge_search queries in English (the literature corpus is mostly English textbooks), e.g. a question about feline diabetes management -> "feline diabetes mellitus management".
- For drug questions call drug_info (dose, contraindications, interactions).
- For symptom lists call differential_diagnosis; for dose, fluid, energy, toxicity or CKD staging arithmetic call clinical_calculator instead of computing by hand.
- You may call several tools in one turn.
- Tool results may end with "...[truncated]": that payload is partial, do not treat it as complete.
- If a tool returns an error or an empty result, tell the user the data was unavailable; do not fabricate.
""".strip()

DEEP_RESEARCH = """
DEEP RESEARCH MODE
You are producing a comprehensive research report.
1. Run at least three knowledge_search queries from different angles: overview, specific treatment or diagnostic approach, recent research or controversies.
2. Cross-check sources against each other and point out where they agree or differ.
3. Label every recommendation with its evidence level:
   Level I systematic review / meta-analysis; Level II randomized controlled trial; Level III non-randomized controlled study;
   Level IV case series / expert opinion; Level V textbook / clinical experience.
4. Do not cite the same passage twice; each citation should add new information.

REPORT STRUCTURE
## Summary
## Background
## Literature review (each claim with [n] and its evidence level)
## Treatment recommendations / diagnostic workflow
## Limitations and uncertainty
## References
""".strip()

SOAP_TASK = """
TASK: STRUCTURED SOAP NOTE
Using only the patient context above, produce a SOAP note with the headings Subjective, Objective, Assessment, Plan.
Keep every value exactly as recorded; write "not recorded" for missing data. Do not add diagnoses that are not supported by the record.
""".strip()

HOSPITALIZATION_TASK = """
TASK: HOSPITALIZATION SUMMARY
Using only the patient context above, summarise the hospital stay: reason for admission, course and key findings,
treatments given, current status, and discharge or next-step recommendations. Flag any abnormal values or missed treatments.
""".strip()


IMAGE_TASK = """
TASK: IMAGE ANALYSIS
The user has attached a veterinary image (radiograph, ultrasound, lab report, dermatology or cytology photo).
1. Identify the image type first. If it is not a medical image or lab report, say so and do not attempt a clinical reading.
2. Describe the findings systematically in medical terms.
3. Use knowledge_search afterwards to support the interpretation with literature.
4. Always end with the disclaimer below.

RADIOGRAPH FORMAT
## Image type
## Systematic reading (soft tissue, skeleton, organ silhouettes, abnormal findings)
## Differential diagnoses (most likely, next, to rule out)
## Recommended follow-up
## Disclaimer: this reading does not replace a report by a veterinary radiologist.

LAB REPORT FORMAT
## Report type (CBC, chemistry, urinalysis, other)
## Abnormal values (table: analyte, value, reference range, interpretation)
## Overall assessment
## Recommended follow-up
## Disclaimer: interpret together with the history and physical examination.
""".strip()


def normalize_species(species: Optional[str]) -> Optional[str]:
    if not species:
        return None
    key = str(species).strip().lower()
    if key in _CANINE:
        return "canine"
    if key in _FELINE:
        return "feline"
    return key


def _feline_block() -> str:
    lines = ["ABSOLUTELY CONTRAINDICATED IN CATS"]
    lines += [f"- {d['drug']}: {d['reason']}" for d in FELINE_CONTRAINDICATED_DRUGS]
    return "\n".join(lines)


def _breed_at_risk(breed: Optional[str]) -> Optional[str]:
    if not breed:
        return None
    b = breed.lower()
    for candidate in MDR1_WARNING["breeds"]:
        base = candidate.split("(")[0].strip().lower()
        if base and base in b:
            return candidate
    return None


def _mdr1_block(context: Optional[PatientContext]) -> str:
    lines = [
        "MDR1 (ABCB1) BREED WARNING",
        "Breeds that may carry the MDR1 mutation: " + ", ".join(MDR1_WARNING["breeds"]),
        "High-risk drugs: " + ", ".join(MDR1_WARNING["drugs"]),
        MDR1_WARNING["description"],
    ]
    match = _breed_at_risk(context.breed if context else None)
    if match:
        lines.append(
            f"THIS PATIENT ({context.breed}) belongs to an at-risk breed ({match}): "
            "recommend MDR1 genotyping before using any of the drugs above."
        )
    return "\n".join(lines)


def _ckd_block() -> str:
    return "\n".join([
        "DRUGS IN KIDNEY DISEASE",
        CKD_DRUG_WARNINGS["description"],
        "- Avoid: " + ", ".join(CKD_DRUG_WARNINGS["avoid"]),
        "- Adjust dose: " + ", ".join(CKD_DRUG_WARNINGS["adjust_dose"]),
    ])


def select_safety_blocks(context: Optional[PatientContext]) -> List[str]:
    """
    Which safety blocks apply. Without a known species every block is
    included; otherwise only the ones relevant to this patient.
    """
    species = normalize_species(context.species) if context else None
    if species is None:
        return ["feline_drugs", "mdr1", "ckd"]

    blocks: List[str] = []
    if species == "feline":
        blocks.append("feline_drugs")
    if species == "canine":
        blocks.append("mdr1")
    conditions = " ".join(context.chronic_conditions).lower()
    if any(marker in conditions for marker in _CKD_MARKERS):
        blocks.append("ckd")
    return blocks


def _dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def render_patient_context(context: PatientContext) -> str:
    p = context.patient
    lines = ["PATIENT CONTEXT"]
    fields = [
        ("Name", p.get("name")),
        ("Species", p.get("species")),
        ("Breed", p.get("breed")),
        ("Weight", f"{p['weight_kg']} kg" if p.get("weight_kg") is not None else None),
        ("Sex", p.get("sex")),
        ("Neutered", ("yes" if p["is_neutered"] else "no") if p.get("is_neutered") is not None else None),
        ("Age", p.get("age_description")),
        ("Allergies", ", ".join(map(str, p.get("allergies") or [])) or None),
        ("Chronic conditions", ", ".join(context.chronic_conditions) or None),
    ]
    lines += [f"- {label}: {value}" for label, value in fields if value not in (None, "")]

    sections: List[Tuple[str, Any]] = [
        ("Medical record", context.medical_record),
        ("SOAP notes", context.soap_notes),
        ("Diagnoses", context.diagnoses),
        ("Prescriptions", context.prescriptions),
        ("Lab orders", context.lab_orders),
        ("Hospitalization", context.hospitalization),
        ("Treatment orders", context.treatment_orders),
    ]
    for label, value in sections:
        if value:
            lines.append(f"{label}: {_dump(value)}")
    return "\n".join(lines)


class InstructionBuilder:
    def fragments(
        self, mode: AgentMode = AgentMode.CHAT, context: Optional[PatientContext] = None
    ) -> List[Tuple[str, str]]:
        out: List[Tuple[str, str]] = [("core", CORE)]
        if not mode.is_fast:
            out.append(("tool_usage", TOOL_USAGE))
        if mode is AgentMode.DEEP_RESEARCH:
            out.append(("deep_research", DEEP_RESEARCH))

        renderers: Dict[str, Any] = {
            "feline_drugs": _feline_block,
            "mdr1": lambda: _mdr1_block(context),
            "ckd": _ckd_block,
        }
        for name in select_safety_blocks(context):
            out.append((name, renderers[name]()))

        if context is not None:
            out.append(("patient_context", render_patient_context(context)))
        if mode is AgentMode.SOAP_STRUCTURE:
            out.append(("mode_task", SOAP_TASK))
        elif mode is AgentMode.HOSPITALIZATION_SUMMARY:
            out.append(("mode_task", HOSPITALIZATION_TASK))
        elif mode is AgentMode.IMAGE_ANALYSIS:
            out.append(("mode_task", IMAGE_TASK))

        out.append(("disclaimer", "DISCLAIMER\n" + DISCLAIMER))
        return out

    def build(self, mode: AgentMode = AgentMode.CHAT, context: Optional[PatientContext] = None) -> str:
        return "\n\n".join(text for _, text in self.fragments(mode, context))
