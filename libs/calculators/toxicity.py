# libs/calculators/toxicity.py
"""
Toxic-dose estimation for the common household ingestions.

`amount_ingested` units depend on the substance: grams of product for
chocolate and grapes/raisins, milligrams of active compound for xylitol and
ibuprofen. Unknown substances still return a result, with a poison-control
referral instead of a severity band.
"""
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from ._common import normalize_species, require_positive, round_half_up

# theobromine, mg per gram of product
CHOCOLATE_THEOBROMINE: Dict[str, float] = {
    "white": 0.009,
    "milk": 2.4,
    "dark": 5.5,
    "semisweet": 5.3,
    "baking": 16.0,
    "cocoa_powder": 28.5,
}
THEOBROMINE_MILD = 20
THEOBROMINE_MODERATE = 40
THEOBROMINE_SEVERE = 60

XYLITOL_HYPOGLYCEMIA = 100
XYLITOL_HEPATIC = 500

IBUPROFEN_GI = 25
IBUPROFEN_RENAL = 50

POISON_CONTROL = "ASPCA Animal Poison Control (888-426-4435)"



@dataclass
class ToxicityResult:
    substance: str
    dose_per_kg: float
    toxic_dose_threshold: float
    severity: str
    clinical_signs: List[str]
    treatment_priority: str
    notes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _chocolate(weight_kg: float, grams: float, kind: Optional[str], species: str) -> ToxicityResult:
    kind = (kind or "dark").strip().lower().replace(" ", "_")
    per_g = CHOCOLATE_THEOBROMINE.get(kind, CHOCOLATE_THEOBROMINE["dark"])
    total_mg = grams * per_g
    dose = total_mg / weight_kg

    if dose < THEOBROMINE_MILD:
        severity, signs = "none", ["No clinical signs expected"]
        priority = "Monitor at home; treatment usually not required."
    elif dose < THEOBROMINE_MODERATE:
        severity, signs = "mild", ["Vomiting", "Diarrhea", "Polyuria", "Polydipsia", "Restlessness"]
        priority = "Induce emesis if within 2 h of ingestion, then activated charcoal."
    elif dose < THEOBROMINE_SEVERE:
        severity, signs = "moderate", ["Tachycardia", "Arrhythmia", "Muscle tremors", "Agitation", "Hyperthermia"]
        priority = "URGENT: emesis, activated charcoal, ECG monitoring and IV fluids."
    else:
        severity, signs = "severe", ["Seizures", "Severe arrhythmia", "Rhabdomyolysis", "Renal failure", "Risk of death"]
        priority = "EMERGENCY: intensive care, anticonvulsants, cardiac monitoring, aggressive fluids."

    if species == "feline":
        signs.append("Cats are more sensitive to methylxanthines than dogs")

    return ToxicityResult(
        substance="chocolate",
        dose_per_kg=round_half_up(dose),
        toxic_dose_threshold=THEOBROMINE_MILD,
        severity=severity,
        clinical_signs=signs,
        treatment_priority=priority,
        notes=[
            f"Chocolate type: {kind}",
            f"Theobromine content: {per_g} mg/g",
            f"Total theobromine ingested: {round_half_up(total_mg, 0):.0f} mg",
            f"Dose: {round_half_up(dose, 1)} mg/kg",
        ],
    )


def _xylitol(weight_kg: float, mg: float, species: str) -> ToxicityResult:
    dose = mg / weight_kg
    if dose < XYLITOL_HYPOGLYCEMIA:
        severity, signs = "mild", ["Possible mild hypoglycemia", "Monitor mentation and appetite"]
    elif dose < XYLITOL_HEPATIC:
        severity, signs = "moderate", ["Hypoglycemia (weakness, ataxia, seizures)", "Vomiting"]
    else:
        severity, signs = "severe", ["Acute hepatic failure", "Severe hypoglycemia", "Coagulopathy", "Risk of death"]

    return ToxicityResult(
        substance="xylitol",
        dose_per_kg=round_half_up(dose),
        toxic_dose_threshold=XYLITOL_HYPOGLYCEMIA,
        severity=severity,
        clinical_signs=signs,
        treatment_priority=(
            "EMERGENCY: serial blood glucose, dextrose infusion, hepatoprotectants."
            if dose >= XYLITOL_HYPOGLYCEMIA else "Monitor blood glucose."
        ),
        notes=[
            "Xylitol is highly toxic to dogs."
            if species == "canine" else "Cats appear less sensitive to xylitol, but monitor anyway."
        ],
    )


def _ibuprofen(weight_kg: float, mg: float, species: str) -> ToxicityResult:
    dose = mg / weight_kg
    if species == "feline":
        # no safe dose in cats
        severity = "severe"
        signs = ["Cats are extremely sensitive to ibuprofen", "Acute kidney injury", "GI ulceration", "Potentially fatal"]
    elif dose < IBUPROFEN_GI:
        severity, signs = "mild", ["Possibly asymptomatic or mild GI upset"]
    elif dose < IBUPROFEN_RENAL:
        severity, signs = "moderate", ["Vomiting", "Diarrhea", "GI ulceration", "Melena"]
    else:
        severity, signs = "severe", ["Acute kidney injury", "GI perforation", "Seizures", "Coma"]

    return ToxicityResult(
        substance="ibuprofen",
        dose_per_kg=round_half_up(dose),
        toxic_dose_threshold=0 if species == "feline" else IBUPROFEN_GI,
        severity=severity,
        clinical_signs=signs,
        treatment_priority=(
            "EMERGENCY: emesis, GI protectants, renal function monitoring."
            if severity == "severe" else "Monitor and consult a veterinarian."
        ),
        notes=["Ibuprofen is not a safe NSAID for dogs or cats; use veterinary NSAIDs such as meloxicam or carprofen."],
    )


def _grape(weight_kg: float, grams: float, substance: str) -> ToxicityResult:
    return ToxicityResult(
        substance=substance,
        dose_per_kg=round_half_up(grams / weight_kg),
        toxic_dose_threshold=0,
        severity="severe",
        clinical_signs=["No known safe dose for grapes/raisins", "Acute kidney injury", "Vomiting", "Oliguria/anuria"],
        treatment_priority="EMERGENCY: emesis, activated charcoal, IV fluids for 48 h, renal monitoring.",
        notes=[
            "The toxic mechanism (tartaric acid is suspected) is not fully established.",
            "Individual sensitivity varies widely; treat any ingestion as an emergency.",
            "Early aggressive treatment improves prognosis.",
        ],
    )


def calculate_toxicity(
    weight_kg: float,
    substance: str,
    amount_ingested: float,
    substance_type: Optional[str] = None,
    species: str = "canine",
) -> ToxicityResult:
    weight_kg = require_positive("weight_kg", weight_kg)
    amount = require_positive("amount_ingested", amount_ingested)
    species = normalize_species(species)
    key = (substance or "").strip().lower()

    if key == "chocolate":
        return _chocolate(weight_kg, amount, substance_type, species)
    if key == "xylitol":
        return _xylitol(weight_kg, amount, species)
    if key == "ibuprofen":
        return _ibuprofen(weight_kg, amount, species)
    if key in ("grape", "grapes", "raisin", "raisins"):
        return _grape(weight_kg, amount, key)

    dose = amount / weight_kg
    return ToxicityResult(
        substance=key or "unknown",
        dose_per_kg=round_half_up(dose),
        toxic_dose_threshold=0,
        severity="moderate",
        clinical_signs=["No toxicity data for this substance; contact a poison control centre"],
        treatment_priority=f"Consult {POISON_CONTROL}.",
        notes=[f"Unknown substance: {substance}, dose {round_half_up(dose)} per kg"],
    )
