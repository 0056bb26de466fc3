# libs/calculators/iris_staging.py
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from common.errors import CalculatorDomainError

from ._common import normalize_species, optional_number, require_positive

# upper creatinine bound (mg/dL) of stage 1 by species; stages 2-4 share cut points
STAGE1_UPPER = {"canine": 1.4, "feline": 1.6}
STAGE2_UPPER = 2.8
STAGE3_UPPER = 5.0

CREATININE_RANGES = {
    "canine": {1: "<1.4 mg/dL", 2: "1.4–2.8 mg/dL", 3: "2.9–5.0 mg/dL", 4: ">5.0 mg/dL"},
    "feline": {1: "<1.6 mg/dL", 2: "1.6–2.8 mg/dL", 3: "2.9–5.0 mg/dL", 4: ">5.0 mg/dL"},
}

STAGE_DESCRIPTIONS = {
    1: "Stage 1 (non-azotemic)",
    2: "Stage 2 (mild renal azotemia)",
    3: "Stage 3 (moderate renal azotemia)",
    4: "Stage 4 (severe renal azotemia)",
}

# UPC upper bound of the borderline band
UPC_BORDERLINE_UPPER = {"canine": 0.5, "feline": 0.4}
UPC_NON_PROTEINURIC = 0.2
SDMA_UPPER_NORMAL = 18

STAGE_RECOMMENDATIONS = {
    1: [
        "Monitor creatinine, SDMA, UPC and blood pressure every 3-6 months",
        "Investigate and treat any underlying renal disease (infection, uroliths)",
    ],
    2: [
        "Start a renal diet (phosphorus restricted, moderate protein restriction)",
        "Recheck renal function every 2-3 months",
        "Encourage water intake",
    ],
    3: [
        "Renal diet plus phosphate binder",
        "Fluid support (consider subcutaneous fluids)",
        "Monitor electrolytes and acid-base status",
        "Assess for anemia and need for erythropoiesis-stimulating therapy",
        "Recheck every 1-2 months",
    ],
    4: [
        "End-stage CKD: intensive supportive care",
        "Subcutaneous fluids, phosphate binders, antacids, antiemetics",
        "Discuss quality of life and prognosis",
        "Recheck every 2-4 weeks",
    ],
}


@dataclass
class IRISResult:
    stage: int
    stage_description: str
    creatinine_range: str
    substage_proteinuria: Optional[str] = None
    substage_hypertension: Optional[str] = None
    notes: List[str] = field(default_factory=list)
    management_recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def creatinine_stage(creatinine_mg_dl: float, species: str) -> int:
    if creatinine_mg_dl < STAGE1_UPPER[species]:
        return 1
    if creatinine_mg_dl <= STAGE2_UPPER:
        return 2
    if creatinine_mg_dl <= STAGE3_UPPER:
        return 3
    return 4


def proteinuria_substage(upc: float, species: str) -> str:
    if upc < UPC_NON_PROTEINURIC:
        return "Non-proteinuric (NP)"
    if upc <= UPC_BORDERLINE_UPPER[species]:
        return "Borderline proteinuric (BP)"
    return "Proteinuric (P)"


def hypertension_substage(systolic_mmhg: float) -> str:
    if systolic_mmhg < 140:
        return "Normotensive (AP0)"
    if systolic_mmhg < 160:
        return "Prehypertensive (AP1)"
    if systolic_mmhg < 180:
        return "Hypertensive (AP2)"
    return "Severely hypertensive (AP3)"


def calculate_iris_staging(
    creatinine_mg_dl: float,
    species: str,
    sdma_ug_dl: Optional[float] = None,
    upc: Optional[float] = None,
    blood_pressure_mmhg: Optional[float] = None,
) -> IRISResult:
    """IRIS CKD stage from fasting creatinine, with proteinuria and blood pressure substages."""
    creatinine_mg_dl = require_positive("creatinine_mg_dl", creatinine_mg_dl)
    species = normalize_species(species)
    sdma = optional_number("sdma_ug_dl", sdma_ug_dl)
    upc = optional_number("upc", upc)
    bp = optional_number("blood_pressure_mmhg", blood_pressure_mmhg)
    if upc is not None and upc < 0:
        raise CalculatorDomainError("upc cannot be negative")
    if bp is not None and bp <= 0:
        raise CalculatorDomainError("blood_pressure_mmhg must be greater than 0")

    stage = creatinine_stage(creatinine_mg_dl, species)
    notes: List[str] = []
    recommendations: List[str] = []

    if sdma is not None and sdma > SDMA_UPPER_NORMAL:
        notes.append(
            f"SDMA {sdma:g} µg/dL is above the reference limit (<{SDMA_UPPER_NORMAL}); "
            "it may reflect reduced GFR earlier than creatinine, interpret together."
        )

    substage_p = None
    if upc is not None:
        substage_p = proteinuria_substage(upc, species)
        if upc > UPC_BORDERLINE_UPPER["canine"]:
            recommendations.append("Proteinuria: consider an ACE inhibitor (benazepril) or ARB (telmisartan)")

    substage_ap = None
    if bp is not None:
        substage_ap = hypertension_substage(bp)
        if bp >= 160:
            recommendations.append("Hypertension: consider amlodipine (first choice in cats) or an ACE inhibitor")
            notes.append("Hypertension risks target-organ damage (eyes, brain, kidneys, heart).")

    recommendations.extend(STAGE_RECOMMENDATIONS[stage])

    return IRISResult(
        stage=stage,
        stage_description=STAGE_DESCRIPTIONS[stage],
        creatinine_range=CREATININE_RANGES[species][stage],
        substage_proteinuria=substage_p,
        substage_hypertension=substage_ap,
        notes=notes,
        management_recommendations=recommendations,
    )
