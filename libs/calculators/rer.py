# libs/calculators/rer.py
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from ._common import normalize_species, require_positive, round_half_up

# life-stage multipliers applied to RER to get MER
MER_FACTORS: Dict[str, Dict[str, float]] = {
    "canine": {"adult": 1.6, "senior": 1.4, "puppy": 3.0, "pregnant": 1.8, "lactating": 4.0},
    "feline": {"adult": 1.4, "senior": 1.1, "kitten": 2.5, "pregnant": 1.6, "lactating": 2.5},
}
FALLBACK_FACTOR = 1.4


@dataclass
class RERResult:
    rer_kcal: float
    mer_kcal: float
    illness_factor: float
    formula_used: str
    notes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def default_factor(species: str, life_stage: str) -> float:
    return MER_FACTORS.get(species, {}).get(life_stage, FALLBACK_FACTOR)


def calculate_rer(
    weight_kg: float,
    species: str = "canine",
    life_stage: str = "adult",
    illness_factor: Optional[float] = None,
) -> RERResult:
    weight_kg = require_positive("weight_kg", weight_kg)
    species = normalize_species(species)
    life_stage = (life_stage or "adult").strip().lower()
    if illness_factor is not None:
        illness_factor = require_positive("illness_factor", illness_factor)

    # allometric formula only holds for 2-45 kg; linear approximation outside
    if 2 <= weight_kg <= 45:
        rer = 70 * weight_kg ** 0.75
        formula = f"70 x {weight_kg:g}^0.75 = {round_half_up(rer, 0):.0f} kcal/day"
    else:
        rer = 30 * weight_kg + 70
        formula = f"30 x {weight_kg:g} + 70 = {round_half_up(rer, 0):.0f} kcal/day"

    factor = illness_factor if illness_factor is not None else default_factor(species, life_stage)
    mer = rer * factor

    notes: List[str] = []
    if species == "feline" and weight_kg > 8:
        notes.append("Heavy cat: consider a weight-loss plan.")
    if life_stage in ("puppy", "kitten"):
        notes.append("Growing animal: higher energy needs, feed small frequent meals.")
    if factor > 1.5:
        notes.append("High energy requirement: monitor body weight and BCS.")

    return RERResult(
        rer_kcal=round_half_up(rer, 0),
        mer_kcal=round_half_up(mer, 0),
        illness_factor=factor,
        formula_used=formula,
        notes=notes,
    )
