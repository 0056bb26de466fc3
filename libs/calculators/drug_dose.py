# libs/calculators/drug_dose.py
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from ._common import require_positive, round_half_up

FREQUENCY_MAP: Dict[str, int] = {
    "SID": 1, "QD": 1, "Q24H": 1,
    "BID": 2, "Q12H": 2,
    "TID": 3, "Q8H": 3,
    "QID": 4, "Q6H": 4,
}
DEFAULT_TIMES_PER_DAY = 2


@dataclass
class DrugDoseResult:
    total_dose_mg: float
    volume_ml: Optional[float]
    daily_dose_mg: float
    frequency: str
    times_per_day: int
    notes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def calculate_drug_dose(
    weight_kg: float,
    dose_mg_per_kg: float,
    concentration_mg_per_ml: Optional[float] = None,
    frequency: str = "BID",
) -> DrugDoseResult:
    """Per-administration dose, volume to draw up and daily total."""
    weight_kg = require_positive("weight_kg", weight_kg)
    dose_mg_per_kg = require_positive("dose_mg_per_kg", dose_mg_per_kg)
    if concentration_mg_per_ml is not None:
        concentration_mg_per_ml = require_positive("concentration_mg_per_ml", concentration_mg_per_ml)

    freq = (frequency or "BID").strip().upper()
    times_per_day = FREQUENCY_MAP.get(freq, DEFAULT_TIMES_PER_DAY)

    total = weight_kg * dose_mg_per_kg
    volume = total / concentration_mg_per_ml if concentration_mg_per_ml else None

    notes: List[str] = []
    if weight_kg < 1:
        notes.append("Very low body weight: double-check dose precision.")
    if weight_kg > 80:
        notes.append("Giant-breed body weight: confirm the maximum dose cap for this drug.")
    if freq not in FREQUENCY_MAP:
        notes.append(f"Unrecognised frequency {frequency!r}; assumed BID (2x daily).")

    return DrugDoseResult(
        total_dose_mg=round_half_up(total),
        volume_ml=round_half_up(volume) if volume is not None else None,
        daily_dose_mg=round_half_up(total * times_per_day),
        frequency=freq,
        times_per_day=times_per_day,
        notes=notes,
    )
