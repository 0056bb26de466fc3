# libs/calculators/fluid_rate.py
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from common.errors import CalculatorDomainError

from ._common import normalize_species, optional_number, require_positive, round_half_up

# ml/kg/day
MAINTENANCE_FACTOR = {"canine": 60.0, "feline": 50.0}
MAX_DEHYDRATION_PERCENT = 15.0


@dataclass
class FluidRateResult:
    deficit_ml: float
    maintenance_ml_per_day: float
    correction_rate_ml_per_hour: float
    total_rate_ml_per_hour: float
    total_volume_24h: float
    notes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def calculate_fluid_rate(
    weight_kg: float,
    dehydration_percent: float,
    correction_hours: float = 24,
    species: str = "canine",
    maintenance_factor: Optional[float] = None,
    ongoing_losses_ml_per_hour: float = 0,
) -> FluidRateResult:
    """
    Deficit (kg x % x 10) corrected over `correction_hours`, on top of
    maintenance and any measured ongoing losses.
    """
    weight_kg = require_positive("weight_kg", weight_kg)
    dehydration_percent = require_positive("dehydration_percent", dehydration_percent)
    if dehydration_percent > MAX_DEHYDRATION_PERCENT:
        raise CalculatorDomainError("dehydration_percent must be between 0 and 15")
    correction_hours = require_positive("correction_hours", correction_hours)
    species = normalize_species(species)
    if maintenance_factor is not None:
        maintenance_factor = require_positive("maintenance_factor", maintenance_factor)
    losses = optional_number("ongoing_losses_ml_per_hour", ongoing_losses_ml_per_hour) or 0.0
    if losses < 0:
        raise CalculatorDomainError("ongoing_losses_ml_per_hour cannot be negative")

    factor = maintenance_factor or MAINTENANCE_FACTOR[species]
    maintenance_per_day = weight_kg * factor
    deficit = weight_kg * dehydration_percent * 10
    correction_per_hour = deficit / correction_hours
    total_per_hour = maintenance_per_day / 24 + correction_per_hour + losses

    notes: List[str] = []
    if dehydration_percent >= 10:
        notes.append("Severe dehydration (>=10%): consider faster correction over the first 4-6 h, then taper.")
    if species == "feline" and total_per_hour > weight_kg * 5:
        notes.append("High rate for a cat: monitor for volume overload and cardiac strain.")
    if dehydration_percent >= 12:
        notes.append("Extreme dehydration: consider IV colloids or hypertonic saline.")

    return FluidRateResult(
        deficit_ml=round_half_up(deficit, 0),
        maintenance_ml_per_day=round_half_up(maintenance_per_day, 0),
        correction_rate_ml_per_hour=round_half_up(correction_per_hour, 1),
        total_rate_ml_per_hour=round_half_up(total_per_hour, 1),
        total_volume_24h=round_half_up(total_per_hour * 24, 0),
        notes=notes,
    )
