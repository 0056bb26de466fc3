# libs/calculators/_common.py
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from common.errors import CalculatorDomainError

_SPECIES_ALIASES = {
    "canine": "canine", "dog": "canine", "犬": "canine",
    "feline": "feline", "cat": "feline", "貓": "feline",
}


def round_half_up(value: float, places: int = 2) -> float:
    """Round like a calculator does (2.675 -> 2.68), independent of float repr quirks."""
    quant = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quant, rounding=ROUND_HALF_UP))


def require_positive(name: str, value: Optional[float]) -> float:
    if value is None:
        raise CalculatorDomainError(f"{name} is required")
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise CalculatorDomainError(f"{name} must be a number, got {value!r}") from e
    if number != number or number <= 0:
        raise CalculatorDomainError(f"{name} must be greater than 0")
    return number


def optional_number(name: str, value) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise CalculatorDomainError(f"{name} must be a number, got {value!r}") from e


def normalize_species(species: Optional[str], default: str = "canine") -> str:
    if not species:
        return default
    key = str(species).strip().lower()
    if key not in _SPECIES_ALIASES:
        raise CalculatorDomainError(f"unsupported species {species!r} (use canine or feline)")
    return _SPECIES_ALIASES[key]
