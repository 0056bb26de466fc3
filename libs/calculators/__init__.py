from .drug_dose import DrugDoseResult, calculate_drug_dose
from .fluid_rate import FluidRateResult, calculate_fluid_rate
from .iris_staging import IRISResult, calculate_iris_staging
from .rer import RERResult, calculate_rer
from .toxicity import ToxicityResult, calculate_toxicity

__all__ = [
    "calculate_drug_dose", "DrugDoseResult",
    "calculate_fluid_rate", "FluidRateResult",
    "calculate_rer", "RERResult",
    "calculate_toxicity", "ToxicityResult",
    "calculate_iris_staging", "IRISResult",
]
