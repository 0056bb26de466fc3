# libs/vet_tools/clinical_calculator.py
import logging
from typing import Any, Callable, Dict, Tuple

from calculators import (
    calculate_drug_dose,
    calculate_fluid_rate,
    calculate_iris_staging,
    calculate_rer,
    calculate_toxicity,
)
from common.errors import CalculatorDomainError, ToolInputError

from .registry import ToolSchema

log = logging.getLogger("vet-tools.calculator")

# name -> (function, required params, optional params)
CALCULATORS: Dict[str, Tuple[Callable[..., Any], Tuple[str, ...], Tuple[str, ...]]] = {
    "drug_dose": (
        calculate_drug_dose,
        ("weight_kg", "dose_mg_per_kg"),
        ("concentration_mg_per_ml", "frequency"),
    ),
    "fluid_rate": (
        calculate_fluid_rate,
        ("weight_kg", "dehydration_percent"),
        ("correction_hours", "species", "maintenance_factor", "ongoing_losses_ml_per_hour"),
    ),
    "rer": (
        calculate_rer,
        ("weight_kg",),
        ("species", "life_stage", "illness_factor"),
    ),
    "toxicity": (
        calculate_toxicity,
        ("weight_kg", "substance", "amount_ingested"),
        ("substance_type", "species"),
    ),
    "iris_staging": (
        calculate_iris_staging,
        ("creatinine_mg_dl",),
        ("species", "sdma_ug_dl", "upc", "blood_pressure_mmhg"),
    ),
}

SCHEMA = ToolSchema(
    name="clinical_calculator",
    description=(
        "Veterinary clinical calculators: drug dose, fluid rate, resting energy requirement (RER), "
        "toxic dose assessment, CKD IRIS staging. Always use this instead of doing the arithmetic yourself."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "calculator_type": {"type": "string", "enum": list(CALCULATORS)},
            "parameters": {
                "type": "object",
                "description": "Calculator parameters (depend on calculator_type)",
                "properties": {
                    "weight_kg": {"type": "number", "description": "Body weight (kg)"},
                    "species": {"type": "string", "enum": ["canine", "feline"]},
                    "dose_mg_per_kg": {"type": "number"},
                    "concentration_mg_per_ml": {"type": "number"},
                    "frequency": {"type": "string", "description": "SID, BID, TID, QID"},
                    "dehydration_percent": {"type": "number", "description": "Dehydration (%), 0-15"},
                    "correction_hours": {"type": "number"},
                    "maintenance_factor": {"type": "number", "description": "Maintenance ml/kg/day override"},
                    "ongoing_losses_ml_per_hour": {"type": "number"},
                    "life_stage": {
                        "type": "string",
                        "enum": ["adult", "puppy", "kitten", "senior", "pregnant", "lactating"],
                    },
                    "illness_factor": {"type": "number", "description": "Illness / activity factor override"},
                    "substance": {"type": "string", "description": "Toxic substance, e.g. chocolate, xylitol"},
                    "amount_ingested": {"type": "number", "description": "Amount ingested (g or mg, per substance)"},
                    "substance_type": {"type": "string", "description": "Subtype, e.g. dark / milk / baking"},
                    "creatinine_mg_dl": {"type": "number"},
                    "sdma_ug_dl": {"type": "number"},
                    "upc": {"type": "number", "description": "Urine protein:creatinine ratio"},
                    "blood_pressure_mmhg": {"type": "number", "description": "Systolic blood pressure"},
                },
            },
        },
        "required": ["calculator_type", "parameters"],
    },
)


def clinical_calculator(params: Dict[str, Any]) -> Dict[str, Any]:
    calculator_type = params.get("calculator_type")
    if calculator_type not in CALCULATORS:
        raise ToolInputError(f"Unknown calculator type: {calculator_type}")
    values = params.get("parameters") or {}
    if not isinstance(values, dict):
        raise ToolInputError("parameters must be an object")

    fn, required, optional = CALCULATORS[calculator_type]
    kwargs = {name: values.get(name) for name in required}
    kwargs.update({name: values[name] for name in optional if values.get(name) is not None})
    try:
        result = fn(**kwargs)
    except CalculatorDomainError as e:
        log.info("calculator_rejected_input", extra={"calculator": calculator_type, "err": str(e)})
        return {"error": str(e), "calculator": calculator_type}
    return {"calculator": calculator_type, "result": result.to_dict()}
