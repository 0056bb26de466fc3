# libs/vet_agent/safety_rules.py
"""Species- and condition-specific drug safety rules injected into the instructions."""

FELINE_CONTRAINDICATED_DRUGS = [
    {
        "drug": "Permethrin",
        "reason": "Highly toxic to cats (tremors, seizures, death). Canine flea products containing "
                  "permethrin must never be used on cats.",
    },
    {
        "drug": "Acetaminophen (paracetamol)",
        "reason": "Cats lack glucuronidation capacity; causes methemoglobinemia and hepatic necrosis. "
                  "Very low doses can be fatal.",
    },
    {
        "drug": "High-dose aspirin",
        "reason": "Half-life in cats is 38-72 h (8 h in dogs); canine doses accumulate to toxic levels. "
                  "Only very low doses under veterinary supervision.",
    },
]

MDR1_WARNING = {
    "breeds": [
        "Collie",
        "Shetland Sheepdog",
        "Australian Shepherd",
        "Old English Sheepdog",
        "Border Collie",
        "German Shepherd (some lines)",
        "Long-haired Whippet",
        "Silken Windhound",
    ],
    "drugs": ["Ivermectin", "Milbemycin", "Moxidectin", "Loperamide", "Acepromazine"],
    "description": "MDR1 (ABCB1) mutations cause loss of P-glycoprotein function, so these drugs are not "
                   "pumped out of the brain and can cause severe neurotoxicity (tremors, blindness, coma, death).",
}

CKD_DRUG_WARNINGS = {
    "avoid": ["NSAIDs (meloxicam, carprofen, deracoxib, etc.)"],
    "adjust_dose": ["Aminoglycosides", "ACE inhibitors", "Renally excreted antibiotics"],
    "description": "Animals with chronic kidney disease should avoid NSAIDs (further renal injury) and need "
                   "dose adjustment for renally excreted drugs.",
}

DISCLAIMER = (
    "AI output is decision support for licensed veterinarians only and does not replace clinical judgement. "
    "Every treatment decision must take the physical exam, laboratory results and the individual patient into account."
)
