# libs/vet_tools/_params.py
from typing import Any, Dict, List, Optional

from common.errors import ToolInputError

# the encyclopedia and the literature store tag species as dog / cat
_SPECIES = {"canine": "dog", "dog": "dog", "犬": "dog", "feline": "cat", "cat": "cat", "貓": "cat"}


def species_param(value: Any) -> Optional[str]:
    if not value:
        return None
    key = str(value).strip().lower()
    return _SPECIES.get(key, key)


def required_str(params: Dict[str, Any], name: str) -> str:
    value = params.get(name)
    if not isinstance(value, str) or not value.strip():
        raise ToolInputError(f"{name} is required")
    return value.strip()


def str_list(params: Dict[str, Any], name: str) -> List[str]:
    value = params.get(name)
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        raise ToolInputError(f"{name} must be a list of strings")
    return [str(v).strip() for v in value if str(v).strip()]
