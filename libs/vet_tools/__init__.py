from functools import partial
from typing import Optional

from knowledge.fusion import KnowledgeFusionEngine, get_fusion_engine

from . import clinical_calculator, differential_diagnosis, drug_info, knowledge_search
from .registry import ToolDispatcher, ToolKind, ToolRegistry, ToolSchema


def build_registry(engine: KnowledgeFusionEngine) -> ToolRegistry:
    return ToolRegistry({
        ToolKind.KNOWLEDGE_SEARCH: (
            knowledge_search.SCHEMA, partial(knowledge_search.knowledge_search, engine=engine),
        ),
        ToolKind.DRUG_INFO: (
            drug_info.SCHEMA, partial(drug_info.drug_info, engine=engine),
        ),
        ToolKind.DIFFERENTIAL_DIAGNOSIS: (
            differential_diagnosis.SCHEMA, partial(differential_diagnosis.differential_diagnosis, engine=engine),
        ),
        ToolKind.CLINICAL_CALCULATOR: (
            clinical_calculator.SCHEMA, clinical_calculator.clinical_calculator,
        ),
    })


def build_dispatcher(engine: Optional[KnowledgeFusionEngine] = None) -> ToolDispatcher:
    return ToolDispatcher(build_registry(engine or get_fusion_engine()))


__all__ = ["ToolDispatcher", "ToolKind", "ToolRegistry", "ToolSchema", "build_registry", "build_dispatcher"]
