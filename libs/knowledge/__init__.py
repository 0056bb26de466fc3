from .circuit_breaker import BreakerPhase, CircuitBreaker, CircuitBreakerState
from .fusion import KnowledgeFusionEngine, get_fusion_engine
from .types import KnowledgeCitation, KnowledgeItem, KnowledgeSearchOptions, KnowledgeSource

__all__ = [
    "BreakerPhase", "CircuitBreaker", "CircuitBreakerState",
    "KnowledgeFusionEngine", "get_fusion_engine",
    "KnowledgeCitation", "KnowledgeItem", "KnowledgeSearchOptions", "KnowledgeSource",
]
