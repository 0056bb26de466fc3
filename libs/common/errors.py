# libs/common/errors.py
"""
Error taxonomy shared by the gateways, tools and the agent loop.

- ExternalServiceError: a knowledge source or the model API failed. Gateways
  absorb it (empty result); the model client lets it propagate.
- CircuitOpenError: the encyclopedia breaker rejected the call locally.
- ToolInputError / CalculatorDomainError: bad tool arguments. The dispatcher
  turns these into `{"error": ...}` payloads for the model.
- RequestValidationError: rejected before the loop starts.
- AgentCancelled: cooperative cancel observed at a round boundary.
"""
from typing import Optional


class VetEvidenceError(Exception):
    """Base for every error raised on purpose by this package."""


class ExternalServiceError(VetEvidenceError):
    def __init__(self, service: str, message: str, *, status_code: Optional[int] = None):
        super().__init__(f"{service}: {message}")
        self.service = service
        self.status_code = status_code


class CircuitOpenError(ExternalServiceError):
    def __init__(self, service: str, retry_in_s: float = 0.0):
        super().__init__(service, f"circuit breaker is open, retry in {retry_in_s:.1f}s")
        self.retry_in_s = retry_in_s


class ToolInputError(VetEvidenceError, ValueError):
    """Malformed or out-of-domain tool arguments."""


class CalculatorDomainError(ToolInputError):
    """A calculator was given a value outside its clinical domain (e.g. weight <= 0)."""


class RequestValidationError(VetEvidenceError, ValueError):
    pass


class AgentCancelled(VetEvidenceError):
    """Raised when the caller's cancel event is set between rounds."""
