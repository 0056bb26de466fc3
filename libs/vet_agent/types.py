# libs/vet_agent/types.py
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


class AgentMode(str, enum.Enum):
    CHAT = "chat"
    CONSULTATION = "consultation"
    DEEP_RESEARCH = "deep_research"
    # pre-summarised clinical context in, structured note out: 1 round, no tools
    SOAP_STRUCTURE = "soap_structure"
    HOSPITALIZATION_SUMMARY = "hospitalization_summary"
    # radiograph / lab-report image on the user turn; literature search is optional
    IMAGE_ANALYSIS = "image_analysis"

    @property
    def is_fast(self) -> bool:
        return self in (AgentMode.SOAP_STRUCTURE, AgentMode.HOSPITALIZATION_SUMMARY)


class TerminalState(str, enum.Enum):
    DONE = "DONE"
    ROUNDS_EXHAUSTED = "ROUNDS_EXHAUSTED"


@dataclass(frozen=True)
class ImageAttachment:
    media_type: str    # image/jpeg, image/png, image/gif, image/webp
    data: str          # base64, no data: prefix

    @classmethod
    def from_dict(cls, d: Any) -> "ImageAttachment":
        if not isinstance(d, dict):
            return cls(media_type="", data="")
        return cls(
            media_type=str(d.get("media_type") or d.get("mediaType") or ""),
            data=d.get("data") or "",
        )

    def data_url(self) -> str:
        return f"data:{self.media_type};base64,{self.data}"


@dataclass(frozen=True)
class ConversationTurn:
    role: str      # "user" | "assistant" | "system"
    content: str
    images: Tuple[ImageAttachment, ...] = ()

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ConversationTurn":
        images = d.get("images") or []
        if not isinstance(images, list):
            images = [images]
        return cls(
            role=str(d.get("role", "")),
            content=d.get("content", ""),
            images=tuple(ImageAttachment.from_dict(i) for i in images),
        )


# ── Model boundary ───────────────────────────────────────────────────────────
@dataclass(frozen=True)
class ToolUse:
    id: str
    name: str
    input: Dict[str, Any]


@dataclass(frozen=True)
class ToolResult:
    tool_use_id: str
    content: str
    is_error: bool = False


@dataclass(frozen=True)
class AssistantTurn:
    """An assistant message that requested tools (text may be empty)."""
    text: str
    tool_uses: List[ToolUse]


@dataclass(frozen=True)
class ToolResultsTurn:
    results: List[ToolResult]
    round_index: int


@dataclass(frozen=True)
class ToolCallRecord:
    name: str
    input: Dict[str, Any]
    result: Any

    def summary(self) -> Dict[str, Any]:
        return {"name": self.name, "input": self.input}


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    def add(self, other: "TokenUsage") -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens

    def to_dict(self) -> Dict[str, int]:
        return {"inputTokens": self.input_tokens, "outputTokens": self.output_tokens}


@dataclass(frozen=True)
class AgentResponse:
    content: str
    tool_calls: List[ToolCallRecord]
    citations: List[Any]                # EnrichedCitation
    token_usage: TokenUsage
    latency_ms: int
    terminal_state: TerminalState
    rounds: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "toolCalls": [t.summary() for t in self.tool_calls],
            "citations": [c.to_dict() for c in self.citations],
            "tokenUsage": self.token_usage.to_dict(),
            "latencyMs": self.latency_ms,
            "terminalState": self.terminal_state.value,
            "rounds": self.rounds,
        }


@dataclass(frozen=True)
class PatientContext:
    """
    EMR snapshot supplied by the caller (consultation / structured-note modes).
    Only `patient` drives safety-block selection; the rest is rendered as-is.
    """
    patient: Dict[str, Any] = field(default_factory=dict)
    medical_record: Optional[Dict[str, Any]] = None
    soap_notes: List[Dict[str, Any]] = field(default_factory=list)
    diagnoses: List[Dict[str, Any]] = field(default_factory=list)
    prescriptions: List[Dict[str, Any]] = field(default_factory=list)
    lab_orders: List[Dict[str, Any]] = field(default_factory=list)
    hospitalization: Optional[Dict[str, Any]] = None
    treatment_orders: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> Optional["PatientContext"]:
        if not d:
            return None
        return cls(
            patient=dict(d.get("patient") or {}),
            medical_record=d.get("medical_record"),
            soap_notes=list(d.get("soap_notes") or []),
            diagnoses=list(d.get("diagnoses") or []),
            prescriptions=list(d.get("prescriptions") or []),
            lab_orders=list(d.get("lab_orders") or []),
            hospitalization=d.get("hospitalization"),
            treatment_orders=list(d.get("treatment_orders") or []),
        )

    @property
    def species(self) -> Optional[str]:
        return self.patient.get("species")

    @property
    def breed(self) -> Optional[str]:
        return self.patient.get("breed")

    @property
    def chronic_conditions(self) -> List[str]:
        return [str(c) for c in (self.patient.get("chronic_conditions") or [])]
