from .citations import EnrichedCitation, format_for_display, process_citations
from .events import StreamEvent
from .instructions import InstructionBuilder
from .loop import AgentLoop, plan_round
from .model_client import ModelClient, ModelRequest, ModelResponse, OpenAIModelClient
from .types import AgentMode, AgentResponse, ConversationTurn, ImageAttachment, PatientContext, TerminalState
from .validation import validate_messages

__all__ = [
    "AgentLoop", "plan_round",
    "AgentMode", "AgentResponse", "ConversationTurn", "ImageAttachment", "PatientContext", "TerminalState",
    "EnrichedCitation", "format_for_display", "process_citations",
    "InstructionBuilder", "StreamEvent", "validate_messages",
    "ModelClient", "ModelRequest", "ModelResponse", "OpenAIModelClient",
]
