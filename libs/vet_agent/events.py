# libs/vet_agent/events.py
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass(frozen=True)
class StreamEvent:
    """
    One item of the streamed answer. On success the order is:
    text_delta / tool_call (as observed) -> citations? -> tool_calls? -> done.
    A failed or cancelled run ends with a single `error` event instead of `done`.
    """
    type: str
    data: Any = field(default=None)

    @classmethod
    def text_delta(cls, text: str) -> "StreamEvent":
        return cls("text_delta", text)

    @classmethod
    def tool_call(cls, name: str, input: Dict[str, Any]) -> "StreamEvent":
        return cls("tool_call", {"name": name, "input": input})

    @classmethod
    def tool_calls(cls, summaries: List[Dict[str, Any]]) -> "StreamEvent":
        return cls("tool_calls", summaries)

    @classmethod
    def citations(cls, citations: List[Dict[str, Any]]) -> "StreamEvent":
        return cls("citations", citations)

    @classmethod
    def done(
        cls,
        *,
        tool_calls: List[Dict[str, Any]],
        citations: List[Dict[str, Any]],
        token_usage: Dict[str, int],
        latency_ms: int,
        terminal_state: str,
    ) -> "StreamEvent":
        return cls("done", {
            "toolCalls": tool_calls,
            "citations": citations,
            "tokenUsage": token_usage,
            "latencyMs": latency_ms,
            "terminalState": terminal_state,
        })

    @classmethod
    def error(cls, message: str) -> "StreamEvent":
        return cls("error", message)

    @property
    def is_terminal(self) -> bool:
        return self.type in ("done", "error")

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "data": self.data}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)

    def to_sse(self) -> str:
        return f"data: {self.to_json()}\n\n"
