# libs/vet_agent/model_client.py
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence, Union

from openai import AsyncOpenAI, OpenAIError

from common.errors import ExternalServiceError

from .types import AssistantTurn, ConversationTurn, TokenUsage, ToolResultsTurn, ToolUse

log = logging.getLogger("vet-agent.model")

Message = Union[ConversationTurn, AssistantTurn, ToolResultsTurn]

STOP_END_TURN = "end_turn"
STOP_TOOL_USE = "tool_use"
STOP_MAX_TOKENS = "max_tokens"


@dataclass(frozen=True)
class ModelRequest:
    model: str
    max_tokens: int
    system: str
    messages: List[Message]
    tools: Optional[List[Any]] = None       # objects with name / description / input_schema
    tool_choice: Optional[str] = None       # "any" | "auto" | None when no tools


@dataclass(frozen=True)
class ModelResponse:
    stop_reason: str
    text: str = ""
    tool_uses: List[ToolUse] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)


class ModelClient(Protocol):
    async def create(self, request: ModelRequest) -> ModelResponse: ...

    def stream(self, request: ModelRequest) -> AsyncIterator[Union[str, ModelResponse]]:
        """Yields text deltas as `str`, then exactly one final `ModelResponse`."""
        ...


def _is_gpt5(model: Optional[str]) -> bool:
    return str(model or "").lower().startswith("gpt-5")


def _stop_reason(finish_reason: Optional[str], has_tool_calls: bool) -> str:
    # a forced tool_choice comes back with finish_reason "stop" but tool_calls set
    if finish_reason == "tool_calls" or has_tool_calls:
        return STOP_TOOL_USE
    if finish_reason == "length":
        return STOP_MAX_TOKENS
    return STOP_END_TURN


def _parse_arguments(raw: Optional[str], tool_name: str) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        log.warning("tool_arguments_unparseable", extra={"tool": tool_name, "raw": raw[:200]})
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _turn_content(turn: ConversationTurn) -> Union[str, List[Dict[str, Any]]]:
    if not turn.images:
        return turn.content
    parts: List[Dict[str, Any]] = [{"type": "text", "text": turn.content}]
    parts += [{"type": "image_url", "image_url": {"url": img.data_url()}} for img in turn.images]
    return parts


def to_openai_messages(system: str, messages: Sequence[Message]) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = [{"role": "system", "content": system}]
    for m in messages:
        if isinstance(m, ConversationTurn):
            out.append({"role": m.role, "content": _turn_content(m)})
        elif isinstance(m, AssistantTurn):
            out.append({
                "role": "assistant",
                "content": m.text or None,
                "tool_calls": [
                    {
                        "id": tu.id,
                        "type": "function",
                        "function": {"name": tu.name, "arguments": json.dumps(tu.input, ensure_ascii=False)},
                    }
                    for tu in m.tool_uses
                ],
            })
        elif isinstance(m, ToolResultsTurn):
            for r in m.results:
                out.append({"role": "tool", "tool_call_id": r.tool_use_id, "content": r.content})
        else:
            raise TypeError(f"unsupported message type: {type(m).__name__}")
    return out


def to_openai_tools(tools: Sequence[Any]) -> List[Dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {"name": t.name, "description": t.description, "parameters": t.input_schema},
        }
        for t in tools
    ]


class OpenAIModelClient:
    """
    Chat Completions adapter.
    - tools are sent as function tools; tool_choice "any" maps to "required"
    - gpt-5 family takes `max_completion_tokens` instead of `max_tokens`
    - SDK errors are logged and re-raised as ExternalServiceError
    """

    def __init__(self, client: Optional[AsyncOpenAI] = None):
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=os.environ.get("OPENAI_API_KEY"),
                base_url=os.environ.get("OPENAI_BASE_URL") or None,
                organization=os.environ.get("OPENAI_ORG_ID") or None,
            )
        return self._client

    def build_kwargs(self, request: ModelRequest) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "model": request.model,
            "messages": to_openai_messages(request.system, request.messages),
        }
        if _is_gpt5(request.model):
            kwargs["max_completion_tokens"] = request.max_tokens
        else:
            kwargs["max_tokens"] = request.max_tokens
        if request.tools:
            kwargs["tools"] = to_openai_tools(request.tools)
            kwargs["tool_choice"] = "required" if request.tool_choice == "any" else (request.tool_choice or "auto")
        return kwargs

    async def create(self, request: ModelRequest) -> ModelResponse:
        kwargs = self.build_kwargs(request)
        try:
            resp = await self._get_client().chat.completions.create(**kwargs)
        except OpenAIError as e:
            log.exception("model_call_failed", extra={"model": request.model})
            raise ExternalServiceError("openai", str(e)) from e

        choice = resp.choices[0]
        msg = choice.message
        tool_uses = [
            ToolUse(id=tc.id, name=tc.function.name, input=_parse_arguments(tc.function.arguments, tc.function.name))
            for tc in (msg.tool_calls or [])
        ]
        usage = TokenUsage()
        if resp.usage is not None:
            usage = TokenUsage(resp.usage.prompt_tokens or 0, resp.usage.completion_tokens or 0)
        return ModelResponse(
            stop_reason=_stop_reason(choice.finish_reason, bool(tool_uses)),
            text=msg.content or "",
            tool_uses=tool_uses,
            usage=usage,
        )

    async def stream(self, request: ModelRequest) -> AsyncIterator[Union[str, ModelResponse]]:
        kwargs = self.build_kwargs(request)
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}

        text_parts: List[str] = []
        calls: Dict[int, Dict[str, str]] = {}
        finish_reason: Optional[str] = None
        usage = TokenUsage()

        try:
            stream = await self._get_client().chat.completions.create(**kwargs)
            async for chunk in stream:
                if getattr(chunk, "usage", None) is not None:
                    usage = TokenUsage(chunk.usage.prompt_tokens or 0, chunk.usage.completion_tokens or 0)
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta
                if delta is not None:
                    if delta.content:
                        text_parts.append(delta.content)
                        yield delta.content
                    for tc in delta.tool_calls or []:
                        slot = calls.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                        if tc.id:
                            slot["id"] = tc.id
                        if tc.function is not None:
                            if tc.function.name:
                                slot["name"] = tc.function.name
                            if tc.function.arguments:
                                slot["arguments"] += tc.function.arguments
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
        except OpenAIError as e:
            log.exception("model_stream_failed", extra={"model": request.model})
            raise ExternalServiceError("openai", str(e)) from e

        tool_uses = [
            ToolUse(id=c["id"], name=c["name"], input=_parse_arguments(c["arguments"], c["name"]))
            for _, c in sorted(calls.items())
        ]
        yield ModelResponse(
            stop_reason=_stop_reason(finish_reason, bool(tool_uses)),
            text="".join(text_parts),
            tool_uses=tool_uses,
            usage=usage,
        )
