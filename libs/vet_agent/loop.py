# libs/vet_agent/loop.py
"""
Agent loop: alternate model inference and tool execution until the model
answers in text (DONE) or the mode's round cap is hit (ROUNDS_EXHAUSTED).

    ROUND_START -> MODEL_CALL -> END_TURN            -> DONE
                              -> TOOL_USE -> EXECUTE_TOOLS -> ROUND_START
    (cap reached)                                    -> ROUNDS_EXHAUSTED

`run()` blocks and returns an AgentResponse. `run_streaming()` drives the same
rounds and yields StreamEvents; its consumer owns wire serialisation.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, Sequence, Union

from common.env import float_from_env, int_from_env
from common.errors import AgentCancelled, ExternalServiceError

from .citations import EnrichedCitation, process_citations
from .events import StreamEvent
from .instructions import InstructionBuilder
from .model_client import STOP_TOOL_USE, ModelClient, ModelRequest, ModelResponse
from .types import (
    AgentMode,
    AgentResponse,
    AssistantTurn,
    ConversationTurn,
    PatientContext,
    TerminalState,
    TokenUsage,
    ToolCallRecord,
    ToolResult,
    ToolResultsTurn,
    ToolUse,
)
from .validation import validate_messages

log = logging.getLogger("vet-agent")

# ── Config ────────────────────────────────────────────────────────────────────
DEFAULT_MODEL = os.getenv("VET_AGENT_MODEL", "gpt-5-mini")
DEFAULT_MAX_TOKENS = int_from_env("VET_AGENT_MAX_TOKENS", 4096)
SOFT_BUDGET_S = float_from_env("VET_AGENT_SOFT_BUDGET_S", 40.0)
TOOL_RESULT_MAX_CHARS = int_from_env("VET_AGENT_TOOL_RESULT_MAX_CHARS", 8000)
HISTORY_TOOL_RESULT_MAX_CHARS = int_from_env("VET_AGENT_HISTORY_TOOL_RESULT_MAX_CHARS", 2000)

TRUNCATION_MARKER = "...[truncated]"
ROUNDS_EXHAUSTED_MESSAGE = (
    "Sorry, answering this question needed more tool calls than allowed. "
    "Please try simplifying the question or splitting it into smaller parts."
)


@dataclass(frozen=True)
class ModePolicy:
    max_rounds: int
    tools: bool
    max_tokens: Optional[int] = None
    force_first_tool: bool = True


MODE_POLICIES: Dict[AgentMode, ModePolicy] = {
    AgentMode.CHAT: ModePolicy(max_rounds=5, tools=True),
    AgentMode.CONSULTATION: ModePolicy(max_rounds=5, tools=True),
    AgentMode.DEEP_RESEARCH: ModePolicy(max_rounds=4, tools=True, max_tokens=8192),
    AgentMode.SOAP_STRUCTURE: ModePolicy(max_rounds=1, tools=False),
    AgentMode.HOSPITALIZATION_SUMMARY: ModePolicy(max_rounds=1, tools=False),
    # read the image first, then search if the findings call for it
    AgentMode.IMAGE_ANALYSIS: ModePolicy(max_rounds=3, tools=True, force_first_tool=False),
}


class ToolDispatch(Protocol):
    def schemas(self) -> List[Any]: ...

    async def dispatch(self, name: str, input: Dict[str, Any]) -> Any: ...


# ── Pure helpers ──────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class RoundPlan:
    offer_tools: bool
    tool_choice: Optional[str] = None


def plan_round(
    round_index: int,
    max_rounds: int,
    elapsed_s: float,
    soft_budget_s: float,
    tools_available: bool,
    force_first_tool: bool = True,
) -> RoundPlan:
    """Evaluated once per round transition; the only place tool offering is decided."""
    is_final = round_index >= max_rounds - 1
    if not tools_available or is_final or elapsed_s > soft_budget_s:
        return RoundPlan(offer_tools=False)
    if round_index == 0 and force_first_tool:
        return RoundPlan(offer_tools=True, tool_choice="any")
    return RoundPlan(offer_tools=True, tool_choice="auto")


def truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_MARKER


def serialize_tool_result(result: Any, max_chars: int) -> str:
    return truncate(json.dumps(result, ensure_ascii=False, default=str), max_chars)


def compact_history(history: Sequence[Any], current_round: int, max_chars: int) -> List[Any]:
    """Tool results from earlier rounds are re-truncated to the (smaller) history budget."""
    out: List[Any] = []
    for turn in history:
        if isinstance(turn, ToolResultsTurn) and turn.round_index < current_round:
            turn = replace(turn, results=[replace(r, content=truncate(r.content, max_chars)) for r in turn.results])
        out.append(turn)
    return out


def _coerce_context(context: Union[PatientContext, Dict[str, Any], None]) -> Optional[PatientContext]:
    if context is None or isinstance(context, PatientContext):
        return context
    return PatientContext.from_dict(context)


def _cancelled(cancel_event: Any) -> bool:
    return cancel_event is not None and cancel_event.is_set()


class AgentLoop:
    def __init__(
        self,
        model_client: ModelClient,
        dispatcher: ToolDispatch,
        *,
        model: str = DEFAULT_MODEL,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        soft_budget_s: float = SOFT_BUDGET_S,
        tool_result_max_chars: int = TOOL_RESULT_MAX_CHARS,
        history_tool_result_max_chars: int = HISTORY_TOOL_RESULT_MAX_CHARS,
        force_first_tool: bool = True,
        instructions: Optional[InstructionBuilder] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.model_client = model_client
        self.dispatcher = dispatcher
        self.model = model
        self.max_tokens = max_tokens
        self.soft_budget_s = soft_budget_s
        self.tool_result_max_chars = tool_result_max_chars
        self.history_tool_result_max_chars = history_tool_result_max_chars
        self.force_first_tool = force_first_tool
        self.instructions = instructions or InstructionBuilder()
        self.clock = clock

    # ─────────────────────────────────────────────────────────────────────
    # Public API
    # ─────────────────────────────────────────────────────────────────────
    async def run(
        self,
        messages: Sequence[Any],
        mode: AgentMode = AgentMode.CHAT,
        context: Union[PatientContext, Dict[str, Any], None] = None,
        cancel_event: Any = None,
    ) -> AgentResponse:
        turns = validate_messages(messages)
        async for item in self._rounds(turns, AgentMode(mode), _coerce_context(context), cancel_event, streaming=False):
            if isinstance(item, AgentResponse):
                return item
        raise RuntimeError("agent loop ended without a response")

    async def run_streaming(
        self,
        messages: Sequence[Any],
        mode: AgentMode = AgentMode.CHAT,
        context: Union[PatientContext, Dict[str, Any], None] = None,
        cancel_event: Any = None,
    ) -> AsyncIterator[StreamEvent]:
        turns = validate_messages(messages)
        response: Optional[AgentResponse] = None
        try:
            async for item in self._rounds(turns, AgentMode(mode), _coerce_context(context), cancel_event, streaming=True):
                if isinstance(item, AgentResponse):
                    response = item
                else:
                    yield item
        except AgentCancelled:
            yield StreamEvent.error("cancelled")
            return
        except ExternalServiceError as e:
            yield StreamEvent.error(str(e))
            return
        except Exception as e:
            log.exception("agent_stream_failed")
            yield StreamEvent.error(f"internal error: {e}")
            return

        if response is None:
            yield StreamEvent.error("agent loop ended without a response")
            return
        if response.terminal_state is TerminalState.ROUNDS_EXHAUSTED:
            yield StreamEvent.text_delta(response.content)

        citations = [c.to_dict() for c in response.citations]
        summaries = [t.summary() for t in response.tool_calls]
        if citations:
            yield StreamEvent.citations(citations)
        if summaries:
            yield StreamEvent.tool_calls(summaries)
        yield StreamEvent.done(
            tool_calls=summaries,
            citations=citations,
            token_usage=response.token_usage.to_dict(),
            latency_ms=response.latency_ms,
            terminal_state=response.terminal_state.value,
        )

    # ─────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────
    async def _rounds(
        self,
        turns: List[ConversationTurn],
        mode: AgentMode,
        context: Optional[PatientContext],
        cancel_event: Any,
        *,
        streaming: bool,
    ) -> AsyncIterator[Union[StreamEvent, AgentResponse]]:
        started = self.clock()
        policy = MODE_POLICIES[mode]
        system = self.instructions.build(mode, context)
        schemas = self.dispatcher.schemas() if policy.tools else []
        max_tokens = policy.max_tokens or self.max_tokens

        history: List[Any] = list(turns)
        tool_calls: List[ToolCallRecord] = []
        usage = TokenUsage()
        content = ROUNDS_EXHAUSTED_MESSAGE
        terminal = TerminalState.ROUNDS_EXHAUSTED
        rounds = 0

        for round_index in range(policy.max_rounds):
            if _cancelled(cancel_event):
                log.info("agent_cancelled", extra={"round": round_index, "mode": mode.value})
                raise AgentCancelled(f"cancelled before round {round_index}")

            plan = plan_round(
                round_index,
                policy.max_rounds,
                self.clock() - started,
                self.soft_budget_s,
                bool(schemas),
                self.force_first_tool and policy.force_first_tool,
            )
            log.info(
                "agent_round_started",
                extra={"round": round_index, "mode": mode.value, "offer_tools": plan.offer_tools},
            )
            request = ModelRequest(
                model=self.model,
                max_tokens=max_tokens,
                system=system,
                messages=compact_history(history, round_index, self.history_tool_result_max_chars),
                tools=schemas if plan.offer_tools else None,
                tool_choice=plan.tool_choice,
            )

            response: Optional[ModelResponse] = None
            if streaming:
                async for chunk in self.model_client.stream(request):
                    if isinstance(chunk, ModelResponse):
                        response = chunk
                    elif chunk:
                        yield StreamEvent.text_delta(chunk)
            else:
                response = await self.model_client.create(request)
            if response is None:
                raise ExternalServiceError("model", "stream ended without a final response")

            rounds += 1
            usage.add(response.usage)

            if response.stop_reason != STOP_TOOL_USE or not response.tool_uses:
                # end_turn and max_tokens both terminate with whatever text we have
                content = response.text
                terminal = TerminalState.DONE
                break
            if round_index == policy.max_rounds - 1:
                break

            if streaming:
                for tu in response.tool_uses:
                    yield StreamEvent.tool_call(tu.name, tu.input)

            records = await self._execute_tools(response.tool_uses)
            tool_calls.extend(records)
            history.append(AssistantTurn(text=response.text, tool_uses=list(response.tool_uses)))
            history.append(ToolResultsTurn(
                results=[
                    ToolResult(
                        tool_use_id=tu.id,
                        content=serialize_tool_result(rec.result, self.tool_result_max_chars),
                        is_error=isinstance(rec.result, dict) and "error" in rec.result,
                    )
                    for tu, rec in zip(response.tool_uses, records)
                ],
                round_index=round_index,
            ))

        citations: List[EnrichedCitation] = process_citations(tool_calls)
        latency_ms = int((self.clock() - started) * 1000)
        log.info(
            "agent_finished",
            extra={
                "mode": mode.value,
                "terminal_state": terminal.value,
                "rounds": rounds,
                "tool_calls": len(tool_calls),
                "citations": len(citations),
                "latency_ms": latency_ms,
            },
        )
        yield AgentResponse(
            content=content,
            tool_calls=tool_calls,
            citations=citations,
            token_usage=usage,
            latency_ms=latency_ms,
            terminal_state=terminal,
            rounds=rounds,
        )

    async def _execute_tools(self, tool_uses: Sequence[ToolUse]) -> List[ToolCallRecord]:
        outcomes = await asyncio.gather(
            *(self.dispatcher.dispatch(tu.name, tu.input) for tu in tool_uses),
            return_exceptions=True,
        )
        records: List[ToolCallRecord] = []
        for tu, outcome in zip(tool_uses, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, Exception):
                log.warning("tool_call_failed", extra={"tool": tu.name, "error": str(outcome)})
                outcome = {"error": str(outcome)}
            records.append(ToolCallRecord(name=tu.name, input=tu.input, result=outcome))
        return records
