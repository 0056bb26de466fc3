# libs/vet_tools/registry.py
"""
Closed set of tools the model may call.

Every ToolKind must have exactly one (schema, handler) pair; a registry missing
a kind refuses to build, so "unknown tool" can only come from the model
inventing a name.
"""
from __future__ import annotations

import enum
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Tuple, Union

from common.errors import ToolInputError

log = logging.getLogger("vet-tools")


class ToolKind(str, enum.Enum):
    KNOWLEDGE_SEARCH = "knowledge_search"
    DRUG_INFO = "drug_info"
    DIFFERENTIAL_DIAGNOSIS = "differential_diagnosis"
    CLINICAL_CALCULATOR = "clinical_calculator"


@dataclass(frozen=True)
class ToolSchema:
    name: str
    description: str
    input_schema: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "input_schema": self.input_schema}


Handler = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]


class ToolRegistry:
    def __init__(self, entries: Mapping[ToolKind, Tuple[ToolSchema, Handler]]):
        missing = [k.value for k in ToolKind if k not in entries]
        if missing:
            raise ValueError(f"no handler registered for tool(s): {', '.join(missing)}")
        for kind, (schema, _) in entries.items():
            if schema.name != kind.value:
                raise ValueError(f"schema name {schema.name!r} does not match tool kind {kind.value!r}")
        self._entries: Dict[ToolKind, Tuple[ToolSchema, Handler]] = dict(entries)

    def schemas(self) -> List[ToolSchema]:
        return [self._entries[k][0] for k in ToolKind]

    def handler(self, kind: ToolKind) -> Handler:
        return self._entries[kind][1]


class ToolDispatcher:
    """Runs a tool by name. Never raises: failures come back as `{"error": message}`."""

    def __init__(self, registry: ToolRegistry):
        self.registry = registry

    def schemas(self) -> List[ToolSchema]:
        return self.registry.schemas()

    async def dispatch(self, name: str, input: Dict[str, Any]) -> Any:
        try:
            kind = ToolKind(name)
        except ValueError:
            log.warning("unknown_tool", extra={"tool": name})
            return {"error": f"Unknown tool: {name}"}

        started = time.monotonic()
        try:
            result = self.registry.handler(kind)(dict(input or {}))
            if inspect.isawaitable(result):
                result = await result
        except ToolInputError as e:
            log.info("tool_input_rejected", extra={"tool": name, "err": str(e)})
            return {"error": str(e)}
        except Exception as e:
            log.exception("tool_call_failed", extra={"tool": name})
            return {"error": str(e) or type(e).__name__}

        log.info("tool_call_finished", extra={"tool": name, "latency_ms": int((time.monotonic() - started) * 1000)})
        return result
