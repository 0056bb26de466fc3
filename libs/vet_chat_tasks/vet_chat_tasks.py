# libs/vet_chat_tasks/vet_chat_tasks.py
import asyncio
import contextlib
import json
import logging
import time
import uuid
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as aioredis

from common.broker import vet_chat_broker
from common.cost_tracker import CostTracker
from common.env import bool_from_env, float_from_env, int_from_env
from common.json_logging import configure_json_logging
from common.kv_store import get_kv_store
from common.redis_conn import redis_client
from vet_agent import AgentLoop, AgentMode, OpenAIModelClient
from vet_agent.events import StreamEvent
from vet_tools import build_dispatcher

# ──────────────────────────────────────────────────────────────────────────────
# Logging (structured JSON)
# ──────────────────────────────────────────────────────────────────────────────
logger = configure_json_logging("vet-chat-worker")

# ──────────────────────────────────────────────────────────────────────────────
# Redis Pub/Sub (to relay)
# ──────────────────────────────────────────────────────────────────────────────
redis_stream: aioredis.Redis = redis_client()

END_OF_STREAM = "[END-OF-STREAM]"

# Wait briefly for FE to attach to relay (avoids lost-first-chunk).
READY_WAIT_MS = int_from_env("VET_CHAT_READY_WAIT_MS", 1200)
# Throttle interval for per-delta log lines
STREAM_LOG_HEARTBEAT_S = float_from_env("VET_CHAT_LOG_HEARTBEAT_S", 0.5)
LOG_STREAM = bool_from_env("VET_CHAT_LOG_STREAM", True)


def _channel(consultation_id: str) -> str:
    return f"vet_chat:{consultation_id}"


def _ready_key_for_channel(channel_name: str) -> str:
    # matches the relay's ready latch: f"sse:ready:{channel}"
    return f"sse:ready:{channel_name}"


async def _publish_status(r: aioredis.Redis, consultation_id: str, phase: str, **extra: Any) -> None:
    ev = {"event": "status", "data": {"phase": phase, **extra}}
    await r.publish(_channel(consultation_id), json.dumps(ev))


async def _publish_event(r: aioredis.Redis, consultation_id: str, event: StreamEvent) -> None:
    # Strict in-order delivery: each publish is awaited before the next event.
    ev = {"event": event.type, "data": event.data}
    await r.publish(_channel(consultation_id), json.dumps(ev, ensure_ascii=False, default=str))


async def _wait_until_ready(r: aioredis.Redis, channel_name: str, timeout_ms: int = READY_WAIT_MS) -> None:
    if timeout_ms <= 0:
        return
    key = _ready_key_for_channel(channel_name)
    deadline = time.monotonic() + timeout_ms / 1000.0
    while True:
        if await r.get(key):
            return
        if time.monotonic() >= deadline:
            logger.info("vet_chat_ready_wait_timeout", extra={"channel": channel_name, "timeout_ms": timeout_ms})
            return
        await asyncio.sleep(0.05)

# ──────────────────────────────────────────────────────────────────────────────
# Cancellation helpers (turn-scoped)
# ──────────────────────────────────────────────────────────────────────────────
def _cancel_control_channel(consultation_id: str) -> str:
    return f"vet_chat:{consultation_id}:control"


def _cancel_flag_keys(consultation_id: str, turn_id: Optional[str]) -> List[str]:
    """Sticky keys that mark a cancel request: the specific turn first, then 'any'."""
    keys = []
    if turn_id:
        keys.append(f"vet_chat:{consultation_id}:cancelled:{turn_id}")
    keys.append(f"vet_chat:{consultation_id}:cancelled:any")
    return keys


async def _make_cancel_event_chat(
    r: aioredis.Redis, consultation_id: str, turn_id: Optional[str]
) -> Tuple[asyncio.Event, Optional[asyncio.Task]]:
    """
    Event that is set when a cancel is requested for this turn, either already
    (sticky key) or live on the control channel. The agent loop checks it at
    every round boundary.

    Also returns the control-channel listener task (None when a sticky key
    already cancelled the turn); the caller stops it with `_stop_listener`.
    """
    ev = asyncio.Event()
    for k in _cancel_flag_keys(consultation_id, turn_id):
        if await r.get(k):
            ev.set()
            return ev, None

    channel = _cancel_control_channel(consultation_id)
    pubsub = r.pubsub()
    await pubsub.subscribe(channel)

    async def listener():
        try:
            async for msg in pubsub.listen():
                if msg.get("type") != "message":
                    continue
                try:
                    data = json.loads(msg["data"])
                except (TypeError, ValueError):
                    continue
                if data.get("event") != "cancel":
                    continue
                requested_turn = (data.get("data") or {}).get("turn_id")
                if requested_turn is None or requested_turn == turn_id:
                    ev.set()
                    break
        finally:
            with contextlib.suppress(Exception):
                await pubsub.unsubscribe(channel)
                await pubsub.aclose()

    return ev, asyncio.create_task(listener())


async def _stop_listener(task: Optional[asyncio.Task]) -> None:
    """Cancel the control-channel listener and wait for it to release its subscription."""
    if task is None:
        return
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)


async def _clear_cancel_flags(r: aioredis.Redis, consultation_id: str) -> None:
    # so the next turn is not cancelled instantly
    await r.delete(*_cancel_flag_keys(consultation_id, None))

# ──────────────────────────────────────────────────────────────────────────────
# Core: one streamed agent run -> Redis channel
# ──────────────────────────────────────────────────────────────────────────────
def build_agent_loop() -> AgentLoop:
    return AgentLoop(OpenAIModelClient(), build_dispatcher())


async def stream_agent_to_channel(
    r: aioredis.Redis,
    consultation_id: str,
    messages: List[Dict[str, Any]],
    *,
    agent_loop: AgentLoop,
    mode: str = AgentMode.CHAT.value,
    context: Optional[Dict[str, Any]] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> Dict[str, Any]:
    """
    Publish every StreamEvent of one agent run to `vet_chat:{consultation_id}`.
    Returns a summary: {"status": "done"|"error"|"cancelled", "token_usage": {...}|None}.
    """
    delta_count = 0
    last_log_t = time.monotonic()
    summary: Dict[str, Any] = {"status": "error", "token_usage": None}

    async for event in agent_loop.run_streaming(messages, mode=AgentMode(mode), context=context, cancel_event=cancel_event):
        await _publish_event(r, consultation_id, event)

        if event.type == "text_delta":
            delta_count += 1
            if LOG_STREAM:
                now = time.monotonic()
                if delta_count == 1 or (now - last_log_t) >= STREAM_LOG_HEARTBEAT_S:
                    logger.info(
                        "vet_chat_stream_delta",
                        extra={"consultation_id": consultation_id, "chunks": delta_count, "delta_snippet": event.data[:80]},
                    )
                    last_log_t = now
        elif event.type == "tool_call":
            logger.info("vet_chat_tool_call", extra={"consultation_id": consultation_id, "tool": event.data["name"]})
        elif event.type == "done":
            summary = {"status": "done", "token_usage": event.data.get("tokenUsage")}
        elif event.type == "error":
            summary = {"status": "cancelled" if event.data == "cancelled" else "error", "token_usage": None}
            logger.warning("vet_chat_stream_error", extra={"consultation_id": consultation_id, "err": event.data})

    summary["chunks"] = delta_count
    return summary


async def _track_cost(user_id: Optional[str], model: str, token_usage: Optional[Dict[str, int]]) -> None:
    if not user_id or not token_usage:
        return
    try:
        await CostTracker(get_kv_store()).track(
            user_id, model, token_usage.get("inputTokens", 0), token_usage.get("outputTokens", 0),
        )
    except Exception as e:
        # best-effort
        logger.error("vet_chat_cost_tracking_failed", extra={"user_id": user_id, "err": str(e)})

# ──────────────────────────────────────────────────────────────────────────────
# TaskIQ task
# ──────────────────────────────────────────────────────────────────────────────
@vet_chat_broker.task
async def process_vet_evidence_chat_task(
    consultation_id: str,
    messages: List[Dict[str, Any]],
    mode: str = AgentMode.CHAT.value,
    context: Optional[Dict[str, Any]] = None,
    *,
    user_id: Optional[str] = None,
    turn_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Run the evidence agent for one consultation turn and stream it over Redis.

    Flow:
      1) Build a turn-scoped cancel event (sticky flag + control channel).
      2) Publish started/accepted statuses; wait briefly for the relay latch.
      3) Publish each agent event as {"event": type, "data": ...}.
      4) Track cost (best-effort), publish the final status.
      5) Always publish the EOS marker so the relay closes the stream.
    """
    channel = _channel(consultation_id)
    turn_id = turn_id or f"turn_{uuid.uuid4().hex}"
    agent_loop = build_agent_loop()
    summary: Dict[str, Any] = {"status": "error", "token_usage": None}

    cancel_event, cancel_listener = await _make_cancel_event_chat(redis_stream, consultation_id, turn_id)

    try:
        await _publish_status(redis_stream, consultation_id, phase="started", turn_id=turn_id)
        await _publish_status(redis_stream, consultation_id, phase="accepted", mode=mode, model=agent_loop.model)
        await _wait_until_ready(redis_stream, channel)

        summary = await stream_agent_to_channel(
            redis_stream,
            consultation_id,
            messages,
            agent_loop=agent_loop,
            mode=mode,
            context=context,
            cancel_event=cancel_event,
        )
        await _track_cost(user_id, agent_loop.model, summary.get("token_usage"))

        if summary["status"] == "cancelled":
            await _clear_cancel_flags(redis_stream, consultation_id)
            await _publish_status(redis_stream, consultation_id, phase="cancelled", turn_id=turn_id)
        else:
            await _publish_status(redis_stream, consultation_id, phase="completed", turn_id=turn_id)
        logger.info("vet_chat_stream_completed", extra={"consultation_id": consultation_id, **summary})

    except Exception as e:
        logger.exception("vet_chat_worker_exception", extra={"consultation_id": consultation_id})
        await _publish_status(redis_stream, consultation_id, phase="error", message=str(e))
        summary = {"status": "error", "token_usage": None, "error": str(e)}

    finally:
        await _stop_listener(cancel_listener)
        # Explicit EOS so the relay emits `event: done` and the FE leaves streaming mode
        try:
            await redis_stream.publish(channel, END_OF_STREAM)
        except aioredis.RedisError as pub_err:
            logger.error("vet_chat_eos_publish_failed", extra={"consultation_id": consultation_id, "err": str(pub_err)})
        logger.info("vet_chat_stream_done", extra={"consultation_id": consultation_id, "turn_id": turn_id})

    return {"consultation_id": consultation_id, "turn_id": turn_id, **summary}
