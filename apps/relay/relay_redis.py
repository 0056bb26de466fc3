# ==============================================================================
# File: relay_redis.py  –  consultation chat SSE relay (Redis Pub/Sub -> browser)
# Purpose:
#   ▸ Flush a `ready` frame immediately so EventSource.onopen fires fast
#   ▸ Fan out vet_chat:{consultation_id} to every attached client
#   ▸ Keep sse:ready:{channel} alive while a client is attached so the worker
#     can wait before its first publish
# ==============================================================================

import asyncio
import json
import os
from typing import Any, Dict, List, Optional, Tuple

import janus
import redis.asyncio as aioredis
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sse_starlette import EventSourceResponse

from common.json_logging import configure_json_logging
from common.redis_conn import redis_client

# ── CONFIG ─────────────────────────────────────────────────────────────
PORT = int(os.getenv("PORT", 8001))
READY_TTL_SECONDS = int(os.getenv("READY_TTL_SECONDS", "15"))
READY_REFRESH_SECONDS = int(os.getenv("READY_REFRESH_SECONDS", "5"))
SSE_PING_MS = int(os.getenv("SSE_PING_MS", "15000"))

END_OF_STREAM = "[END-OF-STREAM]"

log = configure_json_logging("vet-relay")

# ── FASTAPI APP ────────────────────────────────────────────────────────
app = FastAPI(title="VetEvidence chat relay")
ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_methods=["GET", "OPTIONS"],
    allow_headers=["Content-Type"],
)

redis_stream = redis_client()


@app.on_event("startup")
async def _startup():
    try:
        pong = await redis_stream.ping()
        log.info("relay_started", extra={"redis_ping": pong})
    except aioredis.RedisError as e:
        log.error("relay_redis_ping_failed", extra={"err": str(e)})

# ── REGISTRIES ─────────────────────────────────────────────────────────
# channel ➜ attached client queues
CLIENTS: Dict[str, List[Tuple[janus.Queue, asyncio.AbstractEventLoop]]] = {}
# channel ➜ Redis SUBSCRIBE task
SUB_TASKS: Dict[str, asyncio.Task] = {}
# channel ➜ ready-latch refresher task
READY_TASKS: Dict[str, asyncio.Task] = {}


def chat_channel(consultation_id: str) -> str:
    return f"vet_chat:{consultation_id}"


def ready_key(channel_name: str) -> str:
    return f"sse:ready:{channel_name}"


# ── FRAME MAPPING ──────────────────────────────────────────────────────
def to_sse_frames(raw: Any) -> List[Dict[str, str]]:
    """
    Map one Pub/Sub payload to SSE frames.

    - the EOS sentinel becomes a named `done` frame followed by the sentinel itself
    - a JSON envelope {"event": name, "data": payload} becomes a named frame
    - anything else is passed through as an unnamed data frame
    """
    if isinstance(raw, str) and raw.strip() == END_OF_STREAM:
        return [{"event": "done", "data": "{}"}, {"data": raw}]

    obj: Optional[Any] = None
    if isinstance(raw, str) and raw and raw[0] in "{[":
        try:
            obj = json.loads(raw)
        except ValueError:
            obj = None

    if isinstance(obj, dict) and "event" in obj:
        payload = obj.get("data", {})
        return [{"event": str(obj["event"]), "data": json.dumps(payload, ensure_ascii=False)}]

    return [{"data": raw if isinstance(raw, str) else str(raw)}]


# ── READY LATCH ────────────────────────────────────────────────────────
async def _set_ready(channel_name: str):
    try:
        await redis_stream.setex(ready_key(channel_name), READY_TTL_SECONDS, "1")
    except aioredis.RedisError as e:
        log.warning("relay_ready_set_failed", extra={"channel": channel_name, "err": str(e)})


async def _clear_ready(channel_name: str):
    try:
        await redis_stream.delete(ready_key(channel_name))
    except aioredis.RedisError as e:
        log.warning("relay_ready_clear_failed", extra={"channel": channel_name, "err": str(e)})


def _ensure_ready_refresher(channel_name: str):
    if channel_name in READY_TASKS:
        return

    async def refresher():
        try:
            await _set_ready(channel_name)
            while True:
                await asyncio.sleep(READY_REFRESH_SECONDS)
                if not CLIENTS.get(channel_name):
                    break
                await _set_ready(channel_name)
        except asyncio.CancelledError:
            pass
        finally:
            await _clear_ready(channel_name)
            READY_TASKS.pop(channel_name, None)

    READY_TASKS[channel_name] = asyncio.create_task(refresher())


# ── CORE SSE HANDLER ───────────────────────────────────────────────────
def _ensure_subscriber(channel_name: str):
    if channel_name in SUB_TASKS:
        return

    async def fanout():
        pubsub = redis_stream.pubsub()
        await pubsub.subscribe(channel_name)
        log.info("relay_subscribed", extra={"channel": channel_name})
        try:
            async for msg in pubsub.listen():
                if msg.get("type") != "message":
                    continue
                data = msg.get("data")
                for queue, _lp in list(CLIENTS.get(channel_name, [])):
                    queue.async_q.put_nowait(data)
        except asyncio.CancelledError:
            pass
        finally:
            await pubsub.unsubscribe(channel_name)
            await pubsub.aclose()
            log.info("relay_unsubscribed", extra={"channel": channel_name})

    SUB_TASKS[channel_name] = asyncio.create_task(fanout())


async def _detach(channel_name: str, q: janus.Queue, loop: asyncio.AbstractEventLoop):
    clients = CLIENTS.get(channel_name, [])
    if (q, loop) in clients:
        clients.remove((q, loop))
    if not clients:
        CLIENTS.pop(channel_name, None)
        task = SUB_TASKS.pop(channel_name, None)
        if task:
            task.cancel()
        rtask = READY_TASKS.pop(channel_name, None)
        if rtask:
            rtask.cancel()
        await _clear_ready(channel_name)
    await q.aclose()


async def _sse_for_channel(channel_name: str, attach_label: str):
    q = janus.Queue()
    loop = asyncio.get_running_loop()
    CLIENTS.setdefault(channel_name, []).append((q, loop))
    _ensure_ready_refresher(channel_name)
    _ensure_subscriber(channel_name)
    log.info("relay_client_attached", extra={"channel": channel_name, "client": attach_label})

    async def event_gen():
        # first frame right away so the browser "opens" instantly
        yield {"event": "ready", "data": "{}", "retry": 1000}
        await _set_ready(channel_name)
        try:
            while True:
                raw = await q.async_q.get()
                for frame in to_sse_frames(raw):
                    yield frame
        finally:
            await _detach(channel_name, q, loop)
            log.info("relay_client_detached", extra={"channel": channel_name, "client": attach_label})

    return EventSourceResponse(
        event_gen(),
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",
            "Connection": "keep-alive",
        },
        ping=max(1, SSE_PING_MS // 1000),  # sse_starlette takes seconds
    )


# ── ENDPOINTS ──────────────────────────────────────────────────────────
@app.get("/vet-chat-stream/{consultation_id}")
async def vet_chat_stream(consultation_id: str):
    """
    Worker publishes to vet_chat:{consultation_id}; the FE connects with
    GET /vet-chat-stream/{consultation_id}.
    """
    return await _sse_for_channel(chat_channel(consultation_id), attach_label=f"vet-chat {consultation_id}")


@app.get("/ready/vet-chat/{consultation_id}")
async def ready_vet_chat(consultation_id: str):
    """{"ready": true/false}: is any client attached to vet_chat:{consultation_id}."""
    val = await redis_stream.get(ready_key(chat_channel(consultation_id)))
    return {"ready": bool(val)}


@app.get("/healthz", include_in_schema=False)
async def health():
    return {"status": "ok", "channels": len(CLIENTS)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
