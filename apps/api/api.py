# apps/api/api.py - VetEvidence HTTP surface (direct chat + queued consultation chat)

import json
import os
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from redis.asyncio import Redis
from sse_starlette import EventSourceResponse

from common.cost_tracker import CostTracker
from common.errors import ExternalServiceError, RequestValidationError as InputValidationError
from common.json_logging import configure_json_logging
from common.kv_store import get_kv_store
from common.quality_score import evaluate_answer_quality, quality_alerts
from common.rate_limiter import RateLimiter, RateLimitResult, TierDirectory
from common.redis_conn import get_redis_connection
from knowledge.encyclopedia_client import vetpro_breaker
from knowledge.fusion import KnowledgeFusionEngine, get_fusion_engine
from vet_agent import AgentLoop, AgentMode, ImageAttachment, OpenAIModelClient, format_for_display, validate_messages
from vet_agent.types import AgentResponse, ConversationTurn
from vet_chat_tasks.vet_chat_tasks import process_vet_evidence_chat_task
from vet_tools import build_dispatcher
from vet_tools.drug_info import drug_info

log = configure_json_logging("vet-api")

# ──────────────────────────────────────────────────────────────────────────────
# Pydantic models
# ──────────────────────────────────────────────────────────────────────────────

class ChatRequest(BaseModel):
    # raw dicts; validate_messages reports shape problems as 400
    messages: List[Dict[str, Any]] = Field(default_factory=list)
    stream: bool = True
    mode: AgentMode = AgentMode.CHAT
    context: Optional[Dict[str, Any]] = None
    user_id: Optional[str] = None

class ChatResponse(BaseModel):
    content: str
    tool_calls: List[Dict[str, Any]]
    citations: List[Dict[str, Any]]
    token_usage: Dict[str, int]
    latency_ms: int
    terminal_state: str

class V1ChatRequest(BaseModel):
    message: str
    user_id: str
    species: Optional[str] = None
    mode: AgentMode = AgentMode.CHAT
    context: Optional[Dict[str, Any]] = None

class V1ChatResponse(BaseModel):
    answer: str
    citations: List[Dict[str, Any]]
    references: str
    model: str
    usage: Dict[str, Any]
    quality_score: int

class V1ImageAnalysisRequest(BaseModel):
    image_data: str                     # base64
    media_type: str
    prompt: str
    user_id: Optional[str] = None
    species: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

class V1DrugResponse(BaseModel):
    drug_name: str
    found: bool
    species: str
    detail: Optional[Dict[str, Any]] = None
    interactions: List[Dict[str, Any]] = Field(default_factory=list)
    literature: List[Dict[str, Any]] = Field(default_factory=list)
    sources: List[str] = Field(default_factory=list)

class VetChatMessageRequest(BaseModel):
    messages: List[Dict[str, Any]]
    mode: AgentMode = AgentMode.CHAT
    context: Optional[Dict[str, Any]] = None
    user_id: Optional[str] = None

class VetChatQueueResponse(BaseModel):
    status: str
    task_id: str
    consultation_id: str
    turn_id: str

class VetChatCancelRequest(BaseModel):
    turn_id: Optional[str] = None

class VetChatCancelResponse(BaseModel):
    status: str
    consultation_id: str
    turn_id: Optional[str] = None


# ──────────────────────────────────────────────────────────────────────────────
# FastAPI app
# ──────────────────────────────────────────────────────────────────────────────

app = FastAPI(
    title="VetEvidence API",
    description="Evidence-grounded veterinary clinical Q&A (direct and queued).",
    version="0.1.0",
)

ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
    allow_credentials=True,
)


@app.exception_handler(InputValidationError)
async def _invalid_input(request: Request, exc: InputValidationError):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(exc)})


@app.exception_handler(ExternalServiceError)
async def _upstream_failed(request: Request, exc: ExternalServiceError):
    log.error("upstream_failed", extra={"service": exc.service, "err": str(exc), "path": request.url.path})
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"error": "upstream service failed"})


# ──────────────────────────────────────────────────────────────────────────────
# Dependencies (overridden in tests)
# ──────────────────────────────────────────────────────────────────────────────

_agent_loop: Optional[AgentLoop] = None

def get_agent_loop() -> AgentLoop:
    global _agent_loop
    if _agent_loop is None:
        _agent_loop = AgentLoop(OpenAIModelClient(), build_dispatcher())
    return _agent_loop

def get_rate_limiter() -> RateLimiter:
    return RateLimiter(get_kv_store())

def get_cost_tracker() -> CostTracker:
    return CostTracker(get_kv_store())

def get_tier_directory() -> TierDirectory:
    return TierDirectory(get_kv_store())

def get_knowledge_engine() -> KnowledgeFusionEngine:
    return get_fusion_engine()


# ──────────────────────────────────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────────────────────────────────

async def _enforce_rate_limit(
    limiter: RateLimiter,
    tiers: TierDirectory,
    user_id: Optional[str],
    action: str = "chat",
) -> Optional[RateLimitResult]:
    """Anonymous requests (no user_id) are not limited. The tier is looked up server-side."""
    if not user_id:
        return None
    try:
        tier = await tiers.tier_for(user_id)
        result = await limiter.check(user_id, action, tier)
    except Exception as e:
        # store down: let the request through
        log.error("rate_limit_check_failed", extra={"user_id": user_id, "err": str(e)})
        return None
    if not result.allowed:
        retry_after = max(1, int((result.reset_at - datetime.now(result.reset_at.tzinfo)).total_seconds()))
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"error": "Rate limit exceeded", "reason": result.reason, "retry_after_sec": retry_after},
            headers={"Retry-After": str(retry_after), "X-RateLimit-Remaining": "0"},
        )
    return result

async def _track_cost(tracker: CostTracker, user_id: Optional[str], model: str, usage: Dict[str, int]) -> None:
    if not user_id:
        return
    try:
        await tracker.track(user_id, model, usage.get("inputTokens", 0), usage.get("outputTokens", 0))
    except Exception as e:
        log.error("cost_tracking_failed", extra={"user_id": user_id, "err": str(e)})

def _score_answer(result: AgentResponse, mode: AgentMode, user_id: Optional[str]) -> int:
    score = evaluate_answer_quality(
        result.content,
        [c.to_dict() for c in result.citations],
        [t.name for t in result.tool_calls],
        mode.value,
    )
    for alert in quality_alerts(score):
        log.warning(
            "answer_quality_alert",
            extra={"level": alert.level, "metric": alert.metric, "value": alert.value, "alert": alert.message, "user_id": user_id},
        )
    return score.overall


# ──────────────────────────────────────────────────────────────────────────────
# Routes
# ──────────────────────────────────────────────────────────────────────────────

@app.get("/")
async def root():
    return {"message": "VetEvidence API is running."}


@app.get("/healthz", include_in_schema=False)
async def health():
    return {"status": "ok", "vetpro_breaker": vetpro_breaker.phase.value}


@app.post("/api/chat", response_model=ChatResponse)
async def chat(
    req: ChatRequest,
    agent: AgentLoop = Depends(get_agent_loop),
    limiter: RateLimiter = Depends(get_rate_limiter),
    tracker: CostTracker = Depends(get_cost_tracker),
    tiers: TierDirectory = Depends(get_tier_directory),
):
    """
    Direct chat. `stream=true` (default) answers with SSE, one JSON event per
    frame: text_delta / tool_call / citations / tool_calls / done | error.
    """
    turns = validate_messages(req.messages)
    await _enforce_rate_limit(limiter, tiers, req.user_id)
    log.info("chat_request", extra={"user_id": req.user_id, "mode": req.mode.value, "stream": req.stream, "turns": len(turns)})

    if req.stream:
        async def event_gen() -> AsyncIterator[Dict[str, str]]:
            async for event in agent.run_streaming(turns, mode=req.mode, context=req.context):
                yield {"data": event.to_json()}
                if event.type == "done":
                    await _track_cost(tracker, req.user_id, agent.model, event.data["tokenUsage"])

        return EventSourceResponse(
            event_gen(),
            headers={"Cache-Control": "no-cache, no-transform", "X-Accel-Buffering": "no"},
        )

    result = await agent.run(turns, mode=req.mode, context=req.context)
    await _track_cost(tracker, req.user_id, agent.model, result.token_usage.to_dict())
    return ChatResponse(
        content=result.content,
        tool_calls=[t.summary() for t in result.tool_calls],
        citations=[c.to_dict() for c in result.citations],
        token_usage=result.token_usage.to_dict(),
        latency_ms=result.latency_ms,
        terminal_state=result.terminal_state.value,
    )


@app.post("/api/v1/chat", response_model=V1ChatResponse)
async def chat_v1(
    req: V1ChatRequest,
    agent: AgentLoop = Depends(get_agent_loop),
    limiter: RateLimiter = Depends(get_rate_limiter),
    tracker: CostTracker = Depends(get_cost_tracker),
    tiers: TierDirectory = Depends(get_tier_directory),
):
    """Single-question REST API: one message in, answer + formatted references out."""
    content = f"[Species: {req.species}] {req.message}" if req.species else req.message
    turns = validate_messages([{"role": "user", "content": content}])
    await _enforce_rate_limit(limiter, tiers, req.user_id)

    result = await agent.run(turns, mode=req.mode, context=req.context)
    usage = result.token_usage.to_dict()
    await _track_cost(tracker, req.user_id, agent.model, usage)
    return V1ChatResponse(
        answer=result.content,
        citations=[c.to_dict() for c in result.citations],
        references=format_for_display(result.citations),
        model=agent.model,
        usage={**usage, "latencyMs": result.latency_ms, "rounds": result.rounds},
        quality_score=_score_answer(result, req.mode, req.user_id),
    )


@app.post("/api/v1/images/analyze", response_model=V1ChatResponse)
async def analyze_image(
    req: V1ImageAnalysisRequest,
    agent: AgentLoop = Depends(get_agent_loop),
    limiter: RateLimiter = Depends(get_rate_limiter),
    tracker: CostTracker = Depends(get_cost_tracker),
    tiers: TierDirectory = Depends(get_tier_directory),
):
    """Radiograph / lab-report reading: one image plus a question, literature search optional."""
    prompt = f"[Species: {req.species}] {req.prompt}" if req.species else req.prompt
    turns = validate_messages([
        ConversationTurn(role="user", content=prompt, images=(ImageAttachment(req.media_type, req.image_data),)),
    ])
    await _enforce_rate_limit(limiter, tiers, req.user_id, action="image")
    log.info("image_analysis_request", extra={"user_id": req.user_id, "media_type": req.media_type})

    result = await agent.run(turns, mode=AgentMode.IMAGE_ANALYSIS, context=req.context)
    usage = result.token_usage.to_dict()
    await _track_cost(tracker, req.user_id, agent.model, usage)
    return V1ChatResponse(
        answer=result.content,
        citations=[c.to_dict() for c in result.citations],
        references=format_for_display(result.citations),
        model=agent.model,
        usage={**usage, "latencyMs": result.latency_ms, "rounds": result.rounds},
        quality_score=_score_answer(result, AgentMode.IMAGE_ANALYSIS, req.user_id),
    )


@app.get("/api/v1/drugs", response_model=V1DrugResponse)
async def lookup_drug(
    name: Optional[str] = None,
    species: Optional[str] = None,
    user_id: Optional[str] = None,
    engine: KnowledgeFusionEngine = Depends(get_knowledge_engine),
    limiter: RateLimiter = Depends(get_rate_limiter),
    tiers: TierDirectory = Depends(get_tier_directory),
):
    """Direct drug lookup without the agent: GET /api/v1/drugs?name=meloxicam&species=cat."""
    if not name or not name.strip():
        raise InputValidationError("name query parameter is required")
    await _enforce_rate_limit(limiter, tiers, user_id, action="drugs")

    result = await drug_info({"drug_name": name, "species": species}, engine=engine)
    log.info("drug_lookup", extra={"drug": name, "species": species, "found": result["found"]})
    return V1DrugResponse(
        drug_name=result["drugName"],
        found=result["found"],
        species=species or "all",
        detail=result.get("drugDetail"),
        interactions=result.get("interactions", []),
        literature=result.get("literature", []),
        sources=result["sources"],
    )


# ──────────────────────────────────────────────────────────────────────────────
# Queued consultation chat (worker streams to vet_chat:{consultation_id})
# ──────────────────────────────────────────────────────────────────────────────
@app.post(
    "/api/v1/vet_chat/{consultation_id}/message",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=VetChatQueueResponse,
)
async def queue_vet_chat_message(
    consultation_id: str,
    req: VetChatMessageRequest,
    limiter: RateLimiter = Depends(get_rate_limiter),
    tiers: TierDirectory = Depends(get_tier_directory),
):
    """
    Validates and queues one consultation turn. The FE subscribes to the relay
    (GET /vet-chat-stream/{consultation_id}) to receive the streamed events.
    """
    validate_messages(req.messages)
    await _enforce_rate_limit(limiter, tiers, req.user_id)

    turn_id = f"turn_{uuid4().hex}"
    task = await process_vet_evidence_chat_task.kiq(
        consultation_id,
        req.messages,
        req.mode.value,
        req.context,
        user_id=req.user_id,
        turn_id=turn_id,
    )
    log.info("vet_chat_queued", extra={"consultation_id": consultation_id, "task_id": task.task_id, "turn_id": turn_id})
    return VetChatQueueResponse(status="queued", task_id=task.task_id, consultation_id=consultation_id, turn_id=turn_id)


@app.post(
    "/api/v1/vet_chat/{consultation_id}/cancel",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=VetChatCancelResponse,
)
async def cancel_vet_chat_turn(
    consultation_id: str,
    req: Optional[VetChatCancelRequest] = None,
    redis: Redis = Depends(get_redis_connection),
):
    """
    Cooperative cancel of the running turn: sticky flag (1h TTL) + control
    event; the worker stops at its next round boundary.
    """
    turn_id = req.turn_id if req else None
    control_channel = f"vet_chat:{consultation_id}:control"
    if turn_id:
        flag_key = f"vet_chat:{consultation_id}:cancelled:{turn_id}"
    else:
        flag_key = f"vet_chat:{consultation_id}:cancelled:any"
    payload = {"event": "cancel", "data": {"turn_id": turn_id}}
    stamp = {"ts": datetime.utcnow().isoformat() + "Z"}

    pipe = redis.pipeline()
    pipe.set(flag_key, json.dumps(stamp), ex=3600)
    pipe.publish(control_channel, json.dumps(payload))
    await pipe.execute()

    await redis.publish(
        f"vet_chat:{consultation_id}",
        json.dumps({"event": "status", "data": {"phase": "cancel_requested", "turn_id": turn_id}}),
    )
    return VetChatCancelResponse(status="cancel_requested", consultation_id=consultation_id, turn_id=turn_id)
