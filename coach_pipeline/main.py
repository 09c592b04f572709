import json
import logging
import time
import uuid
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import PipelineConfig, load_config
from .domains import DomainConfigRegistry
from .models import ChatReply, PatternEngagement, RouteRequest, TurnDecision
from .services.chat_orchestrator import ChatOrchestrator, ConversationNotFound, ReplyUnavailable, SessionBlocked
from .services.classifier import ClassifierClient
from .store import RowStoreError, build_row_store
from .telemetry.events import log_event
from .vertex import VertexClient

logger = logging.getLogger("coach_pipeline")

app = FastAPI(title="Coach routing pipeline", version="0.1.0")


def get_config() -> PipelineConfig:
    """Process configuration, built by the startup hook (or on first use)."""
    cfg = getattr(app.state, "config", None)
    if cfg is None:
        cfg = load_config()
        app.state.config = cfg
    return cfg


def get_orchestrator() -> ChatOrchestrator:
    """Build the orchestrator on first use and keep it on app.state.

    Tests replace app.state.orchestrator, or monkeypatch VertexClient before
    the first request.
    """
    orch = getattr(app.state, "orchestrator", None)
    if orch is None:
        cfg = get_config()
        orch = ChatOrchestrator(
            config=cfg,
            store=build_row_store(cfg, logger),
            classifier=ClassifierClient(cfg, client_cls=VertexClient, logger=logger),
            registry=DomainConfigRegistry(logger=logger),
            logger=logger,
        )
        app.state.orchestrator = orch
    return orch


@app.on_event("startup")
async def _startup():
    cfg = get_config()
    logging.basicConfig(
        level=getattr(logging, cfg.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    log_event(
        logger,
        "pipeline_startup",
        projectConfigured=bool(cfg.project_id),
        vertexLocation=cfg.vertex_location,
        primaryModel=cfg.primary_tier.model_id,
        escalationModel=cfg.escalation_tier.model_id,
        safetyModel=cfg.safety_tier.model_id,
        memoryBackend=cfg.memory_backend,
    )


@app.on_event("shutdown")
async def _shutdown():
    orch = getattr(app.state, "orchestrator", None)
    if orch is not None:
        await orch.drain()


def _get_request_id(request: Request) -> str:
    h = request.headers.get("x-cloud-trace-context") or request.headers.get("x-request-id")
    if h:
        return h
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


def _error(status: int, message: str) -> HTTPException:
    return HTTPException(status_code=status, detail={"error": {"message": message, "code": status}})


@app.exception_handler(HTTPException)
async def on_http_exception(request: Request, exc: HTTPException):
    req_id = _get_request_id(request)
    logger.warning(json.dumps({
        "event": "http_exception",
        "status": exc.status_code,
        "detail": exc.detail,
        "requestId": req_id,
        "path": request.url.path,
        "method": request.method,
    }))

    if isinstance(exc.detail, dict):
        base = exc.detail.get("error", exc.detail).copy()
    else:
        base = {"message": str(exc.detail)}
    base.setdefault("message", "")
    base.setdefault("code", exc.status_code)
    base.setdefault("requestId", req_id)
    return JSONResponse(status_code=exc.status_code, content={"error": base})


@app.exception_handler(RequestValidationError)
async def on_validation_error(request: Request, exc: RequestValidationError):
    req_id = _get_request_id(request)
    errors = json.loads(json.dumps(exc.errors(), default=str))
    logger.warning(json.dumps({
        "event": "request_validation_error",
        "errors": errors,
        "requestId": req_id,
        "path": request.url.path,
        "method": request.method,
    }))
    return JSONResponse(status_code=422, content={
        "error": {"message": "Request validation failed", "code": 422, "requestId": req_id, "errors": errors}})


@app.exception_handler(Exception)
async def on_unhandled_exception(request: Request, exc: Exception):
    req_id = _get_request_id(request)
    logger.exception("Unhandled application exception: %s", exc)
    logger.error(json.dumps({
        "event": "unhandled_exception",
        "error": str(exc),
        "requestId": req_id,
        "path": request.url.path,
        "method": request.method,
    }))
    return JSONResponse(status_code=500,
                        content={"error": {"message": "Internal server error", "code": 500, "requestId": req_id}})


@app.middleware("http")
async def log_requests(request: Request, call_next):
    req_id = request.headers.get("x-cloud-trace-context") or request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = req_id
    start = time.time()

    logger.info(json.dumps({
        "event": "request_start",
        "method": request.method,
        "path": request.url.path,
        "client": request.client.host if request.client else None,
        "requestId": req_id,
    }))

    response = await call_next(request)
    response.headers["x-request-id"] = req_id

    latency_ms = int((time.time() - start) * 1000)
    status_code = response.status_code
    end_event = json.dumps({
        "event": "request_end",
        "method": request.method,
        "path": request.url.path,
        "status": status_code,
        "latencyMs": latency_ms,
        "requestId": req_id,
    })
    if status_code >= 500:
        logger.error(end_event)
    elif status_code >= 400:
        logger.warning(end_event)
    else:
        logger.info(end_event)
    return response


def _validate_message(message: str) -> None:
    limit = get_config().max_message_bytes
    if len(message.encode("utf-8")) > limit:
        raise _error(400, f"Message too large (max {limit} bytes)")
    if not message.strip():
        raise _error(400, "Message is empty")


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.post("/route", response_model=TurnDecision, response_model_by_alias=True)
async def route(body: RouteRequest):
    """Routing decision for one message without generating a reply."""
    _validate_message(body.message)
    return await get_orchestrator().decide(body)


@app.post("/chat", response_model=ChatReply, response_model_by_alias=True)
async def chat(body: RouteRequest):
    _validate_message(body.message)
    try:
        return await get_orchestrator().handle_message(body)
    except ConversationNotFound:
        raise _error(404, "Conversation not found")
    except SessionBlocked:
        raise _error(403, "Subscription required to continue coaching")
    except ReplyUnavailable as e:
        message = "Your coach is taking a moment. Please try again."
        if get_config().expose_upstream_error:
            message = f"{message} ({e})"
        raise _error(502, message)
    except RowStoreError as e:
        logger.error(json.dumps({"event": "chat_store_error", "error": str(e)}))
        raise _error(503, "Conversation storage is unavailable")


@app.get("/patterns/{user_id}")
async def patterns(user_id: str, refresh: Optional[bool] = False):
    """Cross-domain patterns and prompt-ready summaries for a user."""
    orch = get_orchestrator()
    if refresh:
        result = await orch.synthesizer.detect_cross_domain_patterns(user_id)
        found = result.patterns
        from_cache = result.from_cache
    else:
        cached = await orch.synthesizer.cached_patterns(user_id)
        found = cached or []
        from_cache = cached is not None
    summaries = await orch.analyzer.generate_pattern_summary(user_id)
    return {
        "patterns": [p.model_dump(by_alias=True) for p in found],
        "fromCache": from_cache,
        "summaries": [s.model_dump(by_alias=True) for s in summaries],
    }


@app.post("/patterns/{user_id}/engaged")
async def pattern_engaged(user_id: str, body: PatternEngagement):
    recorded = await get_orchestrator().analyzer.record_pattern_engagement(user_id, body.theme)
    if not recorded:
        raise _error(503, "Engagement could not be recorded")
    return {"recorded": True}


@app.get("/config")
async def config():
    registry = get_orchestrator().registry
    cfg = get_config()
    return {
        "projectConfigured": bool(cfg.project_id),
        "vertexLocation": cfg.vertex_location,
        "modelFallbacks": cfg.model_fallbacks,
        "tiers": {
            "primary": cfg.primary_tier.model_dump(),
            "discovery": cfg.discovery_tier.model_dump(),
            "escalation": cfg.escalation_tier.model_dump(),
            "safety": cfg.safety_tier.model_dump(),
        },
        "backgroundTasks": {k: v.model_dump() for k, v in cfg.background_tiers.items()},
        "thresholds": {
            "crisisConfidence": cfg.crisis_confidence_threshold,
            "domainStay": cfg.domain_stay_threshold,
            "domainSwitch": cfg.domain_switch_threshold,
            "patternConfidence": cfg.pattern_confidence_threshold,
        },
        "enabledDomains": sorted(registry.enabled_configs().keys()),
        "memoryBackend": cfg.memory_backend,
        "logLevel": cfg.log_level,
    }
