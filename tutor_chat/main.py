from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from tutor_chat import __version__
from tutor_chat.config import Settings, get_settings
from tutor_chat.errors import ChatCoreError, RateLimitExceeded
from tutor_chat.logging_config import get_logger, setup_logging
from tutor_chat.models import Citation, MonthlyUsage
from tutor_chat.rag.prompts import FALLBACK_MESSAGES
from tutor_chat.rag.streaming import SSE_HEADERS
from tutor_chat.service import ChatRequest, ChatService, build_service

logger = get_logger(__name__)


class WireModel(BaseModel):
    """camelCase on the wire, matching the SSE frames. Field names are accepted on input too."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatRequestBody(WireModel):
    message: str
    user_id: str
    tenant_id: str
    tier: str = "basic"
    session_id: Optional[str] = None
    video_ids: Optional[List[str]] = None
    stream: bool = False


class CitationBody(WireModel):
    source_id: str
    source_title: str
    offset_seconds: int
    snippet: str

    @classmethod
    def from_citation(cls, citation: Citation) -> "CitationBody":
        return cls(**asdict(citation))


class ChatResponseBody(WireModel):
    content: str
    session_id: str
    model: str
    citations: List[CitationBody]
    input_tokens: int
    output_tokens: int
    cost_usd: float
    cached: bool
    fallback: bool


class ConversationSummaryResponse(WireModel):
    session_id: str
    first_message: str
    turn_count: int
    last_updated: float


class ConversationDetailResponse(WireModel):
    session_id: str
    turn_count: int
    last_updated: float
    turns: List[dict]
    citations: List[CitationBody]


class CacheWarmItem(WireModel):
    message: str
    content: str
    video_ids: List[str] = Field(default_factory=list)


def get_service(request: Request) -> ChatService:
    return request.app.state.service


def usage_dict(usage: MonthlyUsage) -> dict:
    data = asdict(usage)
    data["average_cost_per_message"] = usage.average_cost_per_message
    return data


def create_app(service: Optional[ChatService] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the API. A prebuilt service (tests) is used as-is; otherwise clients
    are created in the lifespan hook from settings and closed on shutdown.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = service is None
        if owned:
            setup_logging(level=settings.log_level, log_file=settings.log_file)
            app.state.service = build_service(settings)
        logger.info(f"Starting Tutor Chat API (model: {app.state.service.engine.model_id})")
        yield
        logger.info("Shutting down Tutor Chat API")
        if owned:
            await app.state.service.aclose()

    app = FastAPI(title="Tutor Chat API", version=__version__, lifespan=lifespan)
    if service is not None:
        app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        return JSONResponse(
            status_code=exc.status_code,
            headers={"Retry-After": str(exc.retry_after_seconds)},
            content={
                "error": "Rate limit exceeded",
                "limitedBy": exc.limited_by,
                "retryAfterSeconds": exc.retry_after_seconds,
                "message": exc.user_message,
            },
        )

    @app.exception_handler(ChatCoreError)
    async def chat_error_handler(request: Request, exc: ChatCoreError):
        if exc.status_code >= 500:
            logger.error(f"{type(exc).__name__} on {request.url.path}: {exc}")
        else:
            logger.info(f"Rejected request on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": type(exc).__name__, "message": exc.user_message},
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error(f"Unexpected error on {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "InternalError", "message": FALLBACK_MESSAGES["technical_error"]},
        )

    @app.get("/")
    async def root():
        return {"message": "Welcome to Tutor Chat API", "docs": "/docs"}

    @app.get("/health")
    async def health_check(service: ChatService = Depends(get_service)):
        """Health check endpoint"""
        components = await service.health()
        healthy = all(status == "ok" for status in components.values())
        return {"status": "healthy" if healthy else "degraded", "components": components}

    @app.get("/models")
    async def list_models(service: ChatService = Depends(get_service)):
        return {
            "active": service.engine.model_id,
            "models": [asdict(m) for m in service.registry.list_models()],
        }

    @app.post("/chat", response_model=ChatResponseBody)
    async def chat(body: ChatRequestBody, service: ChatService = Depends(get_service)):
        """Answer a question, as JSON or as Server-Sent Events when stream is set"""
        logger.info(f"Received question: {body.message[:100]}...")
        request = ChatRequest(
            message=body.message,
            user_id=body.user_id,
            tenant_id=body.tenant_id,
            tier=body.tier,
            session_id=body.session_id,
            scope=frozenset(body.video_ids) if body.video_ids else None,
        )

        if body.stream:
            frames = await service.open_stream(request)
            return StreamingResponse(frames, media_type="text/event-stream", headers=SSE_HEADERS)

        answer = await service.answer(request)
        return ChatResponseBody(
            content=answer.content,
            session_id=answer.session_id,
            model=answer.model_id,
            citations=[CitationBody.from_citation(c) for c in answer.citations],
            input_tokens=answer.input_tokens,
            output_tokens=answer.output_tokens,
            cost_usd=answer.cost_usd,
            cached=answer.cached,
            fallback=answer.fallback,
        )

    @app.get("/conversations", response_model=List[ConversationSummaryResponse])
    async def get_conversation_summaries(user_id: str, service: ChatService = Depends(get_service)):
        return service.conversations.get_conversation_summaries(user_id)

    @app.get("/conversations/{session_id}", response_model=ConversationDetailResponse)
    async def get_conversation_detail(session_id: str, user_id: str, service: ChatService = Depends(get_service)):
        """Get full details for a specific conversation"""
        c = service.conversations.get_conversation(session_id, user_id)
        if not c:
            raise HTTPException(status_code=404, detail="Conversation not found")

        return ConversationDetailResponse(
            session_id=session_id,
            turn_count=len(c.turns),
            last_updated=c.last_accessed,
            turns=[t.to_message() for t in c.turns],
            citations=[CitationBody.from_citation(cit) for cit in service.conversations.get_all_citations(session_id)],
        )

    @app.get("/cache/stats")
    async def cache_stats(service: ChatService = Depends(get_service)):
        return asdict(await service.cache.stats())

    @app.post("/cache/stats/reset")
    async def reset_cache_stats(service: ChatService = Depends(get_service)):
        await service.cache.reset_stats()
        return {"status": "reset"}

    @app.get("/cache/info")
    async def cache_info(service: ChatService = Depends(get_service)):
        info = await service.cache.info()
        return {"cached_responses": info["cached_responses"], "stats": asdict(info["stats"])}

    @app.delete("/cache")
    async def clear_cache(service: ChatService = Depends(get_service)):
        return {"deleted": await service.cache.invalidate_all()}

    @app.post("/cache/invalidate/{source_id}")
    async def invalidate_source(source_id: str, service: ChatService = Depends(get_service)):
        return {"source_id": source_id, "deleted": await service.cache.invalidate(source_id)}

    @app.post("/cache/warm")
    async def warm_cache(items: List[CacheWarmItem], service: ChatService = Depends(get_service)):
        """Pre-compute answers for common questions against the current retrieval results"""
        entries = []
        for item in items:
            chunks = await service.retrieve(item.message, frozenset(item.video_ids) or None)
            if chunks:
                entries.append((item.message, chunks, service.engine.build_result(item.content, 0, 0, chunks)))
        return {"cached": await service.cache.warm(entries)}

    @app.get("/usage/{tenant_id}")
    async def monthly_usage(tenant_id: str, month: Optional[str] = None, service: ChatService = Depends(get_service)):
        return usage_dict(await service.cost_tracker.monthly_usage(tenant_id, month))

    @app.delete("/usage/{tenant_id}")
    async def reset_usage(tenant_id: str, month: Optional[str] = None, service: ChatService = Depends(get_service)):
        return {"deleted": await service.cost_tracker.reset_usage(tenant_id, month)}

    @app.get("/usage/{tenant_id}/limits")
    async def tier_limits(tenant_id: str, tier: str = "basic", service: ChatService = Depends(get_service)):
        status = await service.cost_tracker.check_tier_limits(tenant_id, tier)
        return {
            "within_limits": status.within_limits,
            "warning_level": status.warning_level.value,
            "usage": usage_dict(status.usage),
            "limits": asdict(status.limits),
        }

    @app.get("/usage/{tenant_id}/trend")
    async def cost_trend(tenant_id: str, days: int = Query(default=30, ge=1, le=366),
                         service: ChatService = Depends(get_service)):
        return await service.cost_tracker.cost_trend(tenant_id, days)

    @app.get("/usage/{tenant_id}/estimate")
    async def estimate_usage(tenant_id: str, service: ChatService = Depends(get_service)):
        return await service.cost_tracker.estimate_monthly_usage(tenant_id)

    @app.get("/admin/top-spenders")
    async def top_spenders(limit: int = Query(default=10, ge=1, le=100), month: Optional[str] = None,
                           service: ChatService = Depends(get_service)):
        return await service.cost_tracker.top_spenders(limit, month)

    @app.get("/rate-limits/{tenant_id}/{user_id}")
    async def rate_limit_status(tenant_id: str, user_id: str, tier: str = "basic",
                                service: ChatService = Depends(get_service)):
        return asdict(await service.rate_limiter.status(user_id, tenant_id, tier))

    @app.delete("/rate-limits/users/{user_id}")
    async def reset_user_limits(user_id: str, service: ChatService = Depends(get_service)):
        return {"deleted": await service.rate_limiter.reset_user(user_id)}

    @app.delete("/rate-limits/tenants/{tenant_id}")
    async def reset_tenant_limits(tenant_id: str, service: ChatService = Depends(get_service)):
        return {"deleted": await service.rate_limiter.reset_tenant(tenant_id)}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("tutor_chat.main:app", host="0.0.0.0", port=8000)
