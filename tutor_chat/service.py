"""
Chat request orchestration.

validate -> rate limit -> retrieve -> cache lookup -> assemble -> complete or
stream -> record cost, cache the answer and append the turns.
"""
import asyncio
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Dict, FrozenSet, List, Optional

import redis.asyncio as redis
from openai import AsyncOpenAI, OpenAI
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from tutor_chat.cache import STORE_ERRORS, ResponseCache
from tutor_chat.config import Settings
from tutor_chat.cost_tracker import CostTracker
from tutor_chat.db.database import make_engine, make_session_factory
from tutor_chat.errors import RateLimitExceeded, SessionAccessDenied, ValidationError
from tutor_chat.logging_config import get_logger
from tutor_chat.model_registry import ModelRegistry
from tutor_chat.models import AssembledPrompt, Citation, CompletionResult, Query, RetrievedChunk, StreamEvent, TIERS
from tutor_chat.rag.conversation_manager import ConversationManager
from tutor_chat.rag.generation import CompletionEngine, OpenAIProvider
from tutor_chat.rag.prompts import FALLBACK_MESSAGES, assemble
from tutor_chat.rag.streaming import StreamMultiplexer
from tutor_chat.rate_limit import RateLimiter, format_rate_limit_message
from tutor_chat.retrieval.semantic_search import ContextRetriever, OpenAIQueryEmbedder, PgVectorRetriever, validate_chunks

logger = get_logger(__name__)


@dataclass
class ChatRequest:
    message: str
    user_id: str
    tenant_id: str
    tier: str = "basic"
    session_id: Optional[str] = None
    scope: Optional[FrozenSet[str]] = None  # restrict retrieval to these source ids


@dataclass
class ChatAnswer:
    content: str
    session_id: str
    model_id: str
    citations: List[Citation] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    cached: bool = False
    fallback: bool = False


@dataclass
class PreparedChat:
    """Everything decided before the provider is called."""
    request: ChatRequest
    session_id: str
    query: Query
    chunks: List[RetrievedChunk]
    prompt: Optional[AssembledPrompt] = None
    answer: Optional[ChatAnswer] = None  # set when no provider call is needed


class ChatService:
    def __init__(
        self,
        retriever: ContextRetriever,
        cache: ResponseCache,
        rate_limiter: RateLimiter,
        engine: CompletionEngine,
        cost_tracker: CostTracker,
        conversations: ConversationManager,
        multiplexer: StreamMultiplexer,
        registry: ModelRegistry,
        max_context_chunks: int = 5,
        history_max_turns: int = 10,
        max_message_chars: int = 4000,
    ):
        self.retriever = retriever
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.engine = engine
        self.cost_tracker = cost_tracker
        self.conversations = conversations
        self.multiplexer = multiplexer
        self.registry = registry
        self.max_context_chunks = max_context_chunks
        self.history_max_turns = history_max_turns
        self.max_message_chars = max_message_chars
        self.health_checks: Dict[str, Callable[[], Awaitable[None]]] = {}
        self._closers: List[Callable[[], Awaitable[None]]] = []

    def validate(self, request: ChatRequest) -> None:
        if not request.message or not request.message.strip():
            raise ValidationError("Message is required", FALLBACK_MESSAGES["empty_query"])
        if len(request.message) > self.max_message_chars:
            raise ValidationError(
                f"Message too long: {len(request.message)} chars",
                f"Your message is too long. Please keep it under {self.max_message_chars} characters.",
            )
        if not request.user_id or not request.tenant_id:
            raise ValidationError("user_id and tenant_id are required")
        if request.tier not in TIERS:
            raise ValidationError(f"Unknown tier: {request.tier}", f"Unknown subscription tier '{request.tier}'.")

    async def retrieve(self, message: str, scope: Optional[FrozenSet[str]] = None) -> List[RetrievedChunk]:
        """Run the blocking retriever in a worker thread and validate its rows."""
        retrieval_start = time.time()
        rows = await asyncio.to_thread(self.retriever.search, message, scope)
        chunks = validate_chunks(rows)
        retrieval_time = (time.time() - retrieval_start) * 1000
        logger.info(f"Retrieval time: {retrieval_time:.0f}ms ({len(chunks)} chunks)")
        return chunks

    async def prepare(self, request: ChatRequest) -> PreparedChat:
        """
        Run every step up to the provider call.

        Raises ValidationError, RateLimitExceeded or SessionAccessDenied before
        any work is billed.
        """
        self.validate(request)

        decision = await self.rate_limiter.check(request.user_id, request.tenant_id, request.tier)
        if not decision.allowed:
            raise RateLimitExceeded(
                decision.limited_by, decision.retry_after_seconds, format_rate_limit_message(decision)
            )

        session_id = self._open_session(request)
        query = Query(
            text=request.message,
            conversation_history=self.conversations.load_recent_turns(session_id, self.history_max_turns),
            context_scope=request.scope,
        )

        chunks = await self.retrieve(query.text, query.context_scope)

        prepared = PreparedChat(request=request, session_id=session_id, query=query, chunks=chunks)

        if not chunks:
            logger.info(f"No relevant content for query: \"{query.text[:50]}...\", returning fallback")
            prepared.answer = ChatAnswer(
                content=FALLBACK_MESSAGES["no_context"],
                session_id=session_id,
                model_id=self.engine.model_id,
                fallback=True,
            )
            return prepared

        entry = await self.cache.lookup(query.text, chunks)
        if entry is not None:
            prepared.answer = ChatAnswer(
                content=entry.content,
                session_id=session_id,
                model_id=entry.model_id,
                citations=entry.citations,
                cached=True,
            )
            return prepared

        prepared.prompt = assemble(query.text, chunks, self.max_context_chunks)
        return prepared

    async def answer(self, request: ChatRequest) -> ChatAnswer:
        """Single-shot chat: the whole answer in one response."""
        prepared = await self.prepare(request)
        if prepared.answer is not None:
            self._append_turns(prepared, prepared.answer.content, prepared.answer.citations)
            return prepared.answer

        generation_start = time.time()
        result = await self.engine.complete(prepared.prompt, prepared.query.conversation_history, prepared.chunks)
        generation_time_ms = (time.time() - generation_start) * 1000
        logger.info(f"Generated response with {len(result.citations)} citations in {generation_time_ms:.0f}ms")

        await self._finish(prepared, result)
        return ChatAnswer(
            content=result.content,
            session_id=prepared.session_id,
            model_id=result.model_id,
            citations=result.citations,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            cost_usd=result.cost_usd,
        )

    async def open_stream(self, request: ChatRequest) -> AsyncIterator[str]:
        """
        Validate and admit the request, then return its SSE frame iterator.

        Admission errors are raised here, before any frame is sent.
        """
        prepared = await self.prepare(request)
        return self.multiplexer.frames(self.stream_events(prepared))

    async def stream_events(self, prepared: PreparedChat) -> AsyncIterator[StreamEvent]:
        if prepared.answer is not None:
            answer = prepared.answer
            self._append_turns(prepared, answer.content, answer.citations)
            yield StreamEvent.content(answer.content)
            yield StreamEvent.done(
                0, 0,
                sessionId=prepared.session_id,
                model=answer.model_id,
                cached=answer.cached,
                costUsd=answer.cost_usd,
                fallback=answer.fallback,
                citations=[c.to_dict() for c in answer.citations],
            )
            return

        parts = []
        async with aclosing(self.engine.stream(prepared.prompt, prepared.query.conversation_history)) as events:
            async for event in events:
                if event.type == "content":
                    parts.append(event.text)
                    yield event
                elif event.type == "done":
                    result = self.engine.build_result(
                        "".join(parts), event.input_tokens, event.output_tokens, prepared.chunks, event.extra.get("model")
                    )
                    await self._finish(prepared, result)
                    yield StreamEvent.done(
                        result.input_tokens,
                        result.output_tokens,
                        sessionId=prepared.session_id,
                        model=result.model_id,
                        cached=False,
                        costUsd=result.cost_usd,
                        fallback=False,
                        citations=[c.to_dict() for c in result.citations],
                    )
                    return
                else:
                    yield event
                    return

    async def _finish(self, prepared: PreparedChat, result: CompletionResult) -> None:
        """Record cost and cache the answer. Neither can fail the response."""
        request = prepared.request
        await asyncio.gather(
            self.cost_tracker.track(request.tenant_id, result.input_tokens, result.output_tokens, result.model_id),
            self.cache.store(prepared.query.text, prepared.chunks, result),
        )
        self._append_turns(prepared, result.content, result.citations)

    def _append_turns(self, prepared: PreparedChat, content: str, citations: List[Citation]) -> None:
        self.conversations.add_turn(prepared.session_id, "user", prepared.query.text)
        self.conversations.add_turn(prepared.session_id, "assistant", content, citations)

    def _open_session(self, request: ChatRequest) -> str:
        if not request.session_id:
            return self.conversations.create_conversation(request.user_id)
        try:
            return self.conversations.ensure_conversation(request.session_id, request.user_id).session_id
        except PermissionError as e:
            raise SessionAccessDenied(str(e)) from e

    async def health(self) -> Dict[str, str]:
        """Status of each backing store: 'ok' or the error."""
        status = {}
        for name, check in self.health_checks.items():
            try:
                await check()
                status[name] = "ok"
            except (*STORE_ERRORS, SQLAlchemyError) as e:
                logger.warning(f"Health check failed for {name}: {e}")
                status[name] = f"error: {e}"
        return status

    def add_closer(self, closer: Callable[[], Awaitable[None]]) -> None:
        self._closers.append(closer)

    async def aclose(self) -> None:
        for closer in reversed(self._closers):
            await closer()
        self._closers.clear()


def _database_check(engine: Engine) -> Callable[[], Awaitable[None]]:
    def ping():
        with engine.connect() as conn:
            conn.execute(text("select 1"))

    async def check():
        await asyncio.to_thread(ping)

    return check


def build_service(settings: Settings) -> ChatService:
    """Wire the production collaborators from settings. Clients are created once."""
    registry = ModelRegistry()
    tier_limits = settings.tier_limits()

    redis_client = redis.from_url(settings.redis_url)
    cache_client = redis_client
    if settings.resolved_cache_redis_url != settings.redis_url:
        cache_client = redis.from_url(settings.resolved_cache_redis_url)

    engine = make_engine(settings.database_url)

    async_openai = AsyncOpenAI(
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
        timeout=settings.provider_timeout_seconds,
        max_retries=0,  # retries are handled by CompletionEngine
    )
    sync_openai = OpenAI(
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
        timeout=settings.provider_timeout_seconds,
    )

    service = ChatService(
        retriever=PgVectorRetriever(
            engine,
            OpenAIQueryEmbedder(sync_openai, settings.embedding_model),
            match_count=settings.retrieval_match_count,
            similarity_threshold=settings.retrieval_similarity_threshold,
        ),
        cache=ResponseCache(
            cache_client,
            namespace=settings.cache_namespace,
            ttl_seconds=settings.cache_ttl_seconds,
            targeted_invalidation=settings.cache_targeted_invalidation,
        ),
        rate_limiter=RateLimiter(redis_client, tier_limits, namespace=settings.cache_namespace),
        engine=CompletionEngine(
            OpenAIProvider(async_openai),
            registry,
            model_id=settings.chat_model,
            max_attempts=settings.max_attempts,
            retry_delays=settings.retry_delays_seconds,
            temperature=settings.temperature,
            max_tokens=settings.max_output_tokens,
        ),
        cost_tracker=CostTracker(make_session_factory(engine), registry, tier_limits),
        conversations=ConversationManager(max_age_seconds=3600),
        multiplexer=StreamMultiplexer(
            ping_interval=settings.stream_ping_interval_seconds,
            timeout=settings.stream_timeout_seconds,
            buffer_size=settings.stream_buffer_size,
        ),
        registry=registry,
        max_context_chunks=settings.max_context_chunks,
        history_max_turns=settings.history_max_turns,
        max_message_chars=settings.max_message_chars,
    )

    service.health_checks["redis"] = redis_client.ping
    if cache_client is not redis_client:
        service.health_checks["cache_redis"] = cache_client.ping
    service.health_checks["database"] = _database_check(engine)

    service.add_closer(async_openai.close)
    service.add_closer(redis_client.aclose)
    if cache_client is not redis_client:
        service.add_closer(cache_client.aclose)

    async def dispose_engine():
        await asyncio.to_thread(engine.dispose)

    service.add_closer(dispose_engine)
    return service
