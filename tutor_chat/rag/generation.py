"""
LLM-based generation for the tutor chat RAG pipeline.

Takes an assembled prompt and produces a cited answer, either in one shot or
as a stream of events. Provider calls are retried with bounded backoff;
authentication and permission failures are never retried.
"""
import asyncio
import time
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Protocol, Sequence

import openai
from openai import AsyncOpenAI

from tutor_chat.errors import ChatCoreError, ProviderAuthError, ProviderError, ProviderTransientError, RetriesExhaustedError
from tutor_chat.logging_config import get_logger
from tutor_chat.model_registry import ModelRegistry
from tutor_chat.models import AssembledPrompt, CompletionResult, RetrievedChunk, StreamEvent, Turn
from tutor_chat.rag.citations import extract_citations
from tutor_chat.rag.prompts import build_messages

logger = get_logger(__name__)


class CompletionState(str, Enum):
    PREPARED = "prepared"
    ATTEMPTING = "attempting"
    STREAMING = "streaming"
    FAILED = "failed"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass
class ProviderCompletion:
    content: str
    input_tokens: int
    output_tokens: int


@dataclass
class ProviderDelta:
    """A piece of streamed output. Usage arrives on the final delta only."""
    text: str = ""
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None


class CompletionProvider(Protocol):
    """
    A chat completion backend.

    Implementations raise ProviderAuthError for credential problems and
    ProviderTransientError for known retryable failures. Any other exception
    is retried the same way.
    """

    async def complete(self, messages: List[dict], model_id: str, temperature: float,
                       max_tokens: Optional[int]) -> ProviderCompletion:
        ...

    def stream(self, messages: List[dict], model_id: str, temperature: float,
               max_tokens: Optional[int]) -> AsyncIterator[ProviderDelta]:
        ...


def _map_provider_error(e: openai.APIError) -> Exception:
    if isinstance(e, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ProviderAuthError(f"Provider rejected credentials: {e}")
    return ProviderTransientError(f"Provider request failed: {e}")


def _stream_failure_message(e: Exception) -> str:
    if isinstance(e, ChatCoreError):
        return e.user_message
    return ProviderError.user_message


class OpenAIProvider:
    """CompletionProvider backed by the OpenAI chat completions API."""

    def __init__(self, client: AsyncOpenAI):
        self.client = client

    async def complete(self, messages, model_id, temperature, max_tokens) -> ProviderCompletion:
        try:
            response = await self.client.chat.completions.create(
                model=model_id,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except openai.APIError as e:
            raise _map_provider_error(e) from e

        usage = response.usage
        return ProviderCompletion(
            content=response.choices[0].message.content or "",
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )

    async def stream(self, messages, model_id, temperature, max_tokens) -> AsyncIterator[ProviderDelta]:
        try:
            stream = await self.client.chat.completions.create(
                model=model_id,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                stream=True,
                stream_options={"include_usage": True},
            )
        except openai.APIError as e:
            raise _map_provider_error(e) from e

        try:
            async for chunk in stream:
                if chunk.choices and chunk.choices[0].delta.content:
                    yield ProviderDelta(text=chunk.choices[0].delta.content)
                if chunk.usage:
                    yield ProviderDelta(
                        input_tokens=chunk.usage.prompt_tokens,
                        output_tokens=chunk.usage.completion_tokens,
                    )
        except openai.APIError as e:
            raise _map_provider_error(e) from e
        finally:
            await stream.close()


class CompletionEngine:
    """
    Drives one completion per call against a CompletionProvider.

    Per call: PREPARED -> ATTEMPTING(n) -> STREAMING | FAILED(n) -> DONE | ERROR | CANCELLED.
    The engine holds no per-request state and is shared across requests.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        registry: ModelRegistry,
        model_id: Optional[str] = None,
        max_attempts: int = 3,
        retry_delays: Sequence[float] = (1.0, 2.0, 4.0),
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        self.provider = provider
        self.registry = registry
        self.model = registry.resolve_model(model_id)
        self.max_attempts = max_attempts
        self.retry_delays = list(retry_delays) or [0.0]
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.sleep = sleep

    @property
    def model_id(self) -> str:
        return self.model.id

    def _delay(self, attempt: int) -> float:
        return self.retry_delays[min(attempt - 1, len(self.retry_delays) - 1)]

    def _transition(self, state: CompletionState, attempt: int = 0):
        suffix = f"({attempt})" if attempt else ""
        logger.debug(f"Completion {state.value}{suffix} on {self.model.id}")

    async def complete(
        self,
        prompt: AssembledPrompt,
        history: Optional[Sequence[Turn]] = None,
        chunks: Optional[Sequence[RetrievedChunk]] = None,
    ) -> CompletionResult:
        """Single-shot completion with retry. Raises ProviderAuthError or RetriesExhaustedError."""
        messages = build_messages(prompt, history)
        self._transition(CompletionState.PREPARED)
        last_error = None

        for attempt in range(1, self.max_attempts + 1):
            self._transition(CompletionState.ATTEMPTING, attempt)
            llm_start = time.time()
            try:
                completion = await self.provider.complete(messages, self.model.id, self.temperature, self.max_tokens)
            except ProviderAuthError:
                self._transition(CompletionState.ERROR, attempt)
                logger.error(f"Provider authentication failed on attempt {attempt}, not retrying")
                raise
            except Exception as e:
                # Anything but an auth failure is worth another attempt
                last_error = e
                self._transition(CompletionState.FAILED, attempt)
                logger.warning(f"Completion attempt {attempt}/{self.max_attempts} failed: {type(e).__name__}: {e}")
                if attempt < self.max_attempts:
                    await self.sleep(self._delay(attempt))
                continue

            llm_time = (time.time() - llm_start) * 1000
            logger.info(f"LLM generation time: {llm_time:.0f}ms ({completion.input_tokens}+{completion.output_tokens} tokens)")
            self._transition(CompletionState.DONE, attempt)
            return self.build_result(
                completion.content,
                completion.input_tokens,
                completion.output_tokens,
                chunks if chunks is not None else prompt.chunks,
            )

        self._transition(CompletionState.ERROR, self.max_attempts)
        raise RetriesExhaustedError(self.max_attempts, last_error)

    async def stream(self, prompt: AssembledPrompt, history: Optional[Sequence[Turn]] = None) -> AsyncIterator[StreamEvent]:
        """
        Stream the answer as content events ending in exactly one done or error.

        Failures before the first content event are retried like complete();
        once output has started a failure ends the stream with an error event.
        Closing the generator closes the provider stream and emits nothing.
        """
        messages = build_messages(prompt, history)
        self._transition(CompletionState.PREPARED)
        last_error = None

        for attempt in range(1, self.max_attempts + 1):
            self._transition(CompletionState.ATTEMPTING, attempt)
            started = False
            usage = None
            try:
                async with aclosing(
                    self.provider.stream(messages, self.model.id, self.temperature, self.max_tokens)
                ) as deltas:
                    async for delta in deltas:
                        if delta.text:
                            if not started:
                                self._transition(CompletionState.STREAMING, attempt)
                                started = True
                            yield StreamEvent.content(delta.text)
                        if delta.input_tokens is not None or delta.output_tokens is not None:
                            usage = (delta.input_tokens or 0, delta.output_tokens or 0)
            except ProviderAuthError as e:
                self._transition(CompletionState.ERROR, attempt)
                logger.error(f"Provider authentication failed on attempt {attempt}, not retrying: {e}")
                yield StreamEvent.error(e.user_message)
                return
            except Exception as e:
                if started:
                    self._transition(CompletionState.ERROR, attempt)
                    logger.error(f"Stream failed after output started: {type(e).__name__}: {e}")
                    yield StreamEvent.error(_stream_failure_message(e))
                    return
                last_error = e
                self._transition(CompletionState.FAILED, attempt)
                logger.warning(f"Stream attempt {attempt}/{self.max_attempts} failed: {type(e).__name__}: {e}")
                if attempt < self.max_attempts:
                    await self.sleep(self._delay(attempt))
                continue
            except GeneratorExit:
                self._transition(CompletionState.CANCELLED, attempt)
                raise

            if usage is None:
                logger.warning(f"Provider stream on {self.model.id} ended without usage data")
                usage = (0, 0)
            self._transition(CompletionState.DONE, attempt)
            yield StreamEvent.done(usage[0], usage[1], model=self.model.id)
            return

        self._transition(CompletionState.ERROR, self.max_attempts)
        exhausted = RetriesExhaustedError(self.max_attempts, last_error)
        logger.error(str(exhausted))
        yield StreamEvent.error(exhausted.user_message)

    def build_result(
        self,
        content: str,
        input_tokens: int,
        output_tokens: int,
        chunks: Sequence[RetrievedChunk],
        model_id: Optional[str] = None,
    ) -> CompletionResult:
        """Attach cost and citations to generated text."""
        model_id = model_id or self.model.id
        return CompletionResult(
            content=content,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=self.registry.cost(input_tokens, output_tokens, model_id),
            model_id=model_id,
            citations=extract_citations(content, chunks),
        )
