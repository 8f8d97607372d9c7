"""
Tests for the completion engine: retry policy, streaming termination, cost.
"""
import unittest

from tutor_chat.errors import ProviderAuthError, ProviderError, ProviderTransientError, RetriesExhaustedError
from tutor_chat.model_registry import DEFAULT_MODEL_ID, ModelRegistry
from tutor_chat.models import RetrievedChunk, Turn
from tutor_chat.rag.generation import CompletionEngine, ProviderCompletion, ProviderDelta
from tutor_chat.rag.prompts import assemble


class FakeProvider:
    """Scripted provider. Script items are return values or exceptions to raise."""

    def __init__(self, completions=None, streams=None):
        self.completions = list(completions or [])
        self.streams = list(streams or [])
        self.calls = 0
        self.closed = 0
        self.last_messages = None

    async def complete(self, messages, model_id, temperature, max_tokens):
        self.calls += 1
        self.last_messages = messages
        item = self.completions.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def stream(self, messages, model_id, temperature, max_tokens):
        self.calls += 1
        self.last_messages = messages
        script = self.streams.pop(0)
        try:
            for item in script:
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            self.closed += 1


CHUNKS = [RetrievedChunk("vid-1", "Intro to Trading", 225, "Start with small positions.", 0.91)]


class EngineTestCase(unittest.IsolatedAsyncioTestCase):

    def make_engine(self, provider, **kwargs):
        self.delays = []

        async def record_sleep(seconds):
            self.delays.append(seconds)

        self.registry = ModelRegistry()
        return CompletionEngine(provider, self.registry, model_id="gpt-4o-mini", sleep=record_sleep, **kwargs)

    async def collect(self, engine, prompt, history=None):
        return [event async for event in engine.stream(prompt, history)]


class TestComplete(EngineTestCase):

    async def test_success_computes_cost_and_citations(self):
        provider = FakeProvider(completions=[
            ProviderCompletion("Begin small [Intro to Trading @ 3:45].", 1500, 120),
        ])
        engine = self.make_engine(provider)

        result = await engine.complete(assemble("How do I start?", CHUNKS))

        assert result.content.startswith("Begin small")
        assert result.input_tokens == 1500
        assert result.output_tokens == 120
        assert result.model_id == "gpt-4o-mini"
        assert result.cost_usd == self.registry.cost(1500, 120, "gpt-4o-mini")
        assert [(c.source_id, c.offset_seconds) for c in result.citations] == [("vid-1", 225)]
        assert provider.calls == 1
        assert self.delays == []

    async def test_history_is_sent(self):
        provider = FakeProvider(completions=[ProviderCompletion("ok", 1, 1)])
        engine = self.make_engine(provider)

        await engine.complete(assemble("And then?", CHUNKS), [Turn("user", "hi"), Turn("assistant", "hello")])

        assert [m["role"] for m in provider.last_messages] == ["system", "user", "assistant", "user"]

    async def test_transient_failures_are_retried_with_backoff(self):
        provider = FakeProvider(completions=[
            ProviderTransientError("overloaded"),
            ProviderTransientError("timeout"),
            ProviderCompletion("finally", 10, 5),
        ])
        engine = self.make_engine(provider)

        result = await engine.complete(assemble("q", CHUNKS))

        assert result.content == "finally"
        assert provider.calls == 3
        assert self.delays == [1.0, 2.0]

    async def test_retries_exhausted(self):
        provider = FakeProvider(completions=[ProviderTransientError(f"fail {i}") for i in range(3)])
        engine = self.make_engine(provider)

        with self.assertRaises(RetriesExhaustedError) as ctx:
            await engine.complete(assemble("q", CHUNKS))

        assert provider.calls == 3
        assert ctx.exception.attempts == 3
        assert "Failed after 3 attempts" in str(ctx.exception)
        assert "fail 2" in str(ctx.exception.last_error)
        assert self.delays == [1.0, 2.0]

    async def test_unexpected_errors_are_retried(self):
        provider = FakeProvider(completions=[
            ConnectionResetError("peer reset"),
            TimeoutError("read timed out"),
            ProviderCompletion("recovered", 10, 5),
        ])
        engine = self.make_engine(provider)

        result = await engine.complete(assemble("q", CHUNKS))

        assert result.content == "recovered"
        assert provider.calls == 3
        assert self.delays == [1.0, 2.0]

    async def test_unexpected_errors_exhaust_retries(self):
        provider = FakeProvider(completions=[ConnectionError(f"refused {i}") for i in range(3)])
        engine = self.make_engine(provider)

        with self.assertRaises(RetriesExhaustedError) as ctx:
            await engine.complete(assemble("q", CHUNKS))

        assert provider.calls == 3
        assert isinstance(ctx.exception.last_error, ConnectionError)
        assert ctx.exception.user_message == ProviderError.user_message

    async def test_auth_error_is_not_retried(self):
        provider = FakeProvider(completions=[ProviderAuthError("invalid_api_key")])
        engine = self.make_engine(provider)

        with self.assertRaises(ProviderAuthError):
            await engine.complete(assemble("q", CHUNKS))

        assert provider.calls == 1
        assert self.delays == []

    async def test_configurable_attempts(self):
        provider = FakeProvider(completions=[ProviderTransientError("x")] * 5)
        engine = self.make_engine(provider, max_attempts=5, retry_delays=(0.5,))

        with self.assertRaises(RetriesExhaustedError):
            await engine.complete(assemble("q", CHUNKS))

        assert provider.calls == 5
        assert self.delays == [0.5, 0.5, 0.5, 0.5]

    async def test_unknown_configured_model_falls_back(self):
        with self.assertLogs("tutor_chat.model_registry", level="WARNING"):
            engine = CompletionEngine(FakeProvider(), ModelRegistry(), model_id="not-a-model")
        assert engine.model_id == DEFAULT_MODEL_ID


class TestStream(EngineTestCase):

    async def test_content_then_single_done(self):
        provider = FakeProvider(streams=[[
            ProviderDelta(text="Begin "),
            ProviderDelta(text="small."),
            ProviderDelta(input_tokens=900, output_tokens=40),
        ]])
        engine = self.make_engine(provider)

        events = await self.collect(engine, assemble("q", CHUNKS))

        assert [e.type for e in events] == ["content", "content", "done"]
        assert "".join(e.text for e in events) == "Begin small."
        assert events[-1].input_tokens == 900
        assert events[-1].output_tokens == 40
        assert events[-1].extra["model"] == "gpt-4o-mini"
        assert provider.closed == 1

    async def test_failure_before_output_is_retried(self):
        provider = FakeProvider(streams=[
            [ProviderTransientError("connection reset")],
            [ProviderDelta(text="ok"), ProviderDelta(input_tokens=1, output_tokens=1)],
        ])
        engine = self.make_engine(provider)

        events = await self.collect(engine, assemble("q", CHUNKS))

        assert [e.type for e in events] == ["content", "done"]
        assert provider.calls == 2
        assert self.delays == [1.0]

    async def test_failure_after_output_ends_with_error(self):
        provider = FakeProvider(streams=[
            [ProviderDelta(text="partial"), ProviderTransientError("connection reset")],
        ])
        engine = self.make_engine(provider)

        events = await self.collect(engine, assemble("q", CHUNKS))

        assert [e.type for e in events] == ["content", "error"]
        assert provider.calls == 1

    async def test_unexpected_error_before_output_is_retried(self):
        provider = FakeProvider(streams=[
            [TimeoutError("read timed out")],
            [ConnectionError("refused")],
            [ProviderDelta(text="ok"), ProviderDelta(input_tokens=1, output_tokens=1)],
        ])
        engine = self.make_engine(provider)

        events = await self.collect(engine, assemble("q", CHUNKS))

        assert [e.type for e in events] == ["content", "done"]
        assert provider.calls == 3
        assert provider.closed == 3

    async def test_unexpected_errors_exhaust_into_one_error(self):
        provider = FakeProvider(streams=[[ConnectionError("refused")] for _ in range(3)])
        engine = self.make_engine(provider)

        events = await self.collect(engine, assemble("q", CHUNKS))

        assert [e.type for e in events] == ["error"]
        assert events[0].message == ProviderError.user_message
        assert provider.calls == 3

    async def test_unexpected_error_after_output_ends_with_error(self):
        provider = FakeProvider(streams=[[ProviderDelta(text="partial"), IndexError("no choices")]])
        engine = self.make_engine(provider)

        events = await self.collect(engine, assemble("q", CHUNKS))

        assert [e.type for e in events] == ["content", "error"]
        assert events[-1].message == ProviderError.user_message
        assert provider.calls == 1

    async def test_auth_error_ends_stream_once(self):
        provider = FakeProvider(streams=[[ProviderAuthError("permission_denied")]])
        engine = self.make_engine(provider)

        events = await self.collect(engine, assemble("q", CHUNKS))

        assert [e.type for e in events] == ["error"]
        assert provider.calls == 1

    async def test_exhausted_stream_ends_with_one_error(self):
        provider = FakeProvider(streams=[[ProviderTransientError("down")] for _ in range(3)])
        engine = self.make_engine(provider)

        events = await self.collect(engine, assemble("q", CHUNKS))

        assert [e.type for e in events] == ["error"]
        assert provider.calls == 3
        assert self.delays == [1.0, 2.0]

    async def test_missing_usage_reports_zero(self):
        provider = FakeProvider(streams=[[ProviderDelta(text="hi")]])
        engine = self.make_engine(provider)

        with self.assertLogs("tutor_chat.rag.generation", level="WARNING"):
            events = await self.collect(engine, assemble("q", CHUNKS))

        assert events[-1].type == "done"
        assert events[-1].input_tokens == 0

    async def test_closing_stream_closes_provider(self):
        provider = FakeProvider(streams=[[
            ProviderDelta(text="one"),
            ProviderDelta(text="two"),
            ProviderDelta(input_tokens=1, output_tokens=1),
        ]])
        engine = self.make_engine(provider)

        stream = engine.stream(assemble("q", CHUNKS))
        first = await stream.__anext__()
        await stream.aclose()

        assert first.text == "one"
        assert provider.closed == 1


class TestBuildResult(EngineTestCase):

    async def test_build_result(self):
        engine = self.make_engine(FakeProvider())
        result = engine.build_result("See [intro to trading @ 3:45]", 100, 50, CHUNKS)

        assert result.cost_usd == self.registry.cost(100, 50, "gpt-4o-mini")
        assert len(result.citations) == 1


if __name__ == "__main__":
    unittest.main()
