"""
Chat turn service tests

End-to-end turns through both engines with fake providers and an in-memory
vector backend:
1. Smalltalk short-circuits retrieval
2. Knowledge turns admit the best chunks and cite them
3. Candidate fallback before the first byte
4. Client abort, interrupt and mid-stream failure
5. Errors raised before streaming
"""
import json

import pytest

from ragchat.api.schemas import ChatRequest, MessageIn
from ragchat.config import DEFAULT_FALLBACK_CHITCHAT
from ragchat.core.exceptions import EmbeddingError, GenerationError, RetrievalError, ValidationError
from ragchat.rag.citations import CITATIONS_SENTINEL
from ragchat.rag.guardrail_meta import GUARDRAIL_META_HEADER, deserialize_guardrail_meta
from ragchat.pipeline.service import CANDIDATE_HEADER, SESSION_HEADER

from conftest import FakeChatModel, FakeStrategy, FakeVectorBackend, make_row, make_settings

ENGINES = ["native", "langchain"]


def make_request(*messages, **options):
    if len(messages) == 1 and isinstance(messages[0], str):
        messages = [("user", messages[0])]
    return ChatRequest(
        messages=[MessageIn(role=role, content=content) for role, content in messages],
        **options,
    )


async def run_turn(service, request, engine):
    prepared = await service.prepare(request, engine=engine)
    stream = await service.open_stream(prepared)
    body = "".join([chunk async for chunk in service.stream_body(prepared, stream)])
    await service.telemetry.drain()
    return prepared, stream, body


def split_citations(body):
    text, _, payload = body.partition(CITATIONS_SENTINEL)
    return text, json.loads(payload) if payload else None


class TestSmalltalkTurn:
    """Chit-chat never touches retrieval"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("engine", ENGINES)
    async def test_no_vector_search(self, build_service, three_doc_rows, engine):
        service = build_service(rows=three_doc_rows)

        prepared, stream, body = await run_turn(service, make_request("hello there"), engine)

        assert service.test_backend.calls == []
        assert prepared.routed.intent.value == "smalltalk"
        assert prepared.outcome.window.context_block == DEFAULT_FALLBACK_CHITCHAT
        assert DEFAULT_FALLBACK_CHITCHAT in prepared.messages[0].content
        assert prepared.meta.context.insufficient is True
        assert prepared.meta.context.retrieved == 0

        text, citations = split_citations(body)
        assert text == "ok"
        assert citations == []


class TestKnowledgeTurn:
    """Retrieval, context window and citations"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("engine", ENGINES)
    async def test_best_chunks_are_admitted_and_cited(self, build_service, three_doc_rows, engine):
        service = build_service(rows=three_doc_rows)

        prepared, stream, body = await run_turn(service, make_request("How do I install the product?"), engine)

        call = service.test_backend.calls[0]
        assert call["function"] == "match_rag_chunks_openai"
        assert call["count"] == 8
        assert call["threshold"] == 0.5

        window = prepared.outcome.window
        assert [entry.doc_id for entry in window.included] == ["a", "b"]
        assert window.dropped == 1
        assert window.highest_score == 0.92
        assert prepared.meta.context.included == 2
        assert prepared.meta.context.dropped == 1
        assert prepared.meta.context.retrieved == 3
        assert prepared.meta.engine == engine

        system = prepared.messages[0].content
        assert "Alpha explains the install steps." in system
        assert "Gamma lists known issues." not in system

        text, citations = split_citations(body)
        assert text == "ok"
        assert [c["docId"] for c in citations] == ["a", "b"]
        assert citations[0]["sourceUrl"] == "https://docs.test/a"
        assert citations[0]["excerptCount"] == 1

    @pytest.mark.asyncio
    async def test_native_sends_turns_as_messages(self, build_service, three_doc_rows):
        service = build_service(rows=three_doc_rows)
        request = make_request(
            ("user", "What is covered?"),
            ("assistant", "Installation and configuration."),
            ("user", "How do I install the product?"),
        )

        prepared = await service.prepare(request, engine="native")

        assert [m.type for m in prepared.messages] == ["system", "human", "ai", "human"]

    @pytest.mark.asyncio
    async def test_langchain_renders_memory_block(self, build_service, three_doc_rows):
        service = build_service(rows=three_doc_rows)
        request = make_request(
            ("user", "What is covered?"),
            ("assistant", "Installation and configuration."),
            ("user", "How do I install the product?"),
        )

        prepared = await service.prepare(request, engine="langchain")

        assert [m.type for m in prepared.messages] == ["system", "human"]
        assert "Assistant: Installation and configuration." in prepared.messages[0].content
        assert prepared.messages[1].content == "How do I install the product?"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("engine", ENGINES)
    async def test_threshold_is_passed_to_search(self, build_service, engine):
        rows = [make_row("z", "Changelog lives in the docs.", 0.7), make_row("y", "Weak match.", 0.4)]
        service = build_service(rows=rows)

        prepared = await service.prepare(make_request("Where is the changelog?"), engine=engine)

        assert [entry.doc_id for entry in prepared.outcome.window.included] == ["z"]
        assert prepared.meta.context.retrieved == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("engine", ENGINES)
    async def test_empty_retrieval_is_insufficient(self, build_service, engine):
        service = build_service(rows=[])

        prepared, stream, body = await run_turn(service, make_request("Where is the changelog?"), engine)

        assert prepared.outcome.window.insufficient is True
        assert "No high-confidence matches" in prepared.messages[0].content
        assert split_citations(body)[1] == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("engine", ENGINES)
    async def test_reverse_rag_rewrites_the_search_query(self, build_service, three_doc_rows, engine):
        service = build_service(rows=three_doc_rows)
        request = make_request("how do i install it", reverseRagEnabled=True, reverseRagMode="recall")

        prepared = await service.prepare(request, engine=engine)

        assert service.test_strategy.embeddings.query_calls == ["rewritten query"]
        enhancements = prepared.meta.enhancements["reverseRag"]
        assert enhancements == {
            "enabled": True,
            "mode": "recall",
            "original": "how do i install it",
            "rewritten": "rewritten query",
        }

    @pytest.mark.asyncio
    async def test_telemetry_event(self, build_service, three_doc_rows):
        service = build_service(rows=three_doc_rows)

        await run_turn(service, make_request("How do I install the product?"), "native")

        event = service.test_sink.events[-1]
        assert event["engine"] == "native"
        assert event["metadata"]["status"] == "completed"
        assert [s["name"] for s in event["steps"]][:5] == ["route", "history", "enhance", "retrieve", "rank"]
        assert event["observations"][0]["name"] == "guardrails"
        assert event["config"]["ragTopK"] == 2
        assert len(event["retrieval"]) == 3

    @pytest.mark.asyncio
    async def test_response_headers(self, build_service, three_doc_rows):
        service = build_service(rows=three_doc_rows)
        prepared = await service.prepare(make_request("How do I install the product?"), engine="native")
        stream = await service.open_stream(prepared)

        headers = service.response_headers(prepared, stream)
        await stream.aclose()

        assert headers[SESSION_HEADER] == prepared.session_id
        assert headers[CANDIDATE_HEADER] == "gpt-4o-mini"
        assert deserialize_guardrail_meta(headers[GUARDRAIL_META_HEADER]) == prepared.meta


class TestTurnCaches:
    """Retrieval and answer caches"""

    QUESTION = "How do I install the product?"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("engine", ENGINES)
    async def test_retrieval_cache_skips_the_second_search(self, build_service, three_doc_rows, engine):
        service = build_service(rows=three_doc_rows, service_settings=make_settings(RETRIEVAL_CACHE_TTL_SECONDS=60))

        first, _, _ = await run_turn(service, make_request(self.QUESTION), engine)
        second, _, body = await run_turn(service, make_request(self.QUESTION), engine)

        assert len(service.test_backend.calls) == 1
        assert second.outcome is first.outcome
        assert [c["docId"] for c in split_citations(body)[1]] == ["a", "b"]
        steps = service.test_sink.events[-1]["steps"]
        assert "retrieval_cache" in [s["name"] for s in steps]
        assert "retrieve" not in [s["name"] for s in steps]

    @pytest.mark.asyncio
    async def test_retrieval_cache_is_keyed_on_the_question(self, build_service, three_doc_rows):
        service = build_service(rows=three_doc_rows, service_settings=make_settings(RETRIEVAL_CACHE_TTL_SECONDS=60))

        await run_turn(service, make_request(self.QUESTION), "native")
        await run_turn(service, make_request("What configuration keys exist?"), "native")
        await run_turn(service, make_request(self.QUESTION), "langchain")

        assert len(service.test_backend.calls) == 3

    @pytest.mark.asyncio
    async def test_caches_are_off_by_default(self, build_service, three_doc_rows):
        service = build_service(rows=three_doc_rows)

        await run_turn(service, make_request(self.QUESTION), "native")
        second, _, _ = await run_turn(service, make_request(self.QUESTION), "native")

        assert len(service.test_backend.calls) == 2
        assert second.response_key is None

    @pytest.mark.asyncio
    async def test_answer_is_replayed_from_the_response_cache(self, build_service, three_doc_rows):
        model = FakeChatModel(["Run", " the installer."])
        service = build_service(
            rows=three_doc_rows,
            strategy=FakeStrategy(models={"gpt-4o-mini": model}),
            service_settings=make_settings(RESPONSE_CACHE_TTL_SECONDS=60),
        )

        _, _, first_body = await run_turn(service, make_request(self.QUESTION), "native")
        prepared, stream, second_body = await run_turn(service, make_request(self.QUESTION), "native")

        assert len(model.stream_calls) == 1
        assert second_body == first_body
        assert split_citations(second_body)[0] == "Run the installer."
        assert prepared.cached_answer == {"output": "Run the installer.", "model": "gpt-4o-mini"}
        assert service.response_headers(prepared, stream)[CANDIDATE_HEADER] == "gpt-4o-mini"
        assert service.interrupts.get_active_sessions() == []
        assert service.test_sink.events[-1]["metadata"]["status"] == "completed"

    @pytest.mark.asyncio
    async def test_failed_answers_are_not_cached(self, build_service, three_doc_rows):
        model = FakeChatModel(["partial", "rest"], error=RuntimeError("connection reset"), fail_after=1)
        service = build_service(
            rows=three_doc_rows,
            strategy=FakeStrategy(models={"gpt-4o-mini": model}),
            service_settings=make_settings(RESPONSE_CACHE_TTL_SECONDS=60),
        )

        await run_turn(service, make_request(self.QUESTION), "native")
        prepared, _, _ = await run_turn(service, make_request(self.QUESTION), "native")

        assert len(model.stream_calls) == 2
        assert prepared.cached_answer is None


class TestMultiQuery:
    """Searching with the raw question next to the rewrite"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("engine", ENGINES)
    async def test_raw_question_is_searched_too(self, build_service, three_doc_rows, engine):
        service = build_service(rows=three_doc_rows, service_settings=make_settings(MULTI_QUERY_ENABLED=True))
        request = make_request("how do i install it", reverseRagEnabled=True)

        prepared = await service.prepare(request, engine=engine)

        assert service.test_strategy.embeddings.query_calls == ["rewritten query", "how do i install it"]
        assert len(service.test_backend.calls) == 2
        assert [item.doc_id for item in prepared.outcome.retrieved] == ["a", "b", "c"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("engine", ENGINES)
    async def test_single_search_when_the_target_is_the_question(self, build_service, three_doc_rows, engine):
        service = build_service(rows=three_doc_rows, service_settings=make_settings(MULTI_QUERY_ENABLED=True))

        await service.prepare(make_request("how do i install it"), engine=engine)

        assert len(service.test_backend.calls) == 1


class TestCandidateFallback:
    """Pre-output fallback through the service"""

    @pytest.mark.asyncio
    async def test_second_candidate_streams(self, build_service):
        strategy = FakeStrategy(
            candidate_list=["gpt-4o-mini", "gpt-4o-mini-backup"],
            retry_on=("not found",),
            models={
                "gpt-4o-mini": FakeChatModel(error=RuntimeError("404 model not found")),
                "gpt-4o-mini-backup": FakeChatModel(["Hi", " there"]),
            },
        )
        service = build_service(strategy=strategy)

        prepared, stream, body = await run_turn(service, make_request("hello"), "native")

        assert stream.model == "gpt-4o-mini-backup"
        assert service.response_headers(prepared, stream)[CANDIDATE_HEADER] == "gpt-4o-mini-backup"
        assert split_citations(body)[0] == "Hi there"

    @pytest.mark.asyncio
    async def test_every_candidate_failing_is_raised_before_streaming(self, build_service):
        strategy = FakeStrategy(models={"gpt-4o-mini": FakeChatModel(error=RuntimeError("invalid api key"))})
        service = build_service(strategy=strategy)
        prepared = await service.prepare(make_request("hello"), engine="native")

        with pytest.raises(GenerationError):
            await service.open_stream(prepared)
        await service.telemetry.drain()

        assert service.interrupts.get_active_sessions() == []
        assert service.test_sink.events[-1]["metadata"]["status"] == "error"


class TestStreamTermination:
    """Abort, interrupt and committed failures"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("engine", ENGINES)
    async def test_client_abort_stops_pulling(self, build_service, three_doc_rows, engine):
        model = FakeChatModel(["0123456789", "abc", "def", "ghi"])
        service = build_service(rows=three_doc_rows, strategy=FakeStrategy(models={"gpt-4o-mini": model}))
        prepared = await service.prepare(make_request("How do I install the product?"), engine=engine)
        stream = await service.open_stream(prepared)

        body = service.stream_body(prepared, stream)
        received = await body.__anext__()
        assert len(received.encode("utf-8")) >= 10
        await body.aclose()
        await service.telemetry.drain()

        assert model.pulled == 1
        assert model.closed is True
        assert stream.cancelled is True
        assert service.interrupts.get_active_sessions() == []
        assert service.test_sink.events[-1]["metadata"]["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_interrupt_ends_body_without_citations(self, build_service, three_doc_rows):
        model = FakeChatModel(["first", "second", "third"])
        service = build_service(rows=three_doc_rows, strategy=FakeStrategy(models={"gpt-4o-mini": model}))
        prepared = await service.prepare(make_request("How do I install the product?"), engine="native")
        stream = await service.open_stream(prepared)

        chunks = []
        async for chunk in service.stream_body(prepared, stream):
            chunks.append(chunk)
            assert await service.interrupts.interrupt(prepared.session_id) is True
        await service.telemetry.drain()

        assert chunks == ["first"]
        assert model.pulled == 1
        assert service.test_sink.events[-1]["metadata"]["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_mid_stream_failure_omits_citations(self, build_service, three_doc_rows):
        model = FakeChatModel(["partial", "more"], error=RuntimeError("connection reset"), fail_after=1)
        service = build_service(rows=three_doc_rows, strategy=FakeStrategy(models={"gpt-4o-mini": model}))

        prepared, stream, body = await run_turn(service, make_request("How do I install the product?"), "native")

        assert body == "partial"
        assert stream.failed is True
        event = service.test_sink.events[-1]
        assert event["metadata"]["status"] == "failed"
        assert "connection reset" in event["metadata"]["error"]


class TestPreStreamErrors:
    """Failures surfaced before any output"""

    @pytest.mark.asyncio
    async def test_last_message_must_be_from_user(self, build_service):
        service = build_service()

        with pytest.raises(ValidationError):
            await service.prepare(make_request(("user", "hi"), ("assistant", "hello")))

    @pytest.mark.asyncio
    async def test_blank_question(self, build_service):
        with pytest.raises(ValidationError):
            await build_service().prepare(make_request("   "))

    @pytest.mark.asyncio
    async def test_unknown_engine(self, build_service):
        with pytest.raises(ValidationError):
            await build_service().prepare(make_request("hello"), engine="graph")

    @pytest.mark.asyncio
    async def test_engine_aliases(self, build_service):
        service = build_service()

        assert service.pipeline_for("LC").engine == "langchain"
        assert service.pipeline_for("direct").engine == "native"
        assert service.pipeline_for(None).engine == "native"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("engine", ENGINES)
    async def test_vector_search_failure(self, build_service, engine):
        service = build_service(backend=FakeVectorBackend(error=ConnectionError("refused")))

        with pytest.raises(RetrievalError):
            await service.prepare(make_request("How do I install the product?"), engine=engine)
        await service.telemetry.drain()

        assert service.test_sink.events[-1]["metadata"]["status"] == "error"

    @pytest.mark.asyncio
    async def test_embedding_failure(self, build_service):
        strategy = FakeStrategy()

        class BrokenEmbeddings(type(strategy.embeddings)):
            def embed_query(self, text):
                raise RuntimeError("embedding quota exceeded")

        strategy.embeddings = BrokenEmbeddings()
        service = build_service(strategy=strategy)

        with pytest.raises(EmbeddingError):
            await service.prepare(make_request("How do I install the product?"), engine="native")
        assert service.test_backend.calls == []
