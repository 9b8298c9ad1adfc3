"""
Test configuration

Shared fixtures: deterministic token counter, fake chat models, fake
provider strategies, an in-memory vector backend and a fully wired chat
service built from them.
"""
import pytest
import sys
import os
from typing import Any, Dict, List, Optional

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from langchain_core.embeddings import Embeddings
from langchain_core.messages import AIMessage, AIMessageChunk

from ragchat.config import (
    DEFAULT_CHITCHAT_KEYWORDS,
    DEFAULT_FALLBACK_CHITCHAT,
    DEFAULT_FALLBACK_COMMAND,
    Settings,
)
from ragchat.core.token_counter import ApproximateTokenCounter
from ragchat.llm.providers import ProviderStrategy
from ragchat.rag.rag_types import GuardrailConfig, RetrievedItem, SummaryConfig
from ragchat.rag.vector_search import VectorSearchBackend


class FakeChatModel:
    """Chat model double; records every call and how far its stream was pulled"""

    def __init__(
        self,
        chunks=(),
        error: Optional[Exception] = None,
        fail_after: Optional[int] = None,
        response: str = "rewritten query",
    ):
        self.chunks = list(chunks)
        self.error = error
        self.fail_after = fail_after
        self.response = response
        self.stream_calls: List[Any] = []
        self.invoke_calls: List[Any] = []
        self.pulled = 0
        self.closed = False

    async def astream(self, messages):
        self.stream_calls.append(messages)
        try:
            if self.error is not None and self.fail_after is None:
                raise self.error
            for index, chunk in enumerate(self.chunks):
                if self.fail_after is not None and index >= self.fail_after:
                    raise self.error
                self.pulled += 1
                yield AIMessageChunk(content=chunk) if isinstance(chunk, str) else chunk
        finally:
            self.closed = True

    async def ainvoke(self, messages):
        self.invoke_calls.append(messages)
        if self.error is not None:
            raise self.error
        return AIMessage(content=self.response)


class FakeEmbeddings(Embeddings):
    """Tiny deterministic vectors"""

    def __init__(self):
        self.query_calls: List[str] = []
        self.document_calls: List[List[str]] = []

    def _vector(self, text: str) -> List[float]:
        return [float(len(text) % 7 + 1), float(text.count("a") + 1), 1.0]

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        self.document_calls.append(list(texts))
        return [self._vector(t) for t in texts]

    def embed_query(self, text: str) -> List[float]:
        self.query_calls.append(text)
        return self._vector(text)


class FakeStrategy(ProviderStrategy):
    """
    Provider strategy returning prepared chat models by candidate name

    ``retry_on`` lists error message snippets treated as retryable.
    """

    def __init__(
        self,
        name: str = "openai",
        models: Optional[Dict[str, FakeChatModel]] = None,
        default: str = "gpt-4o-mini",
        candidate_list: Optional[List[str]] = None,
        retry_on: tuple = (),
        enabled: bool = True,
    ):
        super().__init__(make_settings())
        self.name = name
        self.models = models or {}
        self._default = default
        self.candidate_list = candidate_list
        self.retry_on = retry_on
        self.enabled = enabled
        self.created: List[str] = []
        self.embeddings = FakeEmbeddings()

    @property
    def default_model(self) -> str:
        return self._default

    def client_config(self) -> Dict[str, Any]:
        return {"api_key": "test-key", "base_url": "http://provider.test/v1"}

    def is_enabled(self) -> bool:
        return self.enabled

    def candidates(self, model: str) -> List[str]:
        return list(self.candidate_list) if self.candidate_list else [model]

    def is_retryable(self, candidate: str, error: BaseException) -> bool:
        return any(snippet in str(error).lower() for snippet in self.retry_on)

    def create_chat_model(self, model, temperature=0.0, max_tokens=None, **kwargs):
        self.created.append(model)
        if model not in self.models:
            self.models[model] = FakeChatModel(chunks=["ok"])
        return self.models[model]

    def create_embeddings(self, model):
        return self.embeddings


class FakeVectorBackend(VectorSearchBackend):

    def __init__(self, rows: Optional[List[Dict[str, Any]]] = None, error: Optional[Exception] = None):
        self.rows = rows or []
        self.error = error
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    async def match(self, function, query_embedding, similarity_threshold, match_count):
        self.calls.append({
            "function": function,
            "embedding": query_embedding,
            "threshold": similarity_threshold,
            "count": match_count,
        })
        if self.error is not None:
            raise self.error
        rows = [r for r in self.rows if r.get("similarity", 0) >= similarity_threshold]
        return rows[:match_count]

    async def aclose(self):
        self.closed = True


def make_settings(**overrides) -> Settings:
    values = {
        "OPENAI_API_KEY": "test-key",
        "GEMINI_API_KEY": "test-key",
        "SUPABASE_URL": "http://supabase.test",
        "CHAT_SIMILARITY_THRESHOLD": 0.5,
        "RAG_TOP_K": 2,
        "TELEMETRY_SAMPLE_RATE": 1.0,
        "TOKEN_ESTIMATOR": "approximate",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_item(
    chunk: str,
    similarity: float,
    doc_id: Optional[str] = None,
    title: Optional[str] = None,
    url: Optional[str] = None,
    **metadata,
) -> RetrievedItem:
    meta = dict(metadata)
    if doc_id is not None:
        meta["doc_id"] = doc_id
    if title is not None:
        meta["title"] = title
    if url is not None:
        meta["source_url"] = url
    return RetrievedItem(chunk=chunk, similarity=similarity, metadata=meta, id=doc_id)


def make_row(doc_id: str, chunk: str, similarity: float, title: str = None, url: str = None, **extra) -> Dict[str, Any]:
    row = {
        "id": f"{doc_id}-chunk",
        "doc_id": doc_id,
        "chunk": chunk,
        "similarity": similarity,
        "title": title or f"Doc {doc_id}",
        "source_url": url or f"https://docs.test/{doc_id}",
        "metadata": {},
    }
    row.update(extra)
    return row


@pytest.fixture
def counter():
    return ApproximateTokenCounter()


@pytest.fixture
def guardrail_config():
    return GuardrailConfig(
        similarity_threshold=0.5,
        rag_top_k=2,
        rag_context_token_budget=200,
        rag_context_clip_tokens=64,
        history_token_budget=200,
        summary=SummaryConfig(enabled=True, trigger_tokens=200, max_turns=6, max_chars=600),
        chitchat_keywords=tuple(k.strip() for k in DEFAULT_CHITCHAT_KEYWORDS.split(",")),
        fallback_chitchat=DEFAULT_FALLBACK_CHITCHAT,
        fallback_command=DEFAULT_FALLBACK_COMMAND,
    )


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def three_doc_rows():
    return [
        make_row("a", "Alpha explains the install steps.", 0.92),
        make_row("b", "Beta covers configuration keys.", 0.88),
        make_row("c", "Gamma lists known issues.", 0.81),
    ]


@pytest.fixture
def build_service(settings):
    """Factory for a ChatTurnService wired with fakes"""
    from ragchat.core.config_cache import ConfigCache, SettingsConfigStore
    from ragchat.core.stream_interrupt import StreamInterruptManager
    from ragchat.llm.embeddings import EmbeddingService
    from ragchat.llm.resolver import ModelResolver
    from ragchat.llm.streamer import GenerationStreamer
    from ragchat.pipeline.langchain_chain import LangChainChatPipeline
    from ragchat.pipeline.native import NativeChatPipeline
    from ragchat.pipeline.service import ChatTurnService, make_llm_factory
    from ragchat.rag.query_enhancer import QueryEnhancer
    from ragchat.rag.ranker import Ranker
    from ragchat.rag.retriever import Retriever
    from ragchat.rag.url_resolver import CanonicalUrlLookup
    from ragchat.tracing.telemetry import TelemetryEmitter, TelemetrySink

    class MemorySink(TelemetrySink):
        def __init__(self):
            self.events = []

        async def emit(self, event):
            self.events.append(event)

    def factory(rows=None, strategy=None, backend=None, service_settings=None):
        service_settings = service_settings or settings
        strategy = strategy or FakeStrategy()
        strategies = {"openai": strategy}
        backend = backend or FakeVectorBackend(rows or [])
        counter = ApproximateTokenCounter()
        embeddings = EmbeddingService(strategies, cache_enabled=False)
        retriever = Retriever(backend, embeddings, CanonicalUrlLookup())
        ranker = Ranker(embeddings)
        enhancer = QueryEnhancer(make_llm_factory(strategies))
        sink = MemorySink()

        service = ChatTurnService(
            settings=service_settings,
            config_cache=ConfigCache(SettingsConfigStore(), service_settings, ttl_seconds=60),
            resolver=ModelResolver(strategies, "openai", "openai"),
            pipelines={
                "native": NativeChatPipeline(enhancer, retriever, ranker, counter),
                "langchain": LangChainChatPipeline(enhancer, retriever, ranker, counter),
            },
            streamer=GenerationStreamer(strategies),
            telemetry=TelemetryEmitter(sink, sample_rate=1.0, detail_level="verbose"),
            counter=counter,
            interrupts=StreamInterruptManager(),
        )
        service.test_backend = backend
        service.test_strategy = strategy
        service.test_sink = sink
        return service

    return factory
