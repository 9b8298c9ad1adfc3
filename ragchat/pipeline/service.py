"""
Chat turn service

One chat turn in three phases:
1. prepare: validate, route, window the history, run the knowledge path of
   the selected pipeline, assemble the prompt and the guardrail meta
2. open_stream: resolve the first delta, falling back across candidates
3. stream_body: forward deltas, then the citations block

Everything that can fail with a status code happens before the first byte,
so callers can still answer with a JSON error.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional

from langchain_core.messages import BaseMessage

from ragchat.config import Settings
from ragchat.core.config_cache import ChatRuntimeConfig, ConfigCache, build_config_store
from ragchat.core.exceptions import ValidationError
from ragchat.core.stream_interrupt import StreamInterruptManager, get_stream_interrupt_manager
from ragchat.core.token_counter import get_token_counter
from ragchat.core.ttl_cache import TTLCache, hash_payload
from ragchat.llm.embeddings import EmbeddingService
from ragchat.llm.providers import ProviderStrategy, build_provider_strategies
from ragchat.llm.resolver import EmbeddingSelection, ModelResolver, ModelSelection
from ragchat.llm.streamer import CommittedStream, GenerationStreamer, TextDelta
from ragchat.rag.citations import aggregate_citations, format_citations_block
from ragchat.rag.guardrail_meta import (
    GUARDRAIL_META_HEADER,
    GuardrailMeta,
    build_guardrail_meta,
    serialize_guardrail_meta,
)
from ragchat.rag.history_window import apply_history_window
from ragchat.rag.intent_router import IntentRouter, build_intent_fallback
from ragchat.rag.k_plan import plan_for_request
from ragchat.rag.normalizer import latest_user_turn, normalize_question, sanitize_messages
from ragchat.rag.query_enhancer import EnhancementOptions, QueryEnhancer, parse_reverse_rag_mode
from ragchat.rag.ranker import Ranker, RankingWeights, parse_ranker_mode
from ragchat.rag.rag_types import Citation, EnhancementSummary, HistoryWindow, RetrievalOutcome, RoutedQuestion
from ragchat.rag.retriever import Retriever
from ragchat.rag.url_resolver import CanonicalUrlLookup
from ragchat.rag.vector_search import VectorSearchFactory
from ragchat.tracing.rag_trace import TurnTrace, start_turn_trace, trace_step
from ragchat.tracing.telemetry import LoggingTelemetrySink, TelemetryDecision, TelemetryEmitter
from .base import ChatPipeline, PromptInputs, RetrievalRequest
from .langchain_chain import LangChainChatPipeline
from .native import NativeChatPipeline

logger = logging.getLogger(__name__)

SESSION_HEADER = "X-Chat-Session"
CANDIDATE_HEADER = "X-Model-Candidate"

ENGINE_ALIASES = {
    "native": "native",
    "direct": "native",
    "langchain": "langchain",
    "lc": "langchain",
    "chain": "langchain",
}


@dataclass
class PreparedTurn:
    """Everything decided before the first output byte"""
    session_id: str
    engine: str
    selection: ModelSelection
    embedding: EmbeddingSelection
    routed: RoutedQuestion
    history: HistoryWindow
    outcome: RetrievalOutcome
    messages: List[BaseMessage]
    citations: List[Citation]
    meta: GuardrailMeta
    runtime: ChatRuntimeConfig
    trace: TurnTrace
    telemetry: TelemetryDecision
    temperature: float
    max_tokens: Optional[int]
    # set when a finished answer for the same prompt is cached
    response_key: Optional[str] = None
    cached_answer: Optional[Dict[str, str]] = None
    released: bool = False


class ChatTurnService:

    def __init__(
        self,
        settings: Settings,
        config_cache: ConfigCache,
        resolver: ModelResolver,
        pipelines: Dict[str, ChatPipeline],
        streamer: GenerationStreamer,
        telemetry: TelemetryEmitter,
        counter,
        interrupts: Optional[StreamInterruptManager] = None,
        retrieval_cache: Optional[TTLCache] = None,
        response_cache: Optional[TTLCache] = None,
    ):
        self.settings = settings
        self.config_cache = config_cache
        self.resolver = resolver
        self.pipelines = pipelines
        self.streamer = streamer
        self.telemetry = telemetry
        self.counter = counter
        self.interrupts = interrupts or get_stream_interrupt_manager()
        if retrieval_cache is None:
            retrieval_cache = TTLCache("retrieval", settings.RETRIEVAL_CACHE_TTL_SECONDS, settings.CACHE_MAX_ENTRIES)
        if response_cache is None:
            response_cache = TTLCache("response", settings.RESPONSE_CACHE_TTL_SECONDS, settings.CACHE_MAX_ENTRIES)
        self.retrieval_cache = retrieval_cache
        self.response_cache = response_cache

    def pipeline_for(self, engine: Optional[str] = None) -> ChatPipeline:
        requested = (engine or self.settings.CHAT_ENGINE or "native").strip().lower()
        name = ENGINE_ALIASES.get(requested)
        if name is None or name not in self.pipelines:
            raise ValidationError(f"Unsupported chat engine: {engine}", field="engine", value=engine)
        return self.pipelines[name]

    def enhancement_options(self, payload, selection: ModelSelection) -> EnhancementOptions:
        settings = self.settings
        return EnhancementOptions(
            reverse_rag_enabled=(
                payload.reverseRagEnabled if payload.reverseRagEnabled is not None
                else settings.REVERSE_RAG_ENABLED
            ),
            reverse_rag_mode=parse_reverse_rag_mode(payload.reverseRagMode, settings.REVERSE_RAG_MODE),
            hyde_enabled=payload.hydeEnabled if payload.hydeEnabled is not None else settings.HYDE_ENABLED,
            ranker_mode=parse_ranker_mode(payload.rankerMode, settings.RAG_RANKER_MODE),
            multi_query_enabled=settings.MULTI_QUERY_ENABLED,
            selection=selection,
        )

    def retrieval_key(self, engine: str, request: RetrievalRequest) -> str:
        options = request.options
        selection = options.selection
        return hash_payload({
            "engine": engine,
            "question": request.question.normalized,
            "config": request.config.to_snapshot(),
            "plan": [request.plan.retrieve_k, request.plan.rerank_k, request.plan.final_k],
            "embedding": [request.embedding.provider, request.embedding.model],
            "reverseRag": [options.reverse_rag_enabled, options.reverse_rag_mode.value],
            "hyde": options.hyde_enabled,
            "ranker": options.ranker_mode.value,
            "multiQuery": options.multi_query_enabled,
            # rewrites and hyde passages come from the chat model
            "model": [selection.provider, selection.model] if selection else None,
        })

    async def retrieve_cached(self, pipeline: ChatPipeline, request: RetrievalRequest) -> RetrievalOutcome:
        """Knowledge path of the turn, served from the retrieval cache when warm"""
        if not self.retrieval_cache.enabled:
            return await pipeline.retrieve_context(request)

        key = self.retrieval_key(pipeline.engine, request)
        with trace_step("retrieval_cache") as step:
            outcome = self.retrieval_cache.get(key)
            step.record(hit=outcome is not None)
        if outcome is None:
            outcome = await pipeline.retrieve_context(request)
            self.retrieval_cache.set(key, outcome)
        return outcome

    def response_key(
        self,
        engine: str,
        routed: RoutedQuestion,
        selection: ModelSelection,
        messages: List[BaseMessage],
        temperature: float,
        max_tokens: Optional[int],
    ) -> str:
        return hash_payload({
            "engine": engine,
            "intent": routed.intent.value,
            "provider": selection.provider,
            "model": selection.model,
            "temperature": temperature,
            "maxTokens": max_tokens,
            "messages": [{"role": m.type, "content": m.content} for m in messages],
        })

    async def prepare(self, payload, engine: Optional[str] = None) -> PreparedTurn:
        """
        Raises:
            ValidationError: empty or malformed conversation, bad provider/model
            ProviderUnavailableError: the requested provider is disabled
            RetrievalError / EmbeddingError: the knowledge path failed
        """
        pipeline = self.pipeline_for(engine)

        turns = sanitize_messages(payload.messages)
        latest = latest_user_turn(turns)
        question = normalize_question(latest.content)

        selection = self.resolver.resolve(payload.provider, payload.model)
        embedding = self.resolver.resolve_embedding(payload.embeddingProvider, payload.embeddingModel)
        runtime = await self.config_cache.get()
        guardrails = runtime.guardrails

        trace = start_turn_trace(question.normalized, pipeline.engine, {
            "provider": selection.provider,
            "model": selection.model,
            "embeddingModel": embedding.model,
        })
        decision = self.telemetry.decide()

        try:
            with trace_step("route") as step:
                routed = IntentRouter(guardrails).route(question, turns)
                step.record(intent=routed.intent.value, reason=routed.reason)

            with trace_step("history") as step:
                history = apply_history_window(turns, guardrails, self.counter)
                step.record(tokens=history.token_count, trimmed=len(history.trimmed))

            options = self.enhancement_options(payload, selection)
            plan = plan_for_request(
                guardrails.rag_top_k,
                options.ranker_mode.value,
                self.settings.RAG_RETRIEVE_K,
                self.settings.RAG_RERANK_K,
            )

            if routed.needs_retrieval:
                request = RetrievalRequest(
                    question=question,
                    config=guardrails,
                    plan=plan,
                    embedding=embedding,
                    options=options,
                )
                outcome = await self.retrieve_cached(pipeline, request)
            else:
                outcome = RetrievalOutcome(
                    window=build_intent_fallback(routed.intent, guardrails),
                    enhancements=EnhancementSummary(
                        reverse_rag_enabled=options.reverse_rag_enabled,
                        reverse_rag_mode=options.reverse_rag_mode.value,
                        original=question.normalized,
                        rewritten=question.normalized,
                        hyde_enabled=options.hyde_enabled,
                        ranker_mode=options.ranker_mode.value,
                    ),
                )

            messages = pipeline.build_messages(
                PromptInputs(
                    system_prompt=runtime.system_prompt,
                    routed=routed,
                    window=outcome.window,
                    history=history,
                )
            )
        except Exception as e:
            self.telemetry.flush(trace, decision, status="error", error=str(e))
            raise

        citations = aggregate_citations(outcome.window.included)
        meta = build_guardrail_meta(
            routed=routed,
            history=history,
            window=outcome.window,
            config=guardrails,
            enhancements=outcome.enhancements,
            provider=selection.provider,
            llm_model=selection.model,
            embedding_model=embedding.model,
            engine=pipeline.engine,
            retrieved=len(outcome.retrieved),
            counter=self.counter,
        )

        self.telemetry.observe(trace, decision, "guardrails", meta.model_dump(by_alias=True))

        temperature = (
            payload.temperature if payload.temperature is not None
            else self.settings.DEFAULT_TEMPERATURE
        )
        max_tokens = payload.maxTokens or self.settings.DEFAULT_MAX_TOKENS

        response_key = None
        cached_answer = None
        if self.response_cache.enabled:
            response_key = self.response_key(pipeline.engine, routed, selection, messages, temperature, max_tokens)
            cached_answer = self.response_cache.get(response_key)
            if cached_answer is not None:
                logger.info(f"serving cached answer for '{question.normalized[:40]}'")

        return PreparedTurn(
            session_id=str(uuid.uuid4()),
            engine=pipeline.engine,
            selection=selection,
            embedding=embedding,
            routed=routed,
            history=history,
            outcome=outcome,
            messages=messages,
            citations=citations,
            meta=meta,
            runtime=runtime,
            trace=trace,
            telemetry=decision,
            temperature=temperature,
            max_tokens=max_tokens,
            response_key=response_key,
            cached_answer=cached_answer,
        )

    async def open_stream(self, prepared: PreparedTurn) -> CommittedStream:
        """
        Register the interrupt session and wait for the first delta

        Raises:
            GenerationError: every candidate failed before producing output
        """
        session = await self.interrupts.create_session(prepared.session_id, prepared.engine)
        if prepared.cached_answer is not None:
            answer = prepared.cached_answer
            with trace_step("generation_open", model=answer["model"]) as step:
                step.record(candidate=answer["model"], cached=True)
            session.model = answer["model"]
            return CommittedStream(
                prepared.selection.provider,
                answer["model"],
                None,
                TextDelta(text=answer["output"]),
                attempted=[],
            )

        try:
            with trace_step("generation_open", model=prepared.selection.model) as step:
                stream = await self.streamer.open(
                    prepared.selection,
                    prepared.messages,
                    temperature=prepared.temperature,
                    max_tokens=prepared.max_tokens,
                    cancel_event=session.cancel_event,
                )
                step.record(candidate=stream.model, attempted=stream.attempted)
            session.model = stream.model
        except BaseException as e:
            self.interrupts.discard_session(prepared.session_id)
            if isinstance(e, Exception):
                self.telemetry.flush(prepared.trace, prepared.telemetry, status="error", error=str(e))
            raise
        return stream

    def response_headers(self, prepared: PreparedTurn, stream: CommittedStream) -> Dict[str, str]:
        return {
            GUARDRAIL_META_HEADER: serialize_guardrail_meta(prepared.meta),
            SESSION_HEADER: prepared.session_id,
            CANDIDATE_HEADER: stream.model,
            "Cache-Control": "no-cache",
        }

    async def stream_body(self, prepared: PreparedTurn, stream: CommittedStream) -> AsyncIterator[str]:
        """
        Deltas, then the citations block when the stream ran to completion

        A client abort or an interrupt ends the body silently; a mid-stream
        provider failure ends it without citations.
        """
        status = "cancelled"
        parts: List[str] = []
        try:
            async for delta in stream:
                parts.append(delta.text)
                yield delta.text

            if stream.completed and not (stream.cancelled or stream.failed):
                status = "completed"
                if prepared.response_key and prepared.cached_answer is None and parts:
                    self.response_cache.set(prepared.response_key, {"output": "".join(parts), "model": stream.model})
                yield format_citations_block(prepared.citations)
            elif stream.failed:
                status = "failed"
        except (asyncio.CancelledError, GeneratorExit):
            logger.info(f"chat stream {prepared.session_id[:8]} closed by client")
            raise
        finally:
            await self.release(prepared, stream, status)

    async def release(self, prepared: PreparedTurn, stream: CommittedStream, status: str = "cancelled") -> None:
        """
        End the turn: drop the interrupt session, flush telemetry and close
        the upstream stream

        Runs once per turn. Called from the body's cleanup and again by the
        response once sending stops, which covers a client that left before
        the body was ever iterated.
        """
        if prepared.released:
            return
        prepared.released = True
        self.interrupts.discard_session(prepared.session_id)
        self.telemetry.flush(
            prepared.trace,
            prepared.telemetry,
            status=status,
            config_snapshot=prepared.runtime.to_snapshot(),
            retrieved=prepared.outcome.retrieved,
            error=str(stream.error) if stream.error else None,
        )
        await stream.aclose()

    async def aclose(self) -> None:
        await self.telemetry.drain()
        backends = {id(p.retriever.backend): p.retriever.backend for p in self.pipelines.values()}
        for backend in backends.values():
            await backend.aclose()


def make_llm_factory(strategies: Dict[str, ProviderStrategy]):
    def factory(selection: ModelSelection, temperature: float, max_tokens: int):
        strategy = strategies[selection.provider]
        return strategy.create_chat_model(selection.model, temperature=temperature, max_tokens=max_tokens)
    return factory


def build_chat_service(settings: Settings) -> ChatTurnService:
    """Wire the production collaborators from settings"""
    strategies = build_provider_strategies(settings)
    resolver = ModelResolver(
        strategies,
        default_provider=settings.DEFAULT_LLM_PROVIDER,
        default_embedding_provider=settings.DEFAULT_EMBEDDING_PROVIDER,
    )
    counter = get_token_counter(settings.TOKEN_ESTIMATOR)
    embeddings = EmbeddingService(strategies)

    backend = VectorSearchFactory.create(
        "supabase",
        base_url=settings.SUPABASE_URL,
        api_key=settings.SUPABASE_SERVICE_ROLE_KEY,
        timeout=settings.VECTOR_SEARCH_TIMEOUT,
    )
    retriever = Retriever(
        backend,
        embeddings,
        CanonicalUrlLookup.from_file(settings.DOC_URL_MAP_PATH, settings.PUBLIC_SITE_URL),
    )
    ranker = Ranker(
        embeddings,
        reranker_model=settings.RERANKER_MODEL,
        weights=RankingWeights(settings.RAG_DOC_TYPE_WEIGHTS, settings.RAG_PERSONA_WEIGHTS),
    )
    enhancer = QueryEnhancer(make_llm_factory(strategies))

    pipelines = {
        NativeChatPipeline.engine: NativeChatPipeline(enhancer, retriever, ranker, counter),
        LangChainChatPipeline.engine: LangChainChatPipeline(enhancer, retriever, ranker, counter),
    }

    return ChatTurnService(
        settings=settings,
        config_cache=ConfigCache(build_config_store(settings), settings, settings.CHAT_CONFIG_TTL_SECONDS),
        resolver=resolver,
        pipelines=pipelines,
        streamer=GenerationStreamer(strategies),
        telemetry=TelemetryEmitter(
            LoggingTelemetrySink(),
            sample_rate=settings.TELEMETRY_SAMPLE_RATE,
            detail_level=settings.TELEMETRY_DETAIL_LEVEL,
        ),
        counter=counter,
    )
