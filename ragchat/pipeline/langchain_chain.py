"""
LangChain pipeline

The knowledge path runs as a runnable sequence (enhance | retrieve | rank |
window) so each stage shows up as its own run when LangSmith tracing is on.
Retrieval goes through a BaseRetriever that returns Documents; they are
mapped back to RetrievedItems before ranking so the shared context window
and citation code see the same shapes as the native pipeline.
"""
import asyncio
import logging
from typing import Any, Dict, List

from langchain_core.callbacks import AsyncCallbackManagerForRetrieverRun, CallbackManagerForRetrieverRun
from langchain_core.documents import Document
from langchain_core.messages import BaseMessage
from langchain_core.retrievers import BaseRetriever
from langchain_core.runnables import RunnableLambda

from ragchat.rag.prompts import (
    CHAIN_PROMPT,
    build_context_section,
    build_context_status,
    build_intent_line,
    build_memory_block,
)
from ragchat.rag.rag_types import RetrievalOutcome, RetrievedItem
from ragchat.rag.retriever import merge_candidates
from ragchat.tracing.rag_trace import trace_step
from .base import ChatPipeline, PromptInputs, RetrievalRequest

logger = logging.getLogger(__name__)


def item_to_document(item: RetrievedItem) -> Document:
    metadata = dict(item.metadata)
    metadata["similarity"] = item.similarity
    metadata["id"] = item.id
    return Document(page_content=item.chunk, metadata=metadata)


def document_to_item(document: Document) -> RetrievedItem:
    metadata = dict(document.metadata)
    similarity = metadata.pop("similarity", 0.0)
    item_id = metadata.pop("id", None)
    return RetrievedItem(
        chunk=document.page_content,
        similarity=float(similarity or 0.0),
        metadata=metadata,
        id=item_id,
    )


class VectorSearchRetriever(BaseRetriever):
    """Adapter exposing the vector search retriever as a LangChain retriever"""

    retriever: Any
    embedding: Any
    k: int
    similarity_threshold: float

    async def _search(self, query: str) -> List[Document]:
        items = await self.retriever.retrieve(query, self.embedding, self.k, self.similarity_threshold)
        return [item_to_document(item) for item in items]

    def _get_relevant_documents(
        self, query: str, *, run_manager: CallbackManagerForRetrieverRun
    ) -> List[Document]:
        # sync invoke from code without a running loop; the chain itself awaits
        return asyncio.run(self._search(query))

    async def _aget_relevant_documents(
        self, query: str, *, run_manager: AsyncCallbackManagerForRetrieverRun
    ) -> List[Document]:
        return await self._search(query)


class LangChainChatPipeline(ChatPipeline):

    engine = "langchain"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.chain = (
            RunnableLambda(self._enhance).with_config(run_name="enhance")
            | RunnableLambda(self._retrieve).with_config(run_name="retrieve")
            | RunnableLambda(self._rank).with_config(run_name="rank")
            | RunnableLambda(self._window).with_config(run_name="context_window")
        )

    async def _enhance(self, state: Dict[str, Any]) -> Dict[str, Any]:
        request: RetrievalRequest = state["request"]
        async with trace_step("enhance", question=request.question.normalized) as step:
            enhanced = await self.enhancer.enhance(request.question.normalized, request.options)
            step.record(rewritten=enhanced.rewritten, hyde=enhanced.summary.hyde_generated is not None)
        return {**state, "enhanced": enhanced}

    async def _retrieve(self, state: Dict[str, Any]) -> Dict[str, Any]:
        request: RetrievalRequest = state["request"]
        retriever = VectorSearchRetriever(
            retriever=self.retriever,
            embedding=request.embedding,
            k=request.plan.retrieve_k,
            similarity_threshold=request.config.similarity_threshold,
        )
        target = state["enhanced"].embedding_target
        async with trace_step("retrieve", retrieve_k=request.plan.retrieve_k) as step:
            retrieved = [document_to_item(d) for d in await retriever.ainvoke(target)]
            extra = self.extra_query(request, target)
            if extra is not None:
                base = [document_to_item(d) for d in await retriever.ainvoke(extra)]
                retrieved = merge_candidates(base, retrieved, limit=request.plan.retrieve_k)
            step.record(count=len(retrieved), multi_query=extra is not None)
        return {**state, "retrieved": retrieved}

    async def _rank(self, state: Dict[str, Any]) -> Dict[str, Any]:
        request: RetrievalRequest = state["request"]
        async with trace_step("rank", mode=request.options.ranker_mode.value) as step:
            ranked = await self.ranker.rank(
                request.question.normalized,
                state["retrieved"],
                request.plan,
                request.options.ranker_mode,
                request.embedding,
            )
            step.record(count=len(ranked))
        return {**state, "ranked": ranked}

    async def _window(self, state: Dict[str, Any]) -> RetrievalOutcome:
        request: RetrievalRequest = state["request"]
        window = self.finalize_window(state["ranked"], request, candidates=state["retrieved"])
        return RetrievalOutcome(
            window=window,
            enhancements=state["enhanced"].summary,
            retrieved=state["retrieved"],
            plan=request.plan,
        )

    async def retrieve_context(self, request: RetrievalRequest) -> RetrievalOutcome:
        return await self.chain.ainvoke(
            {"request": request},
            config={"run_name": "guardrail_retrieval", "tags": [self.engine]},
        )

    def build_messages(self, inputs: PromptInputs) -> List[BaseMessage]:
        preserved = inputs.history.preserved
        question = preserved[-1].content if preserved else inputs.routed.question.normalized
        return CHAIN_PROMPT.format_messages(
            system_prompt=inputs.system_prompt.strip(),
            intent_line=build_intent_line(inputs.routed),
            context_status=build_context_status(inputs.window),
            context_section=build_context_section(inputs.window),
            memory_block=build_memory_block(preserved, inputs.history.summary_memory),
            question=question,
        )
