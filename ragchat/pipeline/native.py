"""Hand-rolled pipeline: direct calls, chat-message prompt layout"""
import logging
from typing import List

from langchain_core.messages import BaseMessage

from ragchat.core.logging_config import OperationLogger
from ragchat.rag.prompts import build_native_messages
from ragchat.rag.rag_types import RetrievalOutcome
from ragchat.rag.retriever import merge_candidates
from ragchat.tracing.rag_trace import trace_step
from .base import ChatPipeline, PromptInputs, RetrievalRequest

logger = logging.getLogger(__name__)


class NativeChatPipeline(ChatPipeline):

    engine = "native"

    async def retrieve_context(self, request: RetrievalRequest) -> RetrievalOutcome:
        async with OperationLogger(logger, "native retrieval", level=logging.DEBUG):
            async with trace_step("enhance", question=request.question.normalized) as step:
                enhanced = await self.enhancer.enhance(request.question.normalized, request.options)
                step.record(rewritten=enhanced.rewritten, hyde=enhanced.summary.hyde_generated is not None)

            async with trace_step("retrieve", retrieve_k=request.plan.retrieve_k) as step:
                retrieved = await self.retriever.retrieve(
                    enhanced.embedding_target,
                    request.embedding,
                    request.plan.retrieve_k,
                    request.config.similarity_threshold,
                )
                extra = self.extra_query(request, enhanced.embedding_target)
                if extra is not None:
                    base = await self.retriever.retrieve(
                        extra,
                        request.embedding,
                        request.plan.retrieve_k,
                        request.config.similarity_threshold,
                    )
                    retrieved = merge_candidates(base, retrieved, limit=request.plan.retrieve_k)
                step.record(count=len(retrieved), multi_query=extra is not None)

            async with trace_step("rank", mode=request.options.ranker_mode.value) as step:
                ranked = await self.ranker.rank(
                    request.question.normalized,
                    retrieved,
                    request.plan,
                    request.options.ranker_mode,
                    request.embedding,
                )
                step.record(count=len(ranked))

            window = self.finalize_window(ranked, request, candidates=retrieved)

        return RetrievalOutcome(
            window=window,
            enhancements=enhanced.summary,
            retrieved=retrieved,
            plan=request.plan,
        )

    def build_messages(self, inputs: PromptInputs) -> List[BaseMessage]:
        return build_native_messages(
            inputs.system_prompt,
            inputs.routed,
            inputs.window,
            inputs.history.preserved,
            inputs.history.summary_memory,
        )
