"""
Chat pipeline strategy

A pipeline owns the knowledge path of a turn (enhance, retrieve, rank, build
the context window) and the prompt layout. Everything else in a turn is
shared by the service, and both backends reuse the same sizing and context
window functions.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Sequence

from langchain_core.messages import BaseMessage

from ragchat.llm.resolver import EmbeddingSelection
from ragchat.rag.context_window import build_context_window
from ragchat.rag.query_enhancer import EnhancementOptions, QueryEnhancer
from ragchat.rag.ranker import Ranker
from ragchat.rag.rag_types import (
    ContextWindowResult,
    GuardrailConfig,
    HistoryWindow,
    NormalizedQuestion,
    RagKPlan,
    RetrievedItem,
    RoutedQuestion,
)
from ragchat.rag.retriever import Retriever


@dataclass
class RetrievalRequest:
    question: NormalizedQuestion
    config: GuardrailConfig
    plan: RagKPlan
    embedding: EmbeddingSelection
    options: EnhancementOptions


@dataclass
class PromptInputs:
    system_prompt: str
    routed: RoutedQuestion
    window: ContextWindowResult
    history: HistoryWindow


class ChatPipeline(ABC):

    engine: str = ""

    def __init__(self, enhancer: QueryEnhancer, retriever: Retriever, ranker: Ranker, counter):
        self.enhancer = enhancer
        self.retriever = retriever
        self.ranker = ranker
        self.counter = counter

    @abstractmethod
    async def retrieve_context(self, request: RetrievalRequest):
        """Run the knowledge path; returns a RetrievalOutcome"""

    @abstractmethod
    def build_messages(self, inputs: PromptInputs) -> List[BaseMessage]:
        pass

    def extra_query(self, request: RetrievalRequest, target: str) -> Optional[str]:
        """The raw question, when multi-query is on and enhancement changed the target"""
        question = request.question.normalized
        if request.options.multi_query_enabled and target != question:
            return question
        return None

    def finalize_window(
        self,
        ranked: Sequence[RetrievedItem],
        request: RetrievalRequest,
        candidates: Optional[Sequence[RetrievedItem]] = None,
    ) -> ContextWindowResult:
        return build_context_window(
            ranked,
            request.config,
            self.counter,
            final_k=request.plan.final_k,
            candidates=candidates,
        )
