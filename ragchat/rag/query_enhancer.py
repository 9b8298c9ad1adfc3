"""
Query enhancement

Functions:
1. Reverse-RAG: rewrite the question into a search-engine friendly query
2. HyDE: draft a hypothetical answer passage and embed that instead

Both stages are accuracy optimizations. Any model failure is logged and the
stage falls back to its identity behaviour.
"""
from dataclasses import dataclass
from typing import Any, Callable, Optional
import logging

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from ragchat.core.exceptions import EnhancementError
from .rag_types import EnhancementSummary, RankerMode, ReverseRagMode

logger = logging.getLogger(__name__)


REWRITE_SYSTEM_PROMPT = (
    "You rewrite user questions into concise search queries optimized for a "
    "document search engine. Return only the rewritten query."
)

REWRITE_MODE_DESCRIPTIONS = {
    ReverseRagMode.PRECISION: "Focus the search terms on the most specific and distinguishing concepts.",
    ReverseRagMode.RECALL: "Include broader synonyms or related topics to cast a wider net.",
}

HYDE_SYSTEM_PROMPT = (
    "You are generating a hypothetical document that could plausibly answer "
    "the user question. Provide a short passage that contains potential "
    "statements or facts."
)

REWRITE_TEMPERATURE = 0.2
REWRITE_MAX_TOKENS = 64
HYDE_TEMPERATURE = 0.35
HYDE_MAX_TOKENS = 220

# (selection, temperature, max_tokens) -> chat model
LLMFactory = Callable[[Any, float, int], BaseChatModel]


@dataclass
class EnhancementOptions:
    reverse_rag_enabled: bool = False
    reverse_rag_mode: ReverseRagMode = ReverseRagMode.PRECISION
    hyde_enabled: bool = False
    ranker_mode: RankerMode = RankerMode.NONE
    multi_query_enabled: bool = False
    # chat model of the turn; enhancement calls use the same model
    selection: Any = None


@dataclass
class EnhancedQuery:
    rewritten: str
    embedding_target: str
    summary: EnhancementSummary


def parse_reverse_rag_mode(value: Optional[str], default: str = ReverseRagMode.PRECISION.value) -> ReverseRagMode:
    try:
        return ReverseRagMode((value or default).strip().lower())
    except ValueError:
        return ReverseRagMode.PRECISION


def _message_text(response: Any) -> str:
    content = getattr(response, "content", response)
    if isinstance(content, list):
        content = "".join(
            part.get("text", "") if isinstance(part, dict) else str(part)
            for part in content
        )
    return content.strip() if isinstance(content, str) else ""


class QueryEnhancer:

    def __init__(self, llm_factory: LLMFactory):
        self.llm_factory = llm_factory

    async def _complete(
        self,
        stage: str,
        selection: Any,
        system: str,
        user: str,
        temperature: float,
        max_tokens: int,
    ) -> str:
        try:
            llm = self.llm_factory(selection, temperature, max_tokens)
            response = await llm.ainvoke([SystemMessage(content=system), HumanMessage(content=user)])
        except Exception as e:
            raise EnhancementError(f"{stage} call failed: {e}", stage=stage, cause=e)

        text = _message_text(response)
        if not text:
            raise EnhancementError(f"{stage} returned an empty response", stage=stage)
        return text

    async def rewrite(
        self,
        question: str,
        mode: ReverseRagMode = ReverseRagMode.PRECISION,
        selection: Any = None,
    ) -> str:
        """Rewritten query, or the original question when the call fails"""
        if not question or not question.strip():
            return question

        user_prompt = f"Mode: {mode.value} ({REWRITE_MODE_DESCRIPTIONS[mode]})\nQuestion:\n{question}"
        try:
            return await self._complete(
                "reverse_rag", selection, REWRITE_SYSTEM_PROMPT, user_prompt,
                REWRITE_TEMPERATURE, REWRITE_MAX_TOKENS,
            )
        except EnhancementError as e:
            logger.warning(f"query rewrite skipped: {e.message}")
            return question

    async def generate_hyde(self, query: str, selection: Any = None) -> Optional[str]:
        """Hypothetical passage, or None when the call fails"""
        if not query or not query.strip():
            return None

        try:
            return await self._complete(
                "hyde", selection, HYDE_SYSTEM_PROMPT, f"Question:\n{query}",
                HYDE_TEMPERATURE, HYDE_MAX_TOKENS,
            )
        except EnhancementError as e:
            logger.warning(f"HyDE skipped: {e.message}")
            return None

    async def enhance(self, question: str, options: EnhancementOptions) -> EnhancedQuery:
        rewritten = question
        if options.reverse_rag_enabled:
            rewritten = await self.rewrite(question, options.reverse_rag_mode, options.selection)

        generated = None
        if options.hyde_enabled:
            generated = await self.generate_hyde(rewritten, options.selection)

        summary = EnhancementSummary(
            reverse_rag_enabled=options.reverse_rag_enabled,
            reverse_rag_mode=options.reverse_rag_mode.value,
            original=question,
            rewritten=rewritten,
            hyde_enabled=options.hyde_enabled,
            hyde_generated=generated,
            ranker_mode=options.ranker_mode.value,
        )
        return EnhancedQuery(
            rewritten=rewritten,
            embedding_target=generated or rewritten,
            summary=summary,
        )
