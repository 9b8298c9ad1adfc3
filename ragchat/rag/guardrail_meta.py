"""
Guardrail meta

Per-turn diagnostic summary returned in the ``X-Guardrail-Meta`` header as
URL-encoded JSON with camelCase keys.
"""
from typing import Any, Dict, Optional
from urllib.parse import quote, unquote
import json

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .rag_types import (
    ContextWindowResult,
    EnhancementSummary,
    GuardrailConfig,
    HistoryWindow,
    RoutedQuestion,
)

GUARDRAIL_META_HEADER = "X-Guardrail-Meta"


class CamelModel(BaseModel):

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HistoryStats(CamelModel):
    tokens: int
    budget: int
    trimmed_turns: int
    preserved_turns: int


class ContextStats(CamelModel):
    included: int
    dropped: int
    total_tokens: int
    insufficient: bool
    retrieved: int
    similarity_threshold: float
    highest_similarity: float
    context_token_budget: int
    context_clip_tokens: int


class SummaryConfigMeta(CamelModel):
    enabled: bool
    trigger_tokens: int
    max_turns: int
    max_chars: int


class SummaryInfo(CamelModel):
    original_tokens: int
    summary_tokens: int
    trimmed_turns: int
    max_turns: int


class GuardrailMeta(CamelModel):
    intent: str
    reason: str
    history_tokens: int
    summary_applied: bool
    history: HistoryStats
    context: ContextStats
    summary_config: SummaryConfigMeta
    summary_info: Optional[SummaryInfo] = None
    enhancements: Dict[str, Any]
    provider: str
    llm_model: str
    embedding_model: Optional[str] = None
    engine: str


def build_guardrail_meta(
    routed: RoutedQuestion,
    history: HistoryWindow,
    window: ContextWindowResult,
    config: GuardrailConfig,
    enhancements: EnhancementSummary,
    provider: str,
    llm_model: str,
    embedding_model: Optional[str],
    engine: str,
    retrieved: int = 0,
    counter=None,
) -> GuardrailMeta:
    summary_info = None
    if history.summary_memory:
        summary_tokens = counter.count_tokens(history.summary_memory) if counter is not None else 0
        summary_info = SummaryInfo(
            original_tokens=history.original_tokens,
            summary_tokens=summary_tokens,
            trimmed_turns=len(history.trimmed),
            max_turns=config.summary.max_turns,
        )

    return GuardrailMeta(
        intent=routed.intent.value,
        reason=routed.reason,
        history_tokens=history.token_count,
        summary_applied=history.summary_memory is not None,
        history=HistoryStats(
            tokens=history.token_count,
            budget=config.history_token_budget,
            trimmed_turns=len(history.trimmed),
            preserved_turns=len(history.preserved),
        ),
        context=ContextStats(
            included=len(window.included),
            dropped=window.dropped,
            total_tokens=window.total_tokens,
            insufficient=window.insufficient,
            retrieved=retrieved,
            similarity_threshold=config.similarity_threshold,
            highest_similarity=window.highest_score,
            context_token_budget=config.rag_context_token_budget,
            context_clip_tokens=config.rag_context_clip_tokens,
        ),
        summary_config=SummaryConfigMeta(
            enabled=config.summary.enabled,
            trigger_tokens=config.summary.trigger_tokens,
            max_turns=config.summary.max_turns,
            max_chars=config.summary.max_chars,
        ),
        summary_info=summary_info,
        enhancements=enhancements.to_dict(),
        provider=provider,
        llm_model=llm_model,
        embedding_model=embedding_model,
        engine=engine,
    )


def serialize_guardrail_meta(meta: GuardrailMeta) -> str:
    payload = meta.model_dump(by_alias=True)
    return quote(json.dumps(payload, ensure_ascii=False, separators=(",", ":")), safe="")


def deserialize_guardrail_meta(header: str) -> GuardrailMeta:
    return GuardrailMeta.model_validate(json.loads(unquote(header)))
