"""
Retrieval sizing

Reconciles the retrieve/rerank/final document counts into one plan where
``final_k <= rerank_k <= retrieve_k`` (or ``final_k <= retrieve_k`` without
reranking). Reapplying the function to its own output returns the same plan.
"""
from typing import Optional

from .rag_types import RagKPlan

DEFAULT_RERANK_K = 20


def _positive(value: Optional[int], default: int = 1) -> int:
    if value is None:
        return default
    return max(1, int(value))


def normalize_rag_k(
    retrieve_k: int,
    rerank_k: Optional[int],
    final_k: int,
    rerank_enabled: bool,
) -> RagKPlan:
    retrieve_k = _positive(retrieve_k)
    final_k = _positive(final_k)

    if not rerank_enabled:
        retrieve = max(retrieve_k, final_k)
        return RagKPlan(retrieve_k=retrieve, rerank_k=None, final_k=min(final_k, retrieve))

    retrieve_base = max(retrieve_k, final_k)
    if rerank_k is not None:
        rerank_base = _positive(rerank_k)
    else:
        rerank_base = min(retrieve_base, DEFAULT_RERANK_K)

    retrieve = max(retrieve_base, rerank_base)
    rerank = min(rerank_base, retrieve)
    return RagKPlan(retrieve_k=retrieve, rerank_k=rerank, final_k=min(final_k, rerank))


def plan_for_request(
    rag_top_k: int,
    ranker_mode: str,
    retrieve_k: Optional[int] = None,
    rerank_k: Optional[int] = None,
) -> RagKPlan:
    """Plan for a chat turn: the candidate pool defaults to four times the final count"""
    return normalize_rag_k(
        retrieve_k=retrieve_k if retrieve_k is not None else rag_top_k * 4,
        rerank_k=rerank_k,
        final_k=rag_top_k,
        rerank_enabled=ranker_mode != "none",
    )
