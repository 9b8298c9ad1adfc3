"""
Context window builder

Greedy, best-first admission of retrieved chunks into a token-budgeted
context block. Items below the similarity floor are skipped; the first item
that would overflow the budget ends the walk. Long chunks are clipped to the
per-item clip limit rather than dropped.
"""
from typing import List, Optional, Sequence
import logging

from .rag_types import ContextItem, ContextWindowResult, GuardrailConfig, RetrievedItem

logger = logging.getLogger(__name__)

BLOCK_SEPARATOR = "\n\n---\n\n"


def build_document_label(item: RetrievedItem) -> str:
    title = (item.title or "").strip() or None
    source = (item.source_url or "").strip() or None
    if title and source:
        return f"{title} ({source})"
    return title or source or ""


def format_context_block(included: Sequence[ContextItem]) -> str:
    entries = []
    for index, entry in enumerate(included, start=1):
        header = " ".join(part for part in (f"({index})", build_document_label(entry.item)) if part)
        body = entry.text.strip()
        entries.append("\n".join(part for part in (header, body) if part))
    return BLOCK_SEPARATOR.join(entries)


def build_context_window(
    ranked: Sequence[RetrievedItem],
    config: GuardrailConfig,
    counter,
    final_k: Optional[int] = None,
    candidates: Optional[Sequence[RetrievedItem]] = None,
) -> ContextWindowResult:
    """
    Build the context window

    Args:
        ranked: items in best-first order, as produced by the ranker
        config: guardrail thresholds and budgets
        counter: token counter exposing ``clip_to_tokens``
        final_k: upper bound on included items, defaults to ``config.rag_top_k``
        candidates: every retrieved item, used for ``dropped`` and
            ``highest_score``; defaults to ``ranked``

    Returns:
        ContextWindowResult; ``insufficient`` is True iff nothing was included
    """
    limit = final_k if final_k is not None else config.rag_top_k
    ranked = [item for item in ranked if item.chunk and item.chunk.strip()]
    pool = ranked if candidates is None else [i for i in candidates if i.chunk and i.chunk.strip()]

    included: List[ContextItem] = []
    used = 0

    for item in ranked:
        if len(included) >= limit:
            break
        if item.similarity < config.similarity_threshold:
            continue

        clipped = counter.clip_to_tokens(item.chunk, config.rag_context_clip_tokens)
        if used + clipped.token_count > config.rag_context_token_budget:
            break

        used += clipped.token_count
        included.append(
            ContextItem(
                item=item,
                text=clipped.text,
                clipped=clipped.clipped,
                token_count=clipped.token_count,
            )
        )

    highest = max((item.similarity for item in pool), default=0.0)
    dropped = max(0, len(pool) - len(included))

    logger.debug(
        f"context window: {len(included)} included, {dropped} dropped, "
        f"{used}/{config.rag_context_token_budget} tokens, top={highest:.3f}"
    )

    return ContextWindowResult(
        context_block=format_context_block(included),
        included=tuple(included),
        dropped=dropped,
        total_tokens=used,
        insufficient=len(included) == 0,
        highest_score=highest,
    )
