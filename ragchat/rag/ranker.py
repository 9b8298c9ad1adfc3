"""
Ranker

Second-pass ordering of retrieved items:
- none: keep weighted similarity order, truncate to final_k
- mmr: maximal marginal relevance over re-embedded chunks, keep rerank_k
- cross-encoder: sentence-transformers CrossEncoder scores, keep rerank_k

Ranking never fails the request; any error falls back to similarity order.
"""
from typing import Callable, Dict, List, Optional, Sequence
import asyncio
import logging
import math

from ragchat.llm.embeddings import EmbeddingService
from ragchat.llm.resolver import EmbeddingSelection
from .rag_types import RagKPlan, RankerMode, RetrievedItem

logger = logging.getLogger(__name__)

MMR_LAMBDA = 0.5

DOC_TYPE_WEIGHTS: Dict[str, float] = {
    "profile": 1.15,
    "project_article": 1.15,
    "kb_article": 1.1,
    "blog_post": 1.0,
    "insight_note": 0.95,
    "other": 0.9,
    "photo": 0.3,
}

PERSONA_WEIGHTS: Dict[str, float] = {
    "professional": 1.1,
    "hybrid": 1.0,
    "personal": 0.95,
}


def parse_ranker_mode(value: Optional[str], default: str = RankerMode.NONE.value) -> RankerMode:
    text = (value or default or "").strip().lower().replace("_", "-")
    aliases = {"similarity": "mmr", "rerank": "cross-encoder", "crossencoder": "cross-encoder"}
    text = aliases.get(text, text)
    try:
        return RankerMode(text)
    except ValueError:
        logger.warning(f"unknown ranker mode '{value}', using none")
        return RankerMode.NONE


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def maximal_marginal_relevance(
    query_vector: Sequence[float],
    doc_vectors: Sequence[Sequence[float]],
    k: int,
    lambda_mult: float = MMR_LAMBDA,
) -> List[int]:
    """Indices of the selected documents, in selection order"""
    if not doc_vectors or k <= 0:
        return []

    relevance = [cosine_similarity(query_vector, v) for v in doc_vectors]
    selected: List[int] = []
    remaining = list(range(len(doc_vectors)))

    while remaining and len(selected) < k:
        best_index, best_score = remaining[0], -math.inf
        for index in remaining:
            redundancy = max(
                (cosine_similarity(doc_vectors[index], doc_vectors[s]) for s in selected),
                default=0.0,
            )
            score = lambda_mult * relevance[index] - (1 - lambda_mult) * redundancy
            if score > best_score:
                best_index, best_score = index, score
        selected.append(best_index)
        remaining.remove(best_index)

    return selected


class RankingWeights:
    """
    Metadata weighting of retrieval scores

    An item's weight is its ``doc_type`` weight times its ``persona_type``
    weight; missing or unknown values weigh 1.0. Overrides replace single
    entries of the built-in tables.
    """

    def __init__(
        self,
        doc_type_overrides: Optional[Dict[str, float]] = None,
        persona_overrides: Optional[Dict[str, float]] = None,
    ):
        self.doc_types = {**DOC_TYPE_WEIGHTS, **(doc_type_overrides or {})}
        self.personas = {**PERSONA_WEIGHTS, **(persona_overrides or {})}

    def weight(self, metadata: Dict) -> float:
        doc_type = metadata.get("doc_type")
        persona = metadata.get("persona_type")
        doc_weight = self.doc_types.get(doc_type, 1.0) if doc_type else 1.0
        persona_weight = self.personas.get(persona, 1.0) if persona else 1.0
        return doc_weight * persona_weight

    def order(self, items: Sequence[RetrievedItem]) -> List[RetrievedItem]:
        """
        Items by descending weighted score, ties kept in input order

        ``similarity`` is left untouched so the context window threshold still
        applies to the raw score.
        """
        for item in items:
            weight = self.weight(item.metadata)
            item.metadata["metadata_weight"] = weight
            item.metadata["weighted_score"] = item.similarity * weight
        return sorted(items, key=lambda i: i.metadata["weighted_score"], reverse=True)


class Ranker:
    """
    Ranker

    ``cross_encoder_factory`` builds the scoring model lazily, on first use.
    Candidates are ordered by metadata-weighted similarity before any mode
    slices them.
    """

    def __init__(
        self,
        embeddings: Optional[EmbeddingService] = None,
        reranker_model: str = "BAAI/bge-reranker-base",
        cross_encoder_factory: Optional[Callable[[str], object]] = None,
        weights: Optional[RankingWeights] = None,
    ):
        self.embeddings = embeddings
        self.reranker_model = reranker_model
        self.weights = weights or RankingWeights()
        self._cross_encoder_factory = cross_encoder_factory
        self._cross_encoder = None

    @property
    def cross_encoder(self):
        if self._cross_encoder is None:
            if self._cross_encoder_factory is not None:
                self._cross_encoder = self._cross_encoder_factory(self.reranker_model)
            else:
                from sentence_transformers import CrossEncoder
                logger.info(f"loading reranker model: {self.reranker_model}")
                self._cross_encoder = CrossEncoder(self.reranker_model, trust_remote_code=True)
        return self._cross_encoder

    async def rank(
        self,
        query: str,
        items: Sequence[RetrievedItem],
        plan: RagKPlan,
        mode: RankerMode,
        selection: Optional[EmbeddingSelection] = None,
    ) -> List[RetrievedItem]:
        ordered = self.weights.order(items)

        if mode == RankerMode.NONE or not ordered:
            return ordered[:plan.final_k]

        keep = plan.rerank_k or plan.final_k
        try:
            if mode == RankerMode.MMR:
                return await self._rank_mmr(query, ordered, keep, selection)
            return await self._rank_cross_encoder(query, ordered, keep)
        except Exception as e:
            logger.warning(f"{mode.value} ranking failed, keeping similarity order: {e}")
            return ordered[:keep]

    async def _rank_mmr(
        self,
        query: str,
        items: List[RetrievedItem],
        keep: int,
        selection: Optional[EmbeddingSelection],
    ) -> List[RetrievedItem]:
        if self.embeddings is None or selection is None:
            raise RuntimeError("mmr ranking needs an embedding service and selection")

        query_vector = await self.embeddings.embed_text(query, selection)
        doc_vectors = await self.embeddings.embed_texts([i.chunk for i in items], selection)
        order = maximal_marginal_relevance(query_vector, doc_vectors, keep)

        ranked = []
        for position, index in enumerate(order):
            item = items[index]
            item.metadata["rerank_position"] = position
            ranked.append(item)
        return ranked

    async def _rank_cross_encoder(self, query: str, items: List[RetrievedItem], keep: int) -> List[RetrievedItem]:
        pairs = [(query, item.chunk) for item in items]
        loop = asyncio.get_running_loop()
        scores = await loop.run_in_executor(None, self.cross_encoder.predict, pairs)

        scored = sorted(zip(items, scores), key=lambda pair: float(pair[1]), reverse=True)
        ranked = []
        for item, score in scored[:keep]:
            item.metadata["rerank_score"] = float(score)
            ranked.append(item)
        return ranked
