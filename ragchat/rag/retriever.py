"""
Retriever

Embeds the enhancement target, runs the vector-search function of the
selected embedding space, and normalizes the rows into RetrievedItems with
canonical doc ids and source URLs. Search failures are terminal; there is no
retry at this layer.
"""
from typing import Dict, List, Optional, Sequence, Tuple
import logging

from ragchat.core.exceptions import BaseError, RetrievalError
from ragchat.llm.embeddings import EmbeddingService
from ragchat.llm.resolver import EmbeddingSelection
from .rag_types import RetrievedItem
from .url_resolver import CanonicalUrlLookup
from .vector_search import VectorSearchBackend

logger = logging.getLogger(__name__)


def merge_candidates(
    base: Sequence[RetrievedItem],
    alternate: Sequence[RetrievedItem],
    limit: Optional[int] = None,
) -> List[RetrievedItem]:
    """
    Union of two result lists for the same question

    Duplicates (same doc and chunk) keep their best similarity. The result is
    ordered by descending similarity; ties keep base results first.
    """
    merged: Dict[Tuple[Optional[str], str], Tuple[RetrievedItem, int]] = {}
    for order, item in enumerate(list(base) + list(alternate)):
        key = (item.doc_id or item.id, item.chunk)
        existing = merged.get(key)
        if existing is None or item.similarity > existing[0].similarity:
            merged[key] = (item, existing[1] if existing else order)

    entries = sorted(merged.values(), key=lambda entry: (-entry[0].similarity, entry[1]))
    items = [item for item, _ in entries]
    return items[:limit] if limit else items


def _is_hidden(row: dict) -> bool:
    metadata = row.get("metadata") if isinstance(row.get("metadata"), dict) else {}
    return metadata.get("is_public") is False or row.get("is_public") is False


class Retriever:

    def __init__(
        self,
        backend: VectorSearchBackend,
        embeddings: EmbeddingService,
        url_lookup: CanonicalUrlLookup,
    ):
        self.backend = backend
        self.embeddings = embeddings
        self.url_lookup = url_lookup

    async def retrieve(
        self,
        target: str,
        selection: EmbeddingSelection,
        retrieve_k: int,
        similarity_threshold: float,
    ) -> List[RetrievedItem]:
        """
        Returns at most ``retrieve_k`` items by descending similarity; an
        empty list when nothing matched.

        Raises:
            EmbeddingError: the embedding provider failed
            RetrievalError: the vector search failed
        """
        embedding = await self.embeddings.embed_text(target, selection)
        function = selection.space.match_function

        try:
            rows = await self.backend.match(function, embedding, similarity_threshold, retrieve_k)
        except BaseError:
            raise
        except Exception as e:
            raise RetrievalError(f"Vector search failed: {e}", function=function, query=target, cause=e)

        items: List[RetrievedItem] = []
        seen = set()
        hidden = 0
        for row in rows or []:
            if not isinstance(row, dict):
                continue
            if _is_hidden(row):
                hidden += 1
                continue

            item = RetrievedItem.from_row(row)
            self.url_lookup.enrich(row, item.metadata)

            key = (item.doc_id or item.id, item.chunk)
            if key in seen:
                continue
            seen.add(key)
            items.append(item)

        items.sort(key=lambda i: i.similarity, reverse=True)
        items = items[:retrieve_k]

        logger.info(
            f"retrieved {len(items)} items from {function} "
            f"(k={retrieve_k}, threshold={similarity_threshold}, hidden={hidden})"
        )
        return items
