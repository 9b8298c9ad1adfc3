from typing import Dict, List, Optional
from collections import OrderedDict
import hashlib
import logging

from langchain_core.embeddings import Embeddings

from ragchat.core.exceptions import EmbeddingError
from .providers import ProviderStrategy
from .resolver import EmbeddingSelection

logger = logging.getLogger(__name__)


class LRUCache:
    """Bounded least-recently-used map of embedding vectors"""

    def __init__(self, max_size: int = 1000):
        self.max_size = max_size
        self._cache: OrderedDict = OrderedDict()

    def get(self, key: str) -> Optional[List[float]]:
        if key not in self._cache:
            return None
        self._cache.move_to_end(key)
        return self._cache[key]

    def set(self, key: str, value: List[float]) -> None:
        if key in self._cache:
            self._cache.move_to_end(key)
        elif len(self._cache) >= self.max_size:
            self._cache.popitem(last=False)
        self._cache[key] = value

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)


class EmbeddingService:
    """
    Query and document embeddings for the selected embedding space

    Clients are built per model through the provider strategy and reused.
    """

    def __init__(
        self,
        strategies: Dict[str, ProviderStrategy],
        cache_enabled: bool = True,
        cache_max_size: int = 1000,
    ):
        self.strategies = strategies
        self.cache_enabled = cache_enabled
        self._cache = LRUCache(max_size=cache_max_size) if cache_enabled else None
        self._clients: Dict[str, Embeddings] = {}

    def _client(self, selection: EmbeddingSelection) -> Embeddings:
        key = f"{selection.provider}:{selection.model}"
        if key not in self._clients:
            strategy = self.strategies[selection.provider]
            self._clients[key] = strategy.create_embeddings(selection.model)
        return self._clients[key]

    @staticmethod
    def _get_cache_key(selection: EmbeddingSelection, text: str) -> str:
        return hashlib.md5(f"{selection.provider}:{selection.model}:{text}".encode()).hexdigest()

    async def embed_text(self, text: str, selection: EmbeddingSelection) -> List[float]:
        cache_key = self._get_cache_key(selection, text)
        if self._cache is not None:
            cached = self._cache.get(cache_key)
            if cached is not None:
                return cached

        try:
            embedding = await self._client(selection).aembed_query(text)
        except Exception as e:
            logger.error(f"embedding with {selection.model} failed: {e}")
            raise EmbeddingError(f"Embedding failed: {e}", model_name=selection.model, cause=e)

        if self._cache is not None:
            self._cache.set(cache_key, embedding)
        return embedding

    async def embed_texts(self, texts: List[str], selection: EmbeddingSelection) -> List[List[float]]:
        if not texts:
            return []

        results: List[Optional[List[float]]] = [None] * len(texts)
        missing = []
        for i, text in enumerate(texts):
            cached = self._cache.get(self._get_cache_key(selection, text)) if self._cache is not None else None
            if cached is not None:
                results[i] = cached
            else:
                missing.append(i)

        if missing:
            try:
                vectors = await self._client(selection).aembed_documents([texts[i] for i in missing])
            except Exception as e:
                raise EmbeddingError(f"Embedding failed: {e}", model_name=selection.model, cause=e)
            for i, vector in zip(missing, vectors):
                results[i] = vector
                if self._cache is not None:
                    self._cache.set(self._get_cache_key(selection, texts[i]), vector)

        return results
