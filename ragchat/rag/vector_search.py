import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from ragchat.core.exceptions import RetrievalError

logger = logging.getLogger(__name__)


class VectorSearchBackend(ABC):
    """
    Similarity search contract

    ``match`` returns rows ordered by descending similarity, at most
    ``match_count`` of them.
    """

    @abstractmethod
    async def match(
        self,
        function: str,
        query_embedding: List[float],
        similarity_threshold: float,
        match_count: int,
    ) -> List[Dict[str, Any]]:
        pass

    async def aclose(self) -> None:
        return None


class SupabaseRpcBackend(VectorSearchBackend):
    """Calls a Postgres match function through the PostgREST ``/rpc`` endpoint"""

    def __init__(
        self,
        base_url: Optional[str],
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["apikey"] = self.api_key
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(headers=headers, timeout=self.timeout)
        return self._client

    async def match(
        self,
        function: str,
        query_embedding: List[float],
        similarity_threshold: float,
        match_count: int,
    ) -> List[Dict[str, Any]]:
        if not self.base_url:
            raise RetrievalError("Vector search is not configured (SUPABASE_URL)", function=function)
        url = f"{self.base_url}/rest/v1/rpc/{function}"
        payload = {
            "query_embedding": query_embedding,
            "similarity_threshold": similarity_threshold,
            "match_count": match_count,
        }
        try:
            response = await self.client.post(url, json=payload)
            response.raise_for_status()
            rows = response.json()
        except httpx.HTTPError as e:
            logger.error(f"vector search {function} failed: {e}")
            raise RetrievalError(f"Vector search failed: {e}", function=function, cause=e)
        except ValueError as e:
            raise RetrievalError("Vector search returned invalid JSON", function=function, cause=e)

        if not isinstance(rows, list):
            raise RetrievalError("Vector search returned a non-list payload", function=function)
        return rows[:match_count]

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class VectorSearchFactory:

    _backends = {
        "supabase": SupabaseRpcBackend,
    }

    @classmethod
    def create(
        cls,
        backend: str = "supabase",
        **kwargs,
    ) -> VectorSearchBackend:
        if backend not in cls._backends:
            raise ValueError(f"Unknown backend: {backend}. Available: {list(cls._backends.keys())}")
        return cls._backends[backend](**kwargs)
