from .providers import ProviderStrategy, build_provider_strategies, get_provider_info
from .resolver import EmbeddingSelection, ModelResolver, ModelSelection
from .streamer import CommittedStream, GenerationStreamer, TextDelta, normalize_chunk
from .embeddings import EmbeddingService

__all__ = [
    "ProviderStrategy",
    "build_provider_strategies",
    "get_provider_info",
    "EmbeddingSelection",
    "ModelResolver",
    "ModelSelection",
    "CommittedStream",
    "GenerationStreamer",
    "TextDelta",
    "normalize_chunk",
    "EmbeddingService",
]
