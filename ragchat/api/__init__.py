from .routes import router, get_chat_service
from .schemas import (
    ChatRequest,
    InterruptResponse,
    ProviderInfo,
    ProvidersResponse,
)

__all__ = [
    "router",
    "get_chat_service",
    "ChatRequest",
    "InterruptResponse",
    "ProviderInfo",
    "ProvidersResponse",
]
