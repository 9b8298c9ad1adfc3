from pydantic import BaseModel, Field
from typing import Any, List, Optional


class MessageIn(BaseModel):
    role: str
    content: Any = None


class ChatRequest(BaseModel):
    messages: List[MessageIn] = Field(default_factory=list)
    provider: Optional[str] = None
    embeddingProvider: Optional[str] = None
    model: Optional[str] = None
    embeddingModel: Optional[str] = None
    reverseRagEnabled: Optional[bool] = None
    reverseRagMode: Optional[str] = None
    hydeEnabled: Optional[bool] = None
    rankerMode: Optional[str] = None
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    maxTokens: Optional[int] = Field(None, ge=1, le=8192)


class InterruptResponse(BaseModel):
    success: bool
    message: str


class ProviderInfo(BaseModel):
    name: str
    model: str
    enabled: bool
    available: bool
    base_url: Optional[str] = None


class ProvidersResponse(BaseModel):
    default_provider: str
    default_embedding_provider: str
    providers: List[ProviderInfo]
