from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from functools import lru_cache
from typing import Awaitable, Callable, Optional
import logging

from ragchat.config import get_settings
from ragchat.llm.providers import get_provider_info
from ragchat.pipeline.service import ChatTurnService, build_chat_service
from .schemas import ChatRequest, InterruptResponse, ProviderInfo, ProvidersResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@lru_cache()
def get_chat_service() -> ChatTurnService:
    return build_chat_service(get_settings())


class ChatStreamingResponse(StreamingResponse):
    """
    Streaming response that always ends its turn

    A client that disconnects before or while the body is sent leaves the
    body generator suspended or never started, so the turn is released here
    once sending stops, however it stopped.
    """

    def __init__(self, content, on_close: Callable[[], Awaitable[None]], **kwargs):
        super().__init__(content, **kwargs)
        self.on_close = on_close

    async def __call__(self, scope, receive, send):
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.body_iterator.aclose()
            await self.on_close()


async def _stream_chat(request: ChatRequest, service: ChatTurnService, engine: Optional[str]):
    # errors raised here still become JSON responses; nothing has been sent yet
    prepared = await service.prepare(request, engine=engine)
    stream = await service.open_stream(prepared)

    return ChatStreamingResponse(
        service.stream_body(prepared, stream),
        on_close=lambda: service.release(prepared, stream),
        media_type="text/plain; charset=utf-8",
        headers=service.response_headers(prepared, stream),
    )


@router.get("/health")
async def health_check():
    return {"status": "ok"}


@router.post("/chat")
async def chat(
    request: ChatRequest,
    engine: Optional[str] = Query(None),
    service: ChatTurnService = Depends(get_chat_service),
):
    return await _stream_chat(request, service, engine)


@router.post("/native_chat")
async def native_chat(
    request: ChatRequest,
    service: ChatTurnService = Depends(get_chat_service),
):
    return await _stream_chat(request, service, "native")


@router.post("/langchain_chat")
async def langchain_chat(
    request: ChatRequest,
    service: ChatTurnService = Depends(get_chat_service),
):
    return await _stream_chat(request, service, "langchain")


@router.post("/chat/interrupt/{session_id}", response_model=InterruptResponse)
async def interrupt_chat(
    session_id: str,
    service: ChatTurnService = Depends(get_chat_service),
):
    success = await service.interrupts.interrupt(session_id)
    if not success:
        raise HTTPException(
            status_code=404,
            detail=f"Session '{session_id}' not found or already completed",
        )
    logger.info(f"chat stream {session_id[:8]} interrupted on request")
    return InterruptResponse(success=True, message=f"Session '{session_id}' interrupted")


@router.get("/chat/sessions")
async def list_stream_sessions(service: ChatTurnService = Depends(get_chat_service)):
    sessions = service.interrupts.get_active_sessions()
    return {
        "total": len(sessions),
        "sessions": sessions,
    }


@router.get("/chat/config")
async def get_chat_config(
    refresh: bool = Query(False),
    service: ChatTurnService = Depends(get_chat_service),
):
    runtime = await service.config_cache.get(force_refresh=refresh)
    return runtime.to_snapshot()


@router.get("/providers", response_model=ProvidersResponse)
async def list_providers(service: ChatTurnService = Depends(get_chat_service)):
    return ProvidersResponse(
        default_provider=service.resolver.default_provider,
        default_embedding_provider=service.resolver.default_embedding_provider,
        providers=[ProviderInfo(**info) for info in get_provider_info(service.resolver.strategies)],
    )
