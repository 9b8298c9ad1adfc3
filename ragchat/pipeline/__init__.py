from .base import ChatPipeline, PromptInputs, RetrievalRequest
from .native import NativeChatPipeline
from .langchain_chain import LangChainChatPipeline
from .service import ChatTurnService, PreparedTurn, build_chat_service

__all__ = [
    "ChatPipeline",
    "PromptInputs",
    "RetrievalRequest",
    "NativeChatPipeline",
    "LangChainChatPipeline",
    "ChatTurnService",
    "PreparedTurn",
    "build_chat_service",
]
