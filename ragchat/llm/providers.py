"""
Provider strategies

Each provider decides its own ordered model candidate list and which errors
justify moving to the next candidate. The streaming loop only talks to this
interface, so adding a provider never touches it.

Every provider here speaks the OpenAI wire protocol, so clients are built
with ``langchain_openai`` against the provider's base URL.
"""
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Dict, List, Optional
import logging

from langchain_core.embeddings import Embeddings
from langchain_core.language_models import BaseChatModel
from langchain_openai import ChatOpenAI, OpenAIEmbeddings

from ragchat.config import Settings, settings as default_settings
from .models import GEMINI, LMSTUDIO, OLLAMA, OPENAI

logger = logging.getLogger(__name__)


GEMINI_MODEL_FALLBACKS: Dict[str, List[str]] = {
    "gemini-1.5-flash-latest": ["gemini-1.5-flash-002", "gemini-1.5-flash"],
    "gemini-1.5-flash": ["gemini-1.5-flash-002"],
    "gemini-1.5-flash-002": ["gemini-1.0-pro-latest", "gemini-1.0-pro"],
    "gemini-1.5-pro-latest": ["gemini-1.5-pro-002", "gemini-1.5-pro"],
    "gemini-1.5-pro": ["gemini-1.5-pro-002"],
    "gemini-1.5-pro-002": ["gemini-1.0-pro-latest", "gemini-1.0-pro"],
    "gemini-1.0-pro-latest": ["gemini-1.0-pro"],
    "gemini-1.0-pro": ["gemini-pro"],
    "gemini-pro": [],
}

GEMINI_RETRY_SNIPPETS = ("not found", "is not found", "not supported")


def build_gemini_candidates(model: str) -> List[str]:
    """Breadth-first walk of the fallback map, primary model first"""
    queue = deque([model.strip()] if model and model.strip() else [])
    seen: List[str] = []

    while queue:
        current = queue.popleft()
        if not current or current in seen:
            continue
        seen.append(current)

        for fallback in GEMINI_MODEL_FALLBACKS.get(current, []):
            if fallback not in seen:
                queue.append(fallback)

        if current.endswith("-latest"):
            trimmed = current[: -len("-latest")]
            if trimmed and trimmed not in seen:
                queue.append(trimmed)

    return seen


class ProviderStrategy(ABC):
    """
    Provider strategy

    ``candidates`` and ``is_retryable`` drive the generation fallback loop;
    the factory methods build LangChain clients for a concrete model name.
    """

    name: str = ""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings

    @property
    @abstractmethod
    def default_model(self) -> str:
        pass

    @abstractmethod
    def client_config(self) -> Dict[str, Any]:
        pass

    def is_enabled(self) -> bool:
        return True

    def is_configured(self) -> bool:
        return bool(self.client_config().get("api_key"))

    def candidates(self, model: str) -> List[str]:
        return [model]

    def is_retryable(self, candidate: str, error: BaseException) -> bool:
        return False

    def create_chat_model(
        self,
        model: str,
        temperature: float = 0.0,
        max_tokens: Optional[int] = None,
        **kwargs,
    ) -> BaseChatModel:
        config = dict(self.client_config())
        config.update(model=model, temperature=temperature)
        if max_tokens:
            config["max_tokens"] = max_tokens
        config.update(kwargs)
        return ChatOpenAI(**config)

    def create_embeddings(self, model: str) -> Embeddings:
        config = self.client_config()
        return OpenAIEmbeddings(
            model=model,
            api_key=config.get("api_key"),
            base_url=config.get("base_url"),
            check_embedding_ctx_length=False,
        )


class OpenAIStrategy(ProviderStrategy):
    name = OPENAI

    @property
    def default_model(self) -> str:
        return self.settings.OPENAI_MODEL

    def client_config(self) -> Dict[str, Any]:
        return {
            "api_key": self.settings.OPENAI_API_KEY,
            "base_url": self.settings.OPENAI_BASE_URL,
        }


class GeminiStrategy(ProviderStrategy):
    name = GEMINI

    @property
    def default_model(self) -> str:
        return self.settings.GEMINI_MODEL

    def client_config(self) -> Dict[str, Any]:
        return {
            "api_key": self.settings.GEMINI_API_KEY,
            "base_url": self.settings.GEMINI_BASE_URL,
        }

    def candidates(self, model: str) -> List[str]:
        return build_gemini_candidates(model)

    def is_retryable(self, candidate: str, error: BaseException) -> bool:
        message = str(error or "").lower()
        if not message:
            return False
        return any(snippet in message for snippet in GEMINI_RETRY_SNIPPETS)


class OllamaStrategy(ProviderStrategy):
    name = OLLAMA

    @property
    def default_model(self) -> str:
        return self.settings.OLLAMA_MODEL

    def is_enabled(self) -> bool:
        return self.settings.OLLAMA_ENABLED

    def is_configured(self) -> bool:
        return self.is_enabled()

    def client_config(self) -> Dict[str, Any]:
        return {
            "base_url": f"{self.settings.OLLAMA_BASE_URL.rstrip('/')}/v1",
            "api_key": "ollama",
        }


class LMStudioStrategy(ProviderStrategy):
    name = LMSTUDIO

    @property
    def default_model(self) -> str:
        return self.settings.LMSTUDIO_MODEL

    def is_enabled(self) -> bool:
        return self.settings.LMSTUDIO_ENABLED

    def is_configured(self) -> bool:
        return self.is_enabled()

    def client_config(self) -> Dict[str, Any]:
        return {
            "base_url": f"{self.settings.LMSTUDIO_BASE_URL.rstrip('/')}/v1",
            "api_key": "lm-studio",
        }


STRATEGY_CLASSES = {
    OPENAI: OpenAIStrategy,
    GEMINI: GeminiStrategy,
    OLLAMA: OllamaStrategy,
    LMSTUDIO: LMStudioStrategy,
}


def build_provider_strategies(settings: Optional[Settings] = None) -> Dict[str, ProviderStrategy]:
    return {name: cls(settings) for name, cls in STRATEGY_CLASSES.items()}


def get_provider_info(strategies: Dict[str, ProviderStrategy]) -> List[Dict[str, Any]]:
    return [
        {
            "name": name,
            "model": strategy.default_model,
            "enabled": strategy.is_enabled(),
            "available": strategy.is_enabled() and strategy.is_configured(),
            "base_url": strategy.client_config().get("base_url"),
        }
        for name, strategy in strategies.items()
    ]
