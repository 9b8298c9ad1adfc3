"""
Runtime chat configuration cache

Guardrail thresholds and the system prompt are read from a config store and
cached with a TTL. Readers never wait on a refresh: a stale read returns the
cached value and schedules one background refresh, which swaps the value when
it completes. Only the very first read waits for a load.
"""
import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx

from ragchat.config import Settings
from ragchat.rag.rag_types import GuardrailConfig, SummaryConfig
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatRuntimeConfig:
    guardrails: GuardrailConfig
    system_prompt: str

    def to_snapshot(self) -> Dict[str, Any]:
        snapshot = self.guardrails.to_snapshot()
        snapshot["systemPrompt"] = self.system_prompt
        return snapshot


def _number(raw: Dict[str, Any], key: str, default, cast=float):
    value = raw.get(key)
    if value is None or isinstance(value, bool):
        return default
    try:
        return cast(value)
    except (TypeError, ValueError):
        logger.warning(f"ignoring invalid config value {key}={value!r}")
        return default


def _flag(raw: Dict[str, Any], key: str, default: bool) -> bool:
    value = raw.get(key)
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return default


def _text(raw: Dict[str, Any], key: str, default: str) -> str:
    value = raw.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def _keywords(value: Any) -> tuple:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(k.strip().lower() for k in value if isinstance(k, str) and k.strip())


def parse_guardrail_config(raw: Optional[Dict[str, Any]], settings: Settings) -> GuardrailConfig:
    """
    Merge camelCase overrides over environment defaults and clamp every
    number to its allowed range.
    """
    raw = raw or {}
    summary_raw = raw.get("summary") if isinstance(raw.get("summary"), dict) else {}

    threshold = _number(raw, "similarityThreshold", settings.CHAT_SIMILARITY_THRESHOLD)
    keywords = _keywords(raw.get("chitchatKeywords"))
    if not keywords:
        keywords = _keywords(settings.CHAT_CHITCHAT_KEYWORDS)

    return GuardrailConfig(
        similarity_threshold=min(1.0, max(0.0, threshold)),
        rag_top_k=max(1, _number(raw, "ragTopK", settings.RAG_TOP_K, int)),
        rag_context_token_budget=max(200, _number(raw, "ragContextTokenBudget", settings.CHAT_CONTEXT_TOKEN_BUDGET, int)),
        rag_context_clip_tokens=max(64, _number(raw, "ragContextClipTokens", settings.CHAT_CONTEXT_CLIP_TOKENS, int)),
        history_token_budget=max(200, _number(raw, "historyTokenBudget", settings.CHAT_HISTORY_TOKEN_BUDGET, int)),
        summary=SummaryConfig(
            enabled=_flag(summary_raw, "enabled", settings.CHAT_SUMMARY_ENABLED),
            trigger_tokens=max(200, _number(summary_raw, "triggerTokens", settings.CHAT_SUMMARY_TRIGGER_TOKENS, int)),
            max_turns=max(2, _number(summary_raw, "maxTurns", settings.CHAT_SUMMARY_MAX_TURNS, int)),
            max_chars=max(200, _number(summary_raw, "maxChars", settings.CHAT_SUMMARY_MAX_CHARS, int)),
        ),
        chitchat_keywords=keywords,
        fallback_chitchat=_text(raw, "fallbackChitchatContext", settings.CHAT_FALLBACK_CHITCHAT_CONTEXT),
        fallback_command=_text(raw, "fallbackCommandContext", settings.CHAT_FALLBACK_COMMAND_CONTEXT),
    )


def parse_runtime_config(raw: Optional[Dict[str, Any]], settings: Settings) -> ChatRuntimeConfig:
    raw = raw or {}
    guardrails = raw.get("guardrails") if isinstance(raw.get("guardrails"), dict) else raw
    return ChatRuntimeConfig(
        guardrails=parse_guardrail_config(guardrails, settings),
        system_prompt=_text(raw, "systemPrompt", settings.CHAT_SYSTEM_PROMPT),
    )


class ConfigStore(ABC):

    @abstractmethod
    async def fetch(self) -> Dict[str, Any]:
        """Raw camelCase overrides"""


class SettingsConfigStore(ConfigStore):
    """No remote overrides; the environment is the whole configuration"""

    async def fetch(self) -> Dict[str, Any]:
        return {}


class HttpConfigStore(ConfigStore):

    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.timeout = timeout
        self._client = client

    async def fetch(self) -> Dict[str, Any]:
        try:
            if self._client is not None:
                response = await self._client.get(self.url, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(self.url)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ConfigurationError(f"Config store fetch failed: {e}", config_key=self.url, cause=e)

        if not isinstance(payload, dict):
            raise ConfigurationError("Config store returned a non-object payload", config_key=self.url)
        return payload


class ConfigCache:

    def __init__(
        self,
        store: ConfigStore,
        settings: Settings,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.settings = settings
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self.value: Optional[ChatRuntimeConfig] = None
        self.fetched_at: Optional[float] = None
        self.refreshing: Optional[asyncio.Task] = None
        self._initial_lock = asyncio.Lock()

    def is_stale(self) -> bool:
        if self.fetched_at is None:
            return True
        return self._clock() - self.fetched_at >= self.ttl_seconds

    async def get(self, force_refresh: bool = False) -> ChatRuntimeConfig:
        """
        Current configuration

        A forced refresh is awaited by the caller that asked for it; other
        readers keep getting the cached value meanwhile.
        """
        if self.value is None:
            await self._initial_load()
            return self.value

        if force_refresh:
            await self.refresh()
        elif self.is_stale():
            self._schedule_refresh()
        return self.value

    async def refresh(self) -> ChatRuntimeConfig:
        task = self._schedule_refresh()
        await asyncio.shield(task)
        return self.value

    def _schedule_refresh(self) -> asyncio.Task:
        if self.refreshing is None or self.refreshing.done():
            self.refreshing = asyncio.get_running_loop().create_task(self._run_refresh())
        return self.refreshing

    async def _initial_load(self) -> None:
        async with self._initial_lock:
            if self.value is not None:
                return
            try:
                raw = await self.store.fetch()
            except Exception as e:
                logger.warning(f"config store unavailable, using environment defaults: {e}")
                raw = {}
            self._swap(parse_runtime_config(raw, self.settings))

    async def _run_refresh(self) -> None:
        try:
            raw = await self.store.fetch()
            self._swap(parse_runtime_config(raw, self.settings))
            logger.debug("chat config refreshed")
        except Exception as e:
            logger.warning(f"config refresh failed, keeping cached value: {e}")

    def _swap(self, value: ChatRuntimeConfig) -> None:
        self.value = value
        self.fetched_at = self._clock()


def build_config_store(settings: Settings) -> ConfigStore:
    if settings.CHAT_CONFIG_URL:
        return HttpConfigStore(settings.CHAT_CONFIG_URL)
    return SettingsConfigStore()
