from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Dict, Optional
from functools import lru_cache


DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant that answers questions about this site's "
    "documents. Ground every answer in the provided context and say so "
    "plainly when the context does not contain the answer."
)

DEFAULT_CHITCHAT_KEYWORDS = (
    "hello,hi,how are you,whats up,what is up,tell me a joke,"
    "thank you,thanks,lol,haha,good morning,good evening"
)

DEFAULT_FALLBACK_CHITCHAT = (
    "This is a light-weight chit-chat turn. Keep the response concise, warm, "
    "and avoid citing the knowledge base."
)

DEFAULT_FALLBACK_COMMAND = (
    "The user is asking for an action/command. You must politely decline to "
    "execute actions and instead explain what is possible."
)


class Settings(BaseSettings):
    ENV: str = "development"
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    OPENAI_API_KEY: Optional[str] = None
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_EMBEDDING_MODEL: str = "text-embedding-3-small"

    GEMINI_API_KEY: Optional[str] = None
    GEMINI_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta/openai/"
    GEMINI_MODEL: str = "gemini-1.5-flash"
    GEMINI_EMBEDDING_MODEL: str = "text-embedding-004"

    # local backends stay off unless explicitly enabled
    OLLAMA_ENABLED: bool = False
    OLLAMA_BASE_URL: str = "http://localhost:11434"
    OLLAMA_MODEL: str = "mistral"

    LMSTUDIO_ENABLED: bool = False
    LMSTUDIO_BASE_URL: str = "http://localhost:1234"
    LMSTUDIO_MODEL: str = "mistral"

    DEFAULT_LLM_PROVIDER: str = "openai"
    DEFAULT_EMBEDDING_PROVIDER: str = "openai"
    DEFAULT_TEMPERATURE: float = 0.0
    DEFAULT_MAX_TOKENS: int = 512

    SUPABASE_URL: Optional[str] = None
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = None
    VECTOR_SEARCH_TIMEOUT: float = 30.0

    CHAT_SYSTEM_PROMPT: str = DEFAULT_SYSTEM_PROMPT
    CHAT_SIMILARITY_THRESHOLD: float = 0.78
    RAG_TOP_K: int = 5
    RAG_RETRIEVE_K: Optional[int] = None
    RAG_RERANK_K: Optional[int] = None
    CHAT_CONTEXT_TOKEN_BUDGET: int = 1200
    CHAT_CONTEXT_CLIP_TOKENS: int = 320
    CHAT_HISTORY_TOKEN_BUDGET: int = 900
    CHAT_SUMMARY_ENABLED: bool = True
    CHAT_SUMMARY_TRIGGER_TOKENS: int = 400
    CHAT_SUMMARY_MAX_TURNS: int = 6
    CHAT_SUMMARY_MAX_CHARS: int = 600
    CHAT_CHITCHAT_KEYWORDS: str = DEFAULT_CHITCHAT_KEYWORDS
    CHAT_FALLBACK_CHITCHAT_CONTEXT: str = DEFAULT_FALLBACK_CHITCHAT
    CHAT_FALLBACK_COMMAND_CONTEXT: str = DEFAULT_FALLBACK_COMMAND

    REVERSE_RAG_ENABLED: bool = False
    REVERSE_RAG_MODE: str = "precision"
    HYDE_ENABLED: bool = False
    RAG_RANKER_MODE: str = "none"
    RERANKER_MODEL: str = "BAAI/bge-reranker-base"
    # JSON objects overriding the built-in doc_type / persona_type weights
    RAG_DOC_TYPE_WEIGHTS: Dict[str, float] = {}
    RAG_PERSONA_WEIGHTS: Dict[str, float] = {}
    # also search with the raw question when reverse-RAG or HyDE changed the target
    MULTI_QUERY_ENABLED: bool = False

    # 0 disables the cache
    RETRIEVAL_CACHE_TTL_SECONDS: float = 0.0
    RESPONSE_CACHE_TTL_SECONDS: float = 0.0
    CACHE_MAX_ENTRIES: int = 512

    CHAT_CONFIG_URL: Optional[str] = None
    CHAT_CONFIG_TTL_SECONDS: float = 60.0

    TELEMETRY_SAMPLE_RATE: float = 1.0
    TELEMETRY_DETAIL_LEVEL: str = "standard"

    LANGSMITH_API_KEY: Optional[str] = None
    LANGSMITH_PROJECT: str = "ragchat"
    LANGSMITH_TRACING: bool = False

    PUBLIC_SITE_URL: Optional[str] = None
    DOC_URL_MAP_PATH: Optional[str] = None

    CHAT_ENGINE: str = "native"
    TOKEN_ESTIMATOR: str = "tiktoken"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
