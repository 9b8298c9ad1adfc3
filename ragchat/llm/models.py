"""
Model registry

Chat models and embedding spaces the service knows about, plus the provider
alias table used to interpret loosely spelled requests.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
import re

OPENAI = "openai"
GEMINI = "gemini"
OLLAMA = "ollama"
LMSTUDIO = "lmstudio"

LOCAL_PROVIDERS = (OLLAMA, LMSTUDIO)


@dataclass(frozen=True)
class ModelDefinition:
    id: str
    label: str
    provider: str
    model: str
    aliases: Tuple[str, ...] = ()
    local_backend: Optional[str] = None


@dataclass(frozen=True)
class EmbeddingSpace:
    id: str
    provider: str
    model: str
    dimensions: int
    match_function: str
    aliases: Tuple[str, ...] = ()


LLM_MODELS: List[ModelDefinition] = [
    ModelDefinition("gpt-4o-mini", "GPT-4o mini", OPENAI, "gpt-4o-mini",
                    ("gpt4o-mini", "gpt-4o mini", "openai gpt-4o-mini", "4o-mini")),
    ModelDefinition("gpt-4o", "GPT-4o", OPENAI, "gpt-4o",
                    ("gpt4o", "openai gpt-4o")),
    ModelDefinition("gpt-4.1-mini", "GPT-4.1 mini", OPENAI, "gpt-4.1-mini",
                    ("gpt4.1-mini", "gpt-4.1 mini", "openai gpt-4.1-mini")),
    ModelDefinition("gpt-3.5-turbo", "GPT-3.5 Turbo", OPENAI, "gpt-3.5-turbo",
                    ("gpt3.5-turbo", "gpt-35-turbo", "openai gpt-3.5-turbo")),
    ModelDefinition("gemini-1.5-flash", "Gemini 1.5 Flash", GEMINI, "gemini-1.5-flash",
                    ("gemini 1.5 flash", "gemini-1.5-flash-latest", "gemini-flash")),
    ModelDefinition("gemini-1.5-pro", "Gemini 1.5 Pro", GEMINI, "gemini-1.5-pro",
                    ("gemini 1.5 pro", "gemini-1.5-pro-latest", "gemini-pro-1.5")),
    ModelDefinition("gemini-2.0-flash", "Gemini 2.0 Flash", GEMINI, "gemini-2.0-flash",
                    ("gemini 2.0 flash", "gemini-2-flash")),
    ModelDefinition("gemini-2.5-flash-lite", "Gemini 2.5 Flash Lite", GEMINI, "gemini-2.5-flash-lite",
                    ("gemini 2.5 flash lite", "gemini-2.5-flash-lite-latest")),
    ModelDefinition("mistral-ollama", "Mistral (Ollama)", OLLAMA, "mistral",
                    ("mistral", "ollama mistral", "ollama-mistral"), local_backend=OLLAMA),
    ModelDefinition("llama3", "Llama 3 (Ollama)", OLLAMA, "llama3",
                    ("llama 3", "ollama llama3", "ollama-llama3"), local_backend=OLLAMA),
    ModelDefinition("mistral-lmstudio", "Mistral (LM Studio)", LMSTUDIO, "mistral",
                    ("lmstudio mistral", "lm studio mistral"), local_backend=LMSTUDIO),
]

EMBEDDING_SPACES: List[EmbeddingSpace] = [
    EmbeddingSpace("openai_te3s_1536", OPENAI, "text-embedding-3-small", 1536,
                   "match_rag_chunks_openai", ("te3s", "openai small")),
    EmbeddingSpace("gemini_te4_768", GEMINI, "text-embedding-004", 768,
                   "match_rag_chunks_gemini", ("te4", "gemini embedding")),
]

PROVIDER_ALIASES: Dict[str, str] = {
    "openai": OPENAI,
    "oa": OPENAI,
    "open-ai": OPENAI,
    "gpt": OPENAI,
    "chatgpt": OPENAI,
    "opeanai": OPENAI,
    "openia": OPENAI,
    "gemini": GEMINI,
    "google": GEMINI,
    "google-ai": GEMINI,
    "google-ai-studio": GEMINI,
    "gemeni": GEMINI,
    "gemnini": GEMINI,
    "ollama": OLLAMA,
    "olama": OLLAMA,
    "lmstudio": LMSTUDIO,
    "lm-studio": LMSTUDIO,
}

_SEPARATORS = re.compile(r"[\s_]+")


def normalize_key(value: Optional[str]) -> str:
    if not isinstance(value, str):
        return ""
    return _SEPARATORS.sub("-", value.strip().lower())


def normalize_provider(value: Optional[str]) -> Optional[str]:
    """Map a provider spelling to its canonical name; None when unrecognised"""
    return PROVIDER_ALIASES.get(normalize_key(value))


def split_provider_prefix(value: str) -> Tuple[Optional[str], str]:
    """``openai/gpt-4o`` or ``gemini:gemini-1.5-pro`` -> (provider, model)"""
    for separator in ("/", ":"):
        if separator in value:
            prefix, rest = value.split(separator, 1)
            provider = normalize_provider(prefix)
            if provider and rest.strip():
                return provider, rest.strip()
    return None, value


def _build_index(definitions) -> Dict[str, list]:
    index: Dict[str, list] = {}
    for definition in definitions:
        for key in (definition.id, definition.model, *definition.aliases):
            bucket = index.setdefault(normalize_key(key), [])
            if definition not in bucket:
                bucket.append(definition)
    return index


_MODEL_INDEX = _build_index(LLM_MODELS)
_EMBEDDING_INDEX = _build_index(EMBEDDING_SPACES)


def find_model_definitions(value: str, provider: Optional[str] = None) -> List[ModelDefinition]:
    matches = _MODEL_INDEX.get(normalize_key(value), [])
    if provider:
        matches = [m for m in matches if m.provider == provider]
    return list(matches)


def find_embedding_space(value: Optional[str], provider: Optional[str] = None) -> Optional[EmbeddingSpace]:
    for space in _EMBEDDING_INDEX.get(normalize_key(value), []):
        if provider is None or space.provider == provider:
            return space
    return None


def default_embedding_space(provider: str) -> Optional[EmbeddingSpace]:
    return next((s for s in EMBEDDING_SPACES if s.provider == provider), None)
