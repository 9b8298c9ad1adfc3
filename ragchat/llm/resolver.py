"""
Model resolution

Turns the caller's loosely specified ``(provider, model)`` into a validated
selection. Explicitly requested local models whose backend is disabled are
rejected rather than swapped for another provider.
"""
from dataclasses import dataclass
from typing import Dict, Optional
import logging

from ragchat.core.exceptions import ProviderUnavailableError, ValidationError
from .models import (
    EmbeddingSpace,
    default_embedding_space,
    find_embedding_space,
    find_model_definitions,
    normalize_provider,
    split_provider_prefix,
)
from .providers import ProviderStrategy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelSelection:
    provider: str
    model_id: str
    model: str
    requested_model: Optional[str] = None
    was_substituted: bool = False
    reason: Optional[str] = None


@dataclass(frozen=True)
class EmbeddingSelection:
    provider: str
    model: str
    space: EmbeddingSpace


class ModelResolver:

    def __init__(
        self,
        strategies: Dict[str, ProviderStrategy],
        default_provider: str = "openai",
        default_embedding_provider: str = "openai",
    ):
        self.strategies = strategies
        self.default_provider = default_provider
        self.default_embedding_provider = default_embedding_provider

    def _provider(self, value: Optional[str], field: str) -> Optional[str]:
        if value is None or not str(value).strip():
            return None
        provider = normalize_provider(value)
        if provider is None or provider not in self.strategies:
            raise ValidationError(f"Unsupported provider: {value}", field=field, value=value)
        return provider

    def _require_enabled(self, provider: str, model: Optional[str] = None) -> None:
        if not self.strategies[provider].is_enabled():
            raise ProviderUnavailableError(
                f"Provider '{provider}' is disabled in this deployment",
                provider=provider,
                model=model,
            )

    def resolve(self, provider: Optional[str] = None, model: Optional[str] = None) -> ModelSelection:
        """
        Resolve a chat model

        Raises:
            ValidationError: unknown provider, or a model that belongs to a
                different provider than the one requested
            ProviderUnavailableError: the model's provider is disabled
        """
        requested_provider = self._provider(provider, "provider")
        requested_model = model.strip() if isinstance(model, str) and model.strip() else None

        if requested_model is None:
            chosen = requested_provider or self._provider(self.default_provider, "provider")
            self._require_enabled(chosen)
            default = self.strategies[chosen].default_model
            return ModelSelection(provider=chosen, model_id=default, model=default)

        prefixed_provider, model_name = split_provider_prefix(requested_model)
        if prefixed_provider and requested_provider and prefixed_provider != requested_provider:
            raise ValidationError(
                f"Model '{requested_model}' does not belong to provider '{requested_provider}'",
                field="model",
                value=requested_model,
            )
        hint = requested_provider or prefixed_provider

        matches = find_model_definitions(model_name)
        if matches:
            scoped = [m for m in matches if hint is None or m.provider == hint]
            if not scoped:
                raise ValidationError(
                    f"Model '{requested_model}' does not belong to provider '{hint}'",
                    field="model",
                    value=requested_model,
                )
            enabled = [m for m in scoped if self.strategies[m.provider].is_enabled()]
            definition = (enabled or scoped)[0]
            self._require_enabled(definition.provider, definition.id)
            return ModelSelection(
                provider=definition.provider,
                model_id=definition.id,
                model=definition.model,
                requested_model=requested_model,
            )

        chosen = hint or self._provider(self.default_provider, "provider")
        self._require_enabled(chosen, requested_model)
        default = self.strategies[chosen].default_model
        logger.warning(f"unknown model '{requested_model}', using {chosen} default '{default}'")
        return ModelSelection(
            provider=chosen,
            model_id=default,
            model=default,
            requested_model=requested_model,
            was_substituted=True,
            reason="UNKNOWN_MODEL",
        )

    def resolve_embedding(self, provider: Optional[str] = None, model: Optional[str] = None) -> EmbeddingSelection:
        requested_provider = self._provider(provider, "embeddingProvider")
        space = None
        if isinstance(model, str) and model.strip():
            space = find_embedding_space(model, requested_provider)
            if space is None:
                raise ValidationError(f"Unsupported embedding model: {model}", field="embeddingModel", value=model)
        else:
            chosen = requested_provider or self._provider(self.default_embedding_provider, "embeddingProvider")
            space = default_embedding_space(chosen)
            if space is None:
                raise ValidationError(
                    f"Provider '{chosen}' has no embedding model",
                    field="embeddingProvider",
                    value=chosen,
                )

        self._require_enabled(space.provider, space.model)
        return EmbeddingSelection(provider=space.provider, model=space.model, space=space)
