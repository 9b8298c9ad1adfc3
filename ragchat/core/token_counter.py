"""
Token counters

Budgeting estimators shared by the history window and the context window.
Both counters expose the same two methods, so callers can swap them freely:

- ``count_tokens(text) -> int``
- ``clip_to_tokens(text, limit) -> ClippedText``
"""
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, List, Optional
import logging
import math

import tiktoken

logger = logging.getLogger(__name__)

CLIP_SUFFIX = "…"


@dataclass(frozen=True)
class ClippedText:
    text: str
    clipped: bool
    token_count: int


class TokenCounter:
    """
    tiktoken-backed counter

    Counts are an approximation of what any given provider bills; they only
    need to be stable across calls.
    """

    _encoders: Dict[str, "tiktoken.Encoding"] = {}

    MODEL_ENCODINGS = {
        "gpt-4o": "o200k_base",
        "gpt-4o-mini": "o200k_base",
        "gpt-4": "cl100k_base",
        "gpt-3.5-turbo": "cl100k_base",
    }

    def __init__(self, model: str = "gpt-4", encoding_name: Optional[str] = None):
        self.model = model
        self.encoding_name = encoding_name or self.MODEL_ENCODINGS.get(model, "cl100k_base")

    @property
    def encoder(self) -> "tiktoken.Encoding":
        if self.encoding_name not in self._encoders:
            self._encoders[self.encoding_name] = tiktoken.get_encoding(self.encoding_name)
        return self._encoders[self.encoding_name]

    def count_tokens(self, text: Optional[str]) -> int:
        if not text:
            return 0
        return len(self.encoder.encode(text))

    def count_tokens_batch(self, texts: List[str]) -> List[int]:
        return [self.count_tokens(text) for text in texts]

    def clip_to_tokens(self, text: str, limit: int) -> ClippedText:
        """
        Clip text to ``limit`` tokens

        A clipped result carries a trailing ellipsis and is charged exactly
        ``limit`` tokens.
        """
        tokens = self.encoder.encode(text or "")
        if len(tokens) <= limit:
            return ClippedText(text=text or "", clipped=False, token_count=len(tokens))

        # a token boundary may split a multi-byte character
        decoded = self.encoder.decode_bytes(tokens[:limit]).decode("utf-8", errors="ignore")
        return ClippedText(text=f"{decoded}{CLIP_SUFFIX}", clipped=True, token_count=limit)


class ApproximateTokenCounter:
    """Character heuristic: one token per four characters, rounded up"""

    def __init__(self, chars_per_token: int = 4):
        self.chars_per_token = chars_per_token

    def count_tokens(self, text: Optional[str]) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self.chars_per_token)

    def count_tokens_batch(self, texts: List[str]) -> List[int]:
        return [self.count_tokens(text) for text in texts]

    def clip_to_tokens(self, text: str, limit: int) -> ClippedText:
        text = text or ""
        count = self.count_tokens(text)
        if count <= limit:
            return ClippedText(text=text, clipped=False, token_count=count)
        return ClippedText(
            text=f"{text[:limit * self.chars_per_token]}{CLIP_SUFFIX}",
            clipped=True,
            token_count=limit,
        )


@lru_cache()
def get_token_counter(estimator: str = "tiktoken"):
    """Process-wide counter instance, one per estimator"""
    if estimator == "approximate":
        counter = ApproximateTokenCounter()
    else:
        counter = TokenCounter()
    logger.info(f"token estimator {estimator}: {type(counter).__name__}")
    return counter
