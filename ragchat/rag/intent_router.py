"""
Intent routing

Rule-based classification of a chat turn. No model call is made: a command
keyword anywhere in the canonical text wins, then smalltalk keywords on the
current or the two previous user turns, otherwise the turn is a knowledge
lookup that runs retrieval.
"""
from typing import List, Sequence
import logging

from .rag_types import (
    ContextWindowResult,
    GuardrailConfig,
    Intent,
    NormalizedQuestion,
    RoutedQuestion,
    Turn,
)

logger = logging.getLogger(__name__)


COMMAND_KEYWORDS = [
    "delete",
    "reset",
    "ingest",
    "scrape",
    "crawl",
    "deploy",
    "restart",
    "shutdown",
    "drop table",
    "truncate",
    "rm -rf",
    "sudo",
    "build pipeline",
]

# at most this many words may follow a smalltalk keyword
MAX_KEYWORD_REMAINDER_WORDS = 2
PRIOR_USER_TURNS = 2


def matches_keyword(text: str, keyword: str) -> bool:
    if not text or not keyword:
        return False
    if text == keyword:
        return True
    if not text.startswith(keyword):
        return False

    remainder = text[len(keyword):].strip()
    if not remainder:
        return True
    return len(remainder.split()) <= MAX_KEYWORD_REMAINDER_WORDS


class IntentRouter:
    """
    Intent router

    Confidence values are fixed per rule and only reported in telemetry.
    """

    def __init__(self, config: GuardrailConfig):
        self.config = config
        self.keywords = [k.strip().lower() for k in config.chitchat_keywords if k.strip()]

    def route(self, question: NormalizedQuestion, history: Sequence[Turn] = ()) -> RoutedQuestion:
        canonical = question.canonical

        if not canonical:
            result = RoutedQuestion(question, Intent.KNOWLEDGE, 0.2, "empty_after_normalization")
        elif self._is_command(canonical):
            result = RoutedQuestion(question, Intent.COMMAND, 0.8, "command_keyword_detected")
        elif self._is_smalltalk(canonical, history):
            result = RoutedQuestion(question, Intent.SMALLTALK, 0.75, "smalltalk_pattern_detected")
        else:
            result = RoutedQuestion(question, Intent.KNOWLEDGE, 0.6, "default_knowledge_route")

        logger.debug(f"routed '{question.normalized[:60]}' -> {result.intent.value} ({result.reason})")
        return result

    def _is_command(self, canonical: str) -> bool:
        return any(keyword in canonical for keyword in COMMAND_KEYWORDS)

    def _is_smalltalk(self, canonical: str, history: Sequence[Turn]) -> bool:
        if any(matches_keyword(canonical, k) for k in self.keywords):
            return True

        prior = self._prior_user_entries(history)
        return any(matches_keyword(entry, k) for k in self.keywords for entry in prior)

    def _prior_user_entries(self, history: Sequence[Turn]) -> List[str]:
        user_entries = [t.content.lower() for t in history if t.role == "user"]
        return user_entries[:-1][-PRIOR_USER_TURNS:]


def build_intent_fallback(intent: Intent, config: GuardrailConfig) -> ContextWindowResult:
    """Fixed context used instead of retrieval for non-knowledge intents"""
    if intent == Intent.SMALLTALK:
        block = config.fallback_chitchat
    elif intent == Intent.COMMAND:
        block = config.fallback_command
    else:
        block = ""

    return ContextWindowResult(
        context_block=block,
        included=(),
        dropped=0,
        total_tokens=0,
        insufficient=True,
        highest_score=0.0,
    )
