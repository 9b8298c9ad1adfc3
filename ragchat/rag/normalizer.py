"""
Question normalization

Canonicalizes the raw last-turn text for routing, and filters incoming turns
down to the roles the pipeline understands.
"""
from typing import Any, Iterable, List
import re

from ragchat.core.exceptions import ValidationError
from .rag_types import NormalizedQuestion, Turn

ALLOWED_ROLES = ("user", "assistant")

_WHITESPACE = re.compile(r"\s+")
_NON_CANONICAL = re.compile(r"[^a-z0-9가-힣\s]")
_HANGUL = re.compile(r"[가-힣]")
_LATIN = re.compile(r"[a-zA-Z]")


def detect_language(text: str) -> str:
    if _HANGUL.search(text):
        return "mixed" if _LATIN.search(text) else "ko"
    if _LATIN.search(text):
        return "en"
    return "unknown"


def normalize_question(raw: str) -> NormalizedQuestion:
    """
    Collapse whitespace and trim; case is preserved.

    Raises:
        ValidationError: the text is empty or whitespace only
    """
    normalized = _WHITESPACE.sub(" ", raw or "").strip()
    if not normalized:
        raise ValidationError("Question must not be empty", field="messages")

    canonical = _NON_CANONICAL.sub(" ", normalized.lower())
    canonical = _WHITESPACE.sub(" ", canonical).strip()

    return NormalizedQuestion(
        raw=raw,
        normalized=normalized,
        canonical=canonical,
        language=detect_language(normalized),
    )


def sanitize_messages(messages: Iterable[Any]) -> List[Turn]:
    """Keep user/assistant turns with non-empty text content"""
    turns = []
    for message in messages or []:
        if isinstance(message, dict):
            role, content = message.get("role"), message.get("content")
        else:
            role, content = getattr(message, "role", None), getattr(message, "content", None)

        if role not in ALLOWED_ROLES or not isinstance(content, str):
            continue
        content = content.strip()
        if content:
            turns.append(Turn(role=role, content=content))
    return turns


def latest_user_turn(turns: List[Turn]) -> Turn:
    if not turns or turns[-1].role != "user":
        raise ValidationError("The last message must be a non-empty user message", field="messages")
    return turns[-1]
