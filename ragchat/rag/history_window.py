"""
Conversation history window

Functions:
1. Bound the history to a token budget, newest turns first
2. Build a short summary memory for turns that fell out of the window
"""
from typing import Optional, Sequence
import logging

from .rag_types import GuardrailConfig, HistoryWindow, SummaryConfig, Turn

logger = logging.getLogger(__name__)

# role label and separators
MESSAGE_OVERHEAD_TOKENS = 4
MIN_SUMMARY_LINE_CHARS = 32


def estimate_turn_tokens(turn: Turn, counter) -> int:
    return counter.count_tokens(f"{turn.role}: {turn.content}") + MESSAGE_OVERHEAD_TOKENS


def build_summary_memory(turns: Sequence[Turn], summary_config: SummaryConfig) -> Optional[str]:
    """
    Compress turns into ``U: ...`` / ``A: ...`` lines

    Only the last ``max_turns`` turns are kept; each line gets an equal share
    of ``max_chars`` (never less than 32 characters) and the joined text is
    clipped to ``max_chars``.
    """
    recent = list(turns)[-summary_config.max_turns:]
    if not recent:
        return None

    per_line = max(MIN_SUMMARY_LINE_CHARS, summary_config.max_chars // len(recent))
    lines = []
    for turn in recent:
        prefix = "A" if turn.role == "assistant" else "U"
        lines.append(f"{prefix}: {turn.content.strip()[:per_line]}")

    summary = "\n".join(lines)[:summary_config.max_chars].strip()
    return summary or None


def apply_history_window(
    turns: Sequence[Turn],
    config: GuardrailConfig,
    counter,
) -> HistoryWindow:
    """
    Walk turns from newest to oldest until the history budget is spent

    The newest turn is always preserved, even when it alone exceeds the
    budget. The first older turn that does not fit ends the walk; it and
    everything before it are trimmed.
    """
    turns = list(turns)
    if not turns:
        return HistoryWindow(preserved=(), trimmed=(), token_count=0, original_tokens=0)

    costs = [estimate_turn_tokens(t, counter) for t in turns]
    original_tokens = sum(costs)
    budget = config.history_token_budget

    used = costs[-1]
    start = len(turns) - 1
    for index in range(len(turns) - 2, -1, -1):
        if used + costs[index] > budget:
            break
        used += costs[index]
        start = index

    preserved = tuple(turns[start:])
    trimmed = tuple(turns[:start])

    summary_memory = None
    summary = config.summary
    if summary.enabled and original_tokens > summary.trigger_tokens:
        # nothing trimmed: summarize the older preserved turns instead
        source = trimmed or preserved[:-1] or preserved
        summary_memory = build_summary_memory(source, summary)

    if trimmed:
        logger.debug(
            f"history window kept {len(preserved)} turns ({used} tokens), "
            f"trimmed {len(trimmed)}"
        )

    return HistoryWindow(
        preserved=preserved,
        trimmed=trimmed,
        token_count=used,
        original_tokens=original_tokens,
        summary_memory=summary_memory,
    )
