"""
Prompt assembly

Both engines state the same guardrail lines: intent, context status and the
context block. The native engine sends the preserved turns as chat messages;
the chain engine renders them into a memory block inside the system prompt.
"""
from typing import List, Optional, Sequence

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_core.prompts import ChatPromptTemplate

from .rag_types import ContextWindowResult, RoutedQuestion, Turn

INSUFFICIENT_CONTEXT_STATUS = (
    "Context status: No high-confidence matches satisfied the threshold. "
    "If unsure, be explicit about the missing information."
)
NO_CONTEXT_PLACEHOLDER = "(No relevant context was found.)"
NO_HISTORY_PLACEHOLDER = "(No prior conversation history. Treat this as a standalone exchange.)"


def build_context_status(window: ContextWindowResult) -> str:
    if window.insufficient:
        return INSUFFICIENT_CONTEXT_STATUS
    return f"Context status: {len(window.included)} excerpts ({window.total_tokens} tokens)."


def build_intent_line(routed: RoutedQuestion) -> str:
    return f"Intent: {routed.intent.value} ({routed.reason})"


def build_context_section(window: ContextWindowResult) -> str:
    block = window.context_block.strip()
    return f"Context:\n{block or NO_CONTEXT_PLACEHOLDER}"


def build_native_system_prompt(
    base_prompt: str,
    routed: RoutedQuestion,
    window: ContextWindowResult,
    summary_memory: Optional[str] = None,
) -> str:
    sections = [
        base_prompt.strip(),
        build_intent_line(routed),
        build_context_status(window),
        build_context_section(window),
    ]
    if summary_memory:
        sections.append(f"Conversation summary:\n{summary_memory}")
    return "\n\n".join(s for s in sections if s)


def turns_to_messages(turns: Sequence[Turn]) -> List[BaseMessage]:
    messages: List[BaseMessage] = []
    for turn in turns:
        if turn.role == "assistant":
            messages.append(AIMessage(content=turn.content))
        else:
            messages.append(HumanMessage(content=turn.content))
    return messages


def build_native_messages(
    base_prompt: str,
    routed: RoutedQuestion,
    window: ContextWindowResult,
    preserved: Sequence[Turn],
    summary_memory: Optional[str] = None,
) -> List[BaseMessage]:
    system = build_native_system_prompt(base_prompt, routed, window, summary_memory)
    return [SystemMessage(content=system)] + turns_to_messages(preserved)


def build_memory_block(preserved: Sequence[Turn], summary_memory: Optional[str] = None) -> str:
    """
    Summary and transcript of the turns before the current question

    ``preserved`` includes the current question as its last turn; it is not
    repeated in the transcript.
    """
    sections = []
    if summary_memory:
        sections.append(f"Summary of earlier conversation:\n{summary_memory}")

    earlier = list(preserved)[:-1]
    if earlier:
        lines = [
            f"{'Assistant' if t.role == 'assistant' else 'User'}: {t.content}"
            for t in earlier
        ]
        sections.append("Most recent conversation transcript:\n" + "\n".join(lines))

    if not sections:
        return NO_HISTORY_PLACEHOLDER
    return "\n\n".join(sections)


CHAIN_SYSTEM_TEMPLATE = """{system_prompt}

{intent_line}

{context_status}

{context_section}

{memory_block}"""

CHAIN_PROMPT = ChatPromptTemplate.from_messages([
    ("system", CHAIN_SYSTEM_TEMPLATE),
    ("human", "{question}"),
])
