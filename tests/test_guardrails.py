"""
Guardrail stage tests

Covers:
1. Question normalization and message sanitation
2. Intent routing and intent fallbacks
3. History windowing and summary memory
"""
import pytest

from ragchat.core.exceptions import ValidationError
from ragchat.rag.history_window import apply_history_window, build_summary_memory, estimate_turn_tokens
from ragchat.rag.intent_router import IntentRouter, build_intent_fallback, matches_keyword
from ragchat.rag.normalizer import latest_user_turn, normalize_question, sanitize_messages
from ragchat.rag.rag_types import GuardrailConfig, Intent, SummaryConfig, Turn


class TestNormalizer:
    """Question normalization"""

    def test_collapses_whitespace_and_keeps_case(self):
        result = normalize_question("  How do I   install\n\tRagChat?  ")

        assert result.normalized == "How do I install RagChat?"
        assert result.canonical == "how do i install ragchat"
        assert result.language == "en"

    def test_hangul_is_kept_in_canonical_form(self):
        result = normalize_question("설치 방법은?")

        assert result.canonical == "설치 방법은"
        assert result.language == "ko"

    @pytest.mark.parametrize("raw", ["", "   ", "\n\t "])
    def test_empty_question_is_rejected(self, raw):
        with pytest.raises(ValidationError) as exc_info:
            normalize_question(raw)
        assert exc_info.value.http_status == 400

    def test_sanitize_drops_unknown_roles_and_blank_content(self):
        turns = sanitize_messages([
            {"role": "system", "content": "ignore me"},
            {"role": "user", "content": "  first  "},
            {"role": "assistant", "content": ""},
            {"role": "assistant", "content": ["not", "text"]},
            {"role": "user", "content": "second"},
        ])

        assert turns == [Turn("user", "first"), Turn("user", "second")]

    def test_last_turn_must_be_user(self):
        with pytest.raises(ValidationError):
            latest_user_turn([Turn("user", "q"), Turn("assistant", "a")])
        with pytest.raises(ValidationError):
            latest_user_turn([])


class TestIntentRouter:
    """Rule-based intent routing"""

    @pytest.fixture
    def router(self, guardrail_config):
        return IntentRouter(guardrail_config)

    def test_keyword_match_allows_two_trailing_words(self):
        assert matches_keyword("hello", "hello")
        assert matches_keyword("hello there friend", "hello")
        assert not matches_keyword("hello there my friend", "hello")
        assert not matches_keyword("say hello", "hello")

    def test_knowledge_is_the_default(self, router):
        routed = router.route(normalize_question("How do I configure the ranker?"))

        assert routed.intent == Intent.KNOWLEDGE
        assert routed.reason == "default_knowledge_route"
        assert routed.confidence == 0.6
        assert routed.needs_retrieval

    def test_smalltalk(self, router):
        routed = router.route(normalize_question("Hello there!"))

        assert routed.intent == Intent.SMALLTALK
        assert routed.reason == "smalltalk_pattern_detected"
        assert routed.confidence == 0.75
        assert not routed.needs_retrieval

    def test_command_wins_over_smalltalk(self, router):
        routed = router.route(normalize_question("hi, please delete the index"))

        assert routed.intent == Intent.COMMAND
        assert routed.reason == "command_keyword_detected"
        assert routed.confidence == 0.8

    def test_punctuation_only_routes_to_knowledge(self, router):
        routed = router.route(normalize_question("???"))

        assert routed.intent == Intent.KNOWLEDGE
        assert routed.reason == "empty_after_normalization"
        assert routed.confidence == 0.2

    def test_previous_user_turns_count_for_smalltalk(self, router):
        history = [
            Turn("user", "thanks"),
            Turn("assistant", "You're welcome!"),
            Turn("user", "what else can you do"),
        ]
        routed = router.route(normalize_question("what else can you do"), history)

        assert routed.intent == Intent.SMALLTALK

    def test_only_two_previous_user_turns_are_considered(self, router):
        history = [
            Turn("user", "hello"),
            Turn("user", "how is indexing scheduled"),
            Turn("user", "which chunk size is used"),
            Turn("user", "where are embeddings stored"),
        ]
        routed = router.route(normalize_question("where are embeddings stored"), history)

        assert routed.intent == Intent.KNOWLEDGE

    def test_fallback_context_for_smalltalk(self, guardrail_config):
        result = build_intent_fallback(Intent.SMALLTALK, guardrail_config)

        assert result.context_block == guardrail_config.fallback_chitchat
        assert result.insufficient is True
        assert result.included == ()
        assert result.highest_score == 0.0

    def test_fallback_context_for_command(self, guardrail_config):
        result = build_intent_fallback(Intent.COMMAND, guardrail_config)

        assert "politely decline" in result.context_block
        assert result.insufficient is True


class TestHistoryWindow:
    """Token-bounded history window"""

    def make_turns(self, n, size=40):
        turns = []
        for i in range(n):
            role = "user" if i % 2 == 0 else "assistant"
            turns.append(Turn(role, f"{i:02d}" + "x" * (size - 2)))
        return turns

    def test_turn_cost_includes_role_label_and_overhead(self, counter):
        # "user: " + 10 chars = 16 chars -> 4 tokens, plus 4
        assert estimate_turn_tokens(Turn("user", "a" * 10), counter) == 8

    def test_everything_fits(self, counter, guardrail_config):
        turns = self.make_turns(3)
        window = apply_history_window(turns, guardrail_config, counter)

        assert window.preserved == tuple(turns)
        assert window.trimmed == ()
        assert window.token_count == window.original_tokens
        assert window.summary_memory is None

    def test_walk_stops_at_first_turn_that_does_not_fit(self, counter):
        config = GuardrailConfig(history_token_budget=40, summary=SummaryConfig(enabled=False))
        # each user turn: "user: " + 40 chars = 46 -> 12 + 4 = 16 tokens
        turns = self.make_turns(5)
        window = apply_history_window(turns, config, counter)

        assert window.preserved == tuple(turns[-2:])
        assert window.trimmed == tuple(turns[:-2])
        assert window.token_count <= 40

    def test_latest_turn_is_kept_even_when_over_budget(self, counter):
        config = GuardrailConfig(history_token_budget=10, summary=SummaryConfig(enabled=False))
        turns = [Turn("user", "short"), Turn("user", "y" * 400)]
        window = apply_history_window(turns, config, counter)

        assert window.preserved == (turns[-1],)
        assert window.token_count > 10

    def test_summary_fires_when_original_cost_exceeds_trigger(self, counter):
        config = GuardrailConfig(
            history_token_budget=40,
            summary=SummaryConfig(enabled=True, trigger_tokens=50, max_turns=6, max_chars=600),
        )
        turns = self.make_turns(6)
        window = apply_history_window(turns, config, counter)

        assert window.original_tokens > 50
        assert window.summary_memory is not None
        assert window.summary_memory.startswith("U: 00")
        assert len(window.summary_memory.splitlines()) == len(window.trimmed)

    def test_summary_off_below_trigger(self, counter):
        config = GuardrailConfig(
            history_token_budget=40,
            summary=SummaryConfig(enabled=True, trigger_tokens=10_000),
        )
        window = apply_history_window(self.make_turns(6), config, counter)

        assert window.trimmed
        assert window.summary_memory is None

    def test_summary_disabled(self, counter):
        config = GuardrailConfig(history_token_budget=40, summary=SummaryConfig(enabled=False, trigger_tokens=10))
        window = apply_history_window(self.make_turns(6), config, counter)

        assert window.summary_memory is None

    def test_summary_uses_older_preserved_turns_when_nothing_trimmed(self, counter):
        config = GuardrailConfig(
            history_token_budget=10_000,
            summary=SummaryConfig(enabled=True, trigger_tokens=20),
        )
        turns = self.make_turns(3)
        window = apply_history_window(turns, config, counter)

        assert window.trimmed == ()
        assert window.summary_memory == build_summary_memory(turns[:-1], config.summary)

    def test_summary_lines_are_clipped(self):
        summary_config = SummaryConfig(max_turns=2, max_chars=80)
        turns = [Turn("user", "a" * 100), Turn("assistant", "b" * 100), Turn("user", "c" * 100)]
        summary = build_summary_memory(turns, summary_config)

        lines = summary.splitlines()
        assert lines[0] == "A: " + "b" * 40
        assert lines[1].startswith("U: c")
        assert len(summary) <= 80

    def test_empty_history(self, counter, guardrail_config):
        window = apply_history_window([], guardrail_config, counter)

        assert window.preserved == ()
        assert window.token_count == 0

    def test_idempotent(self, counter, guardrail_config):
        turns = self.make_turns(9)

        assert apply_history_window(turns, guardrail_config, counter) == apply_history_window(
            turns, guardrail_config, counter
        )
