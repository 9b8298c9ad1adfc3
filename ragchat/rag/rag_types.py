"""
RAG pipeline types

Value objects passed between the chat guardrail stages.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class Intent(str, Enum):
    KNOWLEDGE = "knowledge"
    SMALLTALK = "smalltalk"
    COMMAND = "command"


class RankerMode(str, Enum):
    NONE = "none"
    MMR = "mmr"
    CROSS_ENCODER = "cross-encoder"


class ReverseRagMode(str, Enum):
    PRECISION = "precision"
    RECALL = "recall"


@dataclass(frozen=True)
class Turn:
    """One conversation turn"""
    role: str  # "user" or "assistant"
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class NormalizedQuestion:
    raw: str
    normalized: str
    canonical: str
    language: str


@dataclass(frozen=True)
class RoutedQuestion:
    question: NormalizedQuestion
    intent: Intent
    confidence: float
    reason: str

    @property
    def needs_retrieval(self) -> bool:
        return self.intent == Intent.KNOWLEDGE


@dataclass(frozen=True)
class SummaryConfig:
    enabled: bool = True
    trigger_tokens: int = 400
    max_turns: int = 6
    max_chars: int = 600


@dataclass(frozen=True)
class GuardrailConfig:
    """Thresholds and budgets applied to every chat turn"""
    similarity_threshold: float = 0.78
    rag_top_k: int = 5
    rag_context_token_budget: int = 1200
    rag_context_clip_tokens: int = 320
    history_token_budget: int = 900
    summary: SummaryConfig = field(default_factory=SummaryConfig)
    chitchat_keywords: Tuple[str, ...] = ()
    fallback_chitchat: str = ""
    fallback_command: str = ""

    def to_snapshot(self) -> Dict[str, Any]:
        return {
            "similarityThreshold": self.similarity_threshold,
            "ragTopK": self.rag_top_k,
            "ragContextTokenBudget": self.rag_context_token_budget,
            "ragContextClipTokens": self.rag_context_clip_tokens,
            "historyTokenBudget": self.history_token_budget,
            "summary": {
                "enabled": self.summary.enabled,
                "triggerTokens": self.summary.trigger_tokens,
                "maxTurns": self.summary.max_turns,
                "maxChars": self.summary.max_chars,
            },
            "chitchatKeywords": list(self.chitchat_keywords),
        }


@dataclass(frozen=True)
class HistoryWindow:
    """
    Token-bounded view of the conversation

    ``preserved`` is always a suffix of the input ending at the newest turn.
    """
    preserved: Tuple[Turn, ...]
    trimmed: Tuple[Turn, ...]
    token_count: int
    original_tokens: int
    summary_memory: Optional[str] = None


@dataclass
class RetrievedItem:
    """
    One vector-search hit

    ``metadata`` always carries the canonical ``doc_id``, ``title`` and
    ``source_url`` keys once the retriever has resolved them.
    """
    chunk: str
    similarity: float
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None

    @property
    def doc_id(self) -> Optional[str]:
        return self.metadata.get("doc_id")

    @property
    def title(self) -> Optional[str]:
        return self.metadata.get("title")

    @property
    def source_url(self) -> Optional[str]:
        return self.metadata.get("source_url")

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "RetrievedItem":
        metadata = dict(row.get("metadata") or {})
        for key in ("doc_id", "docId", "document_id", "title", "source_url", "sourceUrl", "url"):
            if row.get(key) is not None and key not in metadata:
                metadata[key] = row[key]

        chunk = row.get("chunk") or row.get("content") or row.get("text") or ""
        similarity = row.get("similarity")
        if not isinstance(similarity, (int, float)):
            similarity = row.get("score")
        if not isinstance(similarity, (int, float)):
            similarity = row.get("similarity_score", 0.0)

        raw_id = row.get("id")
        return cls(
            chunk=chunk if isinstance(chunk, str) else str(chunk),
            similarity=float(similarity or 0.0),
            metadata=metadata,
            id=str(raw_id) if raw_id is not None else None,
        )


@dataclass(frozen=True)
class ContextItem:
    """An item admitted into the context window, with its possibly clipped text"""
    item: RetrievedItem
    text: str
    clipped: bool
    token_count: int

    @property
    def similarity(self) -> float:
        return self.item.similarity

    @property
    def doc_id(self) -> Optional[str]:
        return self.item.doc_id

    @property
    def title(self) -> Optional[str]:
        return self.item.title

    @property
    def source_url(self) -> Optional[str]:
        return self.item.source_url


@dataclass(frozen=True)
class ContextWindowResult:
    context_block: str
    included: Tuple[ContextItem, ...]
    dropped: int
    total_tokens: int
    insufficient: bool
    highest_score: float


@dataclass(frozen=True)
class RagKPlan:
    retrieve_k: int
    rerank_k: Optional[int]
    final_k: int


@dataclass
class EnhancementSummary:
    """What query transformations ran for this turn"""
    reverse_rag_enabled: bool = False
    reverse_rag_mode: str = ReverseRagMode.PRECISION.value
    original: str = ""
    rewritten: str = ""
    hyde_enabled: bool = False
    hyde_generated: Optional[str] = None
    ranker_mode: str = RankerMode.NONE.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reverseRag": {
                "enabled": self.reverse_rag_enabled,
                "mode": self.reverse_rag_mode,
                "original": self.original,
                "rewritten": self.rewritten,
            },
            "hyde": {
                "enabled": self.hyde_enabled,
                "generated": self.hyde_generated,
            },
            "ranker": {"mode": self.ranker_mode},
        }


@dataclass
class Citation:
    doc_id: Optional[str] = None
    title: Optional[str] = None
    source_url: Optional[str] = None
    excerpt_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "docId": self.doc_id,
            "title": self.title,
            "sourceUrl": self.source_url,
            "excerptCount": self.excerpt_count,
        }


@dataclass
class RetrievalOutcome:
    """Result of the knowledge path, whichever backend produced it"""
    window: ContextWindowResult
    enhancements: EnhancementSummary
    retrieved: List[RetrievedItem] = field(default_factory=list)
    plan: Optional[RagKPlan] = None
