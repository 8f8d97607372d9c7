"""
Core data models for the tutor chat service.

These models represent the primary data structures passed between
retrieval, prompt assembly, generation, caching and usage accounting.
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from tutor_chat.errors import RetrieverContractError


TIERS = ("basic", "pro", "enterprise")
ROLES = ("user", "assistant")


@dataclass(frozen=True)
class Turn:
    """A single message of a conversation. Owned by the conversation store."""
    role: str
    content: str

    def to_message(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class Query:
    """A learner's question. Immutable, never persisted by the core."""
    text: str
    conversation_history: Tuple[Turn, ...] = ()
    context_scope: Optional[FrozenSet[str]] = None


@dataclass(frozen=True)
class RetrievedChunk:
    """
    A passage returned by the context retriever.

    Read-only to the core. Retrievers return chunks ordered by similarity
    descending; similarity is in [0, 1].
    """
    source_id: str
    source_title: Optional[str]
    start_offset_seconds: float
    text: str
    similarity: float

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> "RetrievedChunk":
        """Build a chunk from a collaborator row, failing fast on missing fields."""
        source_id = row.get("source_id")
        text = row.get("text")
        if not source_id or text is None:
            raise RetrieverContractError(f"Retrieved chunk is missing source_id/text: {dict(row)!r}")

        try:
            offset = float(row.get("start_offset_seconds") or 0)
            similarity = float(row.get("similarity") or 0)
        except (TypeError, ValueError) as e:
            raise RetrieverContractError(f"Retrieved chunk has non-numeric fields: {e}") from e

        return cls(
            source_id=str(source_id),
            source_title=row.get("source_title"),
            start_offset_seconds=offset,
            text=str(text),
            similarity=min(max(similarity, 0.0), 1.0),
        )


@dataclass(frozen=True)
class AssembledPrompt:
    """System instruction, context block and user turn for one request."""
    system_instruction: str
    context_block: str
    user_turn: str
    chunks: Tuple[RetrievedChunk, ...] = ()

    @property
    def has_context(self) -> bool:
        return len(self.chunks) > 0


@dataclass(frozen=True)
class Citation:
    """A back-reference from generated text to the chunk it paraphrases."""
    source_id: str
    source_title: str
    offset_seconds: int
    snippet: str

    def to_dict(self) -> dict:
        return {
            "sourceId": self.source_id,
            "sourceTitle": self.source_title,
            "offsetSeconds": self.offset_seconds,
            "snippet": self.snippet,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Citation":
        return cls(
            source_id=data["sourceId"],
            source_title=data["sourceTitle"],
            offset_seconds=int(data["offsetSeconds"]),
            snippet=data.get("snippet", ""),
        )


@dataclass
class CompletionResult:
    """Final output of one completion, with cost computed by the model registry."""
    content: str
    input_tokens: int
    output_tokens: int
    cost_usd: float
    model_id: str
    citations: List[Citation] = field(default_factory=list)


@dataclass
class CacheEntry:
    """A cached answer keyed by normalized query and top-3 chunk fingerprint."""
    key: str
    content: str
    model_id: str
    cached_at_ms: int
    hit_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    citations: List[Citation] = field(default_factory=list)


@dataclass
class CacheStats:
    total_requests: int = 0
    hits: int = 0
    misses: int = 0
    hit_rate: float = 0.0
    estimated_cost_saved: float = 0.0


@dataclass(frozen=True)
class TierLimits:
    """Static limits for a subscription tier. None means unlimited."""
    tier: str
    monthly_messages: Optional[int]
    monthly_cost_limit_usd: Optional[float]
    requests_per_minute_per_user: int
    requests_per_hour_per_user: int
    requests_per_day_per_tenant: int


@dataclass
class MonthlyUsage:
    tenant_id: str
    month: str  # YYYY-MM
    total_messages: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost_usd: float = 0.0

    @property
    def average_cost_per_message(self) -> float:
        if self.total_messages == 0:
            return 0.0
        return self.total_cost_usd / self.total_messages


class WarningLevel(str, Enum):
    NONE = "none"
    WARNING = "warning"
    CRITICAL = "critical"
    EXCEEDED = "exceeded"


@dataclass
class TierLimitStatus:
    within_limits: bool
    warning_level: WarningLevel
    usage: MonthlyUsage
    limits: TierLimits


@dataclass
class RateLimitDecision:
    """Admission result. limited_by is 'user', 'tenant' or 'none'."""
    allowed: bool
    limited_by: str = "none"
    retry_after_seconds: int = 0
    remaining: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class StreamEvent:
    """
    One event of the completion engine's output sequence.

    Types: 'content' (text), 'done' (input/output tokens), 'error' (message).
    'done' and 'error' are terminal; exactly one ends every sequence.
    """
    type: str
    text: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    message: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.type in ("done", "error")

    @classmethod
    def content(cls, text: str) -> "StreamEvent":
        return cls(type="content", text=text)

    @classmethod
    def done(cls, input_tokens: int, output_tokens: int, **extra: Any) -> "StreamEvent":
        return cls(type="done", input_tokens=input_tokens, output_tokens=output_tokens, extra=extra)

    @classmethod
    def error(cls, message: str) -> "StreamEvent":
        return cls(type="error", message=message)


@dataclass
class Conversation:
    """
    A chat session with its bounded turn history and the sources cited so far.

    Owned by ConversationManager; the core only reads a recent window of turns.
    """
    session_id: str
    user_id: str
    turns: List[Turn] = field(default_factory=list)
    citations: Dict[Tuple[str, int], Citation] = field(default_factory=dict)  # (source_id, offset) -> Citation
    created_at: float = field(default_factory=time.time)
    last_accessed: float = field(default_factory=time.time)
