"""
Base data structures for the embedding store.

Records stored in the database, the match types returned by similarity
search, and the unit of work handed to the embedding worker.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class EmbeddingKind(str, Enum):
    """What an embedding row was generated from."""
    CONVERSATION_SUMMARY = "conversation_summary"
    EXCHANGE_SUMMARY = "exchange_summary"

    @property
    def ref_column(self) -> str:
        """Column holding the referenced id for this kind."""
        if self is EmbeddingKind.CONVERSATION_SUMMARY:
            return "conversation_id"
        return "exchange_id"


@dataclass
class EmbeddingRecord:
    """
    A stored embedding of a conversation or exchange summary.

    Exactly one of conversation_id / exchange_id is set, matching kind.
    """
    id: int
    kind: EmbeddingKind
    conversation_id: Optional[int]
    exchange_id: Optional[int]
    content: str
    vector: list[float]
    created_at: datetime
    updated_at: datetime

    @property
    def ref_id(self) -> int:
        if self.kind is EmbeddingKind.CONVERSATION_SUMMARY:
            return self.conversation_id  # type: ignore[return-value]
        return self.exchange_id  # type: ignore[return-value]

    @property
    def was_inserted(self) -> bool:
        """True when the last upsert created this row rather than updating it."""
        return self.created_at == self.updated_at


@dataclass(frozen=True)
class ConversationMatch:
    """A conversation summary returned by similarity search."""
    conversation_id: int
    content: str
    similarity: float  # 0-1, higher is more similar
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class ExchangeMatch:
    """An exchange summary returned by similarity search."""
    exchange_id: int
    conversation_id: int
    content: str
    similarity: float
    started_at: Optional[datetime] = None


@dataclass(frozen=True)
class WorkItem:
    """A summary waiting for an embedding."""
    kind: EmbeddingKind
    ref_id: int
    text: str
    # Conversation the summary belongs to (the ref itself for conversation summaries)
    conversation_id: Optional[int] = None

    @property
    def label(self) -> str:
        return f"{self.kind.value}:{self.ref_id}"
