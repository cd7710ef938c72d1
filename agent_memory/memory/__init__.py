"""
Vector memory for past conversations.

Embeds conversation and exchange summaries and finds the ones most
similar to a new query.
"""

from .backlog import SummaryBacklog
from .base import ConversationMatch, EmbeddingKind, EmbeddingRecord, ExchangeMatch, WorkItem
from .embedding_store import EmbeddingStore
from .embeddings import (
    EmbeddingClient,
    EmbeddingResult,
    LocalEmbeddingClient,
    OpenAIEmbeddingClient,
    create_embedding_client,
)
from .failed_jobs import FailedJob, FailedJobRepository

__all__ = [
    "ConversationMatch",
    "EmbeddingClient",
    "EmbeddingKind",
    "EmbeddingRecord",
    "EmbeddingResult",
    "EmbeddingStore",
    "ExchangeMatch",
    "FailedJob",
    "FailedJobRepository",
    "LocalEmbeddingClient",
    "OpenAIEmbeddingClient",
    "SummaryBacklog",
    "WorkItem",
    "create_embedding_client",
]
