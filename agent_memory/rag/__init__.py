"""
Retrieval-augmented generation over past conversations.

RagRetriever runs a pipeline of processors:
QueryEmbedding -> ConversationSearch -> ExchangeSearch -> ContextFormatter
"""

from .cache import RagCache
from .context import RagConfig, RetrievalContext, RetrievalMetadata
from .pipeline import Cancellation, RetrievalPipeline
from .processors import (
    ContextFormatterProcessor,
    ConversationSearchProcessor,
    ExchangeSearchProcessor,
    QueryEmbeddingProcessor,
    RetrievalProcessor,
)
from .retrieval_log import RetrievalLogger
from .retriever import RagRetriever
from .tokens import TokenEstimator, estimate_tokens

__all__ = [
    "Cancellation",
    "ContextFormatterProcessor",
    "ConversationSearchProcessor",
    "ExchangeSearchProcessor",
    "QueryEmbeddingProcessor",
    "RagCache",
    "RagConfig",
    "RagRetriever",
    "RetrievalContext",
    "RetrievalLogger",
    "RetrievalMetadata",
    "RetrievalPipeline",
    "RetrievalProcessor",
    "TokenEstimator",
    "estimate_tokens",
]
