"""
Error types for the memory engine.

The retrieval path turns most of these into degraded results rather than
letting them reach the caller; see RetrievalPipeline and RagRetriever.
"""


class AgentMemoryError(Exception):
    """Base class for all memory engine errors."""


class ConfigurationError(AgentMemoryError):
    """A configuration value has the wrong type or is out of range."""


class EmbeddingClientError(AgentMemoryError):
    """The embedding provider could not produce vectors."""


class TransientError(EmbeddingClientError):
    """A provider failure worth retrying (rate limits, timeouts, 5xx)."""


class PermanentError(EmbeddingClientError):
    """A provider failure that will not go away on retry (auth, bad input)."""


class StorageError(AgentMemoryError):
    """The embedding store could not be read or written."""


class IndexUnavailableError(StorageError):
    """The native vector search extension could not be loaded."""


class CacheError(AgentMemoryError):
    """The retrieval cache could not serve a request."""
