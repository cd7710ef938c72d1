"""
Embedding clients for generating vector representations.

Uses OpenAI's embedding models by default, with support for
local models via sentence-transformers.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Literal

import openai
from openai import OpenAI

from ..errors import PermanentError, TransientError

logger = logging.getLogger("agent_memory.memory.embeddings")


@dataclass
class EmbeddingResult:
    """Vectors for a batch of texts plus what producing them cost."""
    vectors: list[list[float]]
    tokens_used: int = 0
    cost: float = 0.0
    model: str = ""


class EmbeddingClient(ABC):
    """
    Abstract interface for embedding generation.

    embed() raises TransientError for failures worth retrying and
    PermanentError for everything else.
    """

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Return the dimension of embeddings produced."""
        pass

    @abstractmethod
    def embed(self, texts: list[str]) -> EmbeddingResult:
        """Generate one embedding per text, in order."""
        pass


# Errors that may succeed if we try again later
_TRANSIENT_OPENAI_ERRORS = (
    openai.RateLimitError,
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.InternalServerError,
)


class OpenAIEmbeddingClient(EmbeddingClient):
    """
    OpenAI embedding client using text-embedding-3 models.

    Supports native dimension reduction via the dimensions parameter.

    Models:
    - text-embedding-3-small: default 1536 dimensions, $0.02 / 1M tokens
    - text-embedding-3-large: default 3072 dimensions, $0.13 / 1M tokens
    """

    # Default dimensions for each model
    MODEL_DEFAULT_DIMENSIONS = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
    }

    # USD per million input tokens
    PRICING_PER_MILLION_TOKENS = {
        "text-embedding-3-small": 0.020,
        "text-embedding-3-large": 0.130,
    }

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        dimensions: int | None = None,
        timeout: float = 30.0,
    ):
        """
        Initialize OpenAI embedding client.

        Args:
            api_key: OpenAI API key
            model: Model name (text-embedding-3-small or text-embedding-3-large)
            dimensions: Override output dimensions. If None, uses model's default.
            timeout: Per-request timeout in seconds
        """
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._client: OpenAI | None = None

        default_dim = self.MODEL_DEFAULT_DIMENSIONS.get(model, 1536)
        if dimensions is not None:
            if dimensions > default_dim:
                logger.warning(
                    f"Requested dimensions ({dimensions}) exceeds model default ({default_dim}). "
                    f"Using {default_dim}."
                )
                self._dimension = default_dim
                self._requested_dimensions = None
            else:
                self._dimension = dimensions
                self._requested_dimensions = dimensions
        else:
            self._dimension = default_dim
            self._requested_dimensions = None

        logger.info(
            f"OpenAIEmbeddingClient initialized: model={model}, dimensions={self._dimension}"
        )

    @property
    def dimension(self) -> int:
        return self._dimension

    def _get_client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(api_key=self.api_key, timeout=self.timeout)
        return self._client

    def _cost(self, tokens: int) -> float:
        price = self.PRICING_PER_MILLION_TOKENS.get(self.model, 0.0)
        return (tokens / 1_000_000) * price

    def embed(self, texts: list[str]) -> EmbeddingResult:
        """Generate embeddings for multiple texts in one request."""
        if not texts:
            return EmbeddingResult(vectors=[], model=self.model)

        client = self._get_client()

        kwargs = {
            "model": self.model,
            "input": texts,
        }
        if self._requested_dimensions is not None:
            kwargs["dimensions"] = self._requested_dimensions

        try:
            response = client.embeddings.create(**kwargs)
        except _TRANSIENT_OPENAI_ERRORS as e:
            logger.warning(f"OpenAI embeddings transient error: {e}")
            raise TransientError(str(e)) from e
        except openai.OpenAIError as e:
            logger.error(f"OpenAI embeddings error: {e}")
            raise PermanentError(str(e)) from e

        # Sort by index to maintain order
        sorted_data = sorted(response.data, key=lambda x: x.index)
        tokens = response.usage.total_tokens if response.usage else 0

        return EmbeddingResult(
            vectors=[item.embedding for item in sorted_data],
            tokens_used=tokens,
            cost=self._cost(tokens),
            model=self.model,
        )


class LocalEmbeddingClient(EmbeddingClient):
    """
    Local embedding client using sentence-transformers.

    Uses all-MiniLM-L6-v2 by default (384 dimensions). Costs nothing.
    The model is loaded on first use. Reading the dimension loads it.
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        self.model_name = model_name
        self._model = None
        self._dimension = None
        logger.info(f"LocalEmbeddingClient initialized with model: {model_name}")

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            self._get_model()
        return self._dimension

    def _get_model(self):
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError:
                raise PermanentError(
                    "sentence-transformers not installed. "
                    "Install with: pip install 'agent-memory[local]'"
                )
            try:
                model = SentenceTransformer(self.model_name)
            except Exception as e:
                raise PermanentError(
                    f"Could not load local embedding model {self.model_name}: {e}"
                ) from e
            dimension = model.get_sentence_embedding_dimension()
            if not dimension:
                raise PermanentError(
                    f"Local embedding model {self.model_name} does not report its dimension"
                )
            self._model = model
            self._dimension = dimension
            logger.info(f"Loaded local embedding model: {self.model_name} ({dimension} dims)")
        return self._model

    def embed(self, texts: list[str]) -> EmbeddingResult:
        if not texts:
            return EmbeddingResult(vectors=[], model=self.model_name)

        model = self._get_model()
        try:
            embeddings = model.encode(texts, convert_to_numpy=True)
        except (RuntimeError, ValueError) as e:
            raise PermanentError(f"Local embedding failed: {e}") from e
        return EmbeddingResult(vectors=embeddings.tolist(), model=self.model_name)


def create_embedding_client(
    provider: Literal["openai", "local"] = "openai",
    api_key: str = "",
    model: str = "",
    dimensions: int | None = None,
) -> EmbeddingClient:
    """
    Factory function to create the appropriate embedding client.

    Args:
        provider: "openai" or "local"
        api_key: OpenAI API key (required for openai provider)
        model: Model name (optional, uses defaults)
        dimensions: Override output dimensions for OpenAI embeddings.

    Returns:
        Configured EmbeddingClient instance
    """
    if provider == "openai":
        if not api_key:
            raise ValueError("OpenAI API key required for openai embedding provider")
        return OpenAIEmbeddingClient(
            api_key=api_key,
            model=model or "text-embedding-3-small",
            dimensions=dimensions,
        )
    elif provider == "local":
        return LocalEmbeddingClient(
            model_name=model or "all-MiniLM-L6-v2",
        )
    else:
        raise ValueError(f"Unknown embedding provider: {provider}")
