"""
Shared pytest fixtures for agent memory tests.

This module provides:
- Temporary SQLite database files with the schema in place
- Embedding stores in linear-scan and (when available) native mode
- A deterministic fake embedding client
- A mocked OpenAI client
"""

from unittest.mock import MagicMock, patch

import pytest

from agent_memory.config import MappingConfigProvider
from agent_memory.memory.backlog import SummaryBacklog
from agent_memory.memory.embedding_store import EmbeddingStore
from agent_memory.memory.failed_jobs import FailedJobRepository
from agent_memory.memory.schema import connect, ensure_schema
from agent_memory.rag.context import RagConfig
from tests.fixtures import DIM, FakeEmbeddingClient


# =============================================================================
# Core Fixtures
# =============================================================================


@pytest.fixture
def temp_db_path(tmp_path) -> str:
    """Provide a temporary SQLite database path with the schema created."""
    db_path = str(tmp_path / "test_memory.db")
    conn = connect(db_path)
    try:
        ensure_schema(conn)
    finally:
        conn.close()
    return db_path


@pytest.fixture
def store(temp_db_path) -> EmbeddingStore:
    """Initialized store forced onto the linear-scan path."""
    store = EmbeddingStore(db_path=temp_db_path, dimension=DIM, use_vector_index=False)
    store.initialize()
    return store


@pytest.fixture
def native_store(temp_db_path) -> EmbeddingStore:
    """Initialized store using sqlite-vec; skipped when the extension cannot load."""
    store = EmbeddingStore(db_path=temp_db_path, dimension=DIM, use_vector_index=True)
    store.initialize()
    if not store.index_available:
        pytest.skip("sqlite-vec cannot be loaded in this interpreter")
    return store


@pytest.fixture
def fake_client() -> FakeEmbeddingClient:
    """Provide a deterministic embedding client."""
    return FakeEmbeddingClient()


@pytest.fixture
def backlog(temp_db_path) -> SummaryBacklog:
    return SummaryBacklog(temp_db_path)


@pytest.fixture
def failed_jobs(temp_db_path) -> FailedJobRepository:
    return FailedJobRepository(temp_db_path)


@pytest.fixture
def rag_config() -> RagConfig:
    """Default retrieval settings."""
    return RagConfig()


# =============================================================================
# Config Fixtures
# =============================================================================


@pytest.fixture
def config_provider() -> MappingConfigProvider:
    """Provide an empty, writable config provider."""
    return MappingConfigProvider({})


@pytest.fixture
def sample_config_yaml(tmp_path):
    """Create a sample config.yaml file."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
rag:
  conversation_limit: 3
  conversation_min_similarity: 0.5
  token_budget: 500
  cache_enabled: false

embeddings:
  batch_size: 4
  rate_limit_ms: 0

storage:
  vector_index_enabled: false

logging:
  level: DEBUG
"""
    )
    return config_path


# =============================================================================
# Mock External Services
# =============================================================================


@pytest.fixture
def mock_openai():
    """Mock OpenAI for embedding API tests."""
    # Patch at the module where it's imported, not where it's defined
    with patch("agent_memory.memory.embeddings.OpenAI") as mock_client_class:
        mock_client = MagicMock()

        def create(model, input, **kwargs):
            data = [
                MagicMock(index=i, embedding=[float(i)] * 4)
                for i in reversed(range(len(input)))
            ]
            response = MagicMock()
            response.data = data
            response.usage = MagicMock(total_tokens=10 * len(input))
            return response

        mock_client.embeddings.create = MagicMock(side_effect=create)
        mock_client_class.return_value = mock_client
        yield mock_client_class


@pytest.fixture
def mock_sentence_transformers():
    """Mock the sentence_transformers package with a 768-dim model."""
    module = MagicMock()
    model = MagicMock()
    model.get_sentence_embedding_dimension.return_value = 768
    module.SentenceTransformer.return_value = model
    with patch.dict("sys.modules", {"sentence_transformers": module}):
        yield module
