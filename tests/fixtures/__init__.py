"""
Test fixtures and sample data for agent memory tests.
"""

import hashlib
import math
import sqlite3
from datetime import datetime, timedelta
from typing import Optional

from agent_memory.errors import PermanentError, TransientError
from agent_memory.memory.embeddings import EmbeddingClient, EmbeddingResult

DIM = 8

BASE_TIME = datetime(2024, 1, 1, 12, 0, 0)


def axis(i: int, dim: int = DIM) -> list[float]:
    """Unit vector along axis *i*."""
    vector = [0.0] * dim
    vector[i] = 1.0
    return vector


def toward(i: int, similarity: float, other: int = DIM - 1, dim: int = DIM) -> list[float]:
    """Unit vector whose cosine similarity with axis(i) is exactly *similarity*."""
    vector = [0.0] * dim
    vector[i] = similarity
    vector[other] = math.sqrt(max(0.0, 1.0 - similarity * similarity))
    return vector


def hashed_vector(text: str, dim: int = DIM) -> list[float]:
    """Deterministic pseudo-random unit vector for *text*."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    raw = [(b / 255.0) - 0.5 for b in digest[:dim]]
    norm = math.sqrt(sum(v * v for v in raw)) or 1.0
    return [v / norm for v in raw]


def ts(minutes: int = 0) -> str:
    """Timestamp string *minutes* after BASE_TIME, in the column format."""
    return (BASE_TIME + timedelta(minutes=minutes)).isoformat(timespec="milliseconds")


def add_conversation(
    db_path: str,
    summary: Optional[str] = "A conversation summary",
    created_at: Optional[str] = None,
    title: str = "Test conversation",
) -> int:
    """Insert a conversation row and return its id."""
    with sqlite3.connect(db_path) as conn:
        if created_at is None:
            cursor = conn.execute(
                "INSERT INTO conversations (title, summary) VALUES (?, ?)", (title, summary)
            )
        else:
            cursor = conn.execute(
                "INSERT INTO conversations (title, summary, created_at) VALUES (?, ?, ?)",
                (title, summary, created_at),
            )
        return cursor.lastrowid


def add_exchange(
    db_path: str,
    conversation_id: int,
    summary: Optional[str] = "An exchange summary",
    started_at: Optional[str] = None,
) -> int:
    """Insert an exchange row and return its id."""
    with sqlite3.connect(db_path) as conn:
        if started_at is None:
            cursor = conn.execute(
                "INSERT INTO exchanges (conversation_id, summary) VALUES (?, ?)",
                (conversation_id, summary),
            )
        else:
            cursor = conn.execute(
                "INSERT INTO exchanges (conversation_id, summary, started_at) VALUES (?, ?, ?)",
                (conversation_id, summary, started_at),
            )
        return cursor.lastrowid


def delete_conversation(db_path: str, conversation_id: int) -> None:
    with sqlite3.connect(db_path) as conn:
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))


def delete_exchange(db_path: str, exchange_id: int) -> None:
    with sqlite3.connect(db_path) as conn:
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("DELETE FROM exchanges WHERE id = ?", (exchange_id,))


def zero_out_embedding(db_path: str, column: str, ref_id: int, dim: int = DIM) -> None:
    """Overwrite a stored vector with zeros, bypassing the store's validation."""
    with sqlite3.connect(db_path) as conn:
        conn.execute(
            f"UPDATE text_embeddings SET embedding = ? WHERE {column} = ?",
            (bytes(4 * dim), ref_id),
        )


class FakeEmbeddingClient(EmbeddingClient):
    """
    Deterministic in-memory embedding client.

    Texts listed in *vectors* get that vector; anything else gets a hashed
    vector. Exceptions queued in *failures* are raised (one per call) before
    any vectors are produced.
    """

    def __init__(
        self,
        vectors: Optional[dict[str, list[float]]] = None,
        dim: int = DIM,
        tokens_per_text: int = 5,
        cost_per_text: float = 0.001,
    ):
        self.vectors = dict(vectors or {})
        self.dim = dim
        self.tokens_per_text = tokens_per_text
        self.cost_per_text = cost_per_text
        self.failures: list[Exception] = []
        self.calls: list[list[str]] = []

    @property
    def dimension(self) -> int:
        return self.dim

    def fail_next(self, *errors: Exception) -> None:
        self.failures.extend(errors)

    def embed(self, texts: list[str]) -> EmbeddingResult:
        self.calls.append(list(texts))
        if self.failures:
            raise self.failures.pop(0)
        return EmbeddingResult(
            vectors=[self.vectors.get(t) or hashed_vector(t, self.dim) for t in texts],
            tokens_used=self.tokens_per_text * len(texts),
            cost=self.cost_per_text * len(texts),
            model="fake",
        )


def transient(message: str = "rate limited") -> TransientError:
    return TransientError(message)


def permanent(message: str = "invalid api key") -> PermanentError:
    return PermanentError(message)
