"""
Retrieval metrics log.

One row per retrieval (candidate counts, top scores, duration, cache hit)
for tuning thresholds and budgets after the fact.
"""

import hashlib
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

import numpy as np

from ..errors import StorageError
from ..memory.schema import connect

logger = logging.getLogger("agent_memory.rag.retrieval_log")


@dataclass
class RetrievalLogEntry:
    """One logged retrieval."""
    id: int
    query_hash: str
    timestamp: datetime
    conversation_candidates: int
    exchange_candidates: int
    retrieval_duration_ms: float
    top_conversation_score: Optional[float]
    top_exchange_score: Optional[float]
    filtered_by: Optional[str]
    cache_hit: bool


def query_hash(query_embedding: Sequence[float], precision: int = 3) -> str:
    """Short stable hash grouping near-identical query embeddings."""
    rounded = np.round(np.asarray(query_embedding, dtype=np.float64), precision) + 0.0
    return hashlib.sha256(rounded.tobytes()).hexdigest()[:16]


class RetrievalLogger:
    """SQLite-backed log of retrieval metrics."""

    def __init__(self, db_path: str, timeout: float = 30.0):
        self.db_path = db_path
        self.timeout = timeout

    def log_retrieval(
        self,
        query_hash: str,
        retrieval_duration_ms: float,
        conversation_candidates: int = 0,
        exchange_candidates: int = 0,
        top_conversation_score: Optional[float] = None,
        top_exchange_score: Optional[float] = None,
        filtered_by: Optional[str] = None,
        cache_hit: bool = False,
    ) -> None:
        if not query_hash:
            raise ValueError("query_hash is required")
        try:
            conn = connect(self.db_path, timeout=self.timeout)
            try:
                conn.execute(
                    """
                    INSERT INTO rag_retrieval_logs (
                        query_hash, conversation_candidates, exchange_candidates,
                        retrieval_duration_ms, top_conversation_score, top_exchange_score,
                        filtered_by, cache_hit
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        query_hash,
                        conversation_candidates,
                        exchange_candidates,
                        retrieval_duration_ms,
                        top_conversation_score,
                        top_exchange_score,
                        filtered_by,
                        int(cache_hit),
                    ),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to log retrieval: {e}") from e

    def recent(self, limit: int = 100) -> list[RetrievalLogEntry]:
        """Most recent retrievals first."""
        try:
            conn = connect(self.db_path, timeout=self.timeout)
            try:
                rows = conn.execute(
                    "SELECT * FROM rag_retrieval_logs ORDER BY timestamp DESC, id DESC LIMIT ?",
                    (limit,),
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read retrieval logs: {e}") from e

        return [
            RetrievalLogEntry(
                id=row["id"],
                query_hash=row["query_hash"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
                conversation_candidates=row["conversation_candidates"],
                exchange_candidates=row["exchange_candidates"],
                retrieval_duration_ms=row["retrieval_duration_ms"],
                top_conversation_score=row["top_conversation_score"],
                top_exchange_score=row["top_exchange_score"],
                filtered_by=row["filtered_by"],
                cache_hit=bool(row["cache_hit"]),
            )
            for row in rows
        ]
