"""
SQLite Embedding Store.

Durable storage for conversation and exchange summary embeddings, with
two ways of answering a similarity query:

- Native: the sqlite-vec extension computes cosine distance inside SQLite,
  so thresholds, ordering and row limits are pushed down to storage.
- Linear scan: eligible rows are fetched and scored with numpy. Used when
  the extension cannot be loaded or is disabled by configuration.

Both paths finish with the same ranking function (similarity descending,
then the summary's own timestamp descending, then id descending), so the
mode in use changes latency, not results.

Requirements:
- sqlite-vec for native search (optional at runtime)
- numpy for the linear scan and vector (de)serialization
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional, Sequence

import numpy as np
import sqlite_vec

from ..errors import IndexUnavailableError, StorageError
from .base import (
    ConversationMatch,
    EmbeddingKind,
    EmbeddingRecord,
    ExchangeMatch,
)
from .schema import EMBEDDINGS_TABLE, connect, ensure_schema, utc_now

logger = logging.getLogger("agent_memory.memory.store")

T = EMBEDDINGS_TABLE


def _now() -> str:
    return utc_now().isoformat(timespec="microseconds")


def _parse_ts(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _ts_param(value: Optional[datetime]) -> Optional[str]:
    """Format a date bound like the stored timestamps: naive UTC, milliseconds."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(timespec="milliseconds")


def rank_conversations(matches: Sequence[ConversationMatch]) -> list[ConversationMatch]:
    """Similarity first, most recent conversation wins ties."""
    return sorted(
        matches,
        key=lambda m: (m.similarity, m.created_at or datetime.min, m.conversation_id),
        reverse=True,
    )


def rank_exchanges(matches: Sequence[ExchangeMatch]) -> list[ExchangeMatch]:
    """Similarity first, most recent exchange wins ties."""
    return sorted(
        matches,
        key=lambda m: (m.similarity, m.started_at or datetime.min, m.exchange_id),
        reverse=True,
    )


class EmbeddingStore:
    """
    SQLite implementation of the embedding store.

    One connection is opened per operation, so the store can be shared
    between the embedding worker thread and retrieval callers; SQLite's own
    locking serializes writers.
    """

    def __init__(
        self,
        db_path: str,
        dimension: int = 1536,
        use_vector_index: bool = True,
        timeout: float = 30.0,
    ):
        """
        Initialize the embedding store.

        Args:
            db_path: Path to the SQLite database file
            dimension: Fixed vector dimension (1536 for text-embedding-3-small)
            use_vector_index: Try to load sqlite-vec for native search
            timeout: Seconds to wait on a locked database
        """
        self.db_path = db_path
        self.dimension = dimension
        self.use_vector_index = use_vector_index
        self.timeout = timeout
        self.index_available = False
        self._initialized = False
        logger.info(f"EmbeddingStore configured with database: {db_path}")

    @property
    def fallback_mode(self) -> bool:
        """True when searches run as a linear scan."""
        return not self.index_available

    def initialize(self) -> None:
        """Create the schema and check for native vector search. Never fails on a missing index."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = connect(self.db_path, timeout=self.timeout)
            try:
                ensure_schema(conn)
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot initialize {self.db_path}: {e}") from e

        if self.use_vector_index:
            try:
                self._load_vector_index()
                self.index_available = True
            except IndexUnavailableError as e:
                self.index_available = False
                logger.warning(f"Native vector search unavailable, using linear scan: {e}")
        else:
            logger.info("Native vector search disabled, using linear scan")

        self._initialized = True
        mode = "native" if self.index_available else "linear scan"
        logger.info(f"EmbeddingStore initialized ({mode}) with {self.count()} embeddings")

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError("EmbeddingStore not initialized. Call initialize() first.")

    def _load_vector_extension(self, conn: sqlite3.Connection) -> None:
        try:
            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
        except (AttributeError, sqlite3.Error) as e:
            # AttributeError: interpreter built without extension loading
            raise IndexUnavailableError(f"could not load sqlite-vec: {e}") from e

    def _load_vector_index(self) -> None:
        conn = connect(self.db_path, timeout=self.timeout)
        try:
            self._load_vector_extension(conn)
            version = conn.execute("SELECT vec_version()").fetchone()[0]
            logger.info(f"sqlite-vec {version} loaded")
        except sqlite3.Error as e:
            raise IndexUnavailableError(str(e)) from e
        finally:
            conn.close()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = connect(self.db_path, timeout=self.timeout)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open {self.db_path}: {e}") from e

        try:
            if self.index_available:
                try:
                    self._load_vector_extension(conn)
                except IndexUnavailableError as e:
                    self.index_available = False
                    logger.warning(f"Lost native vector search, using linear scan: {e}")
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(str(e)) from e
        finally:
            conn.close()

    # ── Vectors ──────────────────────────────────────────────

    def _as_array(self, vector: Sequence[float]) -> np.ndarray:
        array = np.asarray(vector, dtype=np.float32)
        if array.shape != (self.dimension,):
            raise ValueError(
                f"Expected a {self.dimension}-dim vector, got shape {array.shape}"
            )
        if not np.all(np.isfinite(array)):
            raise ValueError("Vector contains NaN or infinite values")
        # Cosine similarity is undefined for a zero vector
        if not np.any(array):
            raise ValueError("Vector has zero norm")
        return array

    @staticmethod
    def _from_blob(blob: bytes) -> np.ndarray:
        return np.frombuffer(blob, dtype=np.float32)

    def _row_to_record(self, row: sqlite3.Row) -> EmbeddingRecord:
        return EmbeddingRecord(
            id=row["id"],
            kind=EmbeddingKind(row["kind"]),
            conversation_id=row["conversation_id"],
            exchange_id=row["exchange_id"],
            content=row["content"],
            vector=self._from_blob(row["embedding"]).tolist(),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    # ── Writes ───────────────────────────────────────────────

    def upsert(
        self,
        kind: EmbeddingKind,
        ref_id: int,
        content: str,
        vector: Sequence[float],
    ) -> EmbeddingRecord:
        """
        Insert or replace the embedding for a conversation or exchange.

        Keyed by (kind, ref_id): a second write replaces content, vector
        and updated_at, keeping created_at.

        Raises:
            ValueError: vector has the wrong dimension or non-finite values
            StorageError: the write failed (including unknown ref_id)
        """
        self._ensure_initialized()
        kind = EmbeddingKind(kind)
        blob = self._as_array(vector).tobytes()
        col = kind.ref_column
        now = _now()

        with self._connect() as conn:
            conn.execute(
                f"""
                INSERT INTO {T} (kind, {col}, content, embedding, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (kind, {col}) WHERE {col} IS NOT NULL DO UPDATE SET
                    content = excluded.content,
                    embedding = excluded.embedding,
                    updated_at = excluded.updated_at
                """,
                (kind.value, ref_id, content, blob, now, now),
            )
            row = conn.execute(
                f"SELECT * FROM {T} WHERE kind = ? AND {col} = ?",
                (kind.value, ref_id),
            ).fetchone()

        record = self._row_to_record(row)
        logger.debug(f"Upserted {kind.value}:{ref_id} (row {record.id})")
        return record

    def clear(self, kind: EmbeddingKind) -> int:
        """Delete every embedding of *kind*. Returns the number removed."""
        self._ensure_initialized()
        kind = EmbeddingKind(kind)
        with self._connect() as conn:
            cursor = conn.execute(f"DELETE FROM {T} WHERE kind = ?", (kind.value,))
            removed = cursor.rowcount
        logger.info(f"Cleared {removed} {kind.value} embeddings")
        return removed

    # ── Reads ────────────────────────────────────────────────

    def get(self, kind: EmbeddingKind, ref_id: int) -> Optional[EmbeddingRecord]:
        """Get the embedding for one conversation or exchange."""
        self._ensure_initialized()
        kind = EmbeddingKind(kind)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM {T} WHERE kind = ? AND {kind.ref_column} = ?",
                (kind.value, ref_id),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def count(self, kind: Optional[EmbeddingKind] = None) -> int:
        """Get total number of stored embeddings, optionally of one kind."""
        with self._connect() as conn:
            if kind is None:
                row = conn.execute(f"SELECT COUNT(*) FROM {T}").fetchone()
            else:
                row = conn.execute(
                    f"SELECT COUNT(*) FROM {T} WHERE kind = ?",
                    (EmbeddingKind(kind).value,),
                ).fetchone()
        return row[0]

    def stats(self, kind: Optional[EmbeddingKind] = None) -> dict[str, int]:
        """Embedding counts per kind (kinds with no rows report 0)."""
        self._ensure_initialized()
        if kind is not None:
            kind = EmbeddingKind(kind)
            return {kind.value: self.count(kind)}
        counts = {k.value: 0 for k in EmbeddingKind}
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT kind, COUNT(*) AS count FROM {T} GROUP BY kind"
            ).fetchall()
        for row in rows:
            counts[row["kind"]] = row["count"]
        return counts

    # ── Search ───────────────────────────────────────────────

    def search_conversations(
        self,
        query_vector: Sequence[float],
        limit: int = 5,
        min_similarity: float = 0.7,
        exclude_conversation_id: Optional[int] = None,
        after_date: Optional[datetime] = None,
        before_date: Optional[datetime] = None,
    ) -> list[ConversationMatch]:
        """
        Find conversation summaries similar to *query_vector*.

        Args:
            query_vector: The embedding to search for
            limit: Maximum number of results
            min_similarity: Minimum cosine similarity to include
            exclude_conversation_id: Conversation to leave out (usually the current one)
            after_date: Only conversations created at or after this time
            before_date: Only conversations created at or before this time

        Returns:
            Matches ordered by similarity, most recent first on ties
        """
        self._ensure_initialized()
        query = self._as_array(query_vector)
        if limit <= 0:
            return []

        filters = ["e.kind = ?"]
        params: list = [EmbeddingKind.CONVERSATION_SUMMARY.value]
        if exclude_conversation_id is not None:
            filters.append("c.id != ?")
            params.append(exclude_conversation_id)
        if after_date is not None:
            filters.append("c.created_at >= ?")
            params.append(_ts_param(after_date))
        if before_date is not None:
            filters.append("c.created_at <= ?")
            params.append(_ts_param(before_date))
        where = " AND ".join(filters)

        with self._connect() as conn:
            if self.index_available:
                rows = conn.execute(
                    f"""
                    SELECT conversation_id, content, recency, 1.0 - distance AS similarity
                    FROM (
                        SELECT c.id AS conversation_id, e.content, c.created_at AS recency,
                               vec_distance_cosine(e.embedding, ?) AS distance
                        FROM {T} e JOIN conversations c ON c.id = e.conversation_id
                        WHERE {where}
                    )
                    WHERE 1.0 - distance >= ?
                    ORDER BY distance ASC, recency DESC, conversation_id DESC
                    LIMIT ?
                    """,
                    [query.tobytes(), *params, min_similarity, limit],
                ).fetchall()
                scored = [(row, row["similarity"]) for row in rows]
            else:
                rows = conn.execute(
                    f"""
                    SELECT c.id AS conversation_id, e.content, c.created_at AS recency, e.embedding
                    FROM {T} e JOIN conversations c ON c.id = e.conversation_id
                    WHERE {where}
                    """,
                    params,
                ).fetchall()
                scored = self._linear_scan(rows, query, min_similarity)

        matches = [
            ConversationMatch(
                conversation_id=row["conversation_id"],
                content=row["content"],
                similarity=float(similarity),
                created_at=_parse_ts(row["recency"]),
            )
            for row, similarity in scored
        ]
        ranked = rank_conversations(matches)[:limit]
        logger.debug(
            f"Conversation search ({'native' if self.index_available else 'linear'}): "
            f"{len(ranked)} matches >= {min_similarity}"
        )
        return ranked

    def search_exchanges(
        self,
        query_vector: Sequence[float],
        conversation_ids: Optional[Sequence[int]] = None,
        per_conversation_limit: int = 3,
        global_cap: int = 10,
        min_similarity: float = 0.6,
        exclude_conversation_id: Optional[int] = None,
        after_date: Optional[datetime] = None,
        before_date: Optional[datetime] = None,
    ) -> list[ExchangeMatch]:
        """
        Find exchange summaries similar to *query_vector*.

        With conversation_ids, at most per_conversation_limit exchanges are
        taken from each listed conversation. With conversation_ids=None the
        search is global. Either way the combined result is re-ranked and
        cut to global_cap.
        """
        self._ensure_initialized()
        query = self._as_array(query_vector)
        if global_cap <= 0:
            return []
        if conversation_ids is not None:
            conversation_ids = list(dict.fromkeys(conversation_ids))
            if not conversation_ids or per_conversation_limit <= 0:
                return []

        filters = ["e.kind = ?"]
        params: list = [EmbeddingKind.EXCHANGE_SUMMARY.value]
        if conversation_ids is not None:
            placeholders = ", ".join("?" for _ in conversation_ids)
            filters.append(f"x.conversation_id IN ({placeholders})")
            params.extend(conversation_ids)
        if exclude_conversation_id is not None:
            filters.append("x.conversation_id != ?")
            params.append(exclude_conversation_id)
        if after_date is not None:
            filters.append("x.started_at >= ?")
            params.append(_ts_param(after_date))
        if before_date is not None:
            filters.append("x.started_at <= ?")
            params.append(_ts_param(before_date))
        where = " AND ".join(filters)

        with self._connect() as conn:
            if self.index_available:
                rows = self._native_exchange_rows(
                    conn, query, where, params, conversation_ids is not None,
                    per_conversation_limit, global_cap, min_similarity,
                )
                scored = [(row, row["similarity"]) for row in rows]
            else:
                rows = conn.execute(
                    f"""
                    SELECT x.id AS exchange_id, x.conversation_id, e.content,
                           x.started_at AS recency, e.embedding
                    FROM {T} e JOIN exchanges x ON x.id = e.exchange_id
                    WHERE {where}
                    """,
                    params,
                ).fetchall()
                scored = self._linear_scan(rows, query, min_similarity)

        matches = [
            ExchangeMatch(
                exchange_id=row["exchange_id"],
                conversation_id=row["conversation_id"],
                content=row["content"],
                similarity=float(similarity),
                started_at=_parse_ts(row["recency"]),
            )
            for row, similarity in scored
        ]

        if conversation_ids is not None:
            per_conversation: dict[int, list[ExchangeMatch]] = {}
            for match in rank_exchanges(matches):
                bucket = per_conversation.setdefault(match.conversation_id, [])
                if len(bucket) < per_conversation_limit:
                    bucket.append(match)
            matches = [m for bucket in per_conversation.values() for m in bucket]

        ranked = rank_exchanges(matches)[:global_cap]
        logger.debug(
            f"Exchange search ({'native' if self.index_available else 'linear'}, "
            f"{'global' if conversation_ids is None else f'{len(conversation_ids)} conversations'}): "
            f"{len(ranked)} matches >= {min_similarity}"
        )
        return ranked

    def _native_exchange_rows(
        self,
        conn: sqlite3.Connection,
        query: np.ndarray,
        where: str,
        params: list,
        partitioned: bool,
        per_conversation_limit: int,
        global_cap: int,
        min_similarity: float,
    ) -> list[sqlite3.Row]:
        inner = f"""
            SELECT x.id AS exchange_id, x.conversation_id, e.content,
                   x.started_at AS recency,
                   vec_distance_cosine(e.embedding, ?) AS distance
            FROM {T} e JOIN exchanges x ON x.id = e.exchange_id
            WHERE {where}
        """
        order = "distance ASC, recency DESC, exchange_id DESC"

        if not partitioned:
            return conn.execute(
                f"""
                SELECT exchange_id, conversation_id, content, recency,
                       1.0 - distance AS similarity
                FROM ({inner})
                WHERE 1.0 - distance >= ?
                ORDER BY {order}
                LIMIT ?
                """,
                [query.tobytes(), *params, min_similarity, global_cap],
            ).fetchall()

        return conn.execute(
            f"""
            SELECT exchange_id, conversation_id, content, recency,
                   1.0 - distance AS similarity
            FROM (
                SELECT *, ROW_NUMBER() OVER (
                    PARTITION BY conversation_id ORDER BY {order}
                ) AS rank_in_conversation
                FROM ({inner})
                WHERE 1.0 - distance >= ?
            )
            WHERE rank_in_conversation <= ?
            ORDER BY {order}
            LIMIT ?
            """,
            [query.tobytes(), *params, min_similarity, per_conversation_limit, global_cap],
        ).fetchall()

    def _linear_scan(
        self,
        rows: list[sqlite3.Row],
        query: np.ndarray,
        min_similarity: float,
    ) -> list[tuple[sqlite3.Row, float]]:
        """
        Score every row by cosine similarity and keep those above the threshold.

        Rows whose stored vector has zero norm have no similarity and are
        skipped, as vec_distance_cosine returns NULL for them.
        """
        if not rows:
            return []

        matrix = np.vstack([self._from_blob(row["embedding"]) for row in rows]).astype(np.float64)
        q = query.astype(np.float64)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(q)
        dots = matrix @ q
        scored = norms > 0
        similarities = np.divide(dots, norms, out=np.zeros_like(dots), where=scored)

        return [
            (row, float(similarity))
            for row, similarity, has_score in zip(rows, similarities, scored)
            if has_score and similarity >= min_similarity
        ]
