"""
Summary backlog: conversation and exchange summaries that have no embedding yet.
"""

import logging
import sqlite3
from typing import Collection, Optional

from ..errors import StorageError
from .base import EmbeddingKind, WorkItem
from .schema import EMBEDDINGS_TABLE, connect

logger = logging.getLogger("agent_memory.memory.backlog")


class SummaryBacklog:
    """
    Read-only view over summaries awaiting embeddings.

    Conversations come before exchanges, oldest first within each kind.
    """

    def __init__(self, db_path: str, timeout: float = 30.0):
        self.db_path = db_path
        self.timeout = timeout

    def _query(self, sql: str, params: list) -> list[sqlite3.Row]:
        try:
            conn = connect(self.db_path, timeout=self.timeout)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open {self.db_path}: {e}") from e
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e
        finally:
            conn.close()

    def pending_conversations(
        self,
        limit: int,
        exclude_conversation_id: Optional[int] = None,
        skip: Collection[int] = (),
    ) -> list[WorkItem]:
        filters = ["c.summary IS NOT NULL", "TRIM(c.summary) != ''", "e.id IS NULL"]
        params: list = [EmbeddingKind.CONVERSATION_SUMMARY.value]
        if exclude_conversation_id is not None:
            filters.append("c.id != ?")
            params.append(exclude_conversation_id)
        if skip:
            filters.append(f"c.id NOT IN ({', '.join('?' for _ in skip)})")
            params.extend(skip)
        params.append(limit)

        rows = self._query(
            f"""
            SELECT c.id, c.summary
            FROM conversations c
            LEFT JOIN {EMBEDDINGS_TABLE} e
                ON e.conversation_id = c.id AND e.kind = ?
            WHERE {' AND '.join(filters)}
            ORDER BY c.created_at ASC, c.id ASC
            LIMIT ?
            """,
            params,
        )
        return [
            WorkItem(
                kind=EmbeddingKind.CONVERSATION_SUMMARY,
                ref_id=row["id"],
                text=row["summary"],
                conversation_id=row["id"],
            )
            for row in rows
        ]

    def pending_exchanges(
        self,
        limit: int,
        exclude_conversation_id: Optional[int] = None,
        skip: Collection[int] = (),
    ) -> list[WorkItem]:
        filters = ["x.summary IS NOT NULL", "TRIM(x.summary) != ''", "e.id IS NULL"]
        params: list = [EmbeddingKind.EXCHANGE_SUMMARY.value]
        if exclude_conversation_id is not None:
            filters.append("x.conversation_id != ?")
            params.append(exclude_conversation_id)
        if skip:
            filters.append(f"x.id NOT IN ({', '.join('?' for _ in skip)})")
            params.extend(skip)
        params.append(limit)

        rows = self._query(
            f"""
            SELECT x.id, x.conversation_id, x.summary
            FROM exchanges x
            LEFT JOIN {EMBEDDINGS_TABLE} e
                ON e.exchange_id = x.id AND e.kind = ?
            WHERE {' AND '.join(filters)}
            ORDER BY x.started_at ASC, x.id ASC
            LIMIT ?
            """,
            params,
        )
        return [
            WorkItem(
                kind=EmbeddingKind.EXCHANGE_SUMMARY,
                ref_id=row["id"],
                text=row["summary"],
                conversation_id=row["conversation_id"],
            )
            for row in rows
        ]

    def pending(
        self,
        limit: int,
        exclude_conversation_id: Optional[int] = None,
        skip: Collection[WorkItem] = (),
    ) -> list[WorkItem]:
        """
        Get up to *limit* items that still need an embedding.

        Args:
            limit: Maximum number of items
            exclude_conversation_id: Conversation still in progress; neither
                its summary nor its exchanges are returned
            skip: Items to leave out (typically ones that already failed)
        """
        if limit <= 0:
            return []

        skip_conversations = {
            item.ref_id for item in skip if item.kind is EmbeddingKind.CONVERSATION_SUMMARY
        }
        skip_exchanges = {
            item.ref_id for item in skip if item.kind is EmbeddingKind.EXCHANGE_SUMMARY
        }

        items = self.pending_conversations(limit, exclude_conversation_id, skip_conversations)
        remaining = limit - len(items)
        if remaining > 0:
            items.extend(
                self.pending_exchanges(remaining, exclude_conversation_id, skip_exchanges)
            )
        return items

    def count(self, exclude_conversation_id: Optional[int] = None) -> int:
        """Number of summaries still missing an embedding."""
        conv_filter = ""
        exch_filter = ""
        params: list = [EmbeddingKind.CONVERSATION_SUMMARY.value]
        if exclude_conversation_id is not None:
            conv_filter = "AND c.id != ?"
            params.append(exclude_conversation_id)
        params.append(EmbeddingKind.EXCHANGE_SUMMARY.value)
        if exclude_conversation_id is not None:
            exch_filter = "AND x.conversation_id != ?"
            params.append(exclude_conversation_id)

        row = self._query(
            f"""
            SELECT
                (SELECT COUNT(*) FROM conversations c
                 LEFT JOIN {EMBEDDINGS_TABLE} e ON e.conversation_id = c.id AND e.kind = ?
                 WHERE c.summary IS NOT NULL AND TRIM(c.summary) != '' AND e.id IS NULL {conv_filter})
              + (SELECT COUNT(*) FROM exchanges x
                 LEFT JOIN {EMBEDDINGS_TABLE} e ON e.exchange_id = x.id AND e.kind = ?
                 WHERE x.summary IS NOT NULL AND TRIM(x.summary) != '' AND e.id IS NULL {exch_filter})
            """,
            params,
        )[0]
        return row[0]
