"""
Database schema for conversational memory.

The conversations and exchanges tables belong to the REPL's history layer;
they are created here only if missing so that the embedding store, the
summary backlog and the tests can run against a fresh database file.
"""

import sqlite3
from datetime import datetime, timezone

EMBEDDINGS_TABLE = "text_embeddings"

# ISO-8601 with a 'T' separator so SQL string ordering matches datetime ordering
_NOW = "(strftime('%Y-%m-%dT%H:%M:%f', 'now'))"

SCHEMA_STATEMENTS = [
    f"""
    CREATE TABLE IF NOT EXISTS conversations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT,
        summary TEXT,
        summary_model TEXT,
        created_at TIMESTAMP NOT NULL DEFAULT {_NOW}
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS exchanges (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        conversation_id INTEGER NOT NULL
            REFERENCES conversations(id) ON DELETE CASCADE,
        summary TEXT,
        started_at TIMESTAMP NOT NULL DEFAULT {_NOW}
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_exchanges_conversation
    ON exchanges(conversation_id)
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {EMBEDDINGS_TABLE} (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        kind TEXT NOT NULL,
        conversation_id INTEGER
            REFERENCES conversations(id) ON DELETE CASCADE,
        exchange_id INTEGER
            REFERENCES exchanges(id) ON DELETE CASCADE,
        content TEXT NOT NULL,
        embedding BLOB NOT NULL,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        CHECK (
            (kind = 'conversation_summary' AND conversation_id IS NOT NULL AND exchange_id IS NULL)
            OR (kind = 'exchange_summary' AND exchange_id IS NOT NULL AND conversation_id IS NULL)
        )
    )
    """,
    f"""
    CREATE UNIQUE INDEX IF NOT EXISTS idx_embeddings_kind_conversation
    ON {EMBEDDINGS_TABLE}(kind, conversation_id)
    WHERE conversation_id IS NOT NULL
    """,
    f"""
    CREATE UNIQUE INDEX IF NOT EXISTS idx_embeddings_kind_exchange
    ON {EMBEDDINGS_TABLE}(kind, exchange_id)
    WHERE exchange_id IS NOT NULL
    """,
    f"""
    CREATE TABLE IF NOT EXISTS failed_jobs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_type TEXT NOT NULL,
        ref_id INTEGER,
        payload TEXT,
        error TEXT NOT NULL,
        retry_count INTEGER NOT NULL DEFAULT 0,
        failed_at TIMESTAMP NOT NULL DEFAULT {_NOW}
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_failed_jobs_type
    ON failed_jobs(job_type, failed_at DESC)
    """,
    f"""
    CREATE TABLE IF NOT EXISTS rag_retrieval_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        query_hash TEXT NOT NULL,
        timestamp TIMESTAMP NOT NULL DEFAULT {_NOW},
        conversation_candidates INTEGER NOT NULL DEFAULT 0,
        exchange_candidates INTEGER NOT NULL DEFAULT 0,
        retrieval_duration_ms REAL NOT NULL,
        top_conversation_score REAL,
        top_exchange_score REAL,
        filtered_by TEXT,
        cache_hit INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_rag_logs_timestamp
    ON rag_retrieval_logs(timestamp DESC)
    """,
]


def connect(db_path: str, timeout: float = 30.0) -> sqlite3.Connection:
    """Open a connection with foreign keys enforced and Row access."""
    conn = sqlite3.connect(db_path, timeout=timeout)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def ensure_schema(conn: sqlite3.Connection) -> None:
    """Create any missing tables and indexes."""
    for statement in SCHEMA_STATEMENTS:
        conn.execute(statement)
    conn.commit()


def utc_now() -> datetime:
    """Naive UTC timestamp, matching the strftime('now') column defaults."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
