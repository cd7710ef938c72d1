"""
Unit tests for agent_memory/memory/embedding_store.py

Tests upsert semantics, cascade deletes, ranking, filters and the
native / linear-scan search modes.
"""

import logging
import random
import sqlite3
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from agent_memory.errors import StorageError
from agent_memory.memory.base import ConversationMatch, EmbeddingKind, ExchangeMatch
from agent_memory.memory.embedding_store import (
    EmbeddingStore,
    rank_conversations,
    rank_exchanges,
)
from tests.fixtures import (
    DIM,
    add_conversation,
    add_exchange,
    axis,
    delete_conversation,
    delete_exchange,
    toward,
    ts,
    zero_out_embedding,
)

CONV = EmbeddingKind.CONVERSATION_SUMMARY
EXCH = EmbeddingKind.EXCHANGE_SUMMARY


class TestInitialize:
    """Tests for EmbeddingStore.initialize()."""

    def test_creates_tables(self, tmp_path):
        """Test that initialization creates the schema in a fresh file."""
        db_path = str(tmp_path / "nested" / "memory.db")
        store = EmbeddingStore(db_path=db_path, dimension=DIM, use_vector_index=False)
        store.initialize()

        with sqlite3.connect(db_path) as conn:
            tables = {
                row[0]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            }

        assert {"conversations", "exchanges", "text_embeddings", "failed_jobs"} <= tables
        assert "rag_retrieval_logs" in tables

    def test_disabled_index_uses_linear_scan(self, store):
        """Test that disabling the index by config selects the fallback."""
        assert store.index_available is False
        assert store.fallback_mode is True

    def test_operations_require_initialize(self, temp_db_path):
        """Test that using the store before initialize() fails loudly."""
        store = EmbeddingStore(db_path=temp_db_path, dimension=DIM)
        with pytest.raises(RuntimeError):
            store.upsert(CONV, 1, "x", axis(0))

    def test_extension_load_failure_falls_back(self, temp_db_path, caplog):
        """Test that a failing extension load logs a warning instead of raising."""
        with patch(
            "agent_memory.memory.embedding_store.sqlite_vec.load",
            side_effect=sqlite3.OperationalError("not authorized"),
        ):
            store = EmbeddingStore(db_path=temp_db_path, dimension=DIM, use_vector_index=True)
            with caplog.at_level(logging.WARNING, logger="agent_memory.memory.store"):
                store.initialize()

        assert store.index_available is False
        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert len(warnings) == 1
        assert "linear scan" in warnings[0].getMessage()

    def test_missing_extension_support_falls_back(self, temp_db_path):
        """Test an interpreter built without enable_load_extension."""
        with patch(
            "agent_memory.memory.embedding_store.sqlite_vec.load",
            side_effect=AttributeError("enable_load_extension"),
        ):
            store = EmbeddingStore(db_path=temp_db_path, dimension=DIM, use_vector_index=True)
            store.initialize()

        assert store.fallback_mode is True


class TestUpsert:
    """Tests for EmbeddingStore.upsert()."""

    def test_insert_returns_record(self, store, temp_db_path):
        """Test inserting a new conversation embedding."""
        conv_id = add_conversation(temp_db_path)

        record = store.upsert(CONV, conv_id, "Discussed caching", axis(0))

        assert record.id > 0
        assert record.kind is CONV
        assert record.conversation_id == conv_id
        assert record.exchange_id is None
        assert record.ref_id == conv_id
        assert record.content == "Discussed caching"
        assert record.vector == pytest.approx(axis(0))
        assert record.was_inserted is True

    def test_upsert_is_idempotent_and_later_write_wins(self, store, temp_db_path):
        """Test that a second write for the same ref replaces the first."""
        conv_id = add_conversation(temp_db_path)

        first = store.upsert(CONV, conv_id, "old summary", axis(0))
        second = store.upsert(CONV, conv_id, "new summary", axis(1))

        assert store.count() == 1
        assert second.id == first.id
        assert second.content == "new summary"
        assert second.vector == pytest.approx(axis(1))
        assert second.created_at == first.created_at
        assert second.updated_at > first.updated_at
        assert second.was_inserted is False

        stored = store.get(CONV, conv_id)
        assert stored.content == "new summary"

    def test_same_id_different_kind_are_separate_rows(self, store, temp_db_path):
        """Test that (kind, ref) is the key, not the numeric id alone."""
        conv_id = add_conversation(temp_db_path)
        exch_id = add_exchange(temp_db_path, conv_id)
        assert conv_id == exch_id == 1

        store.upsert(CONV, conv_id, "conversation", axis(0))
        store.upsert(EXCH, exch_id, "exchange", axis(1))

        assert store.count() == 2
        assert store.stats() == {CONV.value: 1, EXCH.value: 1}

    def test_wrong_dimension_rejected(self, store, temp_db_path):
        """Test that vectors of the wrong size are refused."""
        conv_id = add_conversation(temp_db_path)
        with pytest.raises(ValueError):
            store.upsert(CONV, conv_id, "x", [1.0, 0.0])

    def test_non_finite_vector_rejected(self, store, temp_db_path):
        """Test that NaN vectors are refused."""
        conv_id = add_conversation(temp_db_path)
        vector = axis(0)
        vector[1] = float("nan")
        with pytest.raises(ValueError):
            store.upsert(CONV, conv_id, "x", vector)

    def test_zero_vector_rejected(self, store, temp_db_path):
        """Test that a vector with no direction is refused."""
        conv_id = add_conversation(temp_db_path)
        with pytest.raises(ValueError, match="zero norm"):
            store.upsert(CONV, conv_id, "x", [0.0] * DIM)
        assert store.count() == 0

    def test_unknown_reference_raises_storage_error(self, store):
        """Test that the foreign key to conversations is enforced."""
        with pytest.raises(StorageError):
            store.upsert(CONV, 999, "orphan", axis(0))


class TestCascadeAndClear:
    """Tests for deletion behaviour."""

    def test_deleting_conversation_removes_embeddings(self, store, temp_db_path):
        """Test cascade from conversations to both kinds of embeddings."""
        conv_id = add_conversation(temp_db_path)
        exch_id = add_exchange(temp_db_path, conv_id)
        other_id = add_conversation(temp_db_path)
        store.upsert(CONV, conv_id, "conv", axis(0))
        store.upsert(EXCH, exch_id, "exch", axis(1))
        store.upsert(CONV, other_id, "other", axis(2))

        delete_conversation(temp_db_path, conv_id)

        assert store.get(CONV, conv_id) is None
        assert store.get(EXCH, exch_id) is None
        assert store.get(CONV, other_id) is not None
        assert store.count() == 1

    def test_deleting_exchange_removes_its_embedding(self, store, temp_db_path):
        """Test cascade from one exchange to its embedding only."""
        conv_id = add_conversation(temp_db_path)
        doomed = add_exchange(temp_db_path, conv_id)
        kept = add_exchange(temp_db_path, conv_id)
        store.upsert(CONV, conv_id, "conv", axis(0))
        store.upsert(EXCH, doomed, "doomed", axis(1))
        store.upsert(EXCH, kept, "kept", axis(2))

        delete_exchange(temp_db_path, doomed)

        assert store.get(EXCH, doomed) is None
        assert store.get(EXCH, kept) is not None
        assert store.get(CONV, conv_id) is not None
        assert store.stats() == {CONV.value: 1, EXCH.value: 1}

    def test_clear_removes_one_kind(self, store, temp_db_path):
        """Test clear() returns the number of rows removed."""
        for i in range(3):
            conv_id = add_conversation(temp_db_path)
            store.upsert(CONV, conv_id, f"conv {i}", axis(i))
            exch_id = add_exchange(temp_db_path, conv_id)
            store.upsert(EXCH, exch_id, f"exch {i}", axis(i))

        removed = store.clear(EXCH)

        assert removed == 3
        assert store.stats() == {CONV.value: 3, EXCH.value: 0}
        assert store.stats(CONV) == {CONV.value: 3}


class TestSearchConversations:
    """Tests for conversation similarity search (linear scan)."""

    def test_exclusion_and_limit(self, store, temp_db_path):
        """Test that the excluded conversation never appears and limit is honoured."""
        ids = []
        for i, similarity in enumerate([0.99, 0.95, 0.9, 0.85]):
            conv_id = add_conversation(temp_db_path, created_at=ts(i))
            store.upsert(CONV, conv_id, f"conv {i}", toward(0, similarity))
            ids.append(conv_id)

        matches = store.search_conversations(
            axis(0), limit=2, min_similarity=0.5, exclude_conversation_id=ids[0]
        )

        assert [m.conversation_id for m in matches] == [ids[1], ids[2]]
        assert all(m.conversation_id != ids[0] for m in matches)

    def test_threshold_filters(self, store, temp_db_path):
        """Test that matches below min_similarity are dropped."""
        high = add_conversation(temp_db_path)
        low = add_conversation(temp_db_path)
        store.upsert(CONV, high, "high", toward(0, 0.9))
        store.upsert(CONV, low, "low", toward(0, 0.5))

        matches = store.search_conversations(axis(0), limit=5, min_similarity=0.7)

        assert [m.conversation_id for m in matches] == [high]
        assert matches[0].similarity == pytest.approx(0.9, abs=1e-5)
        assert matches[0].content == "high"

    def test_recency_breaks_ties(self, store, temp_db_path):
        """Test that equal similarity is ordered by the conversation's own timestamp."""
        older = add_conversation(temp_db_path, created_at=ts(0))
        newer = add_conversation(temp_db_path, created_at=ts(60))
        store.upsert(CONV, newer, "newer", axis(0))
        store.upsert(CONV, older, "older", axis(0))

        matches = store.search_conversations(axis(0), limit=5, min_similarity=0.5)

        assert [m.conversation_id for m in matches] == [newer, older]
        assert matches[0].created_at == datetime.fromisoformat(ts(60))

    def test_date_filters(self, store, temp_db_path):
        """Test after_date / before_date bound the conversation timestamp."""
        ids = []
        for minutes in (0, 60, 120):
            conv_id = add_conversation(temp_db_path, created_at=ts(minutes))
            store.upsert(CONV, conv_id, f"at {minutes}", axis(0))
            ids.append(conv_id)

        matches = store.search_conversations(
            axis(0),
            limit=5,
            min_similarity=0.5,
            after_date=datetime.fromisoformat(ts(30)),
            before_date=datetime.fromisoformat(ts(120)),
        )

        assert [m.conversation_id for m in matches] == [ids[2], ids[1]]

    def test_timezone_aware_bounds(self, store, temp_db_path):
        """Test that aware bounds are compared in UTC and stay inclusive."""
        ids = []
        for minutes in (0, 60, 120):
            conv_id = add_conversation(temp_db_path, created_at=ts(minutes))
            store.upsert(CONV, conv_id, f"at {minutes}", axis(0))
            ids.append(conv_id)

        # 13:00 UTC and 14:00 UTC, the timestamps of ids[1] and ids[2]
        after = datetime(2024, 1, 1, 14, 0, tzinfo=timezone(timedelta(hours=1)))
        before = datetime(2024, 1, 1, 9, 0, tzinfo=timezone(timedelta(hours=-5)))

        matches = store.search_conversations(
            axis(0), limit=5, min_similarity=0.5, after_date=after, before_date=before
        )

        assert [m.conversation_id for m in matches] == [ids[2], ids[1]]

    def test_zero_query_rejected(self, store):
        with pytest.raises(ValueError):
            store.search_conversations([0.0] * DIM, limit=5, min_similarity=0.0)

    def test_zero_norm_row_skipped(self, store, temp_db_path):
        """Test that a stored vector with no direction never matches, even at threshold 0."""
        good = add_conversation(temp_db_path)
        broken = add_conversation(temp_db_path)
        store.upsert(CONV, good, "good", toward(0, 0.5))
        store.upsert(CONV, broken, "broken", axis(0))
        zero_out_embedding(temp_db_path, "conversation_id", broken)

        matches = store.search_conversations(axis(0), limit=5, min_similarity=0.0)

        assert [m.conversation_id for m in matches] == [good]

    def test_empty_store(self, store):
        """Test that searching an empty store returns nothing."""
        assert store.search_conversations(axis(0), limit=5, min_similarity=0.0) == []


class TestSearchExchanges:
    """Tests for exchange similarity search (linear scan)."""

    def _populate(self, store, db_path, conversations=3, per_conversation=4):
        layout = {}
        for c in range(conversations):
            conv_id = add_conversation(db_path, created_at=ts(c))
            layout[conv_id] = []
            for e in range(per_conversation):
                exch_id = add_exchange(db_path, conv_id, started_at=ts(c * 10 + e))
                similarity = 0.95 - 0.05 * e - 0.01 * c
                store.upsert(EXCH, exch_id, f"exch {c}.{e}", toward(0, similarity))
                layout[conv_id].append(exch_id)
        return layout

    def test_per_conversation_limit(self, store, temp_db_path):
        """Test that at most N exchanges are taken from each conversation."""
        layout = self._populate(store, temp_db_path)
        conv_ids = list(layout)

        matches = store.search_exchanges(
            axis(0),
            conversation_ids=conv_ids,
            per_conversation_limit=2,
            global_cap=100,
            min_similarity=0.5,
        )

        assert len(matches) == 6
        for conv_id in conv_ids:
            from_conv = [m for m in matches if m.conversation_id == conv_id]
            assert [m.exchange_id for m in from_conv] == layout[conv_id][:2]

    def test_global_cap_applied_after_merge(self, store, temp_db_path):
        """Test that the cap keeps the best matches across conversations."""
        layout = self._populate(store, temp_db_path)

        matches = store.search_exchanges(
            axis(0),
            conversation_ids=list(layout),
            per_conversation_limit=3,
            global_cap=4,
            min_similarity=0.5,
        )

        assert len(matches) == 4
        similarities = [m.similarity for m in matches]
        assert similarities == sorted(similarities, reverse=True)

    def test_only_listed_conversations(self, store, temp_db_path):
        """Test that exchanges of unlisted conversations are ignored."""
        layout = self._populate(store, temp_db_path)
        first = list(layout)[0]

        matches = store.search_exchanges(
            axis(0), conversation_ids=[first], per_conversation_limit=10,
            global_cap=10, min_similarity=0.0,
        )

        assert {m.conversation_id for m in matches} == {first}

    def test_global_search(self, store, temp_db_path):
        """Test conversation_ids=None searches every exchange up to the cap."""
        self._populate(store, temp_db_path)

        matches = store.search_exchanges(
            axis(0), conversation_ids=None, global_cap=5, min_similarity=0.5
        )

        assert len(matches) == 5
        assert matches[0].similarity >= matches[-1].similarity

    def test_global_search_exclusion(self, store, temp_db_path):
        """Test that the excluded conversation is left out of a global search."""
        layout = self._populate(store, temp_db_path)
        excluded = list(layout)[0]

        matches = store.search_exchanges(
            axis(0), conversation_ids=None, global_cap=100, min_similarity=0.0,
            exclude_conversation_id=excluded,
        )

        assert matches
        assert all(m.conversation_id != excluded for m in matches)

    def test_empty_conversation_list(self, store, temp_db_path):
        """Test that an explicit empty list returns nothing."""
        self._populate(store, temp_db_path)
        assert store.search_exchanges(axis(0), conversation_ids=[], min_similarity=0.0) == []


class TestRanking:
    """Tests for the shared ranking functions."""

    def test_rank_conversations(self):
        """Test similarity first, then recency, then id."""
        a = ConversationMatch(1, "a", 0.8, datetime(2024, 1, 1))
        b = ConversationMatch(2, "b", 0.9, datetime(2023, 1, 1))
        c = ConversationMatch(3, "c", 0.8, datetime(2024, 6, 1))
        d = ConversationMatch(4, "d", 0.8, datetime(2024, 6, 1))

        assert [m.conversation_id for m in rank_conversations([a, b, c, d])] == [2, 4, 3, 1]

    def test_rank_exchanges_missing_timestamp_sorts_last(self):
        """Test that a match without a timestamp loses ties."""
        a = ExchangeMatch(1, 1, "a", 0.7, None)
        b = ExchangeMatch(2, 1, "b", 0.7, datetime(2024, 1, 1))

        assert [m.exchange_id for m in rank_exchanges([a, b])] == [2, 1]


class TestNativeParity:
    """Native search must return the same results as the linear scan."""

    def _random_vector(self, rng):
        return [rng.uniform(-1, 1) for _ in range(DIM)]

    def test_native_matches_linear_scan(self, native_store, temp_db_path):
        """Test randomized parity between the two search modes."""
        rng = random.Random(1234)
        conv_ids = []
        for c in range(12):
            conv_id = add_conversation(temp_db_path, created_at=ts(c))
            native_store.upsert(CONV, conv_id, f"conv {c}", self._random_vector(rng))
            conv_ids.append(conv_id)
            for e in range(5):
                exch_id = add_exchange(temp_db_path, conv_id, started_at=ts(c * 10 + e))
                native_store.upsert(EXCH, exch_id, f"exch {c}.{e}", self._random_vector(rng))

        linear = EmbeddingStore(db_path=temp_db_path, dimension=DIM, use_vector_index=False)
        linear.initialize()

        for _ in range(10):
            query = self._random_vector(rng)

            native_convs = native_store.search_conversations(
                query, limit=4, min_similarity=0.1, exclude_conversation_id=conv_ids[0]
            )
            linear_convs = linear.search_conversations(
                query, limit=4, min_similarity=0.1, exclude_conversation_id=conv_ids[0]
            )
            assert [m.conversation_id for m in native_convs] == [
                m.conversation_id for m in linear_convs
            ]
            for n, l in zip(native_convs, linear_convs):
                assert n.similarity == pytest.approx(l.similarity, abs=1e-5)

            native_exch = native_store.search_exchanges(
                query, conversation_ids=conv_ids[:6], per_conversation_limit=2,
                global_cap=7, min_similarity=0.1,
            )
            linear_exch = linear.search_exchanges(
                query, conversation_ids=conv_ids[:6], per_conversation_limit=2,
                global_cap=7, min_similarity=0.1,
            )
            assert [m.exchange_id for m in native_exch] == [m.exchange_id for m in linear_exch]

            native_global = native_store.search_exchanges(
                query, conversation_ids=None, global_cap=5, min_similarity=0.1
            )
            linear_global = linear.search_exchanges(
                query, conversation_ids=None, global_cap=5, min_similarity=0.1
            )
            assert [m.exchange_id for m in native_global] == [
                m.exchange_id for m in linear_global
            ]

    def test_zero_norm_rows_parity(self, native_store, temp_db_path):
        """Test that both modes skip a zero-norm row at threshold 0."""
        ids = []
        for i, similarity in enumerate([0.9, 0.5, -0.5]):
            conv_id = add_conversation(temp_db_path, created_at=ts(i))
            native_store.upsert(CONV, conv_id, f"conv {i}", toward(0, similarity))
            ids.append(conv_id)
        broken = add_conversation(temp_db_path, created_at=ts(10))
        native_store.upsert(CONV, broken, "broken", axis(0))
        zero_out_embedding(temp_db_path, "conversation_id", broken)

        linear = EmbeddingStore(db_path=temp_db_path, dimension=DIM, use_vector_index=False)
        linear.initialize()

        native = native_store.search_conversations(axis(0), limit=10, min_similarity=0.0)
        scanned = linear.search_conversations(axis(0), limit=10, min_similarity=0.0)

        assert [m.conversation_id for m in native] == [ids[0], ids[1]]
        assert [m.conversation_id for m in scanned] == [ids[0], ids[1]]

    def test_native_recency_breaks_ties(self, native_store, temp_db_path):
        """Test that equal similarity is ordered newest first in native mode."""
        older = add_conversation(temp_db_path, created_at=ts(0))
        newer = add_conversation(temp_db_path, created_at=ts(60))
        native_store.upsert(CONV, newer, "newer", axis(0))
        native_store.upsert(CONV, older, "older", axis(0))
        early = add_exchange(temp_db_path, older, started_at=ts(1))
        late = add_exchange(temp_db_path, older, started_at=ts(2))
        native_store.upsert(EXCH, late, "late", axis(0))
        native_store.upsert(EXCH, early, "early", axis(0))

        conversations = native_store.search_conversations(axis(0), limit=5, min_similarity=0.5)
        partitioned = native_store.search_exchanges(
            axis(0), conversation_ids=[older], per_conversation_limit=1,
            global_cap=5, min_similarity=0.5,
        )
        everywhere = native_store.search_exchanges(
            axis(0), conversation_ids=None, global_cap=5, min_similarity=0.5
        )

        assert [m.conversation_id for m in conversations] == [newer, older]
        assert [m.exchange_id for m in partitioned] == [late]
        assert [m.exchange_id for m in everywhere] == [late, early]
