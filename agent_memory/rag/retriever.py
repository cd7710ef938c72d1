"""
RAG Retriever - builds the retrieval pipeline and runs it per request.

Order of work for one request:
1. Embed the query (QueryEmbeddingProcessor)
2. Look the embedding up in the cache; a hit returns without touching the store
3. Search conversations, search exchanges, format the context
4. Cache the result and optionally log retrieval metrics

Settings can be replaced while the system runs (update_config). Each
request reads the settings once when it starts and uses them throughout.
"""

import logging
import threading
import time
from datetime import datetime
from typing import Callable, Optional

from ..errors import CacheError, StorageError
from ..memory.embedding_store import EmbeddingStore
from ..memory.embeddings import EmbeddingClient
from .cache import RagCache
from .context import RagConfig, RetrievalContext
from .pipeline import Cancellation, RetrievalPipeline
from .processors import (
    ContextFormatterProcessor,
    ConversationSearchProcessor,
    ExchangeSearchProcessor,
    QueryEmbeddingProcessor,
)
from .retrieval_log import RetrievalLogger, query_hash
from .tokens import TokenEstimator, estimate_tokens

logger = logging.getLogger("agent_memory.rag.retriever")


class RagRetriever:
    """
    Retrieves relevant past conversations and exchanges for a query.

    Never raises for runtime failures: a failed query embedding returns an
    empty context with metadata.error set, and failed search or formatting
    stages are recorded in metadata.stage_errors.
    """

    def __init__(
        self,
        store: EmbeddingStore,
        client: EmbeddingClient,
        config: Optional[RagConfig] = None,
        cache: Optional[RagCache] = None,
        retrieval_logger: Optional[RetrievalLogger] = None,
        estimator: TokenEstimator = estimate_tokens,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.client = client
        self.retrieval_logger = retrieval_logger
        self.estimator = estimator
        self.clock = clock
        self._lock = threading.Lock()

        config = config or RagConfig()
        if cache is None and config.cache_enabled:
            cache = RagCache(
                capacity=config.cache_capacity,
                ttl_seconds=config.cache_ttl,
            )
        self.cache = cache if config.cache_enabled else None

        self.query_stage = RetrievalPipeline([QueryEmbeddingProcessor(client)], clock=clock)
        self._config = config
        self.search_stages = self._build_search_stages(config)

    def _build_search_stages(self, config: RagConfig) -> RetrievalPipeline:
        return RetrievalPipeline(
            [
                ConversationSearchProcessor(self.store, config),
                ExchangeSearchProcessor(self.store, config),
                ContextFormatterProcessor(config, self.estimator),
            ],
            clock=self.clock,
        )

    @property
    def config(self) -> RagConfig:
        with self._lock:
            return self._config

    @property
    def stage_names(self) -> list[str]:
        return self.query_stage.stage_names + self.search_stages.stage_names

    def update_config(self, config: RagConfig) -> None:
        """
        Replace the retrieval settings.

        Requests already running finish with the settings they started
        with. Cached results stay valid for requests using the settings they
        were built with, since the settings are part of the cache key.
        """
        search_stages = self._build_search_stages(config)
        with self._lock:
            if config.cache_enabled and self.cache is None:
                self.cache = RagCache(capacity=config.cache_capacity, ttl_seconds=config.cache_ttl)
            elif not config.cache_enabled and self.cache is not None:
                self.cache.clear()
                self.cache = None
            elif self.cache is not None:
                self.cache.configure(capacity=config.cache_capacity, ttl_seconds=config.cache_ttl)
            if config.log_retrievals and self.retrieval_logger is None:
                self.retrieval_logger = RetrievalLogger(self.store.db_path)
            self._config = config
            self.search_stages = search_stages
        logger.info(f"Retrieval settings updated: {config.fingerprint()}")

    def fingerprint(
        self,
        current_conversation_id: Optional[int],
        after_date: Optional[datetime],
        before_date: Optional[datetime],
        config: Optional[RagConfig] = None,
    ) -> str:
        config = config or self.config
        return (
            f"{config.fingerprint()}|current={current_conversation_id}"
            f"|after={after_date.isoformat() if after_date else None}"
            f"|before={before_date.isoformat() if before_date else None}"
        )

    def retrieve(
        self,
        query: str,
        current_conversation_id: Optional[int] = None,
        after_date: Optional[datetime] = None,
        before_date: Optional[datetime] = None,
        cancellation: Optional[Cancellation] = None,
    ) -> RetrievalContext:
        """
        Retrieve context for *query*.

        Args:
            query: The user's prompt
            current_conversation_id: Conversation in progress, excluded from results
            after_date: Only summaries at or after this time
            before_date: Only summaries at or before this time
            cancellation: Optional cancellation signal checked before each stage

        Returns:
            The final RetrievalContext (formatted_context + metadata)
        """
        start = self.clock()
        with self._lock:
            config, search_stages, cache = self._config, self.search_stages, self.cache

        context = RetrievalContext(
            query=query,
            current_conversation_id=current_conversation_id,
            after_date=after_date,
            before_date=before_date,
        )

        context = self.query_stage.run(context, cancellation)

        if context.query_embedding is None:
            if not context.metadata.cancelled and context.metadata.error is None:
                stage_error = context.metadata.stage_errors.get(QueryEmbeddingProcessor.name)
                context = context.with_metadata(error=f"Query embedding failed: {stage_error}")
        else:
            key = self._cache_key(cache, config, context)
            cached = self._cache_get(cache, key)
            if cached is not None:
                logger.debug("Retrieval served from cache")
                context = cached.update(
                    query=query, query_embedding=context.query_embedding
                ).with_metadata(cache_hit=True)
            else:
                generation = cache.generation if key is not None else None
                context = search_stages.run(context, cancellation)
                if key is not None and self._cacheable(context):
                    self._cache_put(cache, key, context, generation)

        context = context.with_metadata(duration_ms=round((self.clock() - start) * 1000, 2))
        self._log(config, context)
        return context

    # ── Cache ────────────────────────────────────────────────

    def _cache_key(
        self, cache: Optional[RagCache], config: RagConfig, context: RetrievalContext
    ) -> Optional[str]:
        if cache is None:
            return None
        try:
            return cache.make_key(
                context.query_embedding,
                self.fingerprint(
                    context.current_conversation_id,
                    context.after_date,
                    context.before_date,
                    config,
                ),
            )
        except CacheError as e:
            logger.debug(f"Retrieval not cacheable: {e}")
            return None

    @staticmethod
    def _cache_get(cache: Optional[RagCache], key: Optional[str]) -> Optional[RetrievalContext]:
        if cache is None or key is None:
            return None
        try:
            return cache.get(key)
        except CacheError as e:
            logger.warning(f"Cache lookup failed, treating as miss: {e}")
            return None

    @staticmethod
    def _cache_put(
        cache: RagCache, key: str, context: RetrievalContext, generation: Optional[int]
    ) -> None:
        depends_on = set(context.conversation_ids)
        depends_on.update(m.conversation_id for m in context.exchange_matches)
        try:
            cache.put(key, context, conversation_ids=depends_on, generation=generation)
        except CacheError as e:
            logger.warning(f"Cache store failed: {e}")

    @staticmethod
    def _cacheable(context: RetrievalContext) -> bool:
        metadata = context.metadata
        return not (metadata.cancelled or metadata.stage_errors or metadata.error)

    def invalidate_conversation(self, conversation_id: int) -> None:
        cache = self.cache
        if cache is not None:
            cache.invalidate_conversation(conversation_id)

    def clear_cache(self) -> int:
        cache = self.cache
        if cache is None:
            return 0
        return cache.clear()

    # ── Metrics ──────────────────────────────────────────────

    def _log(self, config: RagConfig, context: RetrievalContext) -> None:
        retrieval_logger = self.retrieval_logger
        if not config.log_retrievals or retrieval_logger is None:
            return
        if context.query_embedding is None:
            return

        filters = []
        if context.current_conversation_id is not None:
            filters.append("exclude_current")
        if context.after_date is not None:
            filters.append("after_date")
        if context.before_date is not None:
            filters.append("before_date")

        conversations = context.conversation_matches
        exchanges = context.exchange_matches
        try:
            retrieval_logger.log_retrieval(
                query_hash=query_hash(context.query_embedding),
                retrieval_duration_ms=context.metadata.duration_ms,
                conversation_candidates=len(conversations),
                exchange_candidates=len(exchanges),
                top_conversation_score=conversations[0].similarity if conversations else None,
                top_exchange_score=exchanges[0].similarity if exchanges else None,
                filtered_by=",".join(filters) or None,
                cache_hit=context.metadata.cache_hit,
            )
        except StorageError as e:
            logger.warning(f"Could not log retrieval metrics: {e}")
