"""
Memory Manager - Orchestrates the conversational memory system.

This is the high-level interface the REPL uses.
It handles:
- Retrieving relevant past conversations for a new prompt
- Running the background embedding worker
- Operational commands (status, test retrieval, reset, clear, pause/resume)
"""

import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any, Optional

from .config import Config, ConfigProvider
from .memory.backlog import SummaryBacklog
from .memory.base import EmbeddingKind
from .memory.embedding_store import EmbeddingStore
from .memory.embeddings import EmbeddingClient, create_embedding_client
from .memory.failed_jobs import FailedJob, FailedJobRepository
from .rag.context import RagConfig, RetrievalContext
from .rag.pipeline import Cancellation
from .rag.retrieval_log import RetrievalLogger
from .rag.retriever import RagRetriever
from .workers.embedding_worker import JOB_TYPE, EmbeddingGenerationWorker, WorkerSettings
from .workers.pausable import TaskState

logger = logging.getLogger("agent_memory.manager")


class MemoryManager:
    """
    High-level memory management for the agent REPL.

    Owns the embedding store, the retriever (with its cache) and the
    embedding worker, and exposes the operations behind the /rag and
    /embeddings commands.
    """

    def __init__(
        self,
        store: EmbeddingStore,
        retriever: RagRetriever,
        worker: EmbeddingGenerationWorker,
        backlog: SummaryBacklog,
        failed_jobs: FailedJobRepository,
    ):
        self.store = store
        self.retriever = retriever
        self.worker = worker
        self.backlog = backlog
        self.failed_jobs = failed_jobs
        self._initialized = False
        self._current_conversation_id: Optional[int] = None
        logger.info("MemoryManager created")

    def initialize(self) -> None:
        """Initialize the memory system."""
        self.store.initialize()
        self._initialized = True
        logger.info(
            f"MemoryManager initialized with {self.store.count()} stored embeddings"
            f"{' (linear scan)' if self.store.fallback_mode else ''}"
        )

    def _ensure_initialized(self) -> None:
        """Ensure the system is initialized."""
        if not self._initialized:
            raise RuntimeError("MemoryManager not initialized. Call initialize() first.")

    # ── Lifecycle ────────────────────────────────────────────

    def start(self) -> None:
        """Start the background embedding worker."""
        self._ensure_initialized()
        self.worker.start()

    def close(self, timeout: float = 5.0) -> bool:
        """Stop the worker. Returns False if it did not exit in time."""
        return self.worker.shutdown(timeout)

    def __enter__(self) -> "MemoryManager":
        self.initialize()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def set_current_conversation(self, conversation_id: Optional[int]) -> None:
        """Conversation in progress: excluded from retrieval and from embedding."""
        self._current_conversation_id = conversation_id
        self.worker.set_current_conversation(conversation_id)

    # ── Retrieval ────────────────────────────────────────────

    def retrieve(
        self,
        query: str,
        current_conversation_id: Optional[int] = None,
        after_date: Optional[datetime] = None,
        before_date: Optional[datetime] = None,
        cancellation: Optional[Cancellation] = None,
    ) -> RetrievalContext:
        """Retrieve context for a prompt. See RagRetriever.retrieve."""
        self._ensure_initialized()
        if current_conversation_id is None:
            current_conversation_id = self._current_conversation_id
        return self.retriever.retrieve(
            query,
            current_conversation_id=current_conversation_id,
            after_date=after_date,
            before_date=before_date,
            cancellation=cancellation,
        )

    def test_retrieval(self, query: str) -> dict[str, Any]:
        """Run a retrieval and return the context with its metadata (for /rag test)."""
        context = self.retrieve(query)
        return {
            "context": context.formatted_context,
            "metadata": context.metadata.to_dict(),
        }

    # ── Status ───────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        """Everything /rag status and /embeddings status display."""
        self._ensure_initialized()
        status: dict[str, Any] = {
            "worker": asdict(self.worker.snapshot()),
            "embeddings": self.store.stats(),
            "pending": self.backlog.count(self._current_conversation_id),
            "failed_jobs": self.failed_jobs.count(JOB_TYPE),
            "vector_index": "native" if self.store.index_available else "linear_scan",
            "rag": asdict(self.retriever.config),
        }
        if self.retriever.cache is not None:
            status["cache"] = self.retriever.cache.stats()
        return status

    # ── Worker control ───────────────────────────────────────

    def enable(self) -> None:
        self.worker.enable()

    def disable(self) -> None:
        self.worker.disable()

    def pause(self) -> None:
        self.worker.pause()

    def resume(self) -> None:
        self.worker.resume()

    def wait_until_paused(self, timeout: float = 5.0) -> bool:
        return self.worker.wait_until_paused(timeout)

    # ── Settings ─────────────────────────────────────────────

    def update_rag_config(self, **changes) -> RagConfig:
        """
        Change retrieval settings while running (for /rag <param> <value>).

        Values are checked like those in config.yaml. Retrievals started
        after the call use the new settings; cached results built with the
        old ones are never served for them.

        Raises:
            ConfigurationError: unknown key, wrong type or out of range
        """
        config = self.retriever.config.with_updates(**changes)
        self.retriever.update_config(config)
        self.worker.cache = self.retriever.cache
        return config

    def update_worker_settings(self, **changes) -> WorkerSettings:
        """
        Change embedding worker settings while running (for /embeddings batch|rate).

        Takes effect from the worker's next batch.

        Raises:
            ConfigurationError: unknown key, wrong type or out of range
        """
        settings = self.worker.settings.with_updates(**changes)
        self.worker.update_settings(settings)
        return settings

    # ── Failed jobs ──────────────────────────────────────────

    def list_failed_jobs(self, limit: int = 20) -> list[FailedJob]:
        """Most recent embedding failures first."""
        return self.failed_jobs.list_jobs(job_type=JOB_TYPE, limit=limit)

    def retry_failed_job(self, job_id: int) -> bool:
        """
        Forget a recorded failure so the worker embeds the item again.

        Returns False if there is no such embedding job.
        """
        job = self.failed_jobs.get(job_id)
        if job is None or job.job_type != JOB_TYPE:
            return False
        payload = job.payload or {}
        if job.ref_id is not None and payload.get("kind"):
            self.worker.forget_failure(EmbeddingKind(payload["kind"]), job.ref_id)
        self.failed_jobs.delete(job_id)
        logger.info(f"Failed job {job_id} queued for retry")
        return True

    def purge_failed_jobs(self, older_than_days: Optional[int] = None) -> int:
        """Delete recorded embedding failures, all of them or those older than N days."""
        if older_than_days is None:
            return self.failed_jobs.clear(JOB_TYPE)
        return self.failed_jobs.delete_older_than(older_than_days, job_type=JOB_TYPE)

    # ── Maintenance ──────────────────────────────────────────

    def clear(self, kind: EmbeddingKind) -> int:
        """Delete every embedding of one kind. The worker will regenerate them."""
        self._ensure_initialized()
        removed = self.store.clear(kind)
        self.retriever.clear_cache()
        return removed

    def reset(self, timeout: float = 5.0) -> dict[str, int]:
        """
        Delete all embeddings and start over.

        The worker is paused while the tables are cleared so it cannot
        upsert into a half-cleared store.
        """
        self._ensure_initialized()
        state = self.worker.state
        active = self.worker.is_alive and state in (TaskState.RUNNING, TaskState.PAUSED)
        was_running = active and state is TaskState.RUNNING
        if active:
            self.worker.pause()
            if not self.worker.wait_until_paused(timeout):
                logger.warning("Embedding worker did not pause in time; resetting anyway")

        try:
            removed = {kind.value: self.store.clear(kind) for kind in EmbeddingKind}
            self.retriever.clear_cache()
            self.worker.reset_counters()
        finally:
            if was_running:
                self.worker.resume()

        logger.info(f"Reset embeddings: {removed}")
        return removed


def create_memory_manager(
    config: Config,
    provider: Optional[ConfigProvider] = None,
    client: Optional[EmbeddingClient] = None,
) -> MemoryManager:
    """
    Factory function to create a fully configured MemoryManager.

    Args:
        config: Application configuration
        provider: Typed access to rag/embeddings tunables (defaults to config.yaml)
        client: Embedding client override (defaults to one built from config)

    Returns:
        Configured MemoryManager instance (call initialize() before use)

    Raises:
        ConfigurationError: a tunable has the wrong type or is out of range
    """
    provider = provider or config.provider()
    rag_config = RagConfig.from_provider(provider)
    settings = WorkerSettings.from_provider(provider)

    if client is None:
        if config.embeddings.provider == "local":
            client = create_embedding_client("local", model=config.embeddings.local_model)
        else:
            client = create_embedding_client(
                "openai",
                api_key=config.openai.api_key,
                model=config.openai.embedding_model,
                dimensions=config.openai.embedding_dimensions,
            )

    db_path = config.storage.database_path
    store = EmbeddingStore(
        db_path=db_path,
        dimension=client.dimension,
        use_vector_index=provider.get_bool(
            "storage.vector_index_enabled", config.storage.vector_index_enabled
        ),
    )
    retriever = RagRetriever(
        store=store,
        client=client,
        config=rag_config,
        retrieval_logger=RetrievalLogger(db_path) if rag_config.log_retrievals else None,
    )
    backlog = SummaryBacklog(db_path)
    failed_jobs = FailedJobRepository(db_path)
    worker = EmbeddingGenerationWorker(
        client=client,
        store=store,
        backlog=backlog,
        failed_jobs=failed_jobs,
        cache=retriever.cache,
        settings=settings,
    )

    return MemoryManager(
        store=store,
        retriever=retriever,
        worker=worker,
        backlog=backlog,
        failed_jobs=failed_jobs,
    )
