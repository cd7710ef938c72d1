"""
Embedding Generation Worker.

Background thread that finds conversation and exchange summaries without
an embedding, embeds them in batches and upserts the vectors into the
store. Provider failures are retried with exponential backoff; items that
still fail are recorded in the failed_jobs table and skipped for the rest
of the session.
"""

import logging
import random
import threading
from dataclasses import dataclass, replace
from typing import Optional

from ..config import ConfigProvider, MappingConfigProvider
from ..errors import PermanentError, StorageError, TransientError
from ..memory.backlog import SummaryBacklog
from ..memory.base import EmbeddingKind, EmbeddingRecord, WorkItem
from ..memory.embedding_store import EmbeddingStore
from ..memory.embeddings import EmbeddingClient, EmbeddingResult
from ..memory.failed_jobs import FailedJobRepository
from ..rag.cache import RagCache
from .backoff import DEFAULT_BASE_DELAY, DEFAULT_MAX_DELAY, backoff_delay
from .pausable import PausableTask, TaskState

logger = logging.getLogger("agent_memory.workers.embeddings")

JOB_TYPE = "embedding_generation"


@dataclass(frozen=True)
class WorkerSettings:
    """Tunables for the embedding worker."""
    enabled: bool = True
    batch_size: int = 10
    rate_limit_ms: int = 100
    max_attempts: int = 3
    idle_interval: float = 3.0
    backoff_base: float = DEFAULT_BASE_DELAY
    backoff_cap: float = DEFAULT_MAX_DELAY

    @classmethod
    def from_provider(cls, provider: ConfigProvider) -> "WorkerSettings":
        defaults = cls()
        return cls(
            enabled=provider.get_bool("embeddings.enabled", defaults.enabled),
            batch_size=provider.get_int("embeddings.batch_size", defaults.batch_size, minimum=1),
            rate_limit_ms=provider.get_int(
                "embeddings.rate_limit_ms", defaults.rate_limit_ms, minimum=0
            ),
            max_attempts=provider.get_int(
                "embeddings.max_attempts", defaults.max_attempts, minimum=1
            ),
            idle_interval=provider.get_float(
                "embeddings.idle_interval", defaults.idle_interval, minimum=0.0
            ),
        )

    def with_updates(self, **changes) -> "WorkerSettings":
        """
        Copy with *changes* applied, validated like values from config.yaml.

        Only the keys read from configuration can be changed; the backoff
        bounds are kept.

        Raises:
            ConfigurationError: unknown key, wrong type or out of range
        """
        current = {
            "enabled": self.enabled,
            "batch_size": self.batch_size,
            "rate_limit_ms": self.rate_limit_ms,
            "max_attempts": self.max_attempts,
            "idle_interval": self.idle_interval,
        }
        provider = MappingConfigProvider.overlay("embeddings", current, changes)
        return replace(
            WorkerSettings.from_provider(provider),
            backoff_base=self.backoff_base,
            backoff_cap=self.backoff_cap,
        )


@dataclass(frozen=True)
class WorkerStatus:
    """Point-in-time view of the worker, safe to hand to other threads."""
    state: str
    enabled: bool
    running: bool
    paused: bool
    total: int
    completed: int
    failed: int
    tokens: int
    spend: float
    current_item: Optional[str]
    last_error: Optional[str]


class EmbeddingGenerationWorker(PausableTask):
    """Generates embeddings for summaries that do not have one yet."""

    def __init__(
        self,
        client: EmbeddingClient,
        store: EmbeddingStore,
        backlog: SummaryBacklog,
        failed_jobs: FailedJobRepository,
        cache: Optional[RagCache] = None,
        settings: Optional[WorkerSettings] = None,
        current_conversation_id: Optional[int] = None,
        rng: Optional[random.Random] = None,
        name: str = "embedding-worker",
        **task_options,
    ):
        super().__init__(name, **task_options)
        self.client = client
        self.store = store
        self.backlog = backlog
        self.failed_jobs = failed_jobs
        self.cache = cache
        self.rng = rng or random.Random()

        self._status_lock = threading.Lock()
        self._settings = settings or WorkerSettings()
        self._enabled = self._settings.enabled
        self._current_conversation_id = current_conversation_id
        self._failed_items: set[WorkItem] = set()
        self._total = 0
        self._completed = 0
        self._failed = 0
        self._tokens = 0
        self._spend = 0.0
        self._current_item: Optional[str] = None
        self._last_error: Optional[str] = None

    # ── Control ──────────────────────────────────────────────

    @property
    def settings(self) -> WorkerSettings:
        with self._status_lock:
            return self._settings

    def update_settings(self, settings: WorkerSettings) -> None:
        """Replace the tunables. Takes effect from the next batch."""
        with self._status_lock:
            if settings.enabled != self._settings.enabled:
                self._enabled = settings.enabled
            self._settings = settings
        logger.info(
            f"Embedding worker settings updated: batch_size={settings.batch_size}, "
            f"rate_limit_ms={settings.rate_limit_ms}"
        )

    @property
    def enabled(self) -> bool:
        with self._status_lock:
            return self._enabled

    def enable(self) -> None:
        with self._status_lock:
            self._enabled = True
        logger.info("Embedding generation enabled")

    def disable(self) -> None:
        """Stop picking up new batches. A batch already in flight finishes."""
        with self._status_lock:
            self._enabled = False
        logger.info("Embedding generation disabled")

    def set_current_conversation(self, conversation_id: Optional[int]) -> None:
        """The conversation in progress; its summaries are not embedded yet."""
        with self._status_lock:
            self._current_conversation_id = conversation_id

    def snapshot(self) -> WorkerStatus:
        state = self.state
        with self._status_lock:
            return WorkerStatus(
                state=state.value,
                enabled=self._enabled,
                running=state in (TaskState.RUNNING, TaskState.PAUSED),
                paused=state is TaskState.PAUSED,
                total=self._total,
                completed=self._completed,
                failed=self._failed,
                tokens=self._tokens,
                spend=self._spend,
                current_item=self._current_item,
                last_error=self._last_error,
            )

    def reset_counters(self) -> None:
        """Zero the counters and forget items that failed this session."""
        with self._status_lock:
            self._total = 0
            self._completed = 0
            self._failed = 0
            self._tokens = 0
            self._spend = 0.0
            self._current_item = None
            self._last_error = None
            self._failed_items.clear()

    def forget_failure(self, kind: EmbeddingKind, ref_id: int) -> bool:
        """Let an item that failed this session be picked up again."""
        with self._status_lock:
            matching = {
                item for item in self._failed_items
                if item.kind is kind and item.ref_id == ref_id
            }
            self._failed_items -= matching
        return bool(matching)

    # ── Work loop ────────────────────────────────────────────

    def do_work(self) -> None:
        with self._status_lock:
            settings = self._settings
            enabled = self._enabled
            exclude = self._current_conversation_id
            skip = set(self._failed_items)

        if not enabled:
            self.sleep(settings.idle_interval)
            return

        items = self.backlog.pending(
            settings.batch_size, exclude_conversation_id=exclude, skip=skip
        )
        if not items:
            with self._status_lock:
                self._current_item = None
            self.sleep(settings.idle_interval)
            return

        logger.info(f"Embedding batch of {len(items)} summaries")
        with self._status_lock:
            self._total += len(items)

        self.process_batch(items, settings)
        self.sleep(settings.rate_limit_ms / 1000)

    def process_batch(self, items: list[WorkItem], settings: Optional[WorkerSettings] = None) -> None:
        """Embed *items* with one provider call and store the vectors."""
        if not items:
            return
        settings = settings or self.settings

        result = self._embed_with_retry(items, settings)
        if result is None:
            return

        if len(result.vectors) != len(items):
            error = ValueError(
                f"Provider returned {len(result.vectors)} vectors for {len(items)} texts"
            )
            self._fail_batch(items, error, attempts=1)
            return

        with self._status_lock:
            self._tokens += result.tokens_used
            self._spend += result.cost

        for item, vector in zip(items, result.vectors):
            if not self.checkpoint():
                return
            self._store(item, vector, settings)

        with self._status_lock:
            self._current_item = None

    def _embed_with_retry(
        self, items: list[WorkItem], settings: WorkerSettings
    ) -> Optional[EmbeddingResult]:
        texts = [item.text for item in items]
        attempt = 1
        while True:
            try:
                return self.client.embed(texts)
            except TransientError as e:
                if attempt >= settings.max_attempts:
                    self._fail_batch(items, e, attempts=attempt)
                    return None
                delay = self._backoff(attempt, settings)
                logger.warning(
                    f"Embedding batch failed (attempt {attempt}/{settings.max_attempts}), "
                    f"retrying in {delay:.2f}s: {e}"
                )
                if not self.sleep(delay):
                    return None
                attempt += 1
            except PermanentError as e:
                self._fail_batch(items, e, attempts=attempt)
                return None
            except Exception as e:
                # Outside the client's error contract; retrying would hit it again
                logger.exception(f"Unexpected error from embedding client: {e}")
                self._fail_batch(items, e, attempts=attempt)
                return None

    def _store(self, item: WorkItem, vector: list[float], settings: WorkerSettings) -> None:
        with self._status_lock:
            self._current_item = item.label

        attempt = 1
        while True:
            try:
                record = self.store.upsert(item.kind, item.ref_id, item.text, vector)
                break
            except ValueError as e:
                self._fail_item(item, e, attempts=attempt)
                return
            except StorageError as e:
                if attempt >= settings.max_attempts:
                    self._fail_item(item, e, attempts=attempt)
                    return
                delay = self._backoff(attempt, settings)
                logger.warning(f"Storing {item.label} failed, retrying in {delay:.2f}s: {e}")
                if not self.sleep(delay):
                    return
                attempt += 1

        with self._status_lock:
            self._completed += 1
        logger.debug(f"Stored embedding for {item.label}")
        self._invalidate(item, record)

    def _backoff(self, attempt: int, settings: WorkerSettings) -> float:
        return backoff_delay(
            attempt,
            base=settings.backoff_base,
            cap=settings.backoff_cap,
            rng=self.rng,
        )

    def _invalidate(self, item: WorkItem, record: EmbeddingRecord) -> None:
        cache = self.cache
        if cache is None:
            return
        if record.was_inserted:
            # A new candidate can enter any cached ranking
            cache.clear()
        elif item.conversation_id is not None:
            cache.invalidate_conversation(item.conversation_id)
        else:
            cache.clear()

    # ── Failures ─────────────────────────────────────────────

    def _fail_batch(self, items: list[WorkItem], error: Exception, attempts: int) -> None:
        logger.error(f"Embedding batch of {len(items)} failed after {attempts} attempt(s): {error}")
        for item in items:
            self._fail_item(item, error, attempts)

    def _fail_item(self, item: WorkItem, error: Exception, attempts: int) -> None:
        with self._status_lock:
            self._failed += 1
            self._last_error = f"{item.label}: {error}"
            self._failed_items.add(item)

        try:
            self.failed_jobs.create(
                job_type=JOB_TYPE,
                error=str(error),
                ref_id=item.ref_id,
                payload={
                    "kind": item.kind.value,
                    "conversation_id": item.conversation_id,
                    "error_type": type(error).__name__,
                },
                retry_count=attempts - 1,
            )
        except StorageError as e:
            logger.error(f"Could not record failed job for {item.label}: {e}")
