"""
Retrieval processors.

Each processor is one stage of the retrieval pipeline: it receives a
RetrievalContext and returns an updated copy. Processors hold no
per-request state, so one instance can serve concurrent requests.
"""

import logging
from abc import ABC, abstractmethod

from ..errors import EmbeddingClientError
from ..memory.embedding_store import EmbeddingStore, rank_conversations, rank_exchanges
from ..memory.embeddings import EmbeddingClient
from .context import RagConfig, RetrievalContext
from .tokens import TokenEstimator, estimate_tokens

logger = logging.getLogger("agent_memory.rag.processors")

SECTION_SEPARATOR = "\n\n"
CONVERSATIONS_HEADER = "## Related Conversations"
EXCHANGES_HEADER = "## Related Exchanges"


class RetrievalProcessor(ABC):
    """One stage of the retrieval pipeline."""

    name: str = "processor"

    @abstractmethod
    def process(self, context: RetrievalContext) -> RetrievalContext:
        """Return an updated copy of *context*."""
        pass


class QueryEmbeddingProcessor(RetrievalProcessor):
    """Embeds the query text. Halts the pipeline when that is impossible."""

    name = "query_embedding"

    def __init__(self, client: EmbeddingClient):
        self.client = client

    def process(self, context: RetrievalContext) -> RetrievalContext:
        if not context.query or not context.query.strip():
            return context.update(halted=True).with_metadata(error="Empty query")

        try:
            result = self.client.embed([context.query])
        except EmbeddingClientError as e:
            logger.warning(f"Query embedding failed: {e}")
            return context.update(halted=True).with_metadata(
                error=f"Query embedding failed: {e}"
            )

        if not result.vectors:
            return context.update(halted=True).with_metadata(
                error="Query embedding failed: provider returned no vectors"
            )
        return context.update(query_embedding=tuple(result.vectors[0]))


class ConversationSearchProcessor(RetrievalProcessor):
    """Finds past conversations whose summaries resemble the query."""

    name = "conversation_search"

    def __init__(self, store: EmbeddingStore, config: RagConfig):
        self.store = store
        self.config = config

    def process(self, context: RetrievalContext) -> RetrievalContext:
        if context.query_embedding is None:
            return context

        matches = self.store.search_conversations(
            list(context.query_embedding),
            limit=self.config.conversation_limit,
            min_similarity=self.config.conversation_min_similarity,
            exclude_conversation_id=context.current_conversation_id,
            after_date=context.after_date,
            before_date=context.before_date,
        )
        logger.debug(f"Found {len(matches)} related conversations")
        return context.update(conversation_matches=tuple(matches)).with_metadata(
            fallback_mode_used=self.store.fallback_mode
        )


class ExchangeSearchProcessor(RetrievalProcessor):
    """
    Finds individual exchanges resembling the query.

    Searches inside the conversations found by the previous stage; when
    none were found it searches all exchanges instead.
    """

    name = "exchange_search"

    def __init__(self, store: EmbeddingStore, config: RagConfig):
        self.store = store
        self.config = config

    def process(self, context: RetrievalContext) -> RetrievalContext:
        if context.query_embedding is None:
            return context

        conversation_ids = context.conversation_ids or None
        matches = self.store.search_exchanges(
            list(context.query_embedding),
            conversation_ids=conversation_ids,
            per_conversation_limit=self.config.exchanges_per_conversation,
            global_cap=self.config.exchange_global_cap,
            min_similarity=self.config.exchange_min_similarity,
            exclude_conversation_id=context.current_conversation_id,
            after_date=context.after_date,
            before_date=context.before_date,
        )
        logger.debug(f"Found {len(matches)} related exchanges")
        return context.update(exchange_matches=tuple(rank_exchanges(matches))).with_metadata(
            fallback_mode_used=self.store.fallback_mode
        )


class ContextFormatterProcessor(RetrievalProcessor):
    """
    Renders the matches into a token-budgeted markdown context.

    The budget is split between conversations (conversation_budget_pct) and
    exchanges (the rest, minus the separator between the two sections).
    Each section takes entries in rank order and stops at the first one that
    does not fit.
    """

    name = "context_formatter"

    def __init__(self, config: RagConfig, estimator: TokenEstimator = estimate_tokens):
        self.config = config
        self.estimate = estimator

    def budgets(self) -> tuple[int, int]:
        """(conversation budget, exchange budget) in tokens."""
        total = self.config.token_budget
        conversation_budget = int(total * self.config.conversation_budget_pct)
        exchange_budget = total - conversation_budget - self.estimate(SECTION_SEPARATOR)
        return conversation_budget, max(exchange_budget, 0)

    def _section(self, header: str, entries: list[str], budget: int) -> tuple[str, int]:
        lines = [header]
        for entry in entries:
            if self.estimate("\n".join(lines + [entry])) > budget:
                break
            lines.append(entry)
        if len(lines) == 1:
            return "", 0
        return "\n".join(lines), len(lines) - 1

    def process(self, context: RetrievalContext) -> RetrievalContext:
        conversation_budget, exchange_budget = self.budgets()

        conversation_section, conversation_count = self._section(
            CONVERSATIONS_HEADER,
            [
                f"- [Conversation #{m.conversation_id}] {m.content}"
                for m in rank_conversations(context.conversation_matches)
            ],
            conversation_budget,
        )
        exchange_section, exchange_count = self._section(
            EXCHANGES_HEADER,
            [
                f"- [Exchange #{m.exchange_id}] {m.content}"
                for m in rank_exchanges(context.exchange_matches)
            ],
            exchange_budget,
        )

        formatted = SECTION_SEPARATOR.join(
            section for section in (conversation_section, exchange_section) if section
        )
        return context.update(formatted_context=formatted).with_metadata(
            conversation_count=conversation_count,
            exchange_count=exchange_count,
            total_tokens_estimate=self.estimate(formatted),
        )
