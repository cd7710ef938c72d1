"""
Retrieval context and configuration.

A RetrievalContext is created per request and handed from processor to
processor. Processors never modify the context they receive; they return
an updated copy (dataclasses.replace).
"""

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Any, Optional

from ..config import ConfigProvider, MappingConfigProvider
from ..memory.base import ConversationMatch, ExchangeMatch


@dataclass(frozen=True)
class RetrievalMetadata:
    """What happened while answering one retrieval request."""
    duration_ms: float = 0.0
    conversation_count: int = 0  # entries that made it into formatted_context
    exchange_count: int = 0
    total_tokens_estimate: int = 0
    cache_hit: bool = False
    fallback_mode_used: bool = False
    cancelled: bool = False
    error: Optional[str] = None
    stage_errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RetrievalContext:
    """State of one retrieval request as it moves through the pipeline."""
    query: str
    current_conversation_id: Optional[int] = None
    after_date: Optional[datetime] = None
    before_date: Optional[datetime] = None
    query_embedding: Optional[tuple[float, ...]] = None
    conversation_matches: tuple[ConversationMatch, ...] = ()
    exchange_matches: tuple[ExchangeMatch, ...] = ()
    formatted_context: str = ""
    metadata: RetrievalMetadata = field(default_factory=RetrievalMetadata)
    # Set when a stage decides nothing downstream can produce a result
    halted: bool = False

    def update(self, **changes) -> "RetrievalContext":
        return replace(self, **changes)

    def with_metadata(self, **changes) -> "RetrievalContext":
        return replace(self, metadata=replace(self.metadata, **changes))

    def with_stage_error(self, stage: str, message: str) -> "RetrievalContext":
        errors = {**self.metadata.stage_errors, stage: message}
        return self.with_metadata(stage_errors=errors)

    @property
    def conversation_ids(self) -> list[int]:
        return [m.conversation_id for m in self.conversation_matches]


@dataclass(frozen=True)
class RagConfig:
    """
    Ranking, formatting and caching parameters for retrieval.

    Read from a ConfigProvider with from_provider(); values of the wrong
    type or out of range raise ConfigurationError there.
    """
    conversation_limit: int = 5
    conversation_min_similarity: float = 0.7
    exchanges_per_conversation: int = 3
    exchange_global_cap: int = 10
    exchange_min_similarity: float = 0.6
    token_budget: int = 2000
    conversation_budget_pct: float = 0.4
    cache_enabled: bool = True
    cache_ttl: float = 300.0
    cache_capacity: int = 100
    log_retrievals: bool = False

    @classmethod
    def from_provider(cls, provider: ConfigProvider) -> "RagConfig":
        defaults = cls()
        return cls(
            conversation_limit=provider.get_int(
                "rag.conversation_limit", defaults.conversation_limit, minimum=0
            ),
            conversation_min_similarity=provider.get_float(
                "rag.conversation_min_similarity", defaults.conversation_min_similarity,
                minimum=0.0, maximum=1.0,
            ),
            exchanges_per_conversation=provider.get_int(
                "rag.exchanges_per_conversation", defaults.exchanges_per_conversation, minimum=0
            ),
            exchange_global_cap=provider.get_int(
                "rag.exchange_global_cap", defaults.exchange_global_cap, minimum=0
            ),
            exchange_min_similarity=provider.get_float(
                "rag.exchange_min_similarity", defaults.exchange_min_similarity,
                minimum=0.0, maximum=1.0,
            ),
            token_budget=provider.get_int("rag.token_budget", defaults.token_budget, minimum=0),
            conversation_budget_pct=provider.get_float(
                "rag.conversation_budget_pct", defaults.conversation_budget_pct,
                minimum=0.0, maximum=1.0,
            ),
            cache_enabled=provider.get_bool("rag.cache_enabled", defaults.cache_enabled),
            cache_ttl=provider.get_float("rag.cache_ttl", defaults.cache_ttl, minimum=0.0),
            cache_capacity=provider.get_int(
                "rag.cache_capacity", defaults.cache_capacity, minimum=1
            ),
            log_retrievals=provider.get_bool("rag.log_retrievals", defaults.log_retrievals),
        )

    def with_updates(self, **changes) -> "RagConfig":
        """
        Copy with *changes* applied, validated like values from config.yaml.

        Raises:
            ConfigurationError: unknown key, wrong type or out of range
        """
        provider = MappingConfigProvider.overlay("rag", asdict(self), changes)
        return RagConfig.from_provider(provider)

    def fingerprint(self) -> str:
        """Every value that changes which results are returned or how they are formatted."""
        return (
            f"cl={self.conversation_limit}|cs={self.conversation_min_similarity!r}"
            f"|epc={self.exchanges_per_conversation}|egc={self.exchange_global_cap}"
            f"|es={self.exchange_min_similarity!r}|tb={self.token_budget}"
            f"|pct={self.conversation_budget_pct!r}"
        )
