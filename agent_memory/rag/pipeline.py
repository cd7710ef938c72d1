"""
Retrieval pipeline runner.

Runs processors in order on the caller's thread. A processor that raises
does not abort the request: its section stays empty, the failure is logged
and recorded in metadata.stage_errors, and the next processor runs.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from .context import RetrievalContext
from .processors import RetrievalProcessor

logger = logging.getLogger("agent_memory.rag.pipeline")


@dataclass(frozen=True)
class Cancellation:
    """Cancellation signal: an Event, a monotonic deadline, or both."""
    event: Optional[threading.Event] = None
    deadline: Optional[float] = None
    clock: Callable[[], float] = time.monotonic

    @classmethod
    def after(cls, seconds: float, event: Optional[threading.Event] = None) -> "Cancellation":
        """Cancel *seconds* from now (or earlier if *event* is set)."""
        return cls(event=event, deadline=time.monotonic() + seconds)

    def is_set(self) -> bool:
        if self.event is not None and self.event.is_set():
            return True
        return self.deadline is not None and self.clock() >= self.deadline


class RetrievalPipeline:
    """An ordered list of processors and the rules for running them."""

    def __init__(
        self,
        processors: Sequence[RetrievalProcessor],
        clock: Callable[[], float] = time.monotonic,
    ):
        self.processors = list(processors)
        self.clock = clock

    @property
    def stage_names(self) -> list[str]:
        return [p.name for p in self.processors]

    def run(
        self,
        context: RetrievalContext,
        cancellation: Optional[Cancellation] = None,
    ) -> RetrievalContext:
        """Run every processor (until halted or cancelled) and record duration_ms."""
        start = self.clock()

        for processor in self.processors:
            if cancellation is not None and cancellation.is_set():
                logger.info(f"Retrieval cancelled before {processor.name}")
                context = context.update(formatted_context="").with_metadata(cancelled=True)
                break

            try:
                context = processor.process(context)
            except Exception as e:
                logger.warning(f"Retrieval stage {processor.name} failed: {e}")
                context = context.with_stage_error(processor.name, str(e))

            if context.halted:
                break

        duration_ms = round((self.clock() - start) * 1000, 2)
        return context.with_metadata(duration_ms=duration_ms)
