"""
Pausable background task.

A worker thread with an explicit state machine:

    STOPPED -> RUNNING <-> PAUSED
                  \\         /
                 SHUTTING_DOWN -> STOPPED

Pausing is cooperative: the thread parks at its next checkpoint() (or
inside sleep()) and stays there until resumed. Shutdown always wins over
pause, so a paused task still exits promptly.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

from ..config import worker_context

logger = logging.getLogger("agent_memory.workers")

# Longest a parked or sleeping worker goes without re-checking its state
RESPONSIVENESS_INTERVAL = 0.2


class TaskState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"
    SHUTTING_DOWN = "shutting_down"


class PausableTask(ABC):
    """Base class for background workers that can be paused, resumed and shut down."""

    def __init__(
        self,
        name: str,
        responsiveness_interval: float = RESPONSIVENESS_INTERVAL,
        error_interval: float = 5.0,
    ):
        self.name = name
        self.responsiveness_interval = responsiveness_interval
        self.error_interval = error_interval
        self._cond = threading.Condition()
        self._state = TaskState.STOPPED
        self._parked = False
        self._thread: Optional[threading.Thread] = None

    # ── Control (any thread) ─────────────────────────────────

    @property
    def state(self) -> TaskState:
        with self._cond:
            return self._state

    @property
    def is_alive(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def start(self) -> None:
        """Start the worker thread. No-op if it is already running."""
        with self._cond:
            if self._thread is not None and self._thread.is_alive():
                return
            self._state = TaskState.RUNNING
            self._parked = False
            self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
            self._thread.start()
        logger.info(f"Started {self.name}")

    def pause(self) -> None:
        with self._cond:
            if self._state is TaskState.RUNNING:
                self._state = TaskState.PAUSED
                self._cond.notify_all()
                logger.info(f"Pausing {self.name}")

    def resume(self) -> None:
        with self._cond:
            if self._state is TaskState.PAUSED:
                self._state = TaskState.RUNNING
                self._cond.notify_all()
                logger.info(f"Resumed {self.name}")

    def shutdown(self, timeout: Optional[float] = 5.0) -> bool:
        """
        Ask the worker to stop and wait for it.

        Returns:
            True if the thread has exited (or never ran)
        """
        with self._cond:
            if self._state is not TaskState.STOPPED:
                self._state = TaskState.SHUTTING_DOWN
                self._cond.notify_all()
            thread = self._thread

        if thread is None or thread is threading.current_thread():
            return True
        thread.join(timeout)
        if thread.is_alive():
            logger.warning(f"{self.name} did not stop within {timeout}s")
            return False
        return True

    def wait_until_paused(self, timeout: Optional[float] = 5.0) -> bool:
        """
        Block until the worker has actually parked after pause().

        Returns:
            True if parked within *timeout*; False on timeout, or if the task
            is not paused or not running
        """
        with self._cond:
            self._cond.wait_for(
                lambda: self._parked
                or self._state is not TaskState.PAUSED
                or self._thread is None
                or not self._thread.is_alive(),
                timeout,
            )
            return self._parked

    # ── Cooperation (worker thread) ──────────────────────────

    def checkpoint(self) -> bool:
        """
        Park here while paused.

        Returns:
            False if shutdown was requested, True to keep working
        """
        with self._cond:
            try:
                while True:
                    if self._state is TaskState.SHUTTING_DOWN:
                        return False
                    if self._state is not TaskState.PAUSED:
                        return True
                    if not self._parked:
                        self._parked = True
                        self._cond.notify_all()
                    self._cond.wait(self.responsiveness_interval)
            finally:
                if self._parked:
                    self._parked = False
                    self._cond.notify_all()

    def sleep(self, seconds: float) -> bool:
        """
        Sleep in short slices, honouring pause and shutdown.

        Time spent paused does not count towards *seconds*.

        Returns:
            False if shutdown was requested
        """
        remaining = seconds
        while True:
            if not self.checkpoint():
                return False
            if remaining <= 0:
                return True
            slice_start = time.monotonic()
            with self._cond:
                if self._state is not TaskState.SHUTTING_DOWN:
                    self._cond.wait(min(self.responsiveness_interval, remaining))
            remaining -= time.monotonic() - slice_start

    @property
    def shutdown_requested(self) -> bool:
        with self._cond:
            return self._state is TaskState.SHUTTING_DOWN

    @abstractmethod
    def do_work(self) -> None:
        """One unit of work. Called repeatedly until shutdown."""
        pass

    def _run(self) -> None:
        token = worker_context.set(self.name)
        try:
            while self.checkpoint():
                try:
                    self.do_work()
                except Exception as e:
                    logger.exception(f"{self.name} failed: {e}")
                    if not self.sleep(self.error_interval):
                        break
        finally:
            with self._cond:
                self._state = TaskState.STOPPED
                self._parked = False
                self._cond.notify_all()
            worker_context.reset(token)
            logger.info(f"{self.name} stopped")
