"""Crash-loop protection for the reconciliation process.

Each attempt runs the full setup and reconciliation sequence. Attempts that
die before ``min_runtime_seconds`` count as short deaths; after
``max_short_deaths`` of them the process gives up so that an outer
supervisor (a container restart policy, say) can take over. Attempts that ran
long enough are always retried. The short death counter is never reset, so
short deaths separated by long healthy runs still add up.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Callable

from .errors import SourceConstructionError

logger = logging.getLogger(__name__)

DEFAULT_MIN_RUNTIME_SECONDS = 60.0
DEFAULT_MAX_SHORT_DEATHS = 10


class SupervisorState(Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    ABORTED = "aborted"


class Supervisor:
    """Restarts an attempt until it is stopped or dies young too often."""

    def __init__(
        self,
        attempt: Callable[[], None],
        stop: threading.Event,
        *,
        min_runtime_seconds: float = DEFAULT_MIN_RUNTIME_SECONDS,
        max_short_deaths: int = DEFAULT_MAX_SHORT_DEATHS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._attempt = attempt
        self._stop = stop
        self.min_runtime = min_runtime_seconds
        self.max_short_deaths = max(1, max_short_deaths)
        self._clock = clock
        self.short_deaths = 0
        self.attempts = 0
        self.state = SupervisorState.RUNNING

    def run(self) -> int:
        """Supervise attempts; return the process exit code."""
        while self.state is SupervisorState.RUNNING:
            self._run_once()

        if self.state is SupervisorState.ABORTED:
            return 1
        return 0

    def _run_once(self) -> None:
        started = self._clock()
        self.attempts += 1
        try:
            self._attempt()
        except SourceConstructionError as e:
            logger.error(f"Cannot create dispatcher sets, giving up: {e}")
            self.state = SupervisorState.ABORTED
            return
        except Exception as e:
            logger.error(f"run died: {e}", exc_info=True)

        if self._stop.is_set():
            logger.info("Shutting down gracefully...")
            self.state = SupervisorState.STOPPED
            return

        elapsed = self._clock() - started
        if elapsed < self.min_runtime:
            self.short_deaths += 1
            logger.warning(
                f"Attempt {self.attempts} ended after {elapsed:.1f}s "
                f"({self.short_deaths}/{self.max_short_deaths} short deaths)"
            )

        if self.short_deaths >= self.max_short_deaths:
            logger.error("too many short-term deaths")
            self.state = SupervisorState.ABORTED
