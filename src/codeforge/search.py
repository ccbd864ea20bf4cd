"""Debounced history search."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Protocol

from codeforge.models import Artifact

logger = logging.getLogger(__name__)

DEFAULT_QUIET_INTERVAL = 0.3

ResultsCallback = Callable[[str, list[Artifact]], None]


class SearchableRepository(Protocol):
    def list(self, starred_only: bool = False) -> list[Artifact]: ...

    def search(self, query: str, starred_only: bool = False) -> list[Artifact]: ...


class DebouncedSearch:
    """Coalesce rapid query updates into one search per quiet interval.

    Each :meth:`update` restarts the quiet timer; the repository is queried
    only once the query has been stable for ``quiet_interval`` seconds, with
    the latest query. A blank query lists everything.
    """

    def __init__(
        self,
        repository: SearchableRepository,
        on_results: ResultsCallback,
        quiet_interval: float = DEFAULT_QUIET_INTERVAL,
        starred_only: bool = False,
    ):
        if quiet_interval < 0:
            raise ValueError("quiet_interval must be >= 0")
        self.repository = repository
        self.on_results = on_results
        self.quiet_interval = quiet_interval
        self.starred_only = starred_only
        self.evaluations = 0
        self._pending: str | None = None
        self._handle: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def update(self, query: str) -> None:
        """Record a new query and restart the quiet timer. Needs a running loop."""
        loop = asyncio.get_running_loop()
        if self._handle is not None:
            self._handle.cancel()
        self._pending = query
        self._handle = loop.call_later(self.quiet_interval, self._fire)

    def flush(self) -> list[Artifact] | None:
        """Evaluate the pending query immediately, if any."""
        if self._handle is None:
            return None
        self._handle.cancel()
        return self._fire()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._handle = None
        self._pending = None

    def evaluate(self, query: str) -> list[Artifact]:
        if query.strip():
            return self.repository.search(query, starred_only=self.starred_only)
        return self.repository.list(starred_only=self.starred_only)

    def _fire(self) -> list[Artifact]:
        query = self._pending or ""
        self._handle = None
        self._pending = None
        results = self.evaluate(query)
        self.evaluations += 1
        logger.debug("Search %r matched %d artifact(s)", query, len(results))
        self.on_results(query, results)
        return results
