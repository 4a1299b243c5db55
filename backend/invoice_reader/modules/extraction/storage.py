"""Result storage - where callers persist finished OrchestrationRuns.

The orchestration core never stores anything itself; the API layer and the
CLI hand each run to a ``ResultStore``.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from typing import Protocol

from invoice_reader.core.config import settings
from invoice_reader.modules.extraction.agent_schemas import OrchestrationRun
from invoice_reader.modules.extraction.exceptions import RunNotFoundError


class ResultStore(Protocol):
    def save(self, run: OrchestrationRun) -> None: ...

    def get(self, document_id: str) -> OrchestrationRun:
        """Return the stored run or raise RunNotFoundError."""
        ...


class InMemoryResultStore:
    """Process-local store keyed by document id, holding the newest ``max_runs`` runs.

    A re-run replaces the old result and counts as the newest entry; the
    oldest run is evicted once the store is full.
    """

    def __init__(self, max_runs: int | None = None) -> None:
        self.max_runs = max_runs or settings.history_limit
        self._runs: OrderedDict[str, OrchestrationRun] = OrderedDict()
        self._lock = threading.Lock()

    def save(self, run: OrchestrationRun) -> None:
        with self._lock:
            self._runs[run.document_id] = run
            self._runs.move_to_end(run.document_id)
            while len(self._runs) > self.max_runs:
                self._runs.popitem(last=False)

    def get(self, document_id: str) -> OrchestrationRun:
        with self._lock:
            try:
                return self._runs[document_id]
            except KeyError:
                raise RunNotFoundError(document_id) from None

    def __len__(self) -> int:
        with self._lock:
            return len(self._runs)
