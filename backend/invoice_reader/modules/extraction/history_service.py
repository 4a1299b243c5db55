"""History service - bounded in-memory log of finished orchestration runs.

Observability only: nothing recorded here feeds back into a run's decisions.
Aggregates are computed on read.
"""

from __future__ import annotations

import threading
from collections import Counter, deque
from datetime import datetime, timezone

import structlog

from invoice_reader.core.config import settings
from invoice_reader.modules.extraction.agent_schemas import (
    ExecutionRecord,
    OrchestrationRun,
    SystemStats,
)

logger = structlog.get_logger()


class MetricsRecorder:
    """Append-only run history truncated to the most recent ``max_entries``."""

    def __init__(self, max_entries: int | None = None) -> None:
        self.max_entries = max_entries or settings.history_limit
        self._records: deque[ExecutionRecord] = deque(maxlen=self.max_entries)
        self._lock = threading.Lock()

    def record_run(self, run: OrchestrationRun) -> ExecutionRecord:
        record = ExecutionRecord(
            timestamp=datetime.now(timezone.utc),
            document_id=run.document_id,
            agents_used=list(run.metrics.agents_involved),
            final_confidence=run.metrics.final_confidence,
            iterations_used=run.metrics.iterations_used,
            total_time_ms=run.metrics.total_time_ms,
        )
        with self._lock:
            self._records.append(record)
        return record

    def recent_history(self, limit: int = 20) -> list[ExecutionRecord]:
        """Return up to ``limit`` records, newest first."""
        if limit <= 0:
            return []
        with self._lock:
            records = list(self._records)
        return list(reversed(records[-limit:]))

    def system_stats(self) -> SystemStats:
        with self._lock:
            records = list(self._records)
        if not records:
            return SystemStats()

        usage = Counter(name for r in records for name in r.agents_used)
        most_used = usage.most_common(1)[0][0] if usage else None
        return SystemStats(
            total_executions=len(records),
            average_confidence=sum(r.final_confidence for r in records) / len(records),
            average_processing_time_ms=sum(r.total_time_ms for r in records) / len(records),
            most_used_agent=most_used,
        )
