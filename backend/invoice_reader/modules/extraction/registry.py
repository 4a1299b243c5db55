"""InvoiceReader Agent Registry - runtime-mutable agent catalog + per-agent metrics.

One registry is built at process start and injected into the orchestrator.
It owns:
  - the AgentDescriptor catalog (enable/disable, timeouts, retries, prompts)
  - per-agent running metrics, each guarded by its own lock
  - the system-wide OrchestrationConfig (thresholds, retry backoff)

Locks are ``threading.Lock`` so the registry is safe both across asyncio
tasks and across worker threads; no lock is held across an ``await``.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any

import structlog

from invoice_reader.modules.extraction.agent_schemas import (
    AgentDescriptor,
    AgentDescriptorUpdate,
    AgentMetrics,
    DocumentOrigin,
    OrchestrationConfig,
    OrchestrationConfigUpdate,
)
from invoice_reader.modules.extraction.exceptions import AgentNotFoundError

logger = structlog.get_logger()

CLASSIFICATION_AGENT = "classification_agent"
STRUCTURAL_AGENT = "structural_extraction_agent"
METADATA_AGENT = "metadata_agent"
ARGENTINA_FISCAL_AGENT = "argentina_fiscal_agent"
INTERNATIONAL_TRADE_AGENT = "international_trade_agent"
CONFLICT_RESOLUTION_AGENT = "conflict_resolution_agent"
CROSS_VALIDATION_AGENT = "cross_validation_agent"

# Jurisdiction-specific agents and the origin that makes them irrelevant
_SKIP_WHEN_ORIGIN: dict[str, DocumentOrigin] = {
    ARGENTINA_FISCAL_AGENT: "international",
    INTERNATIONAL_TRADE_AGENT: "argentina",
}


def default_catalog() -> list[AgentDescriptor]:
    """The fixed seven-agent catalog every registry starts from."""
    return [
        AgentDescriptor(
            name=CLASSIFICATION_AGENT,
            label="Classification Agent",
            description="Detects document type, origin, currency and scan quality",
            agent_type="classification",
            specializations=["document_type", "origin_detection", "quality_assessment"],
            confidence_weight=1.0,
            timeout_seconds=15,
            max_retries=2,
            prompt_template=(
                "You are a specialist in classifying commercial and fiscal documents. "
                "You recognise Argentine AFIP invoices (Factura A/B/C, credit and debit "
                "notes) as well as foreign commercial invoices."
            ),
        ),
        AgentDescriptor(
            name=STRUCTURAL_AGENT,
            label="Structural Extraction Agent",
            description="Extracts the core invoice fields, parties, amounts and line items",
            agent_type="extraction",
            specializations=["basic_fields", "amounts", "dates", "parties"],
            confidence_weight=1.2,
            timeout_seconds=20,
            max_retries=2,
            prompt_template=(
                "You are an expert in structural data extraction from invoices. "
                "You read every header field, party block, total and line item exactly "
                "as printed."
            ),
        ),
        AgentDescriptor(
            name=METADATA_AGENT,
            label="Metadata Agent",
            description="Infers origin and document type from file name and MIME type (no LLM)",
            agent_type="classification",
            specializations=["file_analysis", "context_inference"],
            confidence_weight=0.8,
            timeout_seconds=5,
            max_retries=1,
        ),
        AgentDescriptor(
            name=ARGENTINA_FISCAL_AGENT,
            label="Argentina Fiscal Agent",
            description="Validates Argentine fiscal data (CUIT, CAE, IVA, perceptions)",
            agent_type="validation",
            specializations=["argentina_fiscal", "cuit_validation", "cae_validation"],
            confidence_weight=1.5,
            timeout_seconds=25,
            max_retries=3,
            prompt_template=(
                "You are an expert in Argentine fiscal documents and AFIP regulations: "
                "CUIT numbers, CAE authorisation codes, points of sale and the IVA breakdown."
            ),
        ),
        AgentDescriptor(
            name=INTERNATIONAL_TRADE_AGENT,
            label="International Trade Agent",
            description="Extracts foreign-trade data (tax ids, HS codes, incoterms, banking)",
            agent_type="validation",
            specializations=["international_trade", "hs_codes", "incoterms", "banking"],
            confidence_weight=1.3,
            timeout_seconds=25,
            max_retries=3,
            prompt_template=(
                "You are a specialist in international trade and foreign commercial "
                "invoices: EIN/VAT identifiers, HS and ECCN codes, incoterms, freight "
                "and banking details."
            ),
        ),
        AgentDescriptor(
            name=CONFLICT_RESOLUTION_AGENT,
            label="Conflict Resolution Agent",
            description="Resolves disagreements between the base-analysis agents",
            agent_type="crosscheck",
            specializations=["conflict_resolution", "data_validation", "consensus_building"],
            confidence_weight=1.1,
            timeout_seconds=30,
            max_retries=2,
            prompt_template=(
                "You are an arbiter that resolves conflicting values produced by several "
                "extraction agents, always preferring what the document actually shows."
            ),
        ),
        AgentDescriptor(
            name=CROSS_VALIDATION_AGENT,
            label="Cross Validation Agent",
            description="Final mathematical, fiscal, temporal and geographic verification",
            agent_type="crosscheck",
            specializations=["final_validation", "mathematical_coherence", "data_integrity"],
            confidence_weight=1.4,
            timeout_seconds=35,
            max_retries=2,
            prompt_template=(
                "You are an expert validator of invoice coherence: arithmetic, identifier "
                "formats, date plausibility and geographic consistency."
            ),
        ),
    ]


def normalize_origin(value: Any) -> DocumentOrigin:
    """Collapse a classification value into argentina / international / unknown."""
    if not isinstance(value, str) or not value.strip():
        return "unknown"
    value = value.strip().lower()
    if value in ("argentina", "ar", "arg"):
        return "argentina"
    if value == "unknown":
        return "unknown"
    return "international"


class AgentRegistry:
    """Process-wide agent configuration and metrics.

    ``get``/``list`` return copies; callers change state only through
    ``update``, ``reset_metrics`` and ``record_execution``.
    """

    def __init__(
        self,
        descriptors: list[AgentDescriptor] | None = None,
        config: OrchestrationConfig | None = None,
    ) -> None:
        catalog = descriptors if descriptors is not None else default_catalog()
        self._descriptors: dict[str, AgentDescriptor] = {d.name: d for d in catalog}
        self._metrics: dict[str, AgentMetrics] = {
            d.name: AgentMetrics(name=d.name, specializations=list(d.specializations))
            for d in catalog
        }
        self._metric_locks: dict[str, threading.Lock] = {d.name: threading.Lock() for d in catalog}
        self._config = config or OrchestrationConfig.from_settings()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Descriptors
    # ------------------------------------------------------------------

    def get(self, name: str) -> AgentDescriptor:
        try:
            return self._descriptors[name].model_copy(deep=True)
        except KeyError:
            raise AgentNotFoundError(name) from None

    def list(self) -> list[AgentDescriptor]:
        return [d.model_copy(deep=True) for d in self._descriptors.values()]

    def update(
        self,
        name: str,
        patch: AgentDescriptorUpdate | dict[str, Any],
    ) -> AgentDescriptor:
        """Apply a partial update; raises AgentNotFoundError / ValidationError."""
        if isinstance(patch, dict):
            patch = AgentDescriptorUpdate.model_validate(patch)
        changes = patch.model_dump(exclude_unset=True)

        with self._lock:
            if name not in self._descriptors:
                raise AgentNotFoundError(name)
            merged = {**self._descriptors[name].model_dump(), **changes}
            updated = AgentDescriptor.model_validate(merged)
            self._descriptors[name] = updated

        if "specializations" in changes:
            with self._metric_locks[name]:
                self._metrics[name].specializations = list(updated.specializations)

        logger.info("Agent configuration updated", agent=name, fields=sorted(changes))
        return updated.model_copy(deep=True)

    def should_run(self, name: str, origin_hint: str | None) -> bool:
        """Whether ``name`` is eligible for a document with this origin hint.

        Disabled agents never run. Jurisdiction-specific agents are skipped
        when the document is attributed to the other jurisdiction; an unknown
        origin runs both.
        """
        descriptor = self._descriptors.get(name)
        if descriptor is None:
            raise AgentNotFoundError(name)
        if not descriptor.enabled:
            return False
        skip_for = _SKIP_WHEN_ORIGIN.get(name)
        return skip_for is None or normalize_origin(origin_hint) != skip_for

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def record_execution(
        self,
        name: str,
        *,
        confidence: int,
        latency_ms: int,
        succeeded: bool,
    ) -> None:
        """Fold one invocation into the agent's running statistics."""
        lock = self._metric_locks.get(name)
        if lock is None:
            raise AgentNotFoundError(name)

        with lock:
            m = self._metrics[name]
            m.executions += 1
            if succeeded:
                successes = m.executions - m.error_count
                m.average_confidence = (
                    m.average_confidence * (successes - 1) + confidence
                ) / successes
            else:
                m.error_count += 1
            m.average_latency_ms = (
                m.average_latency_ms * (m.executions - 1) + latency_ms
            ) / m.executions
            m.success_rate = (m.executions - m.error_count) / m.executions * 100
            m.last_execution = datetime.now(timezone.utc)

    def get_metrics(self, name: str) -> AgentMetrics:
        lock = self._metric_locks.get(name)
        if lock is None:
            raise AgentNotFoundError(name)
        with lock:
            return self._metrics[name].model_copy(deep=True)

    def list_metrics(self) -> list[AgentMetrics]:
        return [self.get_metrics(name) for name in self._descriptors]

    def reset_metrics(self, name: str) -> AgentMetrics:
        lock = self._metric_locks.get(name)
        if lock is None:
            raise AgentNotFoundError(name)
        with lock:
            self._metrics[name] = AgentMetrics(
                name=name,
                specializations=list(self._descriptors[name].specializations),
            )
            logger.info("Agent metrics reset", agent=name)
            return self._metrics[name].model_copy(deep=True)

    # ------------------------------------------------------------------
    # System configuration
    # ------------------------------------------------------------------

    def get_system_config(self) -> OrchestrationConfig:
        with self._lock:
            return self._config.model_copy()

    def update_system_config(
        self,
        patch: OrchestrationConfigUpdate | dict[str, Any],
    ) -> OrchestrationConfig:
        if isinstance(patch, dict):
            patch = OrchestrationConfigUpdate.model_validate(patch)
        changes = patch.model_dump(exclude_unset=True)
        with self._lock:
            self._config = OrchestrationConfig.model_validate(
                {**self._config.model_dump(), **changes}
            )
            logger.info("System configuration updated", fields=sorted(changes))
            return self._config.model_copy()
