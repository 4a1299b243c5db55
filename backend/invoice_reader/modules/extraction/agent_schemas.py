"""InvoiceReader Agent Contracts - Pydantic models for inter-agent communication.

Defines the data structures that flow through the orchestration:
  Registry     -> Agents:        AgentDescriptor, OrchestrationConfig
  Agent        -> Orchestrator:  AgentInvocationResult (+ ApiCallLog per backend call)
  Orchestrator -> Caller:        IterationResult[], OrchestrationRun
  Orchestrator -> History:       ExecutionRecord

Extracted data is an open mapping (camelCase keys such as ``documentType``,
``totalAmount``, ``lineItems``); the keys are a contract between the prompt
templates in ``agents/prompts/`` and the sanitizer/merger.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from invoice_reader.core.config import Settings, settings

# Hard cap on iterations per run (Stage 1 -> Stage 2 -> Stage 3)
MAX_ITERATIONS = 3


# ---------------------------------------------------------------------------
# Field contract
# ---------------------------------------------------------------------------

# Fields whose absence forces the final verification stage
CRITICAL_FIELDS: tuple[str, ...] = (
    "totalAmount",
    "invoiceNumber",
    "providerName",
    "customerName",
)

# Monetary fields normalised to numbers by the sanitizer
AMOUNT_FIELDS = {
    "subtotal", "taxAmount", "totalAmount", "ivaAmount",
    "percepcionesAmount", "retencionesAmount", "freightAmount",
    "tariffSurcharge", "exchangeRate", "taxRate",
}

LINE_ITEM_AMOUNT_FIELDS = {"quantity", "unitPrice", "totalPrice", "taxImport"}

# Keys the model may return that describe the response rather than the invoice
RESERVED_RESPONSE_KEYS = {"confidence", "conflicts", "suggestions", "reasoning"}


class Stage(str, Enum):
    """Named states of the orchestration state machine."""

    BASE_ANALYSIS = "base_analysis"
    SPECIALIZED_REFINEMENT = "specialized_refinement"
    FINAL_VERIFICATION = "final_verification"
    DONE = "done"


AgentType = Literal["classification", "extraction", "validation", "crosscheck"]
DocumentOrigin = Literal["argentina", "international", "unknown"]


# ---------------------------------------------------------------------------
# Registry: agent descriptors, metrics, system configuration
# ---------------------------------------------------------------------------


class AgentDescriptor(BaseModel):
    """Runtime-mutable configuration of one agent."""

    name: str = Field(..., description="Stable identifier, e.g. 'classification_agent'")
    label: str = Field(..., description="Human-readable name")
    description: str = ""
    agent_type: AgentType
    specializations: list[str] = Field(
        ..., min_length=1, description="Specialization tags; count drives confidence weighting"
    )
    enabled: bool = True
    confidence_weight: float = Field(1.0, gt=0.0)
    timeout_seconds: float = Field(..., gt=0.0)
    max_retries: int = Field(2, ge=0, le=10)
    prompt_template: str = Field("", description="Role + task instructions sent to the model")


class AgentDescriptorUpdate(BaseModel):
    """Partial descriptor update; ``name`` is immutable."""

    model_config = ConfigDict(extra="forbid")

    label: str | None = None
    description: str | None = None
    specializations: list[str] | None = Field(None, min_length=1)
    enabled: bool | None = None
    confidence_weight: float | None = Field(None, gt=0.0)
    timeout_seconds: float | None = Field(None, gt=0.0)
    max_retries: int | None = Field(None, ge=0, le=10)
    prompt_template: str | None = None


class AgentMetrics(BaseModel):
    """Running per-agent statistics, updated after every invocation."""

    name: str
    executions: int = 0
    error_count: int = 0
    success_rate: float = 100.0
    average_confidence: float = 0.0  # successful calls only
    average_latency_ms: float = 0.0  # all calls
    last_execution: datetime | None = None
    specializations: list[str] = Field(default_factory=list)


class OrchestrationConfig(BaseModel):
    """System-wide thresholds read by the orchestrator at the start of a run."""

    stage2_confidence_threshold: int = Field(85, ge=0, le=100)
    stage3_confidence_threshold: int = Field(95, ge=0, le=100)
    merge_acceptance_threshold: int = Field(75, ge=0, le=100)
    manual_validation_threshold: int = Field(95, ge=0, le=100)
    fallback_confidence: int = Field(30, ge=0, le=100)
    origin_trust_threshold: int = Field(60, ge=0, le=100)
    retry_backoff_seconds: float = Field(1.0, ge=0.0)
    retry_backoff_multiplier: float = Field(1.5, ge=1.0)

    @classmethod
    def from_settings(cls, s: Settings | None = None) -> OrchestrationConfig:
        s = s or settings
        return cls(
            stage2_confidence_threshold=s.stage2_confidence_threshold,
            stage3_confidence_threshold=s.stage3_confidence_threshold,
            merge_acceptance_threshold=s.merge_acceptance_threshold,
            manual_validation_threshold=s.manual_validation_threshold,
            fallback_confidence=s.fallback_confidence,
            origin_trust_threshold=s.origin_trust_threshold,
            retry_backoff_seconds=s.retry_backoff_seconds,
            retry_backoff_multiplier=s.retry_backoff_multiplier,
        )


class OrchestrationConfigUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    stage2_confidence_threshold: int | None = Field(None, ge=0, le=100)
    stage3_confidence_threshold: int | None = Field(None, ge=0, le=100)
    merge_acceptance_threshold: int | None = Field(None, ge=0, le=100)
    manual_validation_threshold: int | None = Field(None, ge=0, le=100)
    fallback_confidence: int | None = Field(None, ge=0, le=100)
    origin_trust_threshold: int | None = Field(None, ge=0, le=100)
    retry_backoff_seconds: float | None = Field(None, ge=0.0)
    retry_backoff_multiplier: float | None = Field(None, ge=1.0)


# ---------------------------------------------------------------------------
# Agent output
# ---------------------------------------------------------------------------


class ApiCallLog(BaseModel):
    """One exchange with the completion backend (one attempt)."""

    model_config = ConfigDict(frozen=True)

    agent_name: str
    attempt: int = Field(..., ge=1)
    timestamp: datetime
    model: str
    prompt: str
    response: str | None = None
    error: str | None = None
    duration_ms: int = 0


class AgentInvocationResult(BaseModel):
    """Output of one agent call within a run. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    agent_name: str
    extracted_data: dict[str, Any] = Field(default_factory=dict)
    confidence: int = Field(..., ge=0, le=100)
    specializations: list[str] = Field(default_factory=list)
    conflicts: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    reasoning: str | None = None
    succeeded: bool = True
    raw_response: str | None = None
    processing_time_ms: int = 0
    prompt: str = ""
    api_calls: list[ApiCallLog] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Orchestrator output
# ---------------------------------------------------------------------------


class IterationResult(BaseModel):
    """One pass of the pipeline; the ordered list of these is the audit trail."""

    iteration_number: int = Field(..., ge=1, le=MAX_ITERATIONS)
    stage: Stage
    agent_results: list[AgentInvocationResult] = Field(default_factory=list)
    consolidated_data: dict[str, Any] = Field(default_factory=dict)
    overall_confidence: int = Field(..., ge=0, le=100)
    conflicts: list[str] = Field(default_factory=list)
    requires_next_iteration: bool = False
    reason_for_next_iteration: str | None = None
    started_at: datetime
    ended_at: datetime
    duration_ms: int = 0


class RunMetrics(BaseModel):
    total_time_ms: int
    iterations_used: int = Field(..., ge=1, le=MAX_ITERATIONS)
    agents_involved: list[str] = Field(default_factory=list)
    final_confidence: int = Field(..., ge=0, le=100)


class OrchestrationRun(BaseModel):
    """Top-level output of one document run, handed to storage by the caller."""

    document_id: str
    file_name: str = ""
    mime_type: str = ""
    iterations: list[IterationResult] = Field(..., min_length=1, max_length=MAX_ITERATIONS)
    final_result: dict[str, Any] = Field(default_factory=dict)
    metrics: RunMetrics
    api_calls: list[ApiCallLog] = Field(default_factory=list)
    document_quality: dict[str, Any] = Field(default_factory=dict)

    @property
    def final_confidence(self) -> int:
        return self.metrics.final_confidence

    def needs_manual_validation(self, threshold: int) -> bool:
        return self.metrics.final_confidence < threshold


# ---------------------------------------------------------------------------
# Metrics recorder
# ---------------------------------------------------------------------------


class ExecutionRecord(BaseModel):
    """Fixed-shape summary of one finished run."""

    timestamp: datetime
    document_id: str
    agents_used: list[str]
    final_confidence: int
    iterations_used: int
    total_time_ms: int


class SystemStats(BaseModel):
    total_executions: int = 0
    average_confidence: float = 0.0
    average_processing_time_ms: float = 0.0
    most_used_agent: str | None = None
