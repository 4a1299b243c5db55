"""InvoiceReader API schemas - request/response models for /orchestration endpoints."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from invoice_reader.modules.extraction.agent_schemas import (
    AgentDescriptor,
    AgentMetrics,
    ExecutionRecord,
)

RunStatus = Literal["completed", "validation_required"]


class DocumentProcessingResponse(BaseModel):
    """Summary returned after a document went through the orchestration."""

    document_id: str
    file_name: str
    status: RunStatus
    final_confidence: int = Field(..., ge=0, le=100)
    iterations_used: int
    agents_involved: list[str]
    total_time_ms: int
    processing_time_ms: int = Field(0, description="Wall time of the HTTP request")
    final_result: dict[str, Any] = Field(default_factory=dict)
    conflicts: list[str] = Field(default_factory=list, description="Conflicts of the last iteration")
    document_quality: dict[str, Any] = Field(default_factory=dict)


class AgentDetail(BaseModel):
    descriptor: AgentDescriptor
    metrics: AgentMetrics


class HistoryResponse(BaseModel):
    items: list[ExecutionRecord]
    limit: int
