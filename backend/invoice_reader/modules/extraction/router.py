"""InvoiceReader Orchestration API - /orchestration/ endpoints.

Processing:
  - POST /documents                      - upload + run the 3-stage orchestration

Results:
  - GET  /runs/{document_id}             - stored OrchestrationRun (full audit trail)

Operations:
  - GET/PATCH /agents[/{name}]           - agent descriptors + metrics
  - POST /agents/{name}/reset-metrics
  - GET/PATCH /config                    - system thresholds
  - GET /stats, GET /history             - run history aggregates
"""

from __future__ import annotations

import asyncio
import mimetypes
import time
import uuid

import structlog
from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile

from invoice_reader.core.config import settings
from invoice_reader.core.services import (
    get_orchestrator,
    get_recorder,
    get_registry,
    get_result_store,
)
from invoice_reader.modules.extraction.agent_schemas import (
    AgentDescriptor,
    AgentDescriptorUpdate,
    AgentMetrics,
    OrchestrationConfig,
    OrchestrationConfigUpdate,
    OrchestrationRun,
    SystemStats,
)
from invoice_reader.modules.extraction.agents.orchestrator import OrchestratorAgent
from invoice_reader.modules.extraction.exceptions import (
    AgentNotFoundError,
    BackendNotConfiguredError,
    RunNotFoundError,
)
from invoice_reader.modules.extraction.history_service import MetricsRecorder
from invoice_reader.modules.extraction.pdf_service import IMAGE_MIME_TYPES, PDF_MIME_TYPES
from invoice_reader.modules.extraction.registry import AgentRegistry
from invoice_reader.modules.extraction.schemas import (
    AgentDetail,
    DocumentProcessingResponse,
    HistoryResponse,
    RunStatus,
)
from invoice_reader.modules.extraction.storage import ResultStore

logger = structlog.get_logger()

router = APIRouter(prefix="/orchestration", tags=["orchestration"])

SUPPORTED_MIME_TYPES = PDF_MIME_TYPES | IMAGE_MIME_TYPES


def run_status(run: OrchestrationRun, threshold: int) -> RunStatus:
    """Document status after a run: low final confidence goes to manual review."""
    return "validation_required" if run.needs_manual_validation(threshold) else "completed"


def _resolve_mime_type(file: UploadFile) -> str:
    mime_type = (file.content_type or "").lower()
    if mime_type in ("", "application/octet-stream") and file.filename:
        mime_type = (mimetypes.guess_type(file.filename)[0] or "").lower()
    return mime_type


# ---------------------------------------------------------------------------
# Processing
# ---------------------------------------------------------------------------


@router.post("/documents", response_model=DocumentProcessingResponse)
async def process_document(
    file: UploadFile = File(..., description="Invoice document (PDF, JPEG, PNG, GIF or WEBP)"),
    document_id: str | None = Form(None, description="Caller-assigned id; generated if omitted"),
    orchestrator: OrchestratorAgent = Depends(get_orchestrator),
    registry: AgentRegistry = Depends(get_registry),
    store: ResultStore = Depends(get_result_store),
) -> DocumentProcessingResponse:
    """Upload an invoice and run the multi-agent orchestration on it.

    Pipeline: Pre-process → Stage 1 (base analysis) → Stage 2 (specialists)
    → Stage 3 (cross validation), stopping early once confident.
    """
    start = time.monotonic()

    # --- Validate file ---
    mime_type = _resolve_mime_type(file)
    if mime_type not in SUPPORTED_MIME_TYPES:
        raise HTTPException(
            status_code=415,
            detail=f"Unsupported media type: {mime_type or 'unknown'}. "
                   "Accepted: PDF, JPEG, PNG, GIF, WEBP.",
        )

    file_bytes = await file.read()
    size_mb = len(file_bytes) / (1024 * 1024)
    if size_mb > settings.max_file_size_mb:
        raise HTTPException(
            status_code=413,
            detail=f"File too large: {size_mb:.1f} MB (max {settings.max_file_size_mb} MB).",
        )

    document_id = document_id or uuid.uuid4().hex
    file_name = file.filename or document_id
    logger.info(
        "Orchestration request",
        document_id=document_id,
        filename=file_name,
        mime_type=mime_type,
        size_mb=round(size_mb, 2),
    )

    # --- Run ---
    try:
        run = await asyncio.wait_for(
            orchestrator.run(document_id, file_bytes, mime_type, file_name),
            timeout=settings.run_timeout_seconds,
        )
    except BackendNotConfiguredError as exc:
        logger.error("Completion backend not configured", error=exc.message)
        raise HTTPException(status_code=503, detail=exc.to_dict()) from exc
    except asyncio.TimeoutError as exc:
        logger.error(
            "Orchestration timed out",
            document_id=document_id,
            timeout_s=settings.run_timeout_seconds,
        )
        raise HTTPException(
            status_code=504,
            detail=f"Processing exceeded {settings.run_timeout_seconds:g}s; the run was abandoned.",
        ) from exc

    store.save(run)

    threshold = registry.get_system_config().manual_validation_threshold
    return DocumentProcessingResponse(
        document_id=run.document_id,
        file_name=run.file_name,
        status=run_status(run, threshold),
        final_confidence=run.final_confidence,
        iterations_used=run.metrics.iterations_used,
        agents_involved=run.metrics.agents_involved,
        total_time_ms=run.metrics.total_time_ms,
        processing_time_ms=int((time.monotonic() - start) * 1000),
        final_result=run.final_result,
        conflicts=run.iterations[-1].conflicts,
        document_quality=run.document_quality,
    )


@router.get("/runs/{document_id}", response_model=OrchestrationRun)
async def get_run(
    document_id: str,
    store: ResultStore = Depends(get_result_store),
) -> OrchestrationRun:
    """Return the stored run with its full iteration trail."""
    try:
        return store.get(document_id)
    except RunNotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.message) from exc


# ---------------------------------------------------------------------------
# Agent registry
# ---------------------------------------------------------------------------


@router.get("/agents", response_model=list[AgentDetail])
async def list_agents(
    registry: AgentRegistry = Depends(get_registry),
) -> list[AgentDetail]:
    return [
        AgentDetail(descriptor=d, metrics=registry.get_metrics(d.name))
        for d in registry.list()
    ]


@router.get("/agents/{name}", response_model=AgentDetail)
async def get_agent(
    name: str,
    registry: AgentRegistry = Depends(get_registry),
) -> AgentDetail:
    try:
        return AgentDetail(descriptor=registry.get(name), metrics=registry.get_metrics(name))
    except AgentNotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.message) from exc


@router.patch("/agents/{name}", response_model=AgentDescriptor)
async def update_agent(
    name: str,
    patch: AgentDescriptorUpdate,
    registry: AgentRegistry = Depends(get_registry),
) -> AgentDescriptor:
    """Enable/disable an agent or tune its timeout, retries, weight or prompt."""
    try:
        return registry.update(name, patch)
    except AgentNotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.message) from exc


@router.post("/agents/{name}/reset-metrics", response_model=AgentMetrics)
async def reset_agent_metrics(
    name: str,
    registry: AgentRegistry = Depends(get_registry),
) -> AgentMetrics:
    try:
        return registry.reset_metrics(name)
    except AgentNotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.message) from exc


# ---------------------------------------------------------------------------
# System configuration
# ---------------------------------------------------------------------------


@router.get("/config", response_model=OrchestrationConfig)
async def get_config(
    registry: AgentRegistry = Depends(get_registry),
) -> OrchestrationConfig:
    return registry.get_system_config()


@router.patch("/config", response_model=OrchestrationConfig)
async def update_config(
    patch: OrchestrationConfigUpdate,
    registry: AgentRegistry = Depends(get_registry),
) -> OrchestrationConfig:
    return registry.update_system_config(patch)


# ---------------------------------------------------------------------------
# History (read-only)
# ---------------------------------------------------------------------------


@router.get("/stats", response_model=SystemStats)
async def get_stats(
    recorder: MetricsRecorder = Depends(get_recorder),
) -> SystemStats:
    return recorder.system_stats()


@router.get("/history", response_model=HistoryResponse)
async def get_history(
    limit: int = Query(20, ge=1, le=100, description="Most recent runs, newest first"),
    recorder: MetricsRecorder = Depends(get_recorder),
) -> HistoryResponse:
    return HistoryResponse(items=recorder.recent_history(limit), limit=limit)
