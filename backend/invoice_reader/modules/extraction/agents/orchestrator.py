"""InvoiceReader Orchestrator: three-stage iteration pipeline.

Pure Python controller - no LLM calls of its own. Routes one document
through an explicit state machine:

    BASE_ANALYSIS -> [decide] -> SPECIALIZED_REFINEMENT -> [decide]
                  -> FINAL_VERIFICATION -> DONE

  Stage 1: classification + structural extraction + metadata, in parallel.
           Continue if confidence < 85 or any conflict was surfaced.
  Stage 2: argentina fiscal / international trade / conflict resolution,
           selected by origin and conflicts, in parallel, each seeing the
           Stage-1 record. Confidence is scored on Stage-2 results only.
           Continue if confidence < 95 and a critical field is missing.
  Stage 3: cross validation; its optimized data overlays the record.

Agents within a stage run concurrently and only the coordinating task
touches the consolidated record, after the stage barrier.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Any

import structlog

from invoice_reader.modules.extraction.agent_schemas import (
    MAX_ITERATIONS,
    AgentInvocationResult,
    DocumentOrigin,
    IterationResult,
    OrchestrationConfig,
    OrchestrationRun,
    RunMetrics,
    Stage,
)
from invoice_reader.modules.extraction.agents.auditor import CrossValidationAgent
from invoice_reader.modules.extraction.agents.base import AgentContext, BaseAgent
from invoice_reader.modules.extraction.agents.classifier import ClassificationAgent
from invoice_reader.modules.extraction.agents.extractors import MetadataAgent, StructuralExtractionAgent
from invoice_reader.modules.extraction.agents.merger import (
    MergerAgent,
    apply_verified_data,
    identify_conflicts,
    missing_critical_fields,
    overall_confidence,
)
from invoice_reader.modules.extraction.agents.specialists import (
    ArgentinaFiscalAgent,
    ConflictResolutionAgent,
    InternationalTradeAgent,
)
from invoice_reader.modules.extraction.completion import CompletionBackend
from invoice_reader.modules.extraction.history_service import MetricsRecorder
from invoice_reader.modules.extraction.pdf_service import preprocess_document, processing_strategy
from invoice_reader.modules.extraction.registry import (
    ARGENTINA_FISCAL_AGENT,
    CLASSIFICATION_AGENT,
    CONFLICT_RESOLUTION_AGENT,
    CROSS_VALIDATION_AGENT,
    INTERNATIONAL_TRADE_AGENT,
    METADATA_AGENT,
    STRUCTURAL_AGENT,
    AgentRegistry,
    normalize_origin,
)

logger = structlog.get_logger()

AGENT_CLASSES: dict[str, type[BaseAgent]] = {
    CLASSIFICATION_AGENT: ClassificationAgent,
    STRUCTURAL_AGENT: StructuralExtractionAgent,
    METADATA_AGENT: MetadataAgent,
    ARGENTINA_FISCAL_AGENT: ArgentinaFiscalAgent,
    INTERNATIONAL_TRADE_AGENT: InternationalTradeAgent,
    CONFLICT_RESOLUTION_AGENT: ConflictResolutionAgent,
    CROSS_VALIDATION_AGENT: CrossValidationAgent,
}

BASE_ANALYSIS_AGENTS = (CLASSIFICATION_AGENT, STRUCTURAL_AGENT, METADATA_AGENT)


# ---------------------------------------------------------------------------
# Pure decision functions
# ---------------------------------------------------------------------------


def decide_after_base_analysis(
    confidence: int,
    conflicts: list[str],
    threshold: int,
) -> tuple[bool, str | None]:
    """Stage 1 -> Stage 2 if confidence is below threshold or anything conflicts."""
    reasons: list[str] = []
    if confidence < threshold:
        reasons.append(f"overall confidence {confidence} below {threshold}")
    if conflicts:
        reasons.append(f"{len(conflicts)} conflict(s) detected")
    return bool(reasons), "; ".join(reasons) or None


def decide_after_refinement(
    confidence: int,
    consolidated: dict[str, Any],
    threshold: int,
) -> tuple[bool, str | None]:
    """Stage 2 -> Stage 3 only if confidence is below threshold AND a critical field is missing."""
    missing = missing_critical_fields(consolidated)
    if confidence < threshold and missing:
        return True, (
            f"overall confidence {confidence} below {threshold}; "
            f"missing critical fields: {', '.join(missing)}"
        )
    return False, None


def next_stage(
    current: Stage,
    iteration: IterationResult,
    *,
    verification_available: bool = True,
) -> Stage:
    if iteration.iteration_number >= MAX_ITERATIONS or not iteration.requires_next_iteration:
        return Stage.DONE
    if current is Stage.BASE_ANALYSIS:
        return Stage.SPECIALIZED_REFINEMENT
    if current is Stage.SPECIALIZED_REFINEMENT and verification_available:
        return Stage.FINAL_VERIFICATION
    return Stage.DONE


def resolve_origin_hint(
    results: list[AgentInvocationResult],
    consolidated: dict[str, Any],
    trust_threshold: int,
) -> DocumentOrigin:
    """Origin used to pick Stage-2 specialists.

    The consolidated ``documentOrigin`` is trusted only when an agent that
    reported that same origin did so with confidence >= ``trust_threshold``;
    otherwise the origin is ``unknown`` and both jurisdiction agents run.
    """
    origin = normalize_origin(consolidated.get("documentOrigin"))
    if origin == "unknown":
        return origin

    support = [
        r.confidence
        for r in results
        if r.succeeded and normalize_origin(r.extracted_data.get("documentOrigin")) == origin
    ]
    if support and max(support) >= trust_threshold:
        return origin
    return "unknown"


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class OrchestratorAgent:
    """Pipeline controller.

    Holds references to long-lived collaborators (registry, backend, history
    recorder) but no state belonging to a single run.
    """

    agent_name = "Orchestrator"

    def __init__(
        self,
        registry: AgentRegistry,
        backend: CompletionBackend,
        recorder: MetricsRecorder | None = None,
    ) -> None:
        self.registry = registry
        self.backend = backend
        self.recorder = recorder

        # Agents (lazy-initialized)
        self._agents: dict[str, BaseAgent] = {}

    def _get_agent(self, name: str) -> BaseAgent:
        if name not in self._agents:
            self._agents[name] = AGENT_CLASSES[name](registry=self.registry, backend=self.backend)
        return self._agents[name]

    async def _invoke_all(
        self,
        names: list[str],
        context: AgentContext,
    ) -> list[AgentInvocationResult]:
        """Fan out to every named agent and wait for all of them."""
        if not names:
            return []
        results = await asyncio.gather(*(self._get_agent(n).invoke(context) for n in names))
        return list(results)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        document_id: str,
        file_bytes: bytes,
        mime_type: str,
        file_name: str = "",
    ) -> OrchestrationRun:
        """Process one document end to end.

        Raises BackendNotConfiguredError before any stage runs when the
        completion backend cannot be used; nothing else escapes.
        """
        self.backend.ensure_ready()
        config = self.registry.get_system_config()

        with structlog.contextvars.bound_contextvars(document_id=document_id):
            started = time.perf_counter()
            logger.info("Orchestration started", file=file_name, mime_type=mime_type)

            document = await asyncio.to_thread(preprocess_document, file_bytes, mime_type)
            context = AgentContext(document=document, file_name=file_name, mime_type=mime_type)

            iterations: list[IterationResult] = []
            stage = Stage.BASE_ANALYSIS
            while stage is not Stage.DONE:
                if stage is Stage.BASE_ANALYSIS:
                    iteration = await self._run_base_analysis(context, config)
                elif stage is Stage.SPECIALIZED_REFINEMENT:
                    iteration = await self._run_specialized_refinement(context, iterations[-1], config)
                else:
                    iteration = await self._run_final_verification(context, iterations[-1])

                iterations.append(iteration)
                logger.info(
                    "Iteration complete",
                    iteration=iteration.iteration_number,
                    stage=stage.value,
                    confidence=iteration.overall_confidence,
                    agents=[r.agent_name for r in iteration.agent_results],
                    next_iteration=iteration.requires_next_iteration,
                    reason=iteration.reason_for_next_iteration,
                )
                stage = next_stage(
                    stage,
                    iteration,
                    verification_available=self.registry.should_run(CROSS_VALIDATION_AGENT, None),
                )

            final = iterations[-1]
            agents_involved = list(dict.fromkeys(
                r.agent_name for it in iterations for r in it.agent_results
            ))
            total_ms = int((time.perf_counter() - started) * 1000)

            run = OrchestrationRun(
                document_id=document_id,
                file_name=file_name,
                mime_type=mime_type,
                iterations=iterations,
                final_result=final.consolidated_data,
                metrics=RunMetrics(
                    total_time_ms=total_ms,
                    iterations_used=len(iterations),
                    agents_involved=agents_involved,
                    final_confidence=final.overall_confidence,
                ),
                api_calls=[
                    call
                    for it in iterations
                    for r in it.agent_results
                    for call in r.api_calls
                ],
                document_quality={
                    **document.quality.model_dump(),
                    "source_format": document.source_format,
                    "page_count": document.page_count,
                    "strategy": processing_strategy(document.quality).priority,
                },
            )

            if self.recorder is not None:
                self.recorder.record_run(run)

            logger.info(
                "Orchestration complete",
                iterations=len(iterations),
                final_confidence=final.overall_confidence,
                agents=len(agents_involved),
                duration_ms=total_ms,
            )
            return run

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _run_base_analysis(
        self,
        context: AgentContext,
        config: OrchestrationConfig,
    ) -> IterationResult:
        started_at, started = datetime.now(timezone.utc), time.perf_counter()

        names = [n for n in BASE_ANALYSIS_AGENTS if self.registry.get(n).enabled]
        results = await self._invoke_all(names, context)

        merger = MergerAgent(config.merge_acceptance_threshold)
        consolidated = merger.merge(results)
        confidence = overall_confidence(results)
        conflicts = identify_conflicts(results)
        requires_next, reason = decide_after_base_analysis(
            confidence, conflicts, config.stage2_confidence_threshold
        )

        return IterationResult(
            iteration_number=1,
            stage=Stage.BASE_ANALYSIS,
            agent_results=results,
            consolidated_data=consolidated,
            overall_confidence=confidence,
            conflicts=conflicts,
            requires_next_iteration=requires_next,
            reason_for_next_iteration=reason,
            started_at=started_at,
            ended_at=datetime.now(timezone.utc),
            duration_ms=int((time.perf_counter() - started) * 1000),
        )

    async def _run_specialized_refinement(
        self,
        context: AgentContext,
        previous: IterationResult,
        config: OrchestrationConfig,
    ) -> IterationResult:
        started_at, started = datetime.now(timezone.utc), time.perf_counter()

        origin = resolve_origin_hint(
            previous.agent_results, previous.consolidated_data, config.origin_trust_threshold
        )
        names = [
            n for n in (ARGENTINA_FISCAL_AGENT, INTERNATIONAL_TRADE_AGENT)
            if self.registry.should_run(n, origin)
        ]
        if previous.conflicts and self.registry.should_run(CONFLICT_RESOLUTION_AGENT, origin):
            names.append(CONFLICT_RESOLUTION_AGENT)
        logger.info("Specialists selected", origin=origin, agents=names)

        stage_context = context.model_copy(update={
            "prior_data": previous.consolidated_data,
            "conflicts": previous.conflicts,
        })
        results = await self._invoke_all(names, stage_context)

        merger = MergerAgent(config.merge_acceptance_threshold)
        consolidated = merger.merge(results, base=previous.consolidated_data)
        # No eligible specialist: the Stage-1 score stands
        confidence = overall_confidence(results) if results else previous.overall_confidence
        requires_next, reason = decide_after_refinement(
            confidence, consolidated, config.stage3_confidence_threshold
        )

        return IterationResult(
            iteration_number=previous.iteration_number + 1,
            stage=Stage.SPECIALIZED_REFINEMENT,
            agent_results=results,
            consolidated_data=consolidated,
            overall_confidence=confidence,
            conflicts=identify_conflicts(results),
            requires_next_iteration=requires_next,
            reason_for_next_iteration=reason,
            started_at=started_at,
            ended_at=datetime.now(timezone.utc),
            duration_ms=int((time.perf_counter() - started) * 1000),
        )

    async def _run_final_verification(
        self,
        context: AgentContext,
        previous: IterationResult,
    ) -> IterationResult:
        started_at, started = datetime.now(timezone.utc), time.perf_counter()

        stage_context = context.model_copy(update={
            "prior_data": previous.consolidated_data,
            "conflicts": previous.conflicts,
        })
        result = await self._get_agent(CROSS_VALIDATION_AGENT).invoke(stage_context)
        consolidated = apply_verified_data(
            previous.consolidated_data, result.extracted_data.get("finalOptimizedData")
        )

        return IterationResult(
            iteration_number=previous.iteration_number + 1,
            stage=Stage.FINAL_VERIFICATION,
            agent_results=[result],
            consolidated_data=consolidated,
            overall_confidence=result.confidence,
            conflicts=list(result.conflicts),
            requires_next_iteration=False,
            started_at=started_at,
            ended_at=datetime.now(timezone.utc),
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
