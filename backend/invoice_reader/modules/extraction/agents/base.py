"""InvoiceReader BaseAgent - Shared invocation logic for every agent.

One ``invoke(context)`` call:
  1. Reads the agent's descriptor + system config from the registry.
  2. Builds the prompt (role + task template + document content + context).
  3. Calls the completion backend under the descriptor's timeout, retrying
     with exponential backoff up to ``max_retries`` times.
  4. Parses and sanitizes the JSON response.
  5. Resolves confidence (model-reported, else heuristic).
  6. Records metrics in the registry.

Failures never escape: a failed or unparseable call becomes a fallback
result with the configured low confidence and a conflict marker.
"""

from __future__ import annotations

import asyncio
import math
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

import structlog
from pydantic import BaseModel, Field

from invoice_reader.core.config import settings
from invoice_reader.modules.extraction.agent_schemas import (
    AgentDescriptor,
    AgentInvocationResult,
    ApiCallLog,
    OrchestrationConfig,
)
from invoice_reader.modules.extraction.agents.merger import clamp_confidence, is_empty_value
from invoice_reader.modules.extraction.agents.sanitizer import (
    parse_agent_json,
    sanitize_agent_output,
    split_reserved_keys,
)
from invoice_reader.modules.extraction.completion import (
    CompletionBackend,
    ImagePart,
    PromptPart,
    TextPart,
    render_prompt_text,
)
from invoice_reader.modules.extraction.exceptions import ResponseParseError
from invoice_reader.modules.extraction.pdf_service import (
    PreprocessedDocument,
    processing_strategy,
)
from invoice_reader.modules.extraction.registry import AgentRegistry

logger = structlog.get_logger()

# Directory where prompt templates live
_PROMPTS_DIR = Path(__file__).parent / "prompts"

JSON_ONLY_DIRECTIVE = (
    "Respond with a single JSON object only: no markdown, no commentary. "
    "Use null for any field you cannot read. Include an integer \"confidence\" "
    "between 0 and 100 for your overall answer."
)

InputMode = Literal["visual", "text", "filename"]


class AgentContext(BaseModel):
    """Everything an agent may look at for one document."""

    document: PreprocessedDocument
    file_name: str = ""
    mime_type: str = ""
    prior_data: dict[str, Any] = Field(default_factory=dict)
    conflicts: list[str] = Field(default_factory=list)


def heuristic_confidence(
    data: dict[str, Any],
    critical_fields: tuple[str, ...],
    bonus_fields: tuple[str, ...],
) -> int:
    """Confidence from field coverage when the model reports none.

    ``critical fraction * 80 + 5 per bonus field present``, capped at 98.
    """
    if critical_fields:
        present = sum(1 for f in critical_fields if not is_empty_value(data.get(f)))
        fraction = present / len(critical_fields)
    else:
        fraction = 1.0 if any(not is_empty_value(v) for v in data.values()) else 0.0
    bonus = sum(5 for f in bonus_fields if not is_empty_value(data.get(f)))
    return clamp_confidence(min(fraction * 80 + bonus, 98))


class BaseAgent:
    """Base class for all InvoiceReader agents.

    Subclasses set the class attributes below; LLM agents point
    ``prompt_file`` at a template in ``prompts/``, local agents set
    ``uses_llm = False`` and implement ``analyze_locally``.
    """

    agent_name: str = "base"
    prompt_file: str = ""
    uses_llm: bool = True
    use_image: bool = True
    max_text_chars: int = 3000
    max_tokens: int = 2000
    temperature: float | None = None  # None -> settings.llm_temperature
    critical_fields: tuple[str, ...] = ()
    bonus_fields: tuple[str, ...] = ()

    def __init__(self, registry: AgentRegistry, backend: CompletionBackend | None = None) -> None:
        self.registry = registry
        self.backend = backend
        self._task_prompt = self.load_prompt(self.prompt_file) if self.prompt_file else ""

    # ------------------------------------------------------------------
    # Prompt loading
    # ------------------------------------------------------------------

    @staticmethod
    def load_prompt(filename: str) -> str:
        """Load a prompt template from the prompts/ directory."""
        path = _PROMPTS_DIR / filename
        if not path.exists():
            raise FileNotFoundError(f"Prompt file not found: {path}")
        return path.read_text(encoding="utf-8").strip()

    # ------------------------------------------------------------------
    # Prompt building
    # ------------------------------------------------------------------

    def input_mode(self, context: AgentContext) -> InputMode:
        doc = context.document
        if self.use_image and doc.has_images:
            return "visual"
        if doc.text.strip():
            return "text"
        return "filename"

    def context_sections(self, context: AgentContext) -> list[str]:
        """Extra prompt blocks (prior data, conflicts); empty by default."""
        return []

    def build_prompt(self, context: AgentContext, descriptor: AgentDescriptor) -> list[PromptPart]:
        doc = context.document
        mode = self.input_mode(context)
        strategy = processing_strategy(doc.quality)
        text = doc.text[: self.max_text_chars]

        sections = [descriptor.prompt_template.strip(), self._task_prompt]
        sections.append(
            f"File name: {context.file_name or 'unknown'} | Pages: {doc.page_count} | "
            f"Quality: {doc.quality.quality} | "
            f"{'Scanned document' if doc.quality.is_scanned else 'Native PDF'}"
        )

        if mode == "visual":
            if strategy.use_text and text:
                sections.append(
                    "INPUT MODE: page image + extracted text. Read values from the image; "
                    "use the text to confirm digits and spelling."
                )
                sections.append(f"--- Extracted text ---\n{text}")
            else:
                sections.append("INPUT MODE: page image only (scanned document).")
        elif mode == "text":
            sections.append("INPUT MODE: text-only fallback, no page image is available.")
            sections.append(f"--- Extracted text ---\n{text}")
        else:
            sections.append(
                "INPUT MODE: emergency. Neither image nor text could be extracted; "
                "infer only what the file name supports and report a low confidence."
            )

        sections.extend(self.context_sections(context))
        sections.append(JSON_ONLY_DIRECTIVE)

        parts: list[PromptPart] = []
        if mode == "visual" and doc.first_image is not None:
            image = doc.first_image
            parts.append(ImagePart(data=image.data, media_type=image.media_type))
        parts.append(TextPart(text="\n\n".join(s for s in sections if s)))
        return parts

    # ------------------------------------------------------------------
    # Response handling hooks
    # ------------------------------------------------------------------

    def postprocess(self, data: dict[str, Any], context: AgentContext) -> dict[str, Any]:
        return data

    def analyze_locally(self, context: AgentContext) -> tuple[dict[str, Any], int]:
        raise NotImplementedError(f"{self.agent_name} has no local analysis")

    def resolve_confidence(self, reported: Any, data: dict[str, Any]) -> int:
        """Model-reported confidence (clamped) or the coverage heuristic."""
        value: float | None = None
        if isinstance(reported, (int, float)) and not isinstance(reported, bool):
            try:
                value = float(reported)
            except OverflowError:
                value = None
        elif isinstance(reported, str):
            try:
                value = float(reported.strip().rstrip("%"))
            except ValueError:
                value = None
        if value is not None and math.isfinite(value):
            return clamp_confidence(value)
        return heuristic_confidence(data, self.critical_fields, self.bonus_fields)

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    @property
    def resolved_temperature(self) -> float:
        return settings.llm_temperature if self.temperature is None else self.temperature

    async def invoke(self, context: AgentContext) -> AgentInvocationResult:
        descriptor = self.registry.get(self.agent_name)
        config = self.registry.get_system_config()
        started = time.perf_counter()

        if not self.uses_llm:
            return self._invoke_locally(context, descriptor, config, started)

        parts = self.build_prompt(context, descriptor)
        prompt_text = render_prompt_text(parts)
        model = getattr(self.backend, "model", "")
        attempts = descriptor.max_retries + 1
        api_calls: list[ApiCallLog] = []
        raw_text: str | None = None
        last_error = ""

        for attempt in range(1, attempts + 1):
            call_started = time.perf_counter()
            timestamp = datetime.now(timezone.utc)
            try:
                raw_text = await asyncio.wait_for(
                    self.backend.complete(
                        parts,
                        max_tokens=self.max_tokens,
                        temperature=self.resolved_temperature,
                    ),
                    timeout=descriptor.timeout_seconds,
                )
            except Exception as e:
                if isinstance(e, asyncio.TimeoutError):
                    last_error = f"timed out after {descriptor.timeout_seconds:g}s"
                else:
                    last_error = str(e) or type(e).__name__
                api_calls.append(ApiCallLog(
                    agent_name=self.agent_name,
                    attempt=attempt,
                    timestamp=timestamp,
                    model=model,
                    prompt=prompt_text,
                    error=last_error,
                    duration_ms=_elapsed_ms(call_started),
                ))
                logger.warning(
                    "Agent call failed",
                    agent=self.agent_name,
                    attempt=attempt,
                    max_attempts=attempts,
                    error=last_error,
                )
                if attempt < attempts:
                    delay = config.retry_backoff_seconds * config.retry_backoff_multiplier ** (attempt - 1)
                    if delay > 0:
                        await asyncio.sleep(delay)
                continue

            api_calls.append(ApiCallLog(
                agent_name=self.agent_name,
                attempt=attempt,
                timestamp=timestamp,
                model=model,
                prompt=prompt_text,
                response=raw_text,
                duration_ms=_elapsed_ms(call_started),
            ))
            break

        if raw_text is None:
            return self._fallback(
                descriptor, config, started,
                marker=f"{self.agent_name}: backend call failed after {attempts} attempt(s): {last_error}",
                prompt=prompt_text,
                api_calls=api_calls,
            )

        try:
            parsed = parse_agent_json(raw_text)
        except ResponseParseError as e:
            logger.warning("Agent response unparseable", agent=self.agent_name, error=e.message)
            return self._fallback(
                descriptor, config, started,
                marker=f"{self.agent_name}: response parse error: {e.message}",
                prompt=prompt_text,
                api_calls=api_calls,
                raw_response=raw_text,
            )

        data, meta = split_reserved_keys(sanitize_agent_output(parsed))
        data = self.postprocess(data, context)
        confidence = self.resolve_confidence(meta["confidence"], data)
        elapsed = _elapsed_ms(started)

        self.registry.record_execution(
            self.agent_name, confidence=confidence, latency_ms=elapsed, succeeded=True
        )
        logger.info(
            "Agent call complete",
            agent=self.agent_name,
            confidence=confidence,
            fields=len(data),
            attempts=len(api_calls),
            duration_ms=elapsed,
        )

        return AgentInvocationResult(
            agent_name=self.agent_name,
            extracted_data=data,
            confidence=confidence,
            specializations=list(descriptor.specializations),
            conflicts=meta["conflicts"],
            suggestions=meta["suggestions"],
            reasoning=meta["reasoning"],
            raw_response=raw_text,
            processing_time_ms=elapsed,
            prompt=prompt_text,
            api_calls=api_calls,
        )

    def _invoke_locally(
        self,
        context: AgentContext,
        descriptor: AgentDescriptor,
        config: OrchestrationConfig,
        started: float,
    ) -> AgentInvocationResult:
        try:
            data, confidence = self.analyze_locally(context)
        except Exception as e:
            logger.error("Local analysis failed", agent=self.agent_name, error=str(e))
            return self._fallback(
                descriptor, config, started,
                marker=f"{self.agent_name}: local analysis failed: {e}",
                prompt="",
                api_calls=[],
            )

        elapsed = _elapsed_ms(started)
        confidence = clamp_confidence(confidence)
        self.registry.record_execution(
            self.agent_name, confidence=confidence, latency_ms=elapsed, succeeded=True
        )
        logger.info("Local analysis complete", agent=self.agent_name, fields=len(data))
        return AgentInvocationResult(
            agent_name=self.agent_name,
            extracted_data=data,
            confidence=confidence,
            specializations=list(descriptor.specializations),
            processing_time_ms=elapsed,
        )

    def _fallback(
        self,
        descriptor: AgentDescriptor,
        config: OrchestrationConfig,
        started: float,
        *,
        marker: str,
        prompt: str,
        api_calls: list[ApiCallLog],
        raw_response: str | None = None,
    ) -> AgentInvocationResult:
        elapsed = _elapsed_ms(started)
        self.registry.record_execution(
            self.agent_name,
            confidence=config.fallback_confidence,
            latency_ms=elapsed,
            succeeded=False,
        )
        return AgentInvocationResult(
            agent_name=self.agent_name,
            extracted_data={},
            confidence=config.fallback_confidence,
            specializations=list(descriptor.specializations),
            conflicts=[marker],
            succeeded=False,
            raw_response=raw_response,
            processing_time_ms=elapsed,
            prompt=prompt,
            api_calls=api_calls,
        )


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
