"""InvoiceReader Consolidation - field-level merge, confidence scoring, conflicts.

This module is PURELY PROGRAMMATIC - no LLM calls.

Merge rule (per field, in result order):
  - Empty values (None, "", [], {}) never write.
  - A value fills a field that is absent/empty in the running mapping.
  - A value overwrites an existing one only if its agent's confidence is
    strictly above the acceptance threshold (75 by default).

Overall confidence:
  round(sum(confidence_i * |specializations_i|) / sum(|specializations_i|))
  rounded half-up and clamped to [0, 100]; an empty result set scores 0.
"""

from __future__ import annotations

import math
from copy import deepcopy
from typing import Any, Iterable

import structlog

from invoice_reader.modules.extraction.agent_schemas import (
    CRITICAL_FIELDS,
    AgentInvocationResult,
)

logger = structlog.get_logger()

# Absolute tolerance for treating two numbers as the same value
_NUMERIC_TOLERANCE = 0.005


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def is_empty_value(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return not value
    return False


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def clamp_confidence(value: float) -> int:
    return max(0, min(100, round_half_up(value)))


def missing_critical_fields(
    data: dict[str, Any],
    fields: Iterable[str] = CRITICAL_FIELDS,
) -> list[str]:
    return [f for f in fields if is_empty_value(data.get(f))]


# ---------------------------------------------------------------------------
# Merge + scoring
# ---------------------------------------------------------------------------

def consolidate(
    results: Iterable[AgentInvocationResult],
    base: dict[str, Any] | None = None,
    threshold: int = 75,
) -> dict[str, Any]:
    """Fold agent results into a copy of ``base``; ``base`` is never mutated."""
    merged = deepcopy(base) if base else {}
    for result in results:
        for key, value in result.extracted_data.items():
            if is_empty_value(value):
                continue
            if is_empty_value(merged.get(key)) or result.confidence > threshold:
                merged[key] = deepcopy(value)
    return merged


def overall_confidence(results: list[AgentInvocationResult]) -> int:
    """Specialization-weighted mean confidence of one stage's results."""
    if not results:
        return 0
    total_weight = sum(len(r.specializations) for r in results)
    if total_weight == 0:
        return clamp_confidence(sum(r.confidence for r in results) / len(results))
    weighted = sum(r.confidence * len(r.specializations) for r in results)
    return clamp_confidence(weighted / total_weight)


def apply_verified_data(
    base: dict[str, Any],
    verified: dict[str, Any] | None,
) -> dict[str, Any]:
    """Overlay the verifier's optimized mapping on ``base`` unconditionally.

    Empty verified values are ignored so a sparse verifier response cannot
    erase fields it did not mention.
    """
    merged = deepcopy(base)
    if not isinstance(verified, dict):
        return merged
    for key, value in verified.items():
        if not is_empty_value(value):
            merged[key] = deepcopy(value)
    return merged


# ---------------------------------------------------------------------------
# Conflict identification
# ---------------------------------------------------------------------------

def _is_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool))


def _same_value(a: Any, b: Any) -> bool:
    numeric = (int, float)
    if isinstance(a, numeric) and isinstance(b, numeric) and not isinstance(a, bool) and not isinstance(b, bool):
        try:
            return abs(float(a) - float(b)) <= _NUMERIC_TOLERANCE
        except OverflowError:
            return a == b
    return str(a).strip().casefold() == str(b).strip().casefold()


def identify_conflicts(results: list[AgentInvocationResult]) -> list[str]:
    """Conflict markers reported by the agents plus cross-agent disagreements.

    A disagreement is a scalar field for which two successful agents returned
    different non-empty values; each differing agent is reported once against
    the first agent that supplied the field.
    """
    conflicts: list[str] = []
    for result in results:
        conflicts.extend(result.conflicts)

    first_seen: dict[str, tuple[Any, str]] = {}
    for result in results:
        if not result.succeeded:
            continue
        for key, value in result.extracted_data.items():
            if not _is_scalar(value) or is_empty_value(value):
                continue
            if key not in first_seen:
                first_seen[key] = (value, result.agent_name)
                continue
            seen_value, seen_agent = first_seen[key]
            if not _same_value(seen_value, value):
                conflicts.append(
                    f"Disagreement on {key}: {seen_value!r} ({seen_agent}) "
                    f"vs {value!r} ({result.agent_name})"
                )
    return conflicts


class MergerAgent:
    """Consolidation bound to one acceptance threshold.

    No LLM calls - the orchestrator builds one per run from the current
    system configuration.
    """

    agent_name = "Merger"

    def __init__(self, acceptance_threshold: int = 75) -> None:
        self.acceptance_threshold = acceptance_threshold

    def merge(
        self,
        results: list[AgentInvocationResult],
        base: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        merged = consolidate(results, base, self.acceptance_threshold)
        logger.debug(
            "Results consolidated",
            agents=[r.agent_name for r in results],
            fields=len(merged),
        )
        return merged
