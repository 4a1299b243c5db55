"""InvoiceReader Agent 7: Cross Validation (Stage 3).

Runs once, only when Stage 2 left the record below the final threshold with
a critical field still missing. The model receives the full consolidated
data and returns ``finalOptimizedData``, which the orchestrator overlays on
the record unconditionally.

Alongside the model's verdict, deterministic checks run locally on the
verified record and are appended to the result's conflict markers:
  - arithmetic: subtotal + tax (+ perceptions / freight) ~= total
  - CUIT format + AFIP mod-11 check digit
  - date plausibility (1990 .. today + 1 year, due date >= issue date)
  - currency consistent with origin (Argentine documents in ARS or USD)
"""

from __future__ import annotations

import re
from datetime import date, timedelta
from typing import Any

import structlog

from invoice_reader.modules.extraction.agent_schemas import (
    CRITICAL_FIELDS,
    RESERVED_RESPONSE_KEYS,
    AgentInvocationResult,
)
from invoice_reader.modules.extraction.agents.base import AgentContext, BaseAgent
from invoice_reader.modules.extraction.agents.merger import apply_verified_data, is_empty_value
from invoice_reader.modules.extraction.agents.sanitizer import parse_amount, sanitize_agent_output
from invoice_reader.modules.extraction.agents.specialists import prior_data_section
from invoice_reader.modules.extraction.registry import CROSS_VALIDATION_AGENT, normalize_origin

logger = structlog.get_logger()

_CUIT_WEIGHTS = (5, 4, 3, 2, 7, 6, 5, 4, 3, 2)
_CUIT_FIELDS = ("cuit", "cuitReceptor")
_DATE_FIELDS = ("invoiceDate", "dueDate", "vencimientoCae")
_EARLIEST_DATE = date(1990, 1, 1)
_ARGENTINE_CURRENCIES = {"ARS", "USD"}

# Charges that may sit between subtotal + tax and the printed total
_ADDITIONAL_CHARGES = ("percepcionesAmount", "freightAmount", "tariffSurcharge")


# ---------------------------------------------------------------------------
# Deterministic checks
# ---------------------------------------------------------------------------

def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return float(value)
        except OverflowError:
            return None
    parsed = parse_amount(value)
    return parsed if isinstance(parsed, float) else None


def check_arithmetic(data: dict[str, Any]) -> list[str]:
    subtotal = _as_number(data.get("subtotal"))
    tax = _as_number(data.get("taxAmount"))
    total = _as_number(data.get("totalAmount"))
    if subtotal is None or tax is None or total is None:
        return []

    tolerance = max(0.05, abs(total) * 0.01)
    base = subtotal + tax
    extras = sum(_as_number(data.get(k)) or 0.0 for k in _ADDITIONAL_CHARGES)
    if abs(base - total) <= tolerance or abs(base + extras - total) <= tolerance:
        return []
    return [
        f"Arithmetic mismatch: subtotal {subtotal:.2f} + tax {tax:.2f} "
        f"= {base:.2f}, total is {total:.2f}"
    ]


def is_valid_cuit(value: Any) -> bool:
    """AFIP CUIT/CUIL validation: 11 digits with a mod-11 check digit."""
    if not isinstance(value, (str, int)) or isinstance(value, bool):
        return False
    digits = re.sub(r"[\s\-.]", "", str(value))
    if len(digits) != 11 or not digits.isdigit():
        return False
    total = sum(int(d) * w for d, w in zip(digits[:10], _CUIT_WEIGHTS))
    check = 11 - total % 11
    if check == 11:
        check = 0
    elif check == 10:
        return False
    return check == int(digits[10])


def check_cuits(data: dict[str, Any]) -> list[str]:
    return [
        f"Invalid CUIT in {field}: {data[field]!r}"
        for field in _CUIT_FIELDS
        if not is_empty_value(data.get(field)) and not is_valid_cuit(data[field])
    ]


def _parse_date(value: Any) -> date | None:
    if not isinstance(value, str):
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


def check_dates(data: dict[str, Any], today: date | None = None) -> list[str]:
    today = today or date.today()
    latest = today + timedelta(days=365)
    findings: list[str] = []
    parsed: dict[str, date] = {}

    for field in _DATE_FIELDS:
        raw = data.get(field)
        if is_empty_value(raw):
            continue
        value = _parse_date(raw)
        if value is None:
            findings.append(f"Unparseable date in {field}: {raw!r}")
        elif value < _EARLIEST_DATE or value > latest:
            findings.append(f"Implausible date in {field}: {value.isoformat()}")
        else:
            parsed[field] = value

    issued, due = parsed.get("invoiceDate"), parsed.get("dueDate")
    if issued and due and due < issued:
        findings.append(
            f"Due date {due.isoformat()} is before invoice date {issued.isoformat()}"
        )
    return findings


def check_currency(data: dict[str, Any]) -> list[str]:
    origin = normalize_origin(data.get("documentOrigin"))
    currency = data.get("currency") or data.get("detectedCurrency")
    if origin != "argentina" or not isinstance(currency, str) or not currency.strip():
        return []
    if currency.strip().upper() not in _ARGENTINE_CURRENCIES:
        return [f"Currency {currency} unexpected for an Argentine document (ARS or USD)"]
    return []


def verify_consolidated(data: dict[str, Any], today: date | None = None) -> list[str]:
    """All deterministic findings for one record, in a stable order."""
    return (
        check_arithmetic(data)
        + check_cuits(data)
        + check_dates(data, today)
        + check_currency(data)
    )


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------


class CrossValidationAgent(BaseAgent):
    """Stage 3: final verification via LLM + local checks."""

    agent_name = CROSS_VALIDATION_AGENT
    prompt_file = "cross_validation.txt"
    max_tokens = 2500
    critical_fields = CRITICAL_FIELDS
    bonus_fields = ("invoiceDate", "subtotal", "taxAmount", "currency", "lineItems")

    def context_sections(self, context: AgentContext) -> list[str]:
        sections = [prior_data_section(context)]
        findings = verify_consolidated(context.prior_data)
        if findings:
            sections.append(
                "--- Automatic checks already flagged ---\n"
                + "\n".join(f"- {f}" for f in findings)
            )
        return sections

    def postprocess(self, data: dict[str, Any], context: AgentContext) -> dict[str, Any]:
        optimized = data.get("finalOptimizedData")
        if isinstance(optimized, dict):
            optimized = sanitize_agent_output(optimized)
            for key in RESERVED_RESPONSE_KEYS:
                optimized.pop(key, None)
            data["finalOptimizedData"] = optimized
        else:
            data["finalOptimizedData"] = {}
        return data

    def resolve_confidence(self, reported: Any, data: dict[str, Any]) -> int:
        return super().resolve_confidence(reported, data.get("finalOptimizedData") or data)

    async def invoke(self, context: AgentContext) -> AgentInvocationResult:
        result = await super().invoke(context)
        verified = apply_verified_data(
            context.prior_data, result.extracted_data.get("finalOptimizedData")
        )
        findings = verify_consolidated(verified)
        if findings:
            logger.info("Local verification findings", count=len(findings))
        return result.model_copy(update={"conflicts": [*result.conflicts, *findings]})
