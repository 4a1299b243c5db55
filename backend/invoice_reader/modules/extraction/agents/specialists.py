"""InvoiceReader Stage-2 specialists.

Each receives the Stage-1 consolidated data as context:
  - ArgentinaFiscalAgent:     CUIT / CAE / IVA fields (argentina or unknown origin)
  - InternationalTradeAgent:  tax ids, HS codes, incoterms, banking (international or unknown)
  - ConflictResolutionAgent:  arbitrates the conflicts Stage 1 surfaced (only when there are any)
"""

from __future__ import annotations

import json
import re
from typing import Any

from invoice_reader.modules.extraction.agents.base import AgentContext, BaseAgent
from invoice_reader.modules.extraction.registry import (
    ARGENTINA_FISCAL_AGENT,
    CONFLICT_RESOLUTION_AGENT,
    INTERNATIONAL_TRADE_AGENT,
)

_CUIT_DIGITS = re.compile(r"\D")


def format_cuit(value: Any) -> Any:
    """Render an 11-digit CUIT as XX-XXXXXXXX-X; other values pass through."""
    if not isinstance(value, (str, int)) or isinstance(value, bool):
        return value
    digits = _CUIT_DIGITS.sub("", str(value))
    if len(digits) != 11:
        return value
    return f"{digits[:2]}-{digits[2:10]}-{digits[10]}"


def prior_data_section(context: AgentContext) -> str:
    if not context.prior_data:
        return "--- Previous analysis ---\n(none)"
    return "--- Previous analysis ---\n" + json.dumps(
        context.prior_data, ensure_ascii=False, indent=2, default=str
    )


class ArgentinaFiscalAgent(BaseAgent):
    agent_name = ARGENTINA_FISCAL_AGENT
    prompt_file = "argentina_fiscal.txt"
    max_tokens = 1500
    critical_fields = ("cuit", "cae")
    bonus_fields = ("cuitReceptor", "condicionFiscal", "puntoVenta", "ivaAmount")

    def context_sections(self, context: AgentContext) -> list[str]:
        return [prior_data_section(context)]

    def postprocess(self, data: dict[str, Any], context: AgentContext) -> dict[str, Any]:
        for key in ("cuit", "cuitReceptor"):
            if key in data:
                data[key] = format_cuit(data[key])
        return data


class InternationalTradeAgent(BaseAgent):
    agent_name = INTERNATIONAL_TRADE_AGENT
    prompt_file = "international_trade.txt"
    max_tokens = 2000
    critical_fields = ("providerTaxId",)
    bonus_fields = ("ein", "hsCode", "incoterms", "countryOfOrigin", "lineItems", "swiftCode")

    def context_sections(self, context: AgentContext) -> list[str]:
        return [prior_data_section(context)]


class ConflictResolutionAgent(BaseAgent):
    """Resolves Stage-1 disagreements; returns only the fields it settled."""

    agent_name = CONFLICT_RESOLUTION_AGENT
    prompt_file = "conflict_resolution.txt"
    max_tokens = 2000
    temperature = 0.2

    def context_sections(self, context: AgentContext) -> list[str]:
        conflicts = "\n".join(f"- {c}" for c in context.conflicts) or "- (none reported)"
        return [f"--- Conflicts detected ---\n{conflicts}", prior_data_section(context)]
