"""InvoiceReader Stage-1 extractors.

  - StructuralExtractionAgent: core invoice fields, parties, amounts, line items (LLM)
  - MetadataAgent:             origin / type hints from file name and MIME type (no LLM)
"""

from __future__ import annotations

from typing import Any

import structlog

from invoice_reader.modules.extraction.agent_schemas import CRITICAL_FIELDS
from invoice_reader.modules.extraction.agents.base import AgentContext, BaseAgent
from invoice_reader.modules.extraction.registry import METADATA_AGENT, STRUCTURAL_AGENT

logger = structlog.get_logger()

# Fixed confidence of the file-name heuristics
METADATA_CONFIDENCE = 60

# (file-name keywords, origin, document type); first match wins
_FILENAME_RULES: tuple[tuple[tuple[str, ...], str, str], ...] = (
    (("1a3938", "factura", "afip"), "argentina", "factura_a"),
    (("freight", "baires", "commercial_invoice"), "international", "international_invoice"),
)


class StructuralExtractionAgent(BaseAgent):
    """Stage 1: basic fields + line items from image and text."""

    agent_name = STRUCTURAL_AGENT
    prompt_file = "structural_extraction.txt"
    max_text_chars = 3000
    max_tokens = 2000
    critical_fields = CRITICAL_FIELDS
    bonus_fields = (
        "invoiceDate", "subtotal", "taxAmount", "currency",
        "lineItems", "providerAddress", "customerAddress",
    )

    def postprocess(self, data: dict[str, Any], context: AgentContext) -> dict[str, Any]:
        if isinstance(data.get("currency"), str):
            data["currency"] = data["currency"].strip().upper()
        return data


class MetadataAgent(BaseAgent):
    """Stage 1: lightweight inference from file metadata, never calls the backend.

    Always reports a confidence of 60; returns an empty mapping when no
    rule matches.
    """

    agent_name = METADATA_AGENT
    uses_llm = False

    def analyze_locally(self, context: AgentContext) -> tuple[dict[str, Any], int]:
        name = (context.file_name or "").lower()
        inferred: dict[str, Any] = {}
        for keywords, origin, doc_type in _FILENAME_RULES:
            if any(k in name for k in keywords):
                inferred["documentOrigin"] = origin
                inferred["documentType"] = doc_type
                break

        logger.debug(
            "Metadata inferred",
            file=context.file_name,
            mime_type=context.mime_type,
            hints=sorted(inferred),
        )
        return inferred, METADATA_CONFIDENCE
