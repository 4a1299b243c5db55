"""InvoiceReader Agent 1: Document Classifier.

Detects document type, origin (argentina / international), scan quality,
language and currency from the first page image plus the first ~2000
characters of extracted text.

The origin it reports drives which Stage-2 specialists run.
"""

from __future__ import annotations

from typing import Any

import structlog

from invoice_reader.modules.extraction.agents.base import AgentContext, BaseAgent
from invoice_reader.modules.extraction.registry import CLASSIFICATION_AGENT, normalize_origin

logger = structlog.get_logger()


class ClassificationAgent(BaseAgent):
    """Stage 1: document type + origin classification via LLM."""

    agent_name = CLASSIFICATION_AGENT
    prompt_file = "classification.txt"
    max_text_chars = 2000
    max_tokens = 1000
    critical_fields = ("documentType", "documentOrigin")
    bonus_fields = ("detectedCurrency", "scanQuality", "primaryLanguage")

    def postprocess(self, data: dict[str, Any], context: AgentContext) -> dict[str, Any]:
        if "documentOrigin" in data:
            data["documentOrigin"] = normalize_origin(data["documentOrigin"])
        if isinstance(data.get("documentType"), str):
            data["documentType"] = data["documentType"].strip().lower().replace(" ", "_")
        if isinstance(data.get("detectedCurrency"), str):
            data["detectedCurrency"] = data["detectedCurrency"].strip().upper()

        logger.info(
            "Document classified",
            file=context.file_name,
            doc_type=data.get("documentType"),
            origin=data.get("documentOrigin"),
        )
        return data
