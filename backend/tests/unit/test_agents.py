"""Unit tests for agent invocation: prompts, confidence, metrics, postprocessing."""

from __future__ import annotations

import pytest
from conftest import FakeBackend, make_pdf

from invoice_reader.modules.extraction.agents.base import (
    JSON_ONLY_DIRECTIVE,
    AgentContext,
    heuristic_confidence,
)
from invoice_reader.modules.extraction.agents.classifier import ClassificationAgent
from invoice_reader.modules.extraction.agents.extractors import (
    MetadataAgent,
    StructuralExtractionAgent,
)
from invoice_reader.modules.extraction.agents.specialists import (
    ArgentinaFiscalAgent,
    ConflictResolutionAgent,
    InternationalTradeAgent,
    format_cuit,
)
from invoice_reader.modules.extraction.completion import ImagePart, TextPart
from invoice_reader.modules.extraction.pdf_service import (
    DocumentQuality,
    PreprocessedDocument,
    preprocess_document,
)
from invoice_reader.modules.extraction.registry import AgentRegistry


def _text_only_context(text: str, file_name: str = "invoice.pdf") -> AgentContext:
    document = PreprocessedDocument(
        source_format="pdf",
        text=text,
        page_count=1,
        quality=DocumentQuality(has_text=True, is_scanned=False, quality="high"),
    )
    return AgentContext(document=document, file_name=file_name, mime_type="application/pdf")


def _empty_context(file_name: str) -> AgentContext:
    document = PreprocessedDocument(
        source_format="unsupported",
        quality=DocumentQuality(has_text=False, is_scanned=False, quality="low"),
    )
    return AgentContext(document=document, file_name=file_name)


# ---------------------------------------------------------------------------
# Confidence
# ---------------------------------------------------------------------------


def test_heuristic_confidence_from_field_coverage() -> None:
    critical = ("a", "b")
    assert heuristic_confidence({"a": 1, "b": 2}, critical, ()) == 80
    assert heuristic_confidence({"a": 1}, critical, ("c", "d")) == 40
    assert heuristic_confidence({"a": 1, "b": 2, "c": 1, "d": 1, "e": 1}, critical, ("c", "d", "e", "f")) == 95
    assert heuristic_confidence({}, (), ()) == 0


def test_heuristic_confidence_is_capped() -> None:
    bonus = tuple("cdefgh")
    data = {k: "x" for k in "abcdefgh"}
    assert heuristic_confidence(data, ("a", "b"), bonus) == 98


@pytest.mark.parametrize(
    ("reported", "expected"),
    [(91, 91), (91.6, 92), ("77", 77), ("64%", 64), (150, 100), (-5, 0)],
)
def test_reported_confidence_is_clamped(
    registry: AgentRegistry,
    reported: object,
    expected: int,
) -> None:
    agent = StructuralExtractionAgent(registry=registry, backend=FakeBackend())
    assert agent.resolve_confidence(reported, {}) == expected


@pytest.mark.parametrize("reported", [None, "high", True, float("nan"), 10**400])
def test_unusable_confidence_falls_back_to_heuristic(
    registry: AgentRegistry,
    reported: object,
) -> None:
    agent = StructuralExtractionAgent(registry=registry, backend=FakeBackend())
    data = {"totalAmount": 1.0, "invoiceNumber": "1", "providerName": "A", "customerName": "B"}
    assert agent.resolve_confidence(reported, data) == 80


# ---------------------------------------------------------------------------
# Prompt building
# ---------------------------------------------------------------------------


async def test_native_pdf_prompt_has_image_first_then_text(registry: AgentRegistry) -> None:
    backend = FakeBackend({"classification_agent": {"documentType": "factura_a", "confidence": 90}})
    agent = ClassificationAgent(registry=registry, backend=backend)
    document = preprocess_document(make_pdf(), "application/pdf")
    context = AgentContext(document=document, file_name="f.pdf", mime_type="application/pdf")

    result = await agent.invoke(context)

    parts = backend.calls[0]["parts"]
    assert isinstance(parts[0], ImagePart)
    assert parts[0].media_type == "image/jpeg"
    assert isinstance(parts[1], TextPart)
    text = parts[1].text
    assert text.startswith(registry.get("classification_agent").prompt_template)
    assert "## Task: document classification" in text
    assert "INPUT MODE: page image + extracted text" in text
    assert "FACTURA A" in text
    assert text.endswith(JSON_ONLY_DIRECTIVE)
    assert result.prompt.startswith("[image image/jpeg,")


async def test_scanned_document_prompt_is_image_only(
    registry: AgentRegistry,
    png_bytes: bytes,
) -> None:
    backend = FakeBackend({"structural_extraction_agent": {"confidence": 40}})
    agent = StructuralExtractionAgent(registry=registry, backend=backend)
    document = preprocess_document(png_bytes, "image/png")

    await agent.invoke(AgentContext(document=document, file_name="scan.png"))

    parts = backend.calls[0]["parts"]
    assert isinstance(parts[0], ImagePart)
    assert "INPUT MODE: page image only (scanned document)." in parts[1].text
    assert "--- Extracted text ---" not in parts[1].text


async def test_text_only_prompt_is_truncated_per_agent(registry: AgentRegistry) -> None:
    backend = FakeBackend(default={"confidence": 50})
    text = "A" * 2000 + "B" * 1000 + "C" * 500
    context = _text_only_context(text)

    await ClassificationAgent(registry=registry, backend=backend).invoke(context)
    await StructuralExtractionAgent(registry=registry, backend=backend).invoke(context)

    def extracted_block(call: dict) -> str:
        return call["parts"][0].text.split("--- Extracted text ---\n")[1].split("\n\n")[0]

    assert len(backend.calls[0]["parts"]) == 1
    assert "INPUT MODE: text-only fallback" in backend.calls[0]["parts"][0].text
    assert extracted_block(backend.calls[0]) == "A" * 2000
    assert extracted_block(backend.calls[1]) == "A" * 2000 + "B" * 1000


async def test_emergency_prompt_when_nothing_was_extracted(registry: AgentRegistry) -> None:
    backend = FakeBackend(default={"confidence": 10})
    agent = ClassificationAgent(registry=registry, backend=backend)

    await agent.invoke(_empty_context("factura_1A3938.xml"))

    text = backend.calls[0]["parts"][0].text
    assert "INPUT MODE: emergency" in text
    assert "File name: factura_1A3938.xml" in text


async def test_generation_parameters_per_agent(registry: AgentRegistry) -> None:
    backend = FakeBackend(default={"confidence": 50})
    context = _text_only_context("x" * 200)

    await ClassificationAgent(registry=registry, backend=backend).invoke(context)
    await ArgentinaFiscalAgent(registry=registry, backend=backend).invoke(context)
    await ConflictResolutionAgent(registry=registry, backend=backend).invoke(context)

    assert [(c["max_tokens"], c["temperature"]) for c in backend.calls] == [
        (1000, 0.1), (1500, 0.1), (2000, 0.2),
    ]


async def test_specialists_see_prior_data(registry: AgentRegistry) -> None:
    backend = FakeBackend(default={"confidence": 50})
    context = _text_only_context("x" * 200).model_copy(update={
        "prior_data": {"invoiceNumber": "0001-00001234"},
    })

    await InternationalTradeAgent(registry=registry, backend=backend).invoke(context)

    text = backend.calls[0]["parts"][0].text
    assert "--- Previous analysis ---" in text
    assert "0001-00001234" in text


async def test_prompt_template_update_takes_effect(registry: AgentRegistry) -> None:
    registry.update("structural_extraction_agent", {"prompt_template": "You are terse."})
    backend = FakeBackend(default={"confidence": 50})

    await StructuralExtractionAgent(registry=registry, backend=backend).invoke(
        _text_only_context("x" * 200)
    )

    assert backend.calls[0]["parts"][0].text.startswith("You are terse.")


# ---------------------------------------------------------------------------
# Postprocessing
# ---------------------------------------------------------------------------


async def test_classification_normalizes_values(registry: AgentRegistry) -> None:
    backend = FakeBackend({"classification_agent": {
        "documentType": "Commercial Invoice",
        "documentOrigin": "USA",
        "detectedCurrency": "usd",
        "confidence": 85,
    }})
    result = await ClassificationAgent(registry=registry, backend=backend).invoke(
        _text_only_context("x" * 200)
    )

    assert result.extracted_data == {
        "documentType": "commercial_invoice",
        "documentOrigin": "international",
        "detectedCurrency": "USD",
    }
    assert result.specializations == [
        "document_type", "origin_detection", "quality_assessment",
    ]


async def test_fiscal_agent_formats_cuits_and_lifts_meta(registry: AgentRegistry) -> None:
    backend = FakeBackend({"argentina_fiscal_agent": {
        "cuit": "30712345671",
        "cuitReceptor": "20 12345678 6",
        "cae": "74123456789012",
        "ivaAmount": "5.250,00",
        "conflicts": "CAE expiry not printed",
        "suggestions": ["check point of sale"],
        "reasoning": "read from footer",
    }})
    result = await ArgentinaFiscalAgent(registry=registry, backend=backend).invoke(
        _text_only_context("x" * 200)
    )

    assert result.extracted_data == {
        "cuit": "30-71234567-1",
        "cuitReceptor": "20-12345678-6",
        "cae": "74123456789012",
        "ivaAmount": 5250.0,
    }
    assert result.conflicts == ["CAE expiry not printed"]
    assert result.suggestions == ["check point of sale"]
    assert result.reasoning == "read from footer"
    # cuit + cae present -> 80, cuitReceptor + ivaAmount bonus -> 90
    assert result.confidence == 90


def test_format_cuit_leaves_other_values_alone() -> None:
    assert format_cuit("20123456786") == "20-12345678-6"
    assert format_cuit("123") == "123"
    assert format_cuit(None) is None


# ---------------------------------------------------------------------------
# Metadata agent (no backend)
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("file_name", "expected"),
    [
        ("Factura_1A3938.pdf", {"documentOrigin": "argentina", "documentType": "factura_a"}),
        ("freight_Baires_0042.pdf", {"documentOrigin": "international", "documentType": "international_invoice"}),
        ("scan_0001.pdf", {}),
    ],
)
async def test_metadata_agent_infers_from_file_name(
    registry: AgentRegistry,
    file_name: str,
    expected: dict[str, str],
) -> None:
    backend = FakeBackend()
    result = await MetadataAgent(registry=registry, backend=backend).invoke(_empty_context(file_name))

    assert result.extracted_data == expected
    assert result.confidence == 60
    assert result.succeeded
    assert result.api_calls == []
    assert backend.calls == []


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


async def test_invocations_update_registry_metrics(registry: AgentRegistry) -> None:
    backend = FakeBackend({"structural_extraction_agent": [
        {"confidence": 90},
        {"confidence": 70},
        "not json",
    ]})
    agent = StructuralExtractionAgent(registry=registry, backend=backend)
    context = _text_only_context("x" * 200)

    for _ in range(3):
        await agent.invoke(context)

    metrics = registry.get_metrics("structural_extraction_agent")
    assert metrics.executions == 3
    assert metrics.error_count == 1
    assert metrics.average_confidence == pytest.approx(80.0)
    assert metrics.success_rate == pytest.approx(200 / 3)
    assert metrics.last_execution is not None
