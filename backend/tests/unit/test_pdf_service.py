"""Unit tests for document pre-processing (PyMuPDF + Pillow)."""

from __future__ import annotations

import io
from unittest import mock

import pytest
from conftest import make_pdf, make_png
from PIL import Image

from invoice_reader.modules.extraction import pdf_service
from invoice_reader.modules.extraction.pdf_service import (
    classify_quality,
    preprocess_document,
    processing_strategy,
)


# ---------------------------------------------------------------------------
# Quality classification
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("text_len", "images", "has_text", "is_scanned", "quality"),
    [
        (1200, 1, True, False, "high"),
        (600, 2, True, True, "high"),    # 600 / 2000 < 0.5
        (300, 1, True, True, "medium"),
        (50, 1, False, True, "medium"),
        (0, 0, False, True, "low"),
        (300, 0, True, False, "low"),
    ],
)
def test_classify_quality(
    text_len: int,
    images: int,
    has_text: bool,
    is_scanned: bool,
    quality: str,
) -> None:
    result = classify_quality("x" * text_len, images)
    assert (result.has_text, result.is_scanned, result.quality) == (has_text, is_scanned, quality)


def test_processing_strategy() -> None:
    assert processing_strategy(classify_quality("x" * 1200, 1)).priority == "hybrid"
    assert processing_strategy(classify_quality("", 1)).priority == "visual"
    assert processing_strategy(classify_quality("x" * 300, 0)).priority == "textual"


# ---------------------------------------------------------------------------
# preprocess_document
# ---------------------------------------------------------------------------


def test_native_pdf(invoice_pdf: bytes) -> None:
    doc = preprocess_document(invoice_pdf, "application/pdf")

    assert doc.source_format == "pdf"
    assert doc.page_count == 1
    assert len(doc.images) == 1
    assert doc.images[0].page_number == 1
    assert doc.images[0].media_type == "image/jpeg"
    assert "Distribuidora del Sur" in doc.text
    assert doc.quality.quality == "high"
    assert not doc.quality.is_scanned


def test_page_images_respect_max_side(invoice_pdf: bytes) -> None:
    doc = preprocess_document(invoice_pdf, "application/pdf")
    page = doc.images[0]

    assert max(page.width, page.height) <= 2000
    with Image.open(io.BytesIO(page.data)) as img:
        assert img.format == "JPEG"
        assert img.size == (page.width, page.height)


def test_pdf_without_text_layer_is_scanned(blank_pdf: bytes) -> None:
    doc = preprocess_document(blank_pdf, "application/pdf")

    assert doc.text == ""
    assert doc.has_images
    assert doc.quality.is_scanned
    assert doc.quality.quality == "medium"


def test_rasterization_is_capped_but_text_covers_every_page() -> None:
    doc = preprocess_document(make_pdf(pages=7), "application/pdf", max_pages=5)

    assert [p.page_number for p in doc.images] == [1, 2, 3, 4, 5]
    assert doc.page_count == 7
    assert doc.text.count("Distribuidora del Sur") == 7


def test_image_input_bypasses_rasterization(png_bytes: bytes) -> None:
    doc = preprocess_document(png_bytes, "image/png")

    assert doc.source_format == "image"
    assert doc.page_count == 1
    assert doc.text == ""
    assert doc.first_image is not None
    assert doc.first_image.media_type == "image/jpeg"
    assert doc.quality.is_scanned


def test_large_image_is_downscaled() -> None:
    doc = preprocess_document(make_png(3000, 1500), "image/png")
    assert (doc.images[0].width, doc.images[0].height) == (2000, 1000)


@pytest.mark.parametrize("mime_type", ["application/pdf", "image/jpeg"])
def test_corrupt_input_yields_error_quality(mime_type: str) -> None:
    doc = preprocess_document(b"definitely not a document", mime_type)

    assert doc.quality.quality == "error"
    assert doc.images == []
    assert doc.text == ""


def test_rasterization_failure_falls_back_to_text_only(invoice_pdf: bytes) -> None:
    with mock.patch.object(pdf_service, "rasterize_pdf", side_effect=RuntimeError("render failed")):
        doc = preprocess_document(invoice_pdf, "application/pdf")

    assert doc.images == []
    assert "Distribuidora del Sur" in doc.text
    assert doc.page_count == 1
    assert doc.quality.has_text
    assert doc.quality.quality != "error"


def test_text_extraction_failure_keeps_page_images(invoice_pdf: bytes) -> None:
    with mock.patch.object(pdf_service, "extract_pdf_text", side_effect=RuntimeError("no text layer")):
        doc = preprocess_document(invoice_pdf, "application/pdf")

    assert doc.text == ""
    assert len(doc.images) == 1
    assert doc.quality.is_scanned
    assert doc.quality.quality == "medium"


def test_unsupported_format_yields_empty_low_quality() -> None:
    doc = preprocess_document(b"<xml/>", "application/xml")

    assert doc.source_format == "unsupported"
    assert doc.quality.quality == "low"
    assert not doc.has_images


def test_preprocessing_is_deterministic(invoice_pdf: bytes) -> None:
    first = preprocess_document(invoice_pdf, "application/pdf")
    second = preprocess_document(invoice_pdf, "application/pdf")

    assert first.quality == second.quality
    assert first.text == second.text
    assert first.page_count == second.page_count
