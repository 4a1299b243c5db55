"""InvoiceReader Document Pre-processor - PyMuPDF text extraction + page rasterization.

Strategy (hybrid):
  1. Rasterize up to ``max_pages`` pages to JPEG for vision input.
  2. Extract the full text layer for textual analysis.
  3. Classify quality (native vs scanned, text density) from both channels.

Each channel fails independently: a rasterization failure leaves a text-only
document, a text failure leaves an empty string, and when both fail the result
is empty with quality ``error``. Nothing here raises for a bad input file.
"""

from __future__ import annotations

import io
from typing import Literal

import fitz  # PyMuPDF
import structlog
from PIL import Image
from pydantic import BaseModel, Field

from invoice_reader.core.config import settings

logger = structlog.get_logger()

Quality = Literal["high", "medium", "low", "error"]
SourceFormat = Literal["pdf", "image", "unsupported"]

PDF_MIME_TYPES = {"application/pdf", "application/x-pdf"}
IMAGE_MIME_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"}

# Minimum text length to consider the text layer meaningful
_MIN_TEXT_CHARS = 100
# Above this the document is treated as a native, text-rich PDF
_HIGH_QUALITY_TEXT_CHARS = 500
# Expected characters per page for a native PDF; below half of it -> scanned
_CHARS_PER_PAGE = 1000


# ---------------------------------------------------------------------------
# Data models for pre-processed output
# ---------------------------------------------------------------------------


class PageImage(BaseModel):
    """One rasterized page, ready to be attached to a vision prompt."""

    page_number: int
    media_type: str = "image/jpeg"
    data: bytes = Field(repr=False)
    width: int = 0
    height: int = 0


class DocumentQuality(BaseModel):
    has_text: bool
    is_scanned: bool
    quality: Quality


class ProcessingStrategy(BaseModel):
    use_images: bool
    use_text: bool
    priority: Literal["visual", "textual", "hybrid"]


class PreprocessedDocument(BaseModel):
    """Images + text channels for one input file."""

    source_format: SourceFormat
    images: list[PageImage] = Field(default_factory=list)
    text: str = ""
    page_count: int = 0
    quality: DocumentQuality

    @property
    def has_images(self) -> bool:
        return bool(self.images)

    @property
    def first_image(self) -> PageImage | None:
        return self.images[0] if self.images else None


# ---------------------------------------------------------------------------
# Quality classification
# ---------------------------------------------------------------------------


def classify_quality(text: str, image_count: int) -> DocumentQuality:
    """Classify a document from its text length and text-to-image ratio.

    Pure function of its inputs, so re-classifying the same document always
    gives the same answer.
    """
    has_text = len(text.strip()) > _MIN_TEXT_CHARS

    if image_count > 0:
        text_to_image_ratio = len(text) / (image_count * _CHARS_PER_PAGE)
        is_scanned = not has_text or text_to_image_ratio < 0.5
    else:
        is_scanned = not has_text

    quality: Quality
    if has_text and len(text) > _HIGH_QUALITY_TEXT_CHARS:
        quality = "high"
    elif image_count > 0:
        quality = "medium"
    else:
        quality = "low"

    return DocumentQuality(has_text=has_text, is_scanned=is_scanned, quality=quality)


def processing_strategy(quality: DocumentQuality) -> ProcessingStrategy:
    """Pick which channels the agents should lean on."""
    if quality.quality == "high" and quality.has_text:
        return ProcessingStrategy(use_images=True, use_text=True, priority="hybrid")
    if quality.is_scanned:
        return ProcessingStrategy(use_images=True, use_text=False, priority="visual")
    return ProcessingStrategy(use_images=True, use_text=True, priority="textual")


# ---------------------------------------------------------------------------
# Image helpers
# ---------------------------------------------------------------------------


def _encode_jpeg(image: Image.Image, page_number: int) -> PageImage:
    """Downscale to the configured max side and encode as JPEG."""
    if image.mode != "RGB":
        image = image.convert("RGB")

    max_side = settings.preprocess_image_max_side
    if max(image.size) > max_side:
        image.thumbnail((max_side, max_side))

    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=settings.preprocess_jpeg_quality, optimize=True)
    return PageImage(
        page_number=page_number,
        media_type="image/jpeg",
        data=buffer.getvalue(),
        width=image.width,
        height=image.height,
    )


def normalize_image(image_bytes: bytes) -> PageImage:
    """Turn an uploaded image (any Pillow format) into a vision-ready JPEG page."""
    with Image.open(io.BytesIO(image_bytes)) as img:
        img.load()
        return _encode_jpeg(img, page_number=1)


def rasterize_pdf(pdf_bytes: bytes, max_pages: int, dpi: int | None = None) -> list[PageImage]:
    """Render the first ``max_pages`` pages of a PDF to JPEG images (page 1 first)."""
    dpi = dpi or settings.preprocess_render_dpi
    zoom = dpi / 72
    matrix = fitz.Matrix(zoom, zoom)

    images: list[PageImage] = []
    with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
        for page_idx in range(min(len(doc), max_pages)):
            pix = doc[page_idx].get_pixmap(matrix=matrix, alpha=False)
            img = Image.frombytes("RGB", (pix.width, pix.height), pix.samples)
            images.append(_encode_jpeg(img, page_number=page_idx + 1))
    return images


def extract_pdf_text(pdf_bytes: bytes) -> tuple[str, int]:
    """Extract the text layer of every page. Returns (text, page_count)."""
    with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
        parts = [page.get_text("text") or "" for page in doc]
        return "\n".join(parts).strip(), len(doc)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def preprocess_document(
    file_bytes: bytes,
    mime_type: str,
    max_pages: int | None = None,
) -> PreprocessedDocument:
    """Convert an input file into (page images, extracted text, quality).

    Images bypass rasterization and become a single page. Unsupported formats
    produce an empty document with quality ``low`` instead of raising.
    """
    max_pages = max_pages or settings.preprocess_max_pages
    mime_type = (mime_type or "").lower()

    if mime_type in IMAGE_MIME_TYPES:
        try:
            page = normalize_image(file_bytes)
        except Exception as e:
            logger.warning("Image normalization failed", mime_type=mime_type, error=str(e))
            return PreprocessedDocument(
                source_format="image",
                page_count=1,
                quality=DocumentQuality(has_text=False, is_scanned=True, quality="error"),
            )
        return PreprocessedDocument(
            source_format="image",
            images=[page],
            page_count=1,
            quality=classify_quality("", 1),
        )

    if mime_type not in PDF_MIME_TYPES:
        logger.warning("Unsupported document format", mime_type=mime_type)
        return PreprocessedDocument(
            source_format="unsupported",
            quality=DocumentQuality(has_text=False, is_scanned=False, quality="low"),
        )

    images: list[PageImage] = []
    raster_failed = False
    try:
        images = rasterize_pdf(file_bytes, max_pages=max_pages)
    except Exception as e:
        raster_failed = True
        logger.warning("PDF rasterization failed, continuing text-only", error=str(e))

    text = ""
    page_count = len(images)
    text_failed = False
    try:
        text, page_count = extract_pdf_text(file_bytes)
    except Exception as e:
        text_failed = True
        logger.warning("PDF text extraction failed", error=str(e))

    if raster_failed and text_failed:
        logger.error("PDF pre-processing failed on both channels")
        return PreprocessedDocument(
            source_format="pdf",
            page_count=0,
            quality=DocumentQuality(has_text=False, is_scanned=False, quality="error"),
        )

    quality = classify_quality(text, len(images))

    logger.info(
        "PDF pre-processed",
        pages=page_count,
        images=len(images),
        chars=len(text),
        quality=quality.quality,
        scanned=quality.is_scanned,
    )

    return PreprocessedDocument(
        source_format="pdf",
        images=images,
        text=text,
        page_count=page_count,
        quality=quality,
    )
