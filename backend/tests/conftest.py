"""Shared test fixtures for the InvoiceReader backend test suite."""

from __future__ import annotations

import asyncio
import io
import json
from collections.abc import AsyncGenerator
from typing import Any

import fitz
import pytest
from httpx import ASGITransport, AsyncClient
from PIL import Image

from invoice_reader.core.services import (
    get_orchestrator,
    get_recorder,
    get_registry,
    get_result_store,
)
from invoice_reader.main import app
from invoice_reader.modules.extraction.agent_schemas import OrchestrationConfig
from invoice_reader.modules.extraction.agents.orchestrator import OrchestratorAgent
from invoice_reader.modules.extraction.completion import PromptPart, render_prompt_text
from invoice_reader.modules.extraction.exceptions import (
    BackendCallError,
    BackendNotConfiguredError,
)
from invoice_reader.modules.extraction.history_service import MetricsRecorder
from invoice_reader.modules.extraction.registry import AgentRegistry
from invoice_reader.modules.extraction.storage import InMemoryResultStore

# ---------------------------------------------------------------------------
# Scripted completion backend
# ---------------------------------------------------------------------------

# Task headers of the prompt templates; used to tell which agent is calling
TASK_HEADERS = {
    "classification_agent": "## Task: document classification",
    "structural_extraction_agent": "## Task: structural field extraction",
    "argentina_fiscal_agent": "## Task: Argentine fiscal validation",
    "international_trade_agent": "## Task: international trade extraction",
    "conflict_resolution_agent": "## Task: conflict resolution",
    "cross_validation_agent": "## Task: final cross-validation",
}

# Response that never arrives (for timeout tests)
HANG = object()


class FakeBackend:
    """Completion backend answering from a per-agent script.

    A scripted value may be a dict (sent as JSON), a raw string, an exception
    instance (raised), ``HANG``, or a list of those consumed one per call.
    """

    provider = "fake"
    model = "fake-model"

    def __init__(
        self,
        responses: dict[str, Any] | None = None,
        default: Any = None,
        ready: bool = True,
    ) -> None:
        self.responses = dict(responses or {})
        self.default = default
        self.ready = ready
        self.calls: list[dict[str, Any]] = []

    def ensure_ready(self) -> None:
        if not self.ready:
            raise BackendNotConfiguredError("Fake backend is not configured")

    def agents_called(self) -> list[str]:
        return [c["agent"] for c in self.calls]

    async def complete(
        self,
        parts: list[PromptPart],
        *,
        max_tokens: int,
        temperature: float,
    ) -> str:
        text = render_prompt_text(parts)
        agent = next(
            (name for name, header in TASK_HEADERS.items() if header in text),
            "unknown",
        )
        self.calls.append({
            "agent": agent,
            "parts": parts,
            "max_tokens": max_tokens,
            "temperature": temperature,
        })

        response = self.responses.get(agent, self.default)
        if isinstance(response, list):
            response = response.pop(0) if response else self.default

        if response is HANG:
            await asyncio.sleep(3600)
        if isinstance(response, BaseException):
            raise response
        if response is None:
            raise BackendCallError(f"No scripted response for {agent}")
        if isinstance(response, dict):
            return json.dumps(response)
        return response


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def registry() -> AgentRegistry:
    """Fresh registry with retry backoff disabled so retries don't sleep."""
    return AgentRegistry(config=OrchestrationConfig(retry_backoff_seconds=0.0))


@pytest.fixture
def recorder() -> MetricsRecorder:
    return MetricsRecorder(max_entries=100)


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def orchestrator(
    registry: AgentRegistry,
    fake_backend: FakeBackend,
    recorder: MetricsRecorder,
) -> OrchestratorAgent:
    return OrchestratorAgent(registry=registry, backend=fake_backend, recorder=recorder)


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

INVOICE_LINES = [
    "FACTURA A  Nro 0001-00001234",
    "Fecha de emision: 2024-03-15",
    "Proveedor: Distribuidora del Sur S.A.  CUIT 30-71234567-1",
    "Cliente: Comercial Norte SRL  CUIT 20-12345678-6",
    "IVA Responsable Inscripto",
] + [
    f"Item {i:02d}  Tornillo hexagonal acero inoxidable M8 x 40   10 u   $ 1.250,00"
    for i in range(1, 15)
] + [
    "Subtotal: $ 25.000,00",
    "IVA 21%: $ 5.250,00",
    "Total: $ 30.250,00",
    "CAE 74123456789012  Vto. CAE 2024-03-25",
]


def make_pdf(pages: int = 1, with_text: bool = True) -> bytes:
    doc = fitz.open()
    for _ in range(pages):
        page = doc.new_page()
        if with_text:
            page.insert_text((40, 60), "\n".join(INVOICE_LINES), fontsize=9)
    data = doc.tobytes()
    doc.close()
    return data


def make_png(width: int = 120, height: int = 80) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), "white").save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def invoice_pdf() -> bytes:
    """Native single-page invoice PDF with a rich text layer."""
    return make_pdf()


@pytest.fixture
def blank_pdf() -> bytes:
    """Single page without any text (behaves like a scan)."""
    return make_pdf(with_text=False)


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


@pytest.fixture
def result_store() -> InMemoryResultStore:
    return InMemoryResultStore()


@pytest.fixture
async def client(
    orchestrator: OrchestratorAgent,
    registry: AgentRegistry,
    recorder: MetricsRecorder,
    result_store: InMemoryResultStore,
) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client talking to the ASGI app with in-memory services."""
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_registry] = lambda: registry
    app.dependency_overrides[get_recorder] = lambda: recorder
    app.dependency_overrides[get_result_store] = lambda: result_store

    transport = ASGITransport(app=app)  # type: ignore[arg-type]
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
