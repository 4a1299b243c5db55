"""Process-wide services, built once in the app lifespan and injected per request."""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from invoice_reader.modules.extraction.agents.orchestrator import OrchestratorAgent
from invoice_reader.modules.extraction.completion import CompletionBackend, get_completion_backend
from invoice_reader.modules.extraction.history_service import MetricsRecorder
from invoice_reader.modules.extraction.registry import AgentRegistry
from invoice_reader.modules.extraction.storage import InMemoryResultStore, ResultStore


@dataclass
class Services:
    registry: AgentRegistry
    recorder: MetricsRecorder
    store: ResultStore
    orchestrator: OrchestratorAgent


def build_services(
    backend: CompletionBackend | None = None,
    provider: str | None = None,
    model: str | None = None,
) -> Services:
    registry = AgentRegistry()
    recorder = MetricsRecorder()
    orchestrator = OrchestratorAgent(
        registry=registry,
        backend=backend or get_completion_backend(provider, model),
        recorder=recorder,
    )
    return Services(
        registry=registry,
        recorder=recorder,
        store=InMemoryResultStore(),
        orchestrator=orchestrator,
    )


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_orchestrator(request: Request) -> OrchestratorAgent:
    return get_services(request).orchestrator


def get_registry(request: Request) -> AgentRegistry:
    return get_services(request).registry


def get_recorder(request: Request) -> MetricsRecorder:
    return get_services(request).recorder


def get_result_store(request: Request) -> ResultStore:
    return get_services(request).store
