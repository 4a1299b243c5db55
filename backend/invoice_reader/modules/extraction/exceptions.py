"""InvoiceReader exception hierarchy.

    InvoiceReaderError (base)
    ├── BackendNotConfiguredError   fatal, raised before any stage runs
    ├── BackendCallError            one failed completion call (recovered per agent)
    ├── ResponseParseError          malformed model JSON (recovered per agent)
    ├── AgentNotFoundError          unknown agent name in the registry
    └── RunNotFoundError            unknown document id in the result store

Only BackendNotConfiguredError ever escapes the orchestration entry point.
"""

from __future__ import annotations

from typing import Any


class InvoiceReaderError(Exception):
    """Base error with a stable machine-readable code and structured details."""

    code: str = "E9000"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class BackendNotConfiguredError(InvoiceReaderError):
    """The completion backend is missing credentials or uses an unknown provider."""

    code = "E5000"


class BackendCallError(InvoiceReaderError):
    """A single completion call failed (timeout, network, quota, bad payload)."""

    code = "E5001"


class ResponseParseError(InvoiceReaderError):
    """The model response could not be turned into a JSON object."""

    code = "E4001"


class AgentNotFoundError(InvoiceReaderError, KeyError):
    code = "E3001"

    def __init__(self, agent_name: str) -> None:
        super().__init__(f"Unknown agent: {agent_name}", details={"agent": agent_name})
        self.agent_name = agent_name

    def __str__(self) -> str:
        return self.message


class RunNotFoundError(InvoiceReaderError, KeyError):
    code = "E3002"

    def __init__(self, document_id: str) -> None:
        super().__init__(
            f"No orchestration run stored for document {document_id}",
            details={"document_id": document_id},
        )
        self.document_id = document_id

    def __str__(self) -> str:
        return self.message
