"""InvoiceReader completion backends - one async ``complete()`` per LLM provider.

The orchestration core only sees the ``CompletionBackend`` protocol:

    await backend.complete(parts, max_tokens=..., temperature=...) -> str

Providers supported:
  - anthropic (Claude via direct API or Vertex AI)
  - google (Gemini via google-genai)

Responses are expected to be JSON text, possibly fenced or malformed; parsing
happens in the agent invoker, not here.
"""

from __future__ import annotations

import base64
import os
from typing import Any, Protocol, Union

import structlog
from pydantic import BaseModel, Field

from invoice_reader.core.config import Settings, settings
from invoice_reader.modules.extraction.exceptions import (
    BackendCallError,
    BackendNotConfiguredError,
)

logger = structlog.get_logger()

# Default models per provider
DEFAULT_MODELS: dict[str, str] = {
    "anthropic": "claude-sonnet-4-20250514",
    "google": "gemini-2.5-flash",
}


# ---------------------------------------------------------------------------
# Prompt parts
# ---------------------------------------------------------------------------


class TextPart(BaseModel):
    text: str


class ImagePart(BaseModel):
    data: bytes = Field(repr=False)
    media_type: str = "image/jpeg"


PromptPart = Union[TextPart, ImagePart]


def render_prompt_text(parts: list[PromptPart]) -> str:
    """Printable form of a prompt for the audit trail (images summarised)."""
    rendered: list[str] = []
    for part in parts:
        if isinstance(part, TextPart):
            rendered.append(part.text)
        else:
            rendered.append(f"[image {part.media_type}, {len(part.data)} bytes]")
    return "\n\n".join(rendered)


class CompletionBackend(Protocol):
    provider: str
    model: str

    def ensure_ready(self) -> None:
        """Raise BackendNotConfiguredError if the backend cannot be called."""

    async def complete(
        self,
        parts: list[PromptPart],
        *,
        max_tokens: int,
        temperature: float,
    ) -> str: ...


# ---------------------------------------------------------------------------
# Anthropic (direct or Vertex)
# ---------------------------------------------------------------------------


class AnthropicBackend:
    provider = "anthropic"

    def __init__(self, model: str | None = None, config: Settings | None = None) -> None:
        self.settings = config or settings
        self.model = model or self.settings.llm_model or DEFAULT_MODELS["anthropic"]
        self._client: Any = None
        self._is_vertex = bool(self.settings.vertex_project_id)

    def ensure_ready(self) -> None:
        if not self.settings.anthropic_api_key and not self.settings.vertex_project_id:
            raise BackendNotConfiguredError(
                "Anthropic backend is not configured: set ANTHROPIC_API_KEY, "
                "or VERTEX_PROJECT_ID to route through Vertex AI",
                details={"provider": self.provider},
            )

    def _get_client(self) -> Any:
        """Get or create the async Anthropic client (direct or Vertex AI)."""
        if self._client is None:
            import anthropic

            if self._is_vertex:
                if self.settings.vertex_credentials_path:
                    os.environ.setdefault(
                        "GOOGLE_APPLICATION_CREDENTIALS",
                        self.settings.vertex_credentials_path,
                    )
                self._client = anthropic.AsyncAnthropicVertex(
                    project_id=self.settings.vertex_project_id,
                    region=self.settings.vertex_location,
                )
            else:
                self._client = anthropic.AsyncAnthropic(api_key=self.settings.anthropic_api_key)
        return self._client

    @staticmethod
    def _to_content(parts: list[PromptPart]) -> list[dict[str, Any]]:
        content: list[dict[str, Any]] = []
        for part in parts:
            if isinstance(part, ImagePart):
                content.append({
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": part.media_type,
                        "data": base64.b64encode(part.data).decode("ascii"),
                    },
                })
            else:
                content.append({"type": "text", "text": part.text})
        return content

    async def complete(
        self,
        parts: list[PromptPart],
        *,
        max_tokens: int,
        temperature: float,
    ) -> str:
        import anthropic

        client = self._get_client()
        try:
            response = await client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=[{"role": "user", "content": self._to_content(parts)}],
            )
        except anthropic.APIError as e:
            raise BackendCallError(
                f"Anthropic call failed: {e}",
                details={"provider": self.provider, "model": self.model},
            ) from e

        usage = response.usage
        logger.debug(
            "Anthropic call",
            model=self.model,
            input_tokens=getattr(usage, "input_tokens", 0) or 0,
            output_tokens=getattr(usage, "output_tokens", 0) or 0,
        )
        return "".join(block.text for block in response.content if block.type == "text")


# ---------------------------------------------------------------------------
# Google Gemini
# ---------------------------------------------------------------------------


class GeminiBackend:
    provider = "google"

    def __init__(self, model: str | None = None, config: Settings | None = None) -> None:
        self.settings = config or settings
        self.model = model or self.settings.llm_model or DEFAULT_MODELS["google"]
        self._client: Any = None

    def ensure_ready(self) -> None:
        if not self.settings.google_ai_api_key:
            raise BackendNotConfiguredError(
                "Gemini backend is not configured: set GOOGLE_AI_API_KEY",
                details={"provider": self.provider},
            )

    def _get_client(self) -> Any:
        if self._client is None:
            from google import genai
            from google.genai import types as genai_types

            self._client = genai.Client(
                api_key=self.settings.google_ai_api_key,
                http_options=genai_types.HttpOptions(timeout=120_000),
            )
        return self._client

    async def complete(
        self,
        parts: list[PromptPart],
        *,
        max_tokens: int,
        temperature: float,
    ) -> str:
        from google.genai import errors as genai_errors
        from google.genai import types

        contents: list[Any] = []
        for part in parts:
            if isinstance(part, ImagePart):
                contents.append(types.Part.from_bytes(data=part.data, mime_type=part.media_type))
            else:
                contents.append(part.text)

        client = self._get_client()
        try:
            response = await client.aio.models.generate_content(
                model=self.model,
                contents=contents,
                config=types.GenerateContentConfig(
                    temperature=temperature,
                    max_output_tokens=max_tokens,
                    response_mime_type="application/json",
                ),
            )
        except genai_errors.APIError as e:
            raise BackendCallError(
                f"Gemini call failed: {e}",
                details={"provider": self.provider, "model": self.model},
            ) from e

        usage = response.usage_metadata
        logger.debug(
            "Gemini call",
            model=self.model,
            input_tokens=getattr(usage, "prompt_token_count", 0) or 0,
            output_tokens=getattr(usage, "candidates_token_count", 0) or 0,
        )
        return response.text or ""


def get_completion_backend(
    provider: str | None = None,
    model: str | None = None,
) -> CompletionBackend:
    """Build the backend for ``provider`` (defaults to ``settings.llm_provider``)."""
    provider = (provider or settings.llm_provider).lower()
    if provider == "anthropic":
        return AnthropicBackend(model=model)
    if provider == "google":
        return GeminiBackend(model=model)
    raise BackendNotConfiguredError(
        f"Unsupported completion provider: {provider!r} (expected 'anthropic' or 'google')",
        details={"provider": provider},
    )
