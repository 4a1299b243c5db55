from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from invoice_reader.core.config import settings
from invoice_reader.core.logging import configure_logging
from invoice_reader.core.services import build_services
from invoice_reader.modules.extraction.router import router as orchestration_router

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    configure_logging(settings.debug)
    app.state.services = build_services()
    logger.info(
        "Starting InvoiceReader API",
        provider=settings.llm_provider,
        agents=len(app.state.services.registry.list()),
    )
    yield
    logger.info("Shutting down InvoiceReader API")


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/api/docs",
    openapi_url="/api/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(orchestration_router, prefix=settings.api_prefix)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}
