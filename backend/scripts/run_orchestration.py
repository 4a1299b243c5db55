#!/usr/bin/env python3
"""InvoiceReader Orchestration Runner.

Runs invoice documents through the 3-stage multi-agent orchestration,
one after another, and writes each OrchestrationRun as JSON.

Usage:
    # Process single files
    python -m scripts.run_orchestration invoices/factura_1A3938.pdf scan.jpg

    # Every supported file in a directory
    python -m scripts.run_orchestration invoices/

    # Dry run (list documents only)
    python -m scripts.run_orchestration invoices/ --dry-run

    # Specific provider/model
    python -m scripts.run_orchestration invoices/ --provider google --model gemini-2.5-flash
"""

from __future__ import annotations

import argparse
import asyncio
import mimetypes
import sys
from pathlib import Path

# Add backend to path for imports
_backend = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_backend))

# Load .env before importing app modules
from dotenv import load_dotenv
load_dotenv(_backend / ".env")

import structlog

from invoice_reader.core.config import settings
from invoice_reader.core.logging import configure_logging
from invoice_reader.core.services import build_services
from invoice_reader.modules.extraction.exceptions import BackendNotConfiguredError
from invoice_reader.modules.extraction.pdf_service import IMAGE_MIME_TYPES, PDF_MIME_TYPES
from invoice_reader.modules.extraction.router import run_status

logger = structlog.get_logger()

DEFAULT_OUTPUT_DIR = _backend / "output" / "orchestration_runs"
SUPPORTED_MIME_TYPES = PDF_MIME_TYPES | IMAGE_MIME_TYPES


def _mime_type(path: Path) -> str:
    return (mimetypes.guess_type(path.name)[0] or "").lower()


def discover_documents(paths: list[Path]) -> list[Path]:
    """Expand directories and keep only supported document types, sorted."""
    found: list[Path] = []
    for path in paths:
        if path.is_dir():
            candidates = sorted(p for p in path.rglob("*") if p.is_file())
        elif path.is_file():
            candidates = [path]
        else:
            logger.warning("Path not found, skipping", path=str(path))
            continue
        found.extend(p for p in candidates if _mime_type(p) in SUPPORTED_MIME_TYPES)
    return found


async def process_documents(
    documents: list[Path],
    output_dir: Path,
    provider: str | None,
    model: str | None,
) -> int:
    services = build_services(provider=provider, model=model)
    output_dir.mkdir(parents=True, exist_ok=True)
    threshold = services.registry.get_system_config().manual_validation_threshold
    failures = 0

    for i, path in enumerate(documents, 1):
        document_id = path.stem
        print(f"[{i}/{len(documents)}] {path.name}")
        try:
            run = await asyncio.wait_for(
                services.orchestrator.run(
                    document_id=document_id,
                    file_bytes=path.read_bytes(),
                    mime_type=_mime_type(path),
                    file_name=path.name,
                ),
                timeout=settings.run_timeout_seconds,
            )
        except asyncio.TimeoutError:
            failures += 1
            logger.error("Run abandoned after timeout", file=path.name, timeout_s=settings.run_timeout_seconds)
            continue

        services.store.save(run)
        out_path = output_dir / f"{document_id}.json"
        out_path.write_text(run.model_dump_json(indent=2), encoding="utf-8")
        print(
            f"    -> {run_status(run, threshold)} | confidence {run.final_confidence} | "
            f"{run.metrics.iterations_used} iteration(s) | {run.metrics.total_time_ms} ms"
        )

    stats = services.recorder.system_stats()
    print(f"\n{'='*60}")
    print(f"  ORCHESTRATION SUMMARY")
    print(f"{'='*60}")
    for key, val in stats.model_dump().items():
        print(f"  {key}: {val}")
    print(f"  failures: {failures}")
    print(f"{'='*60}\n")
    return failures


def main() -> None:
    parser = argparse.ArgumentParser(description="InvoiceReader multi-agent orchestration")
    parser.add_argument("paths", nargs="+", type=Path,
                        help="Invoice files or directories (PDF, JPEG, PNG, GIF, WEBP)")
    parser.add_argument("--output-dir", type=Path, default=DEFAULT_OUTPUT_DIR,
                        help="Where to write one JSON file per run")
    parser.add_argument("--provider", type=str, default=None,
                        help="Completion provider: anthropic | google")
    parser.add_argument("--model", type=str, default=None,
                        help="Model override (defaults per provider)")
    parser.add_argument("--dry-run", action="store_true",
                        help="List the documents that would be processed")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    args = parser.parse_args()

    configure_logging(args.debug or settings.debug)

    documents = discover_documents(args.paths)
    print(f"\n{'='*60}")
    print(f"  INVOICEREADER ORCHESTRATION")
    print(f"{'='*60}")
    print(f"  Documents:     {len(documents)}")
    print(f"  Output dir:    {args.output_dir}")
    print(f"  Provider:      {args.provider or settings.llm_provider}")
    print(f"  Model:         {args.model or settings.llm_model or 'default'}")
    print(f"{'='*60}\n")

    if not documents:
        print("No supported documents found.")
        return

    if args.dry_run:
        print("--- DRY RUN ---")
        for path in documents:
            print(f"  {path} ({_mime_type(path)}, {path.stat().st_size / 1024:.0f} KB)")
        return

    try:
        failures = asyncio.run(
            process_documents(documents, args.output_dir, args.provider, args.model)
        )
    except BackendNotConfiguredError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        sys.exit(2)

    if failures:
        sys.exit(1)


if __name__ == "__main__":
    main()
