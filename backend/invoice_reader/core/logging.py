"""structlog setup shared by the API and the CLI scripts."""

from __future__ import annotations

import logging

import structlog


def configure_logging(debug: bool = False, *, json_output: bool = False) -> None:
    """Install the structlog processor chain.

    Console rendering by default; ``json_output=True`` for log shipping.
    ``contextvars`` are merged first so values bound with
    ``structlog.contextvars.bind_contextvars`` (e.g. ``document_id``) show up
    on every line emitted during a run.
    """
    level = logging.DEBUG if debug else logging.INFO
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=False,
    )
