"""Entrypoint for the bulk orchestrator HTTP server."""

from __future__ import annotations

from typing import Mapping

from bulk_orchestrator import __version__
from bulk_orchestrator.app import build_app_context
from bulk_orchestrator.config import load_settings
from bulk_orchestrator.logging_utils import configure_logging, get_logger
from bulk_orchestrator.models import OperationType
from bulk_orchestrator.orchestrator import ApplyFn


def run_server(apply_fns: Mapping[OperationType | str, ApplyFn]) -> None:
    """Serve the orchestrator over HTTP with the given per-type apply functions."""
    settings = load_settings()
    configure_logging()
    logger = get_logger(__name__)

    from bulk_orchestrator.transport.http_app import create_http_app

    try:
        import uvicorn
    except ImportError as exc:
        raise RuntimeError("uvicorn is required to run the HTTP server") from exc

    context = build_app_context(apply_fns, settings)
    app = create_http_app(context)
    logger.info(
        "Starting bulk orchestrator v%s on %s:%d (storage=%s)",
        __version__,
        settings.server.host,
        settings.server.port,
        settings.storage.backend,
    )
    uvicorn.run(
        app,
        host=settings.server.host,
        port=settings.server.port,
        ws="none",
        log_config=None,
    )
