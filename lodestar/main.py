"""Lodestar main entry point.

Builds the orchestrator, wires it into the FastAPI app and serves it.
"""

from __future__ import annotations

import asyncio
import os
import signal
import threading

import uvicorn

from lodestar.core.config import get_settings
from lodestar.core.events import EventBus
from lodestar.core.logging import get_logger, setup_logging
from lodestar.core.orchestrator import WorkflowOrchestrator
from lodestar.web.server import create_app


def main():
    """Entry point: validates the repository sandbox, then starts the web server."""
    setup_logging()
    logger = get_logger("main")
    settings = get_settings()

    logger.info("=" * 60)
    logger.info("Lodestar starting")
    logger.info("=" * 60)

    if not settings.openai_api_key.strip() and not settings.anthropic_api_key.strip():
        logger.error("Neither OPENAI_API_KEY nor ANTHROPIC_API_KEY is set - stages will fail unless using Ollama")
    if not settings.api_token:
        logger.warning("API_TOKEN not set - any bearer token is accepted")
    if not settings.repo_url:
        logger.info("REPO_URL not set - repository analysis needs per-session settings")

    orchestrator = WorkflowOrchestrator(settings=settings, events=EventBus())
    # Fails fast (RepositorySafetyViolation) when the repositories root overlaps this tree.
    logger.info("Repositories root: %s", orchestrator.provisioner.root)

    app = create_app(orchestrator)
    logger.info("Web API: http://%s:%d", settings.web_host, settings.web_port)

    config = uvicorn.Config(
        app,
        host=settings.web_host,
        port=settings.web_port,
        log_level=settings.log_level.lower(),
        reload=False,
    )
    server = uvicorn.Server(config)

    _ctrl_c_count = 0

    def _force_exit_after(seconds: float) -> None:
        threading.Event().wait(seconds)
        logger.warning("Grace period expired - forcing exit")
        os._exit(1)

    def _handle_signal(signum, frame):
        nonlocal _ctrl_c_count
        _ctrl_c_count += 1
        if _ctrl_c_count == 1:
            logger.info("Shutdown requested - stopping gracefully (press again to force)")
            threading.Thread(target=_force_exit_after, args=(15,), daemon=True).start()
            server.should_exit = True
        else:
            logger.warning("Second interrupt - forcing immediate exit")
            os._exit(1)

    signal.signal(signal.SIGINT, _handle_signal)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _handle_signal)

    try:
        asyncio.run(server.serve())
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    main()
