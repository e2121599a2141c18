"""ASGI entry point.

``uvicorn main:app`` serves the API directly; ``python main.py`` and
``perpsim serve`` go through ``serve`` below.
"""
from __future__ import annotations

import logging
import socket
import sys

import uvicorn

from config import settings
from perpsim.app_factory import create_app
from perpsim.backtesting.dataset import list_optimized_models
from perpsim.data.database import initialize_database
from perpsim.signals.signal_manager import STRATEGIES

logger = logging.getLogger(__name__)
app = create_app()


def find_free_port(host: str, preferred: int, attempts: int = 20) -> int:
    """First bindable port in ``preferred .. preferred + attempts``."""
    for port in range(preferred, preferred + attempts + 1):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind((host, port))
            except OSError:
                continue
        if port != preferred:
            logger.warning("Port %d is busy; serving on %d", preferred, port)
        return port
    raise RuntimeError(f"No free port between {preferred} and {preferred + attempts}")


def serve(host: str | None = None, port: int | None = None) -> None:
    initialize_database()
    models = list_optimized_models(settings.data_dir / "models")
    logger.info(
        "Strategies: %s; optimized parameter models: %s",
        ", ".join(sorted(STRATEGIES)),
        ", ".join(m["name"] for m in models) or "none",
    )

    host = host or settings.app_host
    port = find_free_port(host, port or settings.app_port)
    logger.info("Starting %s on http://%s:%d", settings.app_name, host, port)
    uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    from perpsim.cli import main as cli_main

    cli_main(["serve", *sys.argv[1:]])
