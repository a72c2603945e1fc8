"""Programmatic uvicorn entry point for capfilter.

Reads host and port from the loaded config (127.0.0.1:8081 by default) and
starts uvicorn with conservative connection limits.

Usage:
    python -m capfilter.run
    capfilter                 # via pyproject.toml [project.scripts]
"""

from __future__ import annotations

import uvicorn

from capfilter.config import load_config
from capfilter.constants import POOL_MAX_CONNECTIONS

# Matches the upstream connection pool so every admitted request has a slot.
UVICORN_LIMIT_CONCURRENCY: int = POOL_MAX_CONNECTIONS

UVICORN_BACKLOG: int = 50

UVICORN_TIMEOUT_KEEP_ALIVE: int = 5


def main() -> None:
    """Start the capfilter proxy.

    Raises:
        SystemExit: Propagated from load_config() on config errors.
    """
    config = load_config()

    uvicorn.run(
        "capfilter.main:app",
        host=config.proxy.host,
        port=config.proxy.port,
        limit_concurrency=UVICORN_LIMIT_CONCURRENCY,
        backlog=UVICORN_BACKLOG,
        timeout_keep_alive=UVICORN_TIMEOUT_KEEP_ALIVE,
    )


if __name__ == "__main__":
    main()
