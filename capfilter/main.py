"""capfilter FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app() — testable application factory
  - lifespan     — @asynccontextmanager startup/shutdown sequence
  - /            — service discovery root
  - app = create_app() — module-level instance for uvicorn

Startup sequence:
  1. load_config()           → app.state.config
  2. FilterMetrics()         → app.state.metrics
  3. create_http_client()    → app.state.http_client
  4. AllowlistStore(...)     → app.state.allowlist_store
  5. UpstreamFhirHost(...)   → app.state.host
  6. CapabilityFilter(...)   → app.state.capability_filter, registered with the host
  7. app.state.ready = True

Shutdown (reverse):
  app.state.ready = False → close HTTP client

Run with:
  uvicorn capfilter.main:app --host 127.0.0.1 --port 8081
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.routing import APIRouter

from capfilter.allowlist.store import AllowlistStore
from capfilter.capability.filter import CapabilityFilter
from capfilter.config import Config, load_config
from capfilter.constants import ENV_WHITELIST_ENABLED
from capfilter.health import router as health_router
from capfilter.host import UpstreamFhirHost, create_http_client
from capfilter.proxy.engine import router as engine_router
from capfilter.proxy.middleware import RequestIdMiddleware
from capfilter.utils.logger import configure_logging, get_logger
from capfilter.utils.metrics import FilterMetrics

# ─── Logging Setup ────────────────────────────────────────────────────────────
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if not DEBUG else "DEBUG")
JSON_LOGS = os.getenv("JSON_LOGS", "true").lower() == "true"

configure_logging(log_level=LOG_LEVEL, json_output=JSON_LOGS)
logger = get_logger(__name__)


root_router = APIRouter(tags=["root"])


# ─── Dependencies ─────────────────────────────────────────────────────────────


async def require_ready(request: Request) -> None:
    """FastAPI dependency: raises HTTP 503 if app.state.ready is not True."""
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(
            status_code=503,
            detail={
                "status": "starting",
                "message": "capfilter is starting up",
            },
        )


# ─── Root Endpoint ────────────────────────────────────────────────────────────


@root_router.get("/")
async def root(request: Request) -> dict[str, str]:
    """Service identity / discovery."""
    config = getattr(request.app.state, "config", None)
    base_path = config.proxy.base_path if config is not None else ""
    return {
        "service": "capfilter",
        "description": "Allow-list filter for FHIR CapabilityStatements",
        "metadata": f"{base_path}/metadata",
        "health": "/health",
    }


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan — startup and shutdown sequence."""
    logger.info("capfilter starting up...")

    # load_config() raises SystemExit on an invalid file, before ready=True.
    config: Config = load_config()
    app.state.config = config

    metrics = FilterMetrics()
    app.state.metrics = metrics

    http_client: httpx.AsyncClient = create_http_client(config.upstream.timeout_s)
    app.state.http_client = http_client
    logger.info("HTTP upstream client created", upstream=config.upstream.base_url)

    store = AllowlistStore(
        db_path=config.allowlist.db_path,
        table=config.allowlist.table,
        query_timeout_s=config.allowlist.query_timeout_s,
        metrics=metrics,
    )
    app.state.allowlist_store = store

    host = UpstreamFhirHost(config.upstream.base_url, http_client)
    app.state.host = host

    # The toggle is resolved here, once; the filter never reads the environment.
    capability_filter = CapabilityFilter(
        host=host,
        store=store,
        enabled=config.filter.enabled,
        metrics=metrics,
    )
    host.register_filter(capability_filter)
    app.state.capability_filter = capability_filter
    logger.info(
        "Capability filter configured",
        enabled=config.filter.enabled,
        toggle_env=ENV_WHITELIST_ENABLED,
        allowlist_db=store.db_path,
        allowlist_table=store.table,
    )

    app.state.ready = True
    logger.info("capfilter ready", base_path=config.proxy.base_path or "/")

    yield

    logger.info("capfilter shutting down...")
    app.state.ready = False

    try:
        await http_client.aclose()
        logger.info("HTTP upstream client closed")
    except Exception as exc:  # noqa: BLE001
        logger.warning("HTTP upstream client close error (non-fatal)", error=str(exc))

    logger.info("capfilter shutdown complete")


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app() -> FastAPI:
    """Create and configure the capfilter FastAPI application.

    Call this directly in tests to get an isolated app instance.
    """
    _debug = os.getenv("DEBUG", "false").lower() == "true"

    application = FastAPI(
        title="capfilter",
        description="Allow-list filter for FHIR CapabilityStatements",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if _debug else None,
        redoc_url="/redoc" if _debug else None,
        openapi_url="/openapi.json" if _debug else None,
    )

    # /health returns 503 for any request that arrives before startup completes.
    application.state.ready = False

    application.add_middleware(RequestIdMiddleware)

    application.include_router(root_router)
    application.include_router(health_router)
    # Catch-all; must be included last.
    application.include_router(engine_router, dependencies=[Depends(require_ready)])

    @application.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request, exc: HTTPException
    ) -> JSONResponse:
        logger.warning(
            "HTTP exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=str(request.url.path),
        )
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=500, content={"error": "Internal server error"}
        )

    return application


app = create_app()
