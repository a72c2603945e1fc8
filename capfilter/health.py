"""Health endpoints for capfilter.

Implements:
  GET /health         — liveness (503 before ready, 200 after)
  GET /health/ready   — readiness, including an allow-list database check
  GET /health/filter  — capability filter counters

All three share the ``app.state.ready`` gate established by the lifespan.

The allow-list check never turns readiness red: the filter fails open when the
store is unavailable, so the service can still answer /metadata. The check
result is reported so operators can see that filtering is degraded.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Request

from capfilter.allowlist.store import AllowlistStore
from capfilter.config import Config
from capfilter.utils.metrics import FilterMetrics

router = APIRouter(tags=["health"])

_STARTING_DETAIL = {
    "status": "starting",
    "message": "capfilter is starting up",
}


def _require_ready(request: Request) -> None:
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(status_code=503, detail=_STARTING_DETAIL)


# ─── /health ──────────────────────────────────────────────────────────────────


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    """Liveness check.

    Response body (200):
        {
          "status": "ok",
          "proxy": "running",
          "filter_enabled": true,
          "upstream": "http://hapi:8080/fhir",
          "base_path": "/fhir",
          "allowlist_db": "/app/instance/fhir_ig.db"
        }
    """
    _require_ready(request)
    config: Config = request.app.state.config
    return {
        "status": "ok",
        "proxy": "running",
        "filter_enabled": config.filter.enabled,
        "upstream": config.upstream.base_url,
        "base_path": config.proxy.base_path or "/",
        "allowlist_db": config.allowlist.db_path,
    }


# ─── /health/ready ────────────────────────────────────────────────────────────


@router.get("/health/ready")
async def health_ready(request: Request) -> dict[str, Any]:
    """Readiness, including a read of the allow-list database.

    ``status`` is ``"degraded"`` when filtering is enabled but the store cannot
    be read (the filter is failing open). With filtering disabled the store is
    still checked and reported, but never degrades the status.
    """
    _require_ready(request)
    config: Config = request.app.state.config
    store: Optional[AllowlistStore] = getattr(request.app.state, "allowlist_store", None)

    if store is None:
        allowlist: dict[str, Any] = {"ok": False, "entry_count": 0, "error": "store not initialised"}
    else:
        health = await store.check()
        allowlist = {"ok": health.ok, "entry_count": health.entry_count, "error": health.error}

    degraded = config.filter.enabled and not allowlist["ok"]
    return {
        "status": "degraded" if degraded else "ok",
        "filter_enabled": config.filter.enabled,
        "allowlist": allowlist,
    }


# ─── /health/filter ───────────────────────────────────────────────────────────


@router.get("/health/filter")
async def health_filter(request: Request) -> dict[str, Any]:
    """Capability filter counters since startup.

    Response body (200):
        {
          "filter_enabled": true,
          "requests_total": 12,
          "requests_filtered": 10,
          "passthrough": {"disabled": 0, "empty_allowlist": 2, "unexpected_shape": 0},
          "entries_removed": 1460,
          "store_errors": 2,
          "load_avg_ms": 1.8,
          "load_p99_ms": 4.2
        }
    """
    _require_ready(request)
    config: Config = request.app.state.config
    metrics: Optional[FilterMetrics] = getattr(request.app.state, "metrics", None)
    snapshot = (metrics or FilterMetrics()).snapshot()
    return {"filter_enabled": config.filter.enabled, **snapshot.as_dict()}
