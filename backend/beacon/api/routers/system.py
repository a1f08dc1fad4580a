from __future__ import annotations

import sqlite3
import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from beacon.api.services.runtime import get_store
from beacon.config import settings
from beacon.version import APP_VERSION


router = APIRouter()

_READY_CACHE_TTL_SECONDS = 5.0
_ready_cache: dict[str, object] = {
    "ts": 0.0,
    "database_url": None,
    "ok": None,
    "payload": None,
}


def _database_backend_label(database_url: str) -> str:
    url = (database_url or "").strip().lower()
    if url.startswith("sqlite:///"):
        return "sqlite"
    return "unknown"


def _cache_set(ok: bool, payload: dict[str, object]) -> None:
    _ready_cache["ts"] = time.time()
    _ready_cache["database_url"] = settings.database_url
    _ready_cache["ok"] = ok
    _ready_cache["payload"] = payload


def _cache_get() -> dict[str, object] | None:
    if _ready_cache.get("database_url") != settings.database_url:
        return None
    if time.time() - float(_ready_cache.get("ts") or 0.0) > _READY_CACHE_TTL_SECONDS:
        return None
    payload = _ready_cache.get("payload")
    if isinstance(payload, dict):
        return payload
    return None


@router.get("/")
def root() -> dict[str, str]:
    return {"service": "beacon-export-gate", "status": "running", "version": APP_VERSION}


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok", "environment": settings.app_env}


@router.get("/ready", response_model=None)
def ready() -> JSONResponse:
    cached = _cache_get()
    if cached is not None:
        ok = bool(_ready_cache.get("ok"))
        return JSONResponse(status_code=200 if ok else 503, content=cached)

    backend = _database_backend_label(settings.database_url)
    payload: dict[str, object] = {
        "status": "ready",
        "environment": settings.app_env,
        "checks": {},
    }
    try:
        get_store().ping()
        payload["checks"]["db"] = {"ok": True, "backend": backend}
    except (sqlite3.Error, OSError, RuntimeError) as exc:
        payload["status"] = "not_ready"
        payload["checks"]["db"] = {"ok": False, "backend": backend, "error": str(exc)}
        _cache_set(False, payload)
        return JSONResponse(status_code=503, content=payload)

    _cache_set(True, payload)
    return JSONResponse(status_code=200, content=payload)
