"""
tiercache diagnostics - FastAPI application
Read-only cache visibility plus cache-clear commands for operators
"""
from typing import Any, Dict

from fastapi import Depends, FastAPI, HTTPException, Query

from tiercache import __version__
from tiercache.cache import CacheOrchestrator, get_orchestrator

APP_NAME = "tiercache"

app = FastAPI(
    title=APP_NAME,
    description="Diagnostics and cache management for the tiered cache",
    version=__version__,
)


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/version")
def version_info():
    """Version information endpoint."""
    return {"name": APP_NAME, "version": __version__}


@app.get("/cache/stats")
def cache_stats(orchestrator: CacheOrchestrator = Depends(get_orchestrator)):
    """Get cache statistics."""
    return orchestrator.get_stats()


@app.get("/cache/diagnostics")
def cache_diagnostics(orchestrator: CacheOrchestrator = Depends(get_orchestrator)):
    """Per-layer sizes, held locks and counters."""
    return orchestrator.get_diagnostics()


@app.post("/cache/clear")
def clear_cache(
    include_fallback: bool = Query(default=False, description="Also drop last-known-good data"),
    orchestrator: CacheOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """
    Clear the primary caches.

    Fallback data is kept unless include_fallback is set, so upstream
    outages right after a clear still serve stale data.
    """
    removed = orchestrator.invalidate_all(include_fallback=include_fallback)
    return {"removed": removed, "include_fallback": include_fallback}


@app.post("/cache/invalidate")
def invalidate_prefix(
    prefix: str = Query(..., min_length=1, description="Key prefix, e.g. a service name"),
    include_fallback: bool = Query(default=False),
    orchestrator: CacheOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Invalidate every key starting with prefix."""
    removed = orchestrator.invalidate_class(prefix, include_fallback=include_fallback)
    return {"prefix": prefix, "removed": removed}


@app.delete("/cache/keys/{key:path}")
def invalidate_key(
    key: str,
    include_fallback: bool = Query(default=False),
    orchestrator: CacheOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Invalidate a single key."""
    if not orchestrator.invalidate(key, include_fallback=include_fallback):
        raise HTTPException(status_code=404, detail=f"Key not cached: {key}")
    return {"key": key, "removed": True}
