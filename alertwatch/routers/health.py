from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from alertwatch.core.settings import HealthStatus, settings
from alertwatch.services.cache import get_cache

router = APIRouter(tags=["health"])


@router.get("/health")
def health():
    return {"ok": True}


@router.get("/health/ready")
async def ready(request: Request):
    warnings: list[str] = []
    if not settings.lock_ttl_valid:
        warnings.append("ALERT_MONITOR_LOCK_TTL_SEC should exceed ALERT_MONITOR_INTERVAL_SEC")
    cache = getattr(request.app.state, "cache", None) or get_cache()
    try:
        await cache.ping()
        cache_state = "ok"
    except Exception as e:
        cache_state = f"error: {e.__class__.__name__}"
    status = HealthStatus(ok=cache_state == "ok", warnings=warnings, cache=cache_state)
    return JSONResponse(status.model_dump(), status_code=200 if status.ok else 503)
