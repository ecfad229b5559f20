import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from alertwatch.core.settings import settings
from alertwatch.db.session import dispose_engine, ensure_engine, init_db
from alertwatch.integrations.slack import SlackSender
from alertwatch.integrations.telegram import TelegramSender
from alertwatch.middleware.logging import RequestLogMiddleware
from alertwatch.middleware.rate_limit import RateLimitMiddleware
from alertwatch.rate_limit import RateLimiter
from alertwatch.routers.health import router as health_router
from alertwatch.routers.notification_channels import router as channels_router
from alertwatch.services.alert_monitor import AlertMonitor
from alertwatch.services.cache import close_cache, get_cache
from alertwatch.services.notifications import NotificationRouter

logger = logging.getLogger(__name__)

app = FastAPI(title="Alertwatch – Alert Monitor & Notifications")


def _limiter() -> RateLimiter:
    limiter = getattr(app.state, "limiter", None)
    return limiter if limiter is not None else RateLimiter(get_cache())


app.add_middleware(RateLimitMiddleware, limiter_factory=_limiter, enabled=settings.RATE_LIMIT_ENABLED)
app.add_middleware(RequestLogMiddleware)


@app.exception_handler(Exception)
async def all_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"ok": False, "error": type(exc).__name__})


@app.on_event("startup")
async def on_startup() -> None:
    await init_db()
    cache = get_cache()
    app.state.cache = cache
    app.state.limiter = RateLimiter(cache)

    sessions = ensure_engine()
    app.state.senders = [SlackSender(), TelegramSender()]
    app.state.notifier = NotificationRouter(sessions, app.state.senders)

    app.state.monitor = None
    if settings.ALERT_MONITOR_ENABLED:
        monitor = AlertMonitor(sessions, cache, app.state.notifier)
        monitor.start()
        app.state.monitor = monitor
    else:
        logger.info("Alert Monitor Job disabled (ALERT_MONITOR_ENABLED=0)")


@app.on_event("shutdown")
async def on_shutdown() -> None:
    monitor = getattr(app.state, "monitor", None)
    if monitor is not None:
        await monitor.stop()
    for sender in getattr(app.state, "senders", []):
        await sender.aclose()
    await close_cache()
    await dispose_engine()


app.include_router(health_router)
app.include_router(channels_router)

# Expose /metrics for Prometheus
Instrumentator().instrument(app).expose(app)
