"""Periodic alert evaluation.

Each tick takes the ``job:alert-monitor`` lock (skipping the tick if another
instance holds it or the cache is down), loads the active alerts with their
tickers in one bulk read, evaluates each one, and for every match marks the
alert triggered *before* handing it to the notification router. A delivery
failure therefore never re-arms an alert: at most one notification attempt
per trigger.
"""
from __future__ import annotations

import asyncio
import datetime as dt
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alertwatch.core.settings import settings
from alertwatch.db.models import Alert
from alertwatch.obs import new_request_id
from alertwatch.schemas.notifications import EXPLANATION_FALLBACK, AlertTriggeredContext
from alertwatch.services import alert_store
from alertwatch.services.cache import SharedCache
from alertwatch.services.distributed_lock import JobLockOutcome, job_lock
from alertwatch.services.evaluator import (
    MarketSnapshot,
    describe_condition,
    evaluate,
    normalize_operator,
    parse_condition,
)
from alertwatch.services.explain import explain_alert
from alertwatch.services.metrics import (
    alert_monitor_skip_escalations_total,
    alert_monitor_tick_latency,
    alert_monitor_ticks_total,
    alerts_triggered_total,
)
from alertwatch.services.notifications import NotificationRouter
from alertwatch.services.utils import run_periodic

logger = logging.getLogger(__name__)

JOB_NAME = "alert-monitor"

Explainer = Callable[[str, str, Decimal, Optional[Decimal]], Awaitable[Optional[str]]]


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


@dataclass
class TickResult:
    skipped: Optional[str] = None  # lock outcome when the tick did not run
    checked: int = 0
    triggered: int = 0
    failed: int = 0


class AlertMonitor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: SharedCache,
        router: NotificationRouter,
        *,
        interval: Optional[float] = None,
        lock_ttl: Optional[float] = None,
        explainer: Optional[Explainer] = explain_alert,
        explanation_timeout: Optional[float] = None,
        escalate_after: Optional[int] = None,
        lock_enabled: Optional[bool] = None,
        clock: Callable[[], dt.datetime] = _utcnow,
    ) -> None:
        self.interval = interval if interval is not None else settings.ALERT_MONITOR_INTERVAL_SEC
        self.lock_ttl = lock_ttl if lock_ttl is not None else settings.ALERT_MONITOR_LOCK_TTL_SEC
        if self.lock_ttl <= self.interval:
            raise ValueError("lock ttl must be longer than the tick interval")
        self.explanation_timeout = (
            explanation_timeout if explanation_timeout is not None else settings.ALERT_EXPLANATION_TIMEOUT_SEC
        )
        self.escalate_after = escalate_after if escalate_after is not None else settings.ALERT_MONITOR_SKIP_ESCALATE_AFTER
        self._lock_enabled = lock_enabled
        self._session_factory = session_factory
        self._cache = cache
        self._router = router
        self._explainer = explainer
        self._clock = clock
        self._lock_errors = 0
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    # ---------- lifecycle ----------
    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stop.clear()
            self._task = asyncio.create_task(self.run(), name=JOB_NAME)
        return self._task

    async def stop(self, timeout: float = 10.0) -> None:
        """Ask the loop to finish its current tick, cancelling it after ``timeout``."""
        task, self._task = self._task, None
        if task is None:
            return
        self._stop.set()
        try:
            await asyncio.wait_for(task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("%s did not stop within %.0fs; cancelled", JOB_NAME, timeout)
        except asyncio.CancelledError:
            pass

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        if stop_event is not None:
            self._stop = stop_event
        logger.info("Alert Monitor Job started (interval=%ss, lock ttl=%ss)", self.interval, self.lock_ttl)
        try:
            await run_periodic(
                self.run_once,
                self.interval,
                stop=self._stop,
                on_error=lambda e: logger.error("Error checking alerts", exc_info=e),
            )
        except asyncio.CancelledError:
            logger.info("Alert Monitor Job cancelled")
            raise
        logger.info("Alert Monitor Job stopped")

    # ---------- one tick ----------
    async def run_once(self) -> TickResult:
        new_request_id()  # correlates this tick's delivery events
        async with job_lock(self._cache, JOB_NAME, self.lock_ttl, enabled=self._lock_enabled) as handle:
            self._note_lock_outcome(handle.outcome)
            if not handle.should_run:
                alert_monitor_ticks_total.labels(outcome=handle.outcome.value).inc()
                return TickResult(skipped=handle.outcome.value)

            start = time.perf_counter()
            result = await self._check_alerts()
            alert_monitor_tick_latency.observe(time.perf_counter() - start)
            alert_monitor_ticks_total.labels(outcome="ran").inc()
            return result

    def _note_lock_outcome(self, outcome: JobLockOutcome) -> None:
        if outcome != JobLockOutcome.ERROR:
            self._lock_errors = 0
            return
        self._lock_errors += 1
        if self._lock_errors >= self.escalate_after:
            alert_monitor_skip_escalations_total.inc()
            logger.error(
                "%s skipped %d consecutive ticks: shared cache unavailable, alerts are not being evaluated",
                JOB_NAME, self._lock_errors,
            )

    async def _check_alerts(self) -> TickResult:
        result = TickResult()
        try:
            async with self._session_factory() as session:
                alerts = await alert_store.list_active_with_tickers(session)
        except Exception:
            logger.exception("Failed to load active alerts")
            result.failed += 1
            return result

        logger.info("Checking %d active alerts", len(alerts))
        for alert in alerts:
            result.checked += 1
            try:
                status = await self._check_one(alert)
            except Exception:
                logger.exception("Error checking alert %s", alert.id)
                status = "failed"
            if status == "triggered":
                result.triggered += 1
            elif status == "failed":
                result.failed += 1
        return result

    async def _check_one(self, alert: Alert) -> str:
        if alert.ticker is None or alert.triggered_at is not None:
            return "idle"
        evaluation = evaluate(alert, MarketSnapshot.from_ticker(alert.ticker))
        if not evaluation.triggered:
            return "idle"
        return await self._trigger(alert, evaluation.current_value)

    async def _trigger(self, alert: Alert, current_value: Decimal) -> str:
        logger.info("Triggering alert %s for user %s", alert.id, alert.user_id)
        cond = parse_condition(alert.condition)
        operator = normalize_operator(cond.operator if cond else None)
        ctx = AlertTriggeredContext(
            alert=alert,
            user_id=alert.user_id,
            current_value=current_value,
            triggered_at=self._clock(),
            operator=operator,
            matched_condition=describe_condition(alert, operator),
        )

        # claim first: if this fails the alert stays active and would fire again next tick
        try:
            async with self._session_factory() as session:
                claimed = await alert_store.try_mark_triggered(session, alert.id, ctx.triggered_at)
        except Exception:
            logger.error(
                "Failed to persist triggered state for alert %s; not notifying, it may re-trigger next tick",
                alert.id, exc_info=True,
            )
            return "failed"
        if not claimed:
            logger.info("Alert %s was already triggered; skipping notification", alert.id)
            return "idle"

        alert.is_active = False
        alert.triggered_at = ctx.triggered_at
        ctx.explanation = await self._explain(alert, current_value)
        kind = alert.alert_type
        alerts_triggered_total.labels(type=kind.name.lower() if kind else str(alert.type)).inc()

        try:
            outcome = await self._router.send_alert_notification(ctx)
            logger.info("Alert %s triggered (%s); notifications: %s", alert.id, ctx.matched_condition, outcome or "none")
        except Exception:
            # the alert stays triggered; notification is best-effort
            logger.exception("Failed to send external notifications for alert %s", alert.id)
        return "triggered"

    async def _explain(self, alert: Alert, current_value: Decimal) -> str:
        if self._explainer is None:
            return EXPLANATION_FALLBACK
        symbol = alert.ticker.symbol if alert.ticker is not None else ""
        kind = alert.alert_type
        try:
            text = await asyncio.wait_for(
                self._explainer(symbol, kind.name.title() if kind else str(alert.type), current_value, alert.threshold),
                timeout=self.explanation_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Explanation timed out for alert %s", alert.id)
            return EXPLANATION_FALLBACK
        except Exception as e:
            logger.warning("Failed to get explanation for alert %s: %s", alert.id, e.__class__.__name__)
            return EXPLANATION_FALLBACK
        return text or EXPLANATION_FALLBACK
