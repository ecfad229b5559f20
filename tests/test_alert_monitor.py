import asyncio
import json
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import select

from alertwatch.db.models import Alert, AlertType, StockTicker
from alertwatch.schemas.notifications import EXPLANATION_FALLBACK
from alertwatch.services import alert_store
from alertwatch.services.alert_monitor import AlertMonitor
from alertwatch.services.cache import InMemoryCache


class FakeRouter:
    def __init__(self, fail=False):
        self.fail = fail
        self.contexts = []

    async def send_alert_notification(self, ctx):
        self.contexts.append(ctx)
        if self.fail:
            raise RuntimeError("router exploded")
        return {"slack": False}


class FlakyCache(InMemoryCache):
    def __init__(self):
        super().__init__()
        self.down = True

    async def set_if_absent(self, key, value, ttl):
        if self.down:
            raise ConnectionError("redis down")
        return await super().set_if_absent(key, value, ttl)


async def add_alert(
    sessions, *, kind=AlertType.PRICE, operator=">", threshold="100000", price="105000", volume=None, condition=None,
):
    async with sessions() as s:
        ticker = StockTicker(symbol=f"T{uuid.uuid4().hex[:6]}", current_price=Decimal(price), volume=volume)
        alert = Alert(
            user_id=uuid.uuid4(),
            ticker=ticker,
            type=int(kind),
            condition=condition if condition is not None else json.dumps({"operator": operator, "value": threshold}),
            threshold=Decimal(threshold),
            is_active=True,
        )
        s.add_all([ticker, alert])
        await s.commit()
        return alert.id


async def load(sessions, alert_id):
    async with sessions() as s:
        return (await s.execute(select(Alert).where(Alert.id == alert_id))).scalars().one()


def make_monitor(sessions, router, cache=None, **kw):
    kw.setdefault("interval", 60)
    kw.setdefault("lock_ttl", 300)
    kw.setdefault("explainer", None)
    kw.setdefault("lock_enabled", True)
    return AlertMonitor(sessions, cache or InMemoryCache(), router, **kw)


def test_price_alert_triggers_once(open_db):
    router = FakeRouter()

    async def run():
        engine, sessions = await open_db()
        try:
            alert_id = await add_alert(sessions)
            monitor = make_monitor(sessions, router)
            first = await monitor.run_once()
            second = await monitor.run_once()
            return first, second, await load(sessions, alert_id)
        finally:
            await engine.dispose()

    first, second, row = asyncio.run(run())
    assert (first.checked, first.triggered, first.failed) == (1, 1, 0)
    # triggered alerts drop out of the active set
    assert (second.checked, second.triggered) == (0, 0)
    assert row.is_active is False and row.triggered_at is not None
    assert len(router.contexts) == 1
    ctx = router.contexts[0]
    assert ctx.current_value == Decimal("105000")
    assert ctx.operator == ">"
    assert ctx.matched_condition == "Price > 100000"
    assert ctx.explanation == EXPLANATION_FALLBACK


def test_volume_below_threshold_stays_active(open_db):
    router = FakeRouter()

    async def run():
        engine, sessions = await open_db()
        try:
            alert_id = await add_alert(sessions, kind=AlertType.VOLUME, threshold="1000000", volume=900000)
            result = await make_monitor(sessions, router).run_once()
            return result, await load(sessions, alert_id)
        finally:
            await engine.dispose()

    result, row = asyncio.run(run())
    assert (result.checked, result.triggered) == (1, 0)
    assert row.is_active is True and row.triggered_at is None
    assert router.contexts == []


def test_tick_skipped_when_lock_held_elsewhere(open_db):
    router = FakeRouter()
    cache = InMemoryCache()

    async def run():
        engine, sessions = await open_db()
        try:
            alert_id = await add_alert(sessions)
            await cache.set_if_absent("job:alert-monitor", "other-instance", 300)
            result = await make_monitor(sessions, router, cache).run_once()
            return result, await load(sessions, alert_id)
        finally:
            await engine.dispose()

    result, row = asyncio.run(run())
    assert result.skipped == "held"
    assert row.is_active is True
    assert router.contexts == []


def test_cache_outage_skips_and_escalates(open_db, caplog):
    caplog.set_level("WARNING")
    router = FakeRouter()
    cache = FlakyCache()

    async def run():
        engine, sessions = await open_db()
        try:
            await add_alert(sessions)
            monitor = make_monitor(sessions, router, cache, escalate_after=3)
            results = [await monitor.run_once() for _ in range(3)]
            escalated = "3 consecutive ticks" in caplog.text
            cache.down = False
            results.append(await monitor.run_once())
            return results, escalated, monitor._lock_errors
        finally:
            await engine.dispose()

    results, escalated, errors_after = asyncio.run(run())
    assert [r.skipped for r in results[:3]] == ["error", "error", "error"]
    assert escalated
    assert "2 consecutive ticks" not in caplog.text
    assert results[3].skipped is None and results[3].triggered == 1
    assert errors_after == 0


def test_router_failure_keeps_alert_triggered(open_db, caplog):
    caplog.set_level("ERROR")
    router = FakeRouter(fail=True)

    async def run():
        engine, sessions = await open_db()
        try:
            ids = [await add_alert(sessions), await add_alert(sessions)]
            result = await make_monitor(sessions, router).run_once()
            return result, [await load(sessions, i) for i in ids]
        finally:
            await engine.dispose()

    result, rows = asyncio.run(run())
    assert (result.triggered, result.failed) == (2, 0)
    assert all(not r.is_active for r in rows)
    assert len(router.contexts) == 2
    assert "Failed to send external notifications" in caplog.text


def test_persist_failure_is_isolated_and_not_dispatched(open_db, monkeypatch, caplog):
    caplog.set_level("ERROR")
    router = FakeRouter()
    real = alert_store.try_mark_triggered
    state = {}

    async def flaky_mark(session, alert_id, triggered_at):
        if alert_id == state["bad"]:
            raise RuntimeError("db write failed")
        return await real(session, alert_id, triggered_at)

    monkeypatch.setattr(alert_store, "try_mark_triggered", flaky_mark)

    async def run():
        engine, sessions = await open_db()
        try:
            state["bad"] = await add_alert(sessions)
            good = await add_alert(sessions)
            result = await make_monitor(sessions, router).run_once()
            return result, await load(sessions, state["bad"]), await load(sessions, good)
        finally:
            await engine.dispose()

    result, bad, good = asyncio.run(run())
    assert (result.checked, result.triggered, result.failed) == (2, 1, 1)
    assert bad.is_active is True
    assert good.is_active is False
    assert [c.alert.id for c in router.contexts] == [good.id]
    assert "Failed to persist triggered state" in caplog.text


def test_explanation_used_and_timeout_falls_back(open_db):
    async def slow(symbol, kind, value, threshold):
        await asyncio.sleep(10)

    async def quick(symbol, kind, value, threshold):
        assert kind == "Price"
        return f"{symbol} broke out above {threshold}"

    async def run(explainer):
        router = FakeRouter()
        engine, sessions = await open_db()
        try:
            await add_alert(sessions)
            await make_monitor(sessions, router, explainer=explainer, explanation_timeout=0.05).run_once()
            return router.contexts[0].explanation
        finally:
            await engine.dispose()

    assert asyncio.run(run(slow)) == EXPLANATION_FALLBACK
    assert "broke out above 100000" in asyncio.run(run(quick))


def test_start_and_stop(open_db):
    router = FakeRouter()

    async def run():
        engine, sessions = await open_db()
        try:
            await add_alert(sessions)
            monitor = make_monitor(sessions, router, interval=0.01, lock_ttl=5)
            task = monitor.start()
            for _ in range(200):
                if router.contexts:
                    break
                await asyncio.sleep(0.01)
            await monitor.stop(timeout=2)
            return task
        finally:
            await engine.dispose()

    task = asyncio.run(run())
    assert task.done() and not task.cancelled()
    assert len(router.contexts) == 1


def test_lock_ttl_must_exceed_interval():
    with pytest.raises(ValueError):
        AlertMonitor(None, InMemoryCache(), FakeRouter(), interval=60, lock_ttl=60)


def test_bad_alerts_do_not_block_a_good_one(open_db):
    router = FakeRouter()

    async def run():
        engine, sessions = await open_db()
        try:
            malformed = await add_alert(sessions, condition="not json")
            indicator = await add_alert(sessions, kind=AlertType.TECHNICAL_INDICATOR)
            good = await add_alert(sessions)
            result = await make_monitor(sessions, router).run_once()
            return result, [await load(sessions, i) for i in (malformed, indicator, good)]
        finally:
            await engine.dispose()

    result, (malformed, indicator, good) = asyncio.run(run())
    assert (result.checked, result.triggered, result.failed) == (3, 1, 0)
    assert malformed.is_active is True and malformed.triggered_at is None
    assert indicator.is_active is True and indicator.triggered_at is None
    assert good.is_active is False
    assert [c.alert.id for c in router.contexts] == [good.id]


def test_loop_survives_a_failing_tick(open_db, caplog):
    caplog.set_level("ERROR")
    router = FakeRouter()
    calls = []

    async def run():
        engine, sessions = await open_db()
        try:
            monitor = make_monitor(sessions, router, interval=0.01, lock_ttl=5)
            real = monitor.run_once

            async def flaky_tick():
                calls.append(1)
                if len(calls) == 1:
                    raise RuntimeError("tick exploded")
                return await real()

            monitor.run_once = flaky_tick
            task = monitor.start()
            for _ in range(200):
                if len(calls) >= 2:
                    break
                await asyncio.sleep(0.01)
            running = not task.done()
            await monitor.stop(timeout=2)
            return running
        finally:
            await engine.dispose()

    assert asyncio.run(run()) is True
    assert len(calls) >= 2
    assert "Error checking alerts" in caplog.text


def test_store_read_failure_recovers_next_tick(open_db, monkeypatch, caplog):
    caplog.set_level("ERROR")
    router = FakeRouter()
    real = alert_store.list_active_with_tickers
    calls = []

    async def flaky_list(session):
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("db unavailable")
        return await real(session)

    monkeypatch.setattr(alert_store, "list_active_with_tickers", flaky_list)

    async def run():
        engine, sessions = await open_db()
        try:
            await add_alert(sessions)
            monitor = make_monitor(sessions, router, interval=0.01, lock_ttl=5)
            task = monitor.start()
            for _ in range(200):
                if router.contexts:
                    break
                await asyncio.sleep(0.01)
            await monitor.stop(timeout=2)
            return task
        finally:
            await engine.dispose()

    task = asyncio.run(run())
    assert task.done() and not task.cancelled()
    assert len(calls) >= 2
    assert len(router.contexts) == 1
    assert "Failed to load active alerts" in caplog.text


def test_alert_claimed_elsewhere_is_not_explained(open_db, monkeypatch):
    router = FakeRouter()
    explained = []

    async def explainer(symbol, kind, value, threshold):
        explained.append(symbol)
        return "should not be asked"

    async def already_claimed(session, alert_id, triggered_at):
        return False

    monkeypatch.setattr(alert_store, "try_mark_triggered", already_claimed)

    async def run():
        engine, sessions = await open_db()
        try:
            alert_id = await add_alert(sessions)
            result = await make_monitor(sessions, router, explainer=explainer).run_once()
            return result, await load(sessions, alert_id)
        finally:
            await engine.dispose()

    result, row = asyncio.run(run())
    assert (result.checked, result.triggered, result.failed) == (1, 0, 0)
    assert explained == []
    assert router.contexts == []
    assert row.is_active is True
