import asyncio

import pytest

from alertwatch.services.cache import InMemoryCache
from alertwatch.services.distributed_lock import DistributedLock, JobLockOutcome, job_lock, job_lock_key


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class BrokenCache(InMemoryCache):
    async def set_if_absent(self, key, value, ttl):
        raise ConnectionError("redis down")


def test_job_lock_key():
    assert job_lock_key("alert-monitor") == "job:alert-monitor"


def test_exactly_one_of_two_instances_acquires():
    cache = InMemoryCache()

    async def run():
        a, b = DistributedLock(cache), DistributedLock(cache)
        return await asyncio.gather(
            a.try_acquire("job:alert-monitor", 5),
            b.try_acquire("job:alert-monitor", 5),
        )

    results = asyncio.run(run())
    assert sorted(results) == [False, True]


def test_many_contenders_single_winner():
    cache = InMemoryCache()

    async def run():
        locks = [DistributedLock(cache) for _ in range(20)]
        return await asyncio.gather(*(lk.try_acquire("job:x", 30) for lk in locks))

    assert sum(asyncio.run(run())) == 1


def test_lock_becomes_available_after_ttl():
    clock = FakeClock()
    cache = InMemoryCache(clock=clock)

    async def run():
        crashed = DistributedLock(cache)
        assert await crashed.try_acquire("job:x", 5)
        other = DistributedLock(cache)
        assert not await other.try_acquire("job:x", 5)
        clock.now += 5
        assert await other.try_acquire("job:x", 5)

    asyncio.run(run())


def test_release_never_deletes_someone_elses_lock(caplog):
    clock = FakeClock()
    cache = InMemoryCache(clock=clock)
    caplog.set_level("WARNING")

    async def run():
        slow = DistributedLock(cache)
        assert await slow.try_acquire("job:x", 5)
        clock.now += 6
        fresh = DistributedLock(cache)
        assert await fresh.try_acquire("job:x", 5)
        # the overrunning holder releases late: the new owner's entry survives
        await slow.release()
        assert await cache.get("job:x") is not None
        await fresh.release()
        assert await cache.get("job:x") is None

    asyncio.run(run())
    assert "expired before release" in caplog.text


def test_double_acquire_raises():
    cache = InMemoryCache()

    async def run():
        lock = DistributedLock(cache)
        await lock.try_acquire("job:x", 5)
        with pytest.raises(RuntimeError):
            await lock.try_acquire("job:y", 5)

    asyncio.run(run())


def test_context_manager_releases_on_exception():
    cache = InMemoryCache()

    async def run():
        lock = DistributedLock(cache)
        assert await lock.try_acquire("job:x", 30)
        with pytest.raises(ValueError):
            async with lock:
                raise ValueError("boom")
        assert not lock.held
        assert await cache.get("job:x") is None

    asyncio.run(run())


def test_job_lock_acquired_then_released():
    cache = InMemoryCache()

    async def run():
        async with job_lock(cache, "alert-monitor", 300, enabled=True) as handle:
            assert handle.outcome == JobLockOutcome.ACQUIRED
            assert handle.should_run
            assert await cache.get("job:alert-monitor") is not None
        assert await cache.get("job:alert-monitor") is None

    asyncio.run(run())


def test_job_lock_held_elsewhere_skips(caplog):
    cache = InMemoryCache()
    caplog.set_level("INFO")

    async def run():
        await cache.set_if_absent("job:alert-monitor", "other-host:1:abc", 300)
        async with job_lock(cache, "alert-monitor", 300, enabled=True) as handle:
            assert handle.outcome == JobLockOutcome.HELD
            assert not handle.should_run
        # the other holder's lock is untouched
        assert await cache.get("job:alert-monitor") == "other-host:1:abc"

    asyncio.run(run())
    assert "alert-monitor skipped - already running on another instance" in caplog.text


def test_job_lock_cache_error_skips(caplog):
    caplog.set_level("WARNING")

    async def run():
        async with job_lock(BrokenCache(), "alert-monitor", 300, enabled=True) as handle:
            assert handle.outcome == JobLockOutcome.ERROR
            assert not handle.should_run

    asyncio.run(run())
    assert "failed to acquire distributed lock" in caplog.text
    assert "redis down" not in caplog.text


def test_job_lock_disabled_runs_unguarded():
    cache = InMemoryCache()

    async def run():
        async with job_lock(cache, "alert-monitor", 300, enabled=False) as handle:
            assert handle.outcome == JobLockOutcome.DISABLED
            assert handle.should_run
            assert await cache.get("job:alert-monitor") is None

    asyncio.run(run())


def test_job_lock_released_on_cancellation():
    cache = InMemoryCache()

    async def run():
        entered = asyncio.Event()

        async def job():
            async with job_lock(cache, "alert-monitor", 300, enabled=True):
                entered.set()
                await asyncio.sleep(3600)

        task = asyncio.create_task(job())
        await entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert await cache.get("job:alert-monitor") is None

    asyncio.run(run())
