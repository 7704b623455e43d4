"""
Tests for the browser pool and its lifecycle manager
"""
import asyncio
import time

import pytest

from fakes import FakeBrowser, FakePage, Task, run

from browser_pool import BrowserPool, PoolManager, janitor
from errors import CaptureFailed, PoolUnavailable, TaskFailed, ValidationError


async def returns_page(page, task):
    return page


class PoolFactory:
    """Launches pools over fake browsers; launch numbers in ``fail_on`` raise"""

    def __init__(self, fail_on=(), close_error=None, launch_delay=0.005, **pool_kwargs):
        self.fail_on = set(fail_on)
        self.launch_delay = launch_delay
        self.close_error = close_error
        self.pool_kwargs = {"retry_delay": 0, **pool_kwargs}
        self.launches = 0
        self.browsers = []

    async def __call__(self):
        self.launches += 1
        await asyncio.sleep(self.launch_delay)
        if self.launches in self.fail_on:
            raise RuntimeError("Chromium failed to launch")
        browser = FakeBrowser(close_error=self.close_error)
        self.browsers.append(browser)
        return BrowserPool(browser, **self.pool_kwargs)


class TestBrowserPool:
    """Bounded, isolated, retried task execution"""

    def test_concurrency_is_bounded(self):
        async def scenario():
            pool = BrowserPool(FakeBrowser(), max_concurrency=2, retry_delay=0)
            running, peak = 0, 0

            async def work(page, task):
                nonlocal running, peak
                running += 1
                peak = max(peak, running)
                await asyncio.sleep(0.01)
                running -= 1

            await asyncio.gather(*(pool.execute(Task(f"t{i}"), work) for i in range(6)))
            assert peak == 2
            assert pool.served == 6
            assert pool.active == 0

        run(scenario())

    def test_each_attempt_gets_fresh_context_that_is_closed(self):
        async def scenario():
            browser = FakeBrowser()
            pool = BrowserPool(browser, retry_delay=0)
            options = {"user_agent": "ua", "viewport": {"width": 10, "height": 20}}
            first = await pool.execute(Task(), returns_page, options)
            second = await pool.execute(Task(), returns_page, options)
            assert first is not second
            assert len(browser.contexts) == 2
            assert all(context.closed for context in browser.contexts)
            assert browser.contexts[0].options == options

        run(scenario())

    def test_failed_attempts_are_retried(self):
        async def scenario():
            pool = BrowserPool(FakeBrowser(), retry_limit=3, retry_delay=0)
            calls = []

            async def flaky(page, task):
                calls.append(page)
                if len(calls) < 3:
                    raise RuntimeError("Target closed")
                return "ok"

            assert await pool.execute(Task(), flaky) == "ok"
            assert len(calls) == 3

        run(scenario())

    def test_task_failed_after_retry_budget(self):
        async def scenario():
            browser = FakeBrowser()
            pool = BrowserPool(browser, retry_limit=3, retry_delay=0)

            async def broken(page, task):
                raise RuntimeError("Target closed")

            with pytest.raises(TaskFailed) as info:
                await pool.execute(Task("t7"), broken)
            assert info.value.attempts == 4
            assert info.value.task_id == "t7"
            assert isinstance(info.value.cause, RuntimeError)
            assert len(browser.contexts) == 4
            assert all(context.closed for context in browser.contexts)

        run(scenario())

    def test_client_errors_are_not_retried(self):
        async def scenario():
            pool = BrowserPool(FakeBrowser(), retry_delay=0)
            calls = []

            async def invalid(page, task):
                calls.append(page)
                raise ValidationError("URL is required", task.task_id)

            with pytest.raises(ValidationError):
                await pool.execute(Task(), invalid)
            assert len(calls) == 1

        run(scenario())

    def test_timeout_counts_as_failed_attempt(self):
        async def scenario():
            pool = BrowserPool(FakeBrowser(), retry_limit=0, retry_delay=0, task_timeout=0.01)

            async def hangs(page, task):
                await asyncio.sleep(5)

            with pytest.raises(TaskFailed) as info:
                await pool.execute(Task(), hangs)
            assert isinstance(info.value.cause, CaptureFailed)
            assert "timed out" in str(info.value.cause)

        run(scenario())

    def test_closed_pool_refuses_work(self):
        async def scenario():
            pool = BrowserPool(FakeBrowser())
            await pool.close()
            with pytest.raises(PoolUnavailable):
                await pool.execute(Task(), returns_page)

        run(scenario())

    def test_drain_waits_for_running_tasks(self):
        async def scenario():
            pool = BrowserPool(FakeBrowser())

            async def slow(page, task):
                await asyncio.sleep(0.05)

            running = asyncio.ensure_future(pool.execute(Task(), slow))
            await asyncio.sleep(0)
            assert await pool.drain(0.001) is False
            assert await pool.drain(1) is True
            await running

        run(scenario())

    def test_disconnect_notifies_listeners_unless_closed(self):
        async def scenario():
            browser = FakeBrowser()
            pool = BrowserPool(browser)
            crashed = []
            pool.add_crash_listener(crashed.append)
            browser.disconnect()
            assert crashed == [pool]
            await pool.close()
            browser.disconnect()
            assert crashed == [pool]

        run(scenario())


class TestPoolManager:
    """Creation, recycling and shutdown of the current pool"""

    def test_concurrent_callers_share_one_launch(self):
        async def scenario():
            factory = PoolFactory()
            manager = PoolManager(factory, swap_grace=0, drain_grace=0.1)
            pools = await asyncio.gather(*(manager.get() for _ in range(5)))
            assert factory.launches == 1
            assert all(pool is pools[0] for pool in pools)
            assert pools[0].name == "pool-1"

        run(scenario())

    def test_failed_launch_is_not_cached(self):
        async def scenario():
            factory = PoolFactory(fail_on={1})
            manager = PoolManager(factory, swap_grace=0, drain_grace=0.1)
            with pytest.raises(PoolUnavailable):
                await manager.get()
            assert "Chromium failed to launch" in str(manager.last_error)
            pool = await manager.get()
            assert manager.current is pool
            assert factory.launches == 2

        run(scenario())

    def test_execute_counts_requests(self):
        async def scenario():
            manager = PoolManager(PoolFactory(), swap_grace=0, drain_grace=0.1)
            page = await manager.execute(Task(), returns_page, context_options={"user_agent": "ua"})
            assert isinstance(page, FakePage)
            assert manager.requests == 1
            assert manager.in_flight == 0

        run(scenario())

    def test_rolling_recycle_swaps_and_closes_old_pool(self):
        async def scenario():
            factory = PoolFactory()
            manager = PoolManager(factory, swap_grace=0, drain_grace=0.1)
            old = await manager.get()
            await manager.execute(Task(), returns_page)

            assert await manager.recycle("test") is True
            assert manager.current is not old
            assert manager.current.name == "pool-2"
            assert old.closed and factory.browsers[0].closed
            assert manager.requests == 0
            assert manager.recycles == 1

        run(scenario())

    def test_recycle_is_mutually_exclusive(self):
        async def scenario():
            factory = PoolFactory()
            manager = PoolManager(factory, swap_grace=0.02, drain_grace=0.1)
            await manager.get()
            results = await asyncio.gather(manager.recycle("a"), manager.recycle("b"))
            assert sorted(results) == [False, True]
            assert factory.launches == 2
            assert manager.is_recycling is False

        run(scenario())

    def test_cancelled_recycle_closes_unused_replacement(self):
        async def scenario():
            factory = PoolFactory()
            manager = PoolManager(factory, swap_grace=5, drain_grace=0.1)
            old = await manager.get()
            recycling = asyncio.ensure_future(manager.recycle("test"))
            await asyncio.sleep(0.05)
            recycling.cancel()
            with pytest.raises(asyncio.CancelledError):
                await recycling
            assert factory.browsers[1].closed
            assert manager.current is old
            assert not old.closed
            assert manager.is_recycling is False

        run(scenario())

    def test_failed_replacement_keeps_serving_on_old_pool(self):
        async def scenario():
            factory = PoolFactory(fail_on={2})
            manager = PoolManager(factory, swap_grace=0, drain_grace=0.1)
            old = await manager.get()

            assert await manager.recycle("test") is False
            assert manager.current is old
            assert manager.degraded is True
            assert not old.closed
            assert await manager.execute(Task(), returns_page)

            assert await manager.recycle("retry") is True
            assert manager.degraded is False
            assert old.closed

        run(scenario())

    def test_tasks_running_during_recycle_complete(self):
        async def scenario():
            manager = PoolManager(PoolFactory(), swap_grace=0.01, drain_grace=1)
            old = await manager.get()

            async def slow(page, task):
                await asyncio.sleep(0.05)
                return "done"

            running = asyncio.ensure_future(manager.execute(Task("old"), slow))
            await asyncio.sleep(0)
            recycling = asyncio.ensure_future(manager.recycle("test"))
            await asyncio.sleep(0.03)
            assert manager.current is not old
            assert await manager.execute(Task("new"), returns_page)
            assert not old.closed

            assert await running == "done"
            assert await recycling is True
            assert old.closed

        run(scenario())

    def test_task_on_retired_pool_moves_to_replacement(self):
        async def scenario():
            manager = PoolManager(PoolFactory(), swap_grace=0, drain_grace=0.1)
            first = await manager.get()
            served_by = []

            async def work(page, task):
                served_by.append(manager.current)
                if len(served_by) == 1:
                    await manager.recycle("browser lost", emergency=True)
                    raise RuntimeError("Target closed")
                return "ok"

            assert await manager.execute(Task(), work) == "ok"
            assert served_by[0] is first
            assert served_by[-1] is manager.current
            assert manager.current is not first

        run(scenario())

    def test_task_waits_for_replacement_still_launching(self):
        async def scenario():
            factory = PoolFactory(retry_delay=0.01)
            manager = PoolManager(factory, swap_grace=0, drain_grace=0.1)
            first = await manager.get()
            factory.launch_delay = 0.2
            served_by = []

            async def work(page, task):
                served_by.append(manager.current)
                if len(served_by) == 1:
                    factory.browsers[0].disconnect()
                    raise RuntimeError("Target closed")
                return "ok"

            assert await manager.execute(Task(), work) == "ok"
            assert first.closed
            assert served_by[-1] is manager.current
            assert manager.current.name == "pool-2"
            assert factory.launches == 2

        run(scenario())

    def test_browser_disconnect_triggers_emergency_recycle(self):
        async def scenario():
            factory = PoolFactory()
            manager = PoolManager(factory, swap_grace=0, drain_grace=0.1)
            old = await manager.get()
            factory.browsers[0].disconnect()
            await asyncio.sleep(0.05)
            assert old.closed
            assert manager.current is not None
            assert manager.current is not old
            assert manager.recycles == 1

        run(scenario())

    def test_emergency_recycle_without_browser_leaves_pool_empty(self):
        async def scenario():
            factory = PoolFactory(fail_on={2, 3})
            manager = PoolManager(factory, swap_grace=0, drain_grace=0.1)
            await manager.get()
            assert await manager.recycle("crash", emergency=True) is False
            assert manager.current is None
            assert manager.stats()["available"] is False
            # next request launches a browser again
            assert await manager.execute(Task(), returns_page)
            assert manager.current.name == "pool-4"

        run(scenario())

    def test_close_error_is_recorded_not_raised(self):
        async def scenario():
            factory = PoolFactory(close_error=RuntimeError("browser already gone"))
            manager = PoolManager(factory, swap_grace=0, drain_grace=0.1)
            await manager.get()
            assert await manager.recycle("test") is True
            assert "browser already gone" in manager.stats()["last_error"]

        run(scenario())

    def test_shutdown_closes_pool_and_refuses_new_work(self):
        async def scenario():
            factory = PoolFactory()
            manager = PoolManager(factory, swap_grace=0, drain_grace=0.1)
            pool = await manager.get()
            await manager.shutdown()
            assert pool.closed
            assert manager.current is None
            with pytest.raises(PoolUnavailable):
                await manager.get()
            assert await manager.recycle("late") is False

        run(scenario())

    def test_should_recycle_thresholds(self):
        async def scenario():
            manager = PoolManager(PoolFactory(), swap_grace=0, drain_grace=0.1)
            assert manager.should_recycle(max_age=1, max_requests=1) is False
            await manager.execute(Task(), returns_page)
            assert manager.should_recycle(max_requests=1) is True
            assert manager.should_recycle(max_requests=2) is False
            manager.created_at = time.time() - 120
            assert manager.should_recycle(max_age=60) is True
            assert manager.should_recycle() is False

        run(scenario())

    def test_stats_describe_current_pool(self):
        async def scenario():
            manager = PoolManager(PoolFactory(max_concurrency=4), swap_grace=0, drain_grace=0.1)
            assert manager.stats()["pool"] is None
            await manager.get()
            stats = manager.stats()
            assert stats["pool"] == "pool-1"
            assert stats["available"] is True
            assert stats["max_concurrency"] == 4
            assert stats["recycling"] is False

        run(scenario())


class TestJanitor:

    def test_recycles_after_request_threshold(self):
        async def scenario():
            manager = PoolManager(PoolFactory(), swap_grace=0, drain_grace=0.1)
            await manager.execute(Task(), returns_page)
            sweeper = asyncio.ensure_future(janitor(manager, interval=0.01, max_requests=1))
            await asyncio.sleep(0.08)
            sweeper.cancel()
            assert manager.recycles == 1
            assert manager.current.name == "pool-2"

        run(scenario())

    def test_retries_degraded_pool(self):
        async def scenario():
            factory = PoolFactory(fail_on={2})
            manager = PoolManager(factory, swap_grace=0, drain_grace=0.1)
            await manager.get()
            await manager.recycle("test")
            assert manager.degraded
            sweeper = asyncio.ensure_future(janitor(manager, interval=0.01))
            await asyncio.sleep(0.08)
            sweeper.cancel()
            assert manager.degraded is False
            assert manager.current.name == "pool-3"

        run(scenario())
