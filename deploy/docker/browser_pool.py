# browser_pool.py
"""
Browser pool lifecycle
• BrowserPool: one Chromium, one isolated context per task, bounded concurrency
• PoolManager: get-or-create, rolling / emergency recycle, shutdown
• janitor: background recycling by age and request count
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set

from playwright.async_api import async_playwright

from errors import CaptureFailed, NON_RETRYABLE, PoolUnavailable, TaskFailed

logger = logging.getLogger("browser_pool")

DEFAULT_ARGS = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
)

Work = Callable[..., Awaitable]


class BrowserPool:
    """
    A Chromium process serving up to ``max_concurrency`` tasks at once.

    Every attempt runs in a fresh browser context (cookies, viewport, injected
    styles never leak between tasks). Failed attempts are retried
    ``retry_limit`` times, ``retry_delay`` seconds apart, before TaskFailed.
    """

    def __init__(
        self,
        browser,
        playwright=None,
        *,
        name: str = "pool",
        max_concurrency: int = 10,
        retry_limit: int = 3,
        retry_delay: float = 5.0,
        task_timeout: float = 120.0,
    ):
        self.browser = browser
        self._playwright = playwright
        self.name = name
        self.max_concurrency = max_concurrency
        self.retry_limit = retry_limit
        self.retry_delay = retry_delay
        self.task_timeout = task_timeout

        self._sem = asyncio.Semaphore(max_concurrency)
        self._idle = asyncio.Event()
        self._idle.set()
        self._crash_listeners: List[Callable[["BrowserPool"], None]] = []
        self.active = 0          # accepted tasks, queued or running
        self.served = 0
        self.closed = False
        self.created_at = time.time()

        browser.on("disconnected", self._on_disconnected)

    @classmethod
    async def launch(
        cls,
        *,
        headless: bool = True,
        executable_path: Optional[str] = None,
        extra_args: Sequence[str] = DEFAULT_ARGS,
        launch_timeout: float = 60.0,
        **kwargs,
    ) -> "BrowserPool":
        playwright = await async_playwright().start()
        try:
            browser = await playwright.chromium.launch(
                headless=headless,
                executable_path=executable_path,
                args=list(extra_args),
                timeout=launch_timeout * 1000,
            )
        except Exception:
            await playwright.stop()
            raise
        return cls(browser, playwright, **kwargs)

    # ── crash notification ───────────────────────────────────
    def add_crash_listener(self, callback: Callable[["BrowserPool"], None]) -> None:
        self._crash_listeners.append(callback)

    def _on_disconnected(self, *_):
        if self.closed:
            return
        logger.error("Browser of %s disconnected unexpectedly", self.name)
        for callback in self._crash_listeners:
            callback(self)

    # ── task execution ───────────────────────────────────────
    async def execute(self, task, work: Work, context_options: Optional[Dict] = None):
        if self.closed:
            raise PoolUnavailable(f"Browser pool {self.name} is closed", task.task_id)
        self.active += 1
        self._idle.clear()
        try:
            async with self._sem:
                return await self._run_with_retries(task, work, context_options)
        finally:
            self.active -= 1
            self.served += 1
            if self.active == 0:
                self._idle.set()

    async def _run_with_retries(self, task, work: Work, context_options: Optional[Dict]):
        attempts = self.retry_limit + 1
        last_exc: Optional[BaseException] = None
        for attempt in range(1, attempts + 1):
            if self.closed:
                raise PoolUnavailable(f"Browser pool {self.name} closed mid-task", task.task_id)
            try:
                return await asyncio.wait_for(
                    self._attempt(task, work, context_options), self.task_timeout
                )
            except NON_RETRYABLE:
                raise
            except asyncio.TimeoutError:
                last_exc = CaptureFailed(f"Task timed out after {self.task_timeout}s", task.task_id)
            except Exception as exc:
                last_exc = exc
            logger.error(
                "[%s] Error processing task (attempt %s/%s): %s",
                task.task_id, attempt, attempts, last_exc,
            )
            if attempt < attempts:
                await asyncio.sleep(self.retry_delay)
        raise TaskFailed(
            f"Task failed after {attempts} attempt(s): {last_exc}",
            task.task_id, attempts, last_exc,
        ) from last_exc

    async def _attempt(self, task, work: Work, context_options: Optional[Dict]):
        context = await self.browser.new_context(**(context_options or {}))
        try:
            page = await context.new_page()
            return await work(page, task)
        finally:
            try:
                await context.close()
            except Exception as exc:
                logger.debug("[%s] Ignoring context close error: %s", task.task_id, exc)

    async def drain(self, timeout: float) -> bool:
        """Wait until no task is queued or running; False on timeout."""
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self.browser.close()
        finally:
            if self._playwright is not None:
                await self._playwright.stop()


class PoolManager:
    """
    Owns the process-wide "current pool".

    Only ``get``, ``recycle`` and ``shutdown`` reassign it. Callers always see
    either a fully launched pool or wait on the single in-progress launch.
    """

    def __init__(
        self,
        factory: Callable[[], Awaitable[BrowserPool]],
        *,
        swap_grace: float = 5.0,
        drain_grace: float = 10.0,
    ):
        self._factory = factory
        self.swap_grace = swap_grace
        self.drain_grace = drain_grace

        self._pool: Optional[BrowserPool] = None
        self._init_task: Optional[asyncio.Future] = None
        self._background: Set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()
        self._recycling = False
        self._shutdown = False
        self._generation = 0

        self.created_at: Optional[float] = None
        self.requests = 0        # since the current pool was created
        self.in_flight = 0
        self.recycles = 0
        self.degraded = False
        self.last_error: Optional[BaseException] = None

    @property
    def current(self) -> Optional[BrowserPool]:
        return self._pool

    @property
    def is_recycling(self) -> bool:
        return self._recycling

    # ── creation ─────────────────────────────────────────────
    async def get(self) -> BrowserPool:
        if self._shutdown:
            raise PoolUnavailable("Browser pool is shut down")
        if self._pool is not None:
            return self._pool
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._initialize())
            # failures seen only by cancelled waiters must not go unretrieved
            self._init_task.add_done_callback(lambda f: f.cancelled() or f.exception())
        return await asyncio.shield(self._init_task)

    async def _initialize(self) -> BrowserPool:
        try:
            pool = await self._create()
        except Exception as exc:
            self.last_error = exc
            logger.error("Failed to initialize browser pool: %s", exc)
            raise PoolUnavailable(f"Failed to initialize browser pool: {exc}") from exc
        finally:
            self._init_task = None
        if self._shutdown:
            await pool.close()
            raise PoolUnavailable("Browser pool is shut down")
        self._install(pool)
        logger.info("Browser pool %s initialized successfully", pool.name)
        return pool

    async def _create(self) -> BrowserPool:
        self._generation += 1
        pool = await self._factory()
        pool.name = f"pool-{self._generation}"
        pool.add_crash_listener(self._on_pool_crash)
        return pool

    def _install(self, pool: BrowserPool) -> None:
        self._pool = pool
        self.created_at = time.time()
        self.requests = 0
        self.degraded = False

    # ── execution ────────────────────────────────────────────
    async def execute(self, task, work: Work, **kwargs):
        self.in_flight += 1
        self._idle.clear()
        try:
            pool = await self.get()
            self.requests += 1
            while True:
                try:
                    return await pool.execute(task, work, **kwargs)
                except PoolUnavailable:
                    # the pool was retired under us; join its replacement, launched or launching
                    replacement = await self.get()
                    if replacement is pool:
                        raise
                    logger.info("[%s] Re-dispatching to %s", task.task_id, replacement.name)
                    pool = replacement
        finally:
            self.in_flight -= 1
            if self.in_flight == 0:
                self._idle.set()

    async def wait_idle(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    # ── recycling ────────────────────────────────────────────
    def should_recycle(self, max_age: float = 0, max_requests: int = 0) -> bool:
        if self._pool is None or self.created_at is None:
            return False
        if max_age and time.time() - self.created_at >= max_age:
            return True
        return bool(max_requests and self.requests >= max_requests)

    async def recycle(self, reason: str = "scheduled", emergency: bool = False) -> bool:
        """
        Replace the current pool. Returns True when a new pool became current.
        A call made while another recycle runs is a no-op.
        """
        if self._recycling:
            logger.info("Recycling already in progress, skipping...")
            return False
        if self._shutdown:
            return False
        self._recycling = True
        try:
            if emergency:
                return await self._emergency_recycle(reason)
            return await self._rolling_recycle(reason)
        finally:
            self._recycling = False

    async def _rolling_recycle(self, reason: str) -> bool:
        logger.info("Starting browser pool recycling (%s)", reason)
        old = self._pool
        if old is None:
            return await self._recover()
        try:
            new_pool = await self._create()
        except Exception as exc:
            self.degraded = True
            self.last_error = exc
            logger.warning(
                "Could not launch replacement pool, staying on %s in degraded mode: %s",
                old.name, exc,
            )
            return False

        # both pools accept work during the swap window
        try:
            await asyncio.sleep(self.swap_grace)
        except asyncio.CancelledError:
            await new_pool.close()
            raise
        if self._shutdown:
            await new_pool.close()
            return False
        self._install(new_pool)
        self.recycles += 1
        logger.info("Swapped %s -> %s", old.name, new_pool.name)

        if not await old.drain(self.drain_grace):
            logger.warning(
                "%s still has %s task(s) after %ss, closing anyway",
                old.name, old.active, self.drain_grace,
            )
        await self._close(old)
        logger.info("Browser pool recycled successfully")
        return True

    async def _emergency_recycle(self, reason: str) -> bool:
        logger.error("Emergency recycle of browser pool (%s)", reason)
        old, self._pool = self._pool, None
        if old is not None:
            await self._close(old)
        try:
            await self.get()
        except PoolUnavailable:
            logger.error("Critical error: No available browser pool. Attempting recovery...")
            return await self._recover()
        self.recycles += 1
        return True

    async def _recover(self) -> bool:
        try:
            await self.get()
        except PoolUnavailable as exc:
            logger.error("Recovery failed: %s", exc)
            return False
        logger.info("Recovery successful: new browser pool created")
        return True

    async def _close(self, pool: BrowserPool) -> None:
        try:
            await pool.close()
            logger.info("Closed %s", pool.name)
        except Exception as exc:
            self.last_error = exc
            logger.error("Error closing %s: %s", pool.name, exc)

    def _on_pool_crash(self, pool: BrowserPool) -> None:
        if pool is not self._pool or self._shutdown:
            return
        task = asyncio.ensure_future(self.recycle("browser disconnected", emergency=True))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ── shutdown ─────────────────────────────────────────────
    async def shutdown(self) -> None:
        """Close the current pool now; queued and running tasks are abandoned."""
        self._shutdown = True
        pool, self._pool = self._pool, None
        for task in list(self._background):
            task.cancel()
        if pool is not None:
            logger.info("Shutting down %s with %s task(s) in flight", pool.name, pool.active)
            await self._close(pool)

    def stats(self) -> Dict:
        pool = self._pool
        return {
            "pool": pool.name if pool else None,
            "available": pool is not None and not pool.closed,
            "active": pool.active if pool else 0,
            "max_concurrency": pool.max_concurrency if pool else 0,
            "in_flight": self.in_flight,
            "requests": self.requests,
            "recycles": self.recycles,
            "recycling": self._recycling,
            "degraded": self.degraded,
            "uptime": round(time.time() - self.created_at, 1) if pool and self.created_at else 0,
            "last_error": str(self.last_error) if self.last_error else None,
        }


async def janitor(
    manager: PoolManager,
    interval: float = 60,
    max_age: float = 0,
    max_requests: int = 0,
):
    """Recycle the pool when it gets old, busy or was left degraded."""
    while True:
        await asyncio.sleep(interval)
        try:
            if manager.degraded:
                await manager.recycle("retry after degraded recycle")
            elif manager.should_recycle(max_age, max_requests):
                await manager.recycle("age/request threshold")
        except Exception as exc:
            logger.exception("Janitor recycle failed: %s", exc)
