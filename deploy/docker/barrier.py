"""
Completion barriers: optional signals that in-page data loading has finished.

Navigation waits for network quiescence, but client-rendered pages often fire
their data requests later. A barrier is installed on the page before
navigation and awaited right before the artifact is captured.
"""
import asyncio
import logging
from typing import Callable, Dict, Optional

from errors import DataWaitTimeout

logger = logging.getLogger("barrier")


class CompletionBarrier:
    """Strategy interface; subclasses decide what "settled" means."""

    def install(self, page) -> None:
        raise NotImplementedError

    async def wait(self, timeout: float, task_id: Optional[str] = None) -> None:
        raise NotImplementedError

    def dispose(self) -> None:
        pass


class LastRequestBarrier(CompletionBarrier):
    """
    Settles when the most recent request whose URL contains ``url_fragment``
    finishes.

    Fails when no such request is seen within ``detect_timeout`` seconds of
    installation, or when the tracked request fails.
    """

    def __init__(self, url_fragment: str, detect_timeout: float = 30.0):
        self.url_fragment = url_fragment
        self.detect_timeout = detect_timeout
        self._last = None
        self._settled: Optional[asyncio.Future] = None
        self._detect_handle: Optional[asyncio.TimerHandle] = None

    def install(self, page) -> None:
        loop = asyncio.get_running_loop()
        self._settled = loop.create_future()
        # a rejection nobody awaits must not surface as an unhandled error
        self._settled.add_done_callback(lambda f: f.cancelled() or f.exception())
        self._detect_handle = loop.call_later(self.detect_timeout, self._on_detect_timeout)
        page.on("request", self._on_request)
        page.on("requestfinished", self._on_finished)
        page.on("requestfailed", self._on_failed)

    def _on_request(self, request) -> None:
        if self.url_fragment not in request.url:
            return
        self._last = request
        if self._detect_handle is not None:
            self._detect_handle.cancel()
            self._detect_handle = None

    def _on_finished(self, request) -> None:
        if request is self._last and not self._settled.done():
            logger.debug("Data request settled: %s", request.url)
            self._settled.set_result(request.url)

    def _on_failed(self, request) -> None:
        if request is self._last and not self._settled.done():
            self._settled.set_exception(DataWaitTimeout(
                f"Data request failed: {request.url} ({request.failure})"
            ))

    def _on_detect_timeout(self) -> None:
        self._detect_handle = None
        if self._last is None and not self._settled.done():
            self._settled.set_exception(DataWaitTimeout(
                f"No request matching '{self.url_fragment}' within {self.detect_timeout}s"
            ))

    async def wait(self, timeout: float, task_id: Optional[str] = None) -> None:
        if self._settled is None:
            raise RuntimeError("Barrier was never installed")
        try:
            await asyncio.wait_for(asyncio.shield(self._settled), timeout)
        except asyncio.TimeoutError:
            raise DataWaitTimeout(
                f"Data request did not settle within {timeout}s", task_id
            ) from None
        except DataWaitTimeout as exc:
            exc.task_id = exc.task_id or task_id
            raise

    def dispose(self) -> None:
        if self._detect_handle is not None:
            self._detect_handle.cancel()
            self._detect_handle = None
        if self._settled is not None and not self._settled.done():
            self._settled.cancel()


def barrier_factory(cfg: Optional[Dict]) -> Optional[Callable[[], CompletionBarrier]]:
    """Build a factory from the ``barrier`` config section, or None when off."""
    if not cfg or not cfg.get("enabled") or not cfg.get("url_fragment"):
        return None
    fragment = cfg["url_fragment"]
    detect_timeout = float(cfg.get("detect_timeout", 30.0))
    return lambda: LastRequestBarrier(fragment, detect_timeout)
