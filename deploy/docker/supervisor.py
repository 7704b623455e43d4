"""
Last-resort crash handling.

Unexpected faults (an exception nobody awaited, an uncaught exception in a
worker thread) are logged, in-flight tasks get a bounded chance to finish,
logs are flushed and a RestartRequested signal goes to the host. Per-request
render errors never come through here.
"""
import asyncio
import logging
import signal
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from utils import flush_logs

logger = logging.getLogger("supervisor")


@dataclass(frozen=True)
class RestartRequested:
    reason: str
    exit_code: int
    requested_at: float


def terminate_for_restart(event: RestartRequested) -> None:
    """Default listener: stop the server gracefully; the host restarts us."""
    logger.warning("Requesting process restart (exit code %s)", event.exit_code)
    signal.raise_signal(signal.SIGTERM)


class Supervisor:
    def __init__(self, manager, drain_timeout: float = 30.0, restart_exit_code: int = 3):
        self.manager = manager
        self.drain_timeout = drain_timeout
        self.restart_exit_code = restart_exit_code
        self.exit_code: Optional[int] = None
        self._listeners: List[Callable[[RestartRequested], None]] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._previous_thread_hook = None
        self._fault_task: Optional[asyncio.Task] = None
        self._handling = False

    def add_listener(self, callback: Callable[[RestartRequested], None]) -> None:
        self._listeners.append(callback)

    def install(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop or asyncio.get_running_loop()
        self._loop.set_exception_handler(self._on_loop_exception)
        self._previous_thread_hook = threading.excepthook
        threading.excepthook = self._on_thread_exception

    def uninstall(self) -> None:
        if self._loop is not None:
            self._loop.set_exception_handler(None)
        if self._previous_thread_hook is not None:
            threading.excepthook = self._previous_thread_hook
            self._previous_thread_hook = None

    def _on_loop_exception(self, loop, context) -> None:
        loop.default_exception_handler(context)
        exc = context.get("exception")
        if exc is None or isinstance(exc, asyncio.CancelledError):
            return
        self.report(context.get("message") or "Unhandled exception in event loop", exc)

    def _on_thread_exception(self, args) -> None:
        if self._previous_thread_hook is not None:
            self._previous_thread_hook(args)
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(
                self.report, f"Uncaught exception in thread {args.thread.name}", args.exc_value
            )

    def report(self, reason: str, exc: Optional[BaseException] = None) -> None:
        if self._fault_task is None:
            self._fault_task = asyncio.ensure_future(self.handle_fault(reason, exc))

    async def handle_fault(self, reason: str, exc: Optional[BaseException] = None) -> Optional[RestartRequested]:
        if self._handling:
            return None
        self._handling = True
        logger.critical("Process fault: %s", reason, exc_info=exc)

        in_flight = self.manager.in_flight
        if in_flight:
            logger.warning("Waiting up to %ss for %s in-flight task(s)", self.drain_timeout, in_flight)
            if not await self.manager.wait_idle(self.drain_timeout):
                logger.warning("%s task(s) still running, restarting anyway", self.manager.in_flight)

        logger.info("=" * 50)
        logger.info("Application is shutting down. Reason: %s", reason)
        flush_logs()

        event = RestartRequested(reason, self.restart_exit_code, time.time())
        self.exit_code = event.exit_code
        for callback in self._listeners:
            callback(event)
        return event
