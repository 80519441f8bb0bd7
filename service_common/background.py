"""
Background work that outlives the request that started it.

Handlers hand detached work to a ``BackgroundTaskTracker`` instead of
calling ``asyncio.create_task`` themselves. The tracker counts every unit
from the moment it is spawned until it finishes, and the service's
shutdown waits for that count to reach zero before the process exits.
"""

import asyncio
import contextvars
import inspect
import threading
from typing import Any, Callable, Coroutine, Optional, Set

from .logging import get_logger
from .metrics import MetricsCollector


class BackgroundTaskTracker:
    """Runs and counts detached units of work."""

    def __init__(self, metrics: Optional[MetricsCollector] = None):
        self.metrics = metrics
        self.logger = get_logger("service_common.background")

        self._lock = threading.Lock()
        self._outstanding = 0
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        # Only touched from the loop thread.
        self._drained: Optional[asyncio.Event] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def outstanding(self) -> int:
        with self._lock:
            return self._outstanding

    def start(self) -> None:
        """Bind the tracker to the running event loop."""
        self._loop = asyncio.get_running_loop()
        self._drained = asyncio.Event()
        if self.outstanding == 0:
            self._drained.set()

    def spawn(self, fn: Callable[..., Any], *args: Any, name: Optional[str] = None) -> None:
        """Run ``fn(*args)`` detached from the caller.

        Coroutine functions run on the event loop, plain callables in a worker
        thread; an awaitable returned by a plain callable is then awaited on
        the loop. Safe to call from the loop or from a worker thread (sync
        endpoints). The caller's context variables (request id, user id)
        carry over. Failures are logged, never raised to the caller.
        """
        if self._loop is None:
            raise RuntimeError("background task tracker has not been started")

        task_name = name or getattr(fn, "__name__", repr(fn))
        context = contextvars.copy_context()

        # Count before scheduling so a drain can never miss this unit.
        with self._lock:
            self._outstanding += 1
        if self.metrics is not None:
            self.metrics.background_task_started()

        coro = self._run(fn, args, task_name)
        try:
            if self._on_loop_thread():
                self._schedule(coro, task_name, context)
            else:
                self._loop.call_soon_threadsafe(self._schedule, coro, task_name, context)
        except RuntimeError:
            coro.close()
            self._release(task_name, "failed")
            raise

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until no units are outstanding.

        Returns ``False`` if ``timeout`` elapsed first.
        """
        if self._drained is None:
            return self.outstanding == 0

        if timeout is None:
            await self._wait_until_drained()
            return True

        try:
            await asyncio.wait_for(self._wait_until_drained(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _wait_until_drained(self) -> None:
        while True:
            with self._lock:
                if self._outstanding == 0:
                    return
                self._drained.clear()
            await self._drained.wait()

    def _schedule(self, coro: Coroutine[Any, Any, None], name: str, context: contextvars.Context) -> None:
        # create_task snapshots the current context, so enter the caller's first.
        task = context.run(self._loop.create_task, coro)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, fn: Callable[..., Any], args: tuple, name: str) -> None:
        status = "succeeded"
        try:
            if inspect.iscoroutinefunction(fn):
                await fn(*args)
            else:
                result = await asyncio.to_thread(fn, *args)
                # Callables that hand back a coroutine (lambdas, wrappers).
                if inspect.isawaitable(result):
                    await result
        except asyncio.CancelledError:
            status = "cancelled"
            self.logger.warning("Background task cancelled", task=name)
            raise
        except Exception as e:
            status = "failed"
            self.logger.error("Background task failed", task=name, error=str(e), exc_info=True)
        finally:
            self._release(name, status)

    def _release(self, name: str, status: str) -> None:
        with self._lock:
            self._outstanding -= 1
            drained = self._outstanding == 0
        if self.metrics is not None:
            self.metrics.background_task_finished(status)
        self.logger.debug("Background task finished", task=name, status=status)

        if drained and self._drained is not None:
            if self._on_loop_thread():
                self._drained.set()
            else:
                self._loop.call_soon_threadsafe(self._drained.set)

    def _on_loop_thread(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False
