"""
Timers and native bridge helpers.

- Debouncer: collapses bursts of update events into one delayed action.
- BackgroundTasks: tracks tasks adapters start themselves.
- bridge_call: turns a callback-style native bridge call into an awaitable
  that resolves to None instead of raising when the bridge never answers.
"""

import asyncio
import inspect
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from structlog import get_logger

logger = get_logger(__name__)


class Debouncer:
    """
    Run ``action`` once, ``delay`` seconds after the last ``trigger()``.

    Usage:
        debouncer = Debouncer(0.3, notify_receipts)
        debouncer.trigger()   # arms the timer
        debouncer.trigger()   # re-arms it, action still runs once
        debouncer.cancel()    # on shutdown
    """

    def __init__(self, delay: float, action: Callable[[], Any], name: str = "debouncer") -> None:
        self.delay = delay
        self.name = name
        self._action = action
        self._handle: asyncio.TimerHandle | None = None
        self._running: set[asyncio.Future[Any]] = set()

    @property
    def pending(self) -> bool:
        """True while the timer is armed and the action has not fired yet."""
        return self._handle is not None

    def trigger(self) -> None:
        loop = asyncio.get_running_loop()
        if self._handle is not None:
            self._handle.cancel()
        self._handle = loop.call_later(self.delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    async def flush(self) -> None:
        """Fire now if armed, then wait for every running action to complete."""
        if self._handle is not None:
            self._handle.cancel()
            self._fire()
        while self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)

    def _fire(self) -> None:
        self._handle = None
        try:
            result = self._action()
        except Exception:
            logger.exception("debounced_action_failed", name=self.name)
            return
        if inspect.isawaitable(result):
            future = asyncio.ensure_future(result)
            self._running.add(future)
            future.add_done_callback(self._on_done)

    def _on_done(self, future: asyncio.Future[Any]) -> None:
        self._running.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.error("debounced_action_failed", name=self.name, error=str(future.exception()))


@dataclass(frozen=True)
class BridgeResult:
    """Outcome of a bridge call: which callback fired and with what arguments."""

    ok: bool
    args: tuple[Any, ...] = ()

    @property
    def value(self) -> Any:
        return self.args[0] if self.args else None


async def bridge_call(
    invoke: Callable[[Callable[..., None], Callable[..., None]], Any],
    timeout: float | None,
    name: str = "bridge_call",
) -> BridgeResult | None:
    """
    Await a callback-style bridge call.

    ``invoke(success, failure)`` must start the native call and arrange for
    exactly one of the callbacks to be called, possibly from another thread.
    Only the first callback counts. Returns None when neither fires within
    ``timeout`` seconds.
    """
    loop = asyncio.get_running_loop()
    future: asyncio.Future[BridgeResult] = loop.create_future()

    def _settle(ok: bool, args: tuple[Any, ...]) -> None:
        if not future.done():
            future.set_result(BridgeResult(ok, args))

    def _callback(ok: bool) -> Callable[..., None]:
        def callback(*args: Any) -> None:
            loop.call_soon_threadsafe(_settle, ok, args)

        return callback

    try:
        invoke(_callback(True), _callback(False))
    except Exception as exc:
        logger.warning("bridge_call_raised", name=name, error=str(exc))
        return BridgeResult(False, (str(exc),))

    try:
        return await asyncio.wait_for(future, timeout)
    except asyncio.TimeoutError:
        logger.warning("bridge_call_timed_out", name=name, timeout=timeout)
        return None


class BackgroundTasks:
    """Tasks an adapter starts on its own (refresh loops, delayed reports)."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._tasks: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Any) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    async def drain(self) -> None:
        """Wait for every task started so far, including ones they start."""
        await asyncio.sleep(0)
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
            await asyncio.sleep(0)

    def cancel(self) -> None:
        for task in list(self._tasks):
            task.cancel()

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("background_task_failed", name=self.name, error=str(task.exception()))
