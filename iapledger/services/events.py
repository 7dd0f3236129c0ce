"""
Event notification surface.

Callbacks is a list of listeners for one event (verified, unverified,
approved...). ProductEvents dispatches product state changes, where the
event name is the state itself, so listeners can subscribe to "valid" or
"owned" directly.
"""

import asyncio
import inspect
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from structlog import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

ALL_PRODUCTS = "product"


def _invoke(
    callback: Callable[..., Any], value: Any, event: str, tasks: set[asyncio.Task[Any]]
) -> None:
    """Call a listener. Coroutine listeners are scheduled; errors are logged, never raised."""
    try:
        result = callback(value)
    except Exception:
        logger.exception("event_callback_failed", event_name=event, callback=repr(callback))
        return
    if inspect.isawaitable(result):
        task = asyncio.ensure_future(result)
        tasks.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error(
                    "event_callback_failed",
                    event_name=event,
                    callback=repr(callback),
                    error=str(t.exception()),
                )

        task.add_done_callback(_done)


@dataclass
class _Listener:
    callback: Callable[..., Any]
    once: bool = False


class Callbacks(Generic[T]):
    """Listeners for a single event."""

    def __init__(self, event: str) -> None:
        self.event = event
        self._listeners: list[_Listener] = []
        self._tasks: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self._listeners)

    def push(self, callback: Callable[[T], Any], once: bool = False) -> None:
        self._listeners.append(_Listener(callback, once))

    def remove(self, callback: Callable[[T], Any]) -> None:
        self._listeners = [l for l in self._listeners if l.callback != callback]

    def trigger(self, value: T) -> None:
        # Listeners added while triggering wait for the next event.
        listeners = list(self._listeners)
        self._listeners = [l for l in self._listeners if not l.once]
        for listener in listeners:
            _invoke(listener.callback, value, self.event, self._tasks)

    async def drain(self) -> None:
        """Wait for coroutine listeners scheduled so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


@dataclass
class _ProductListener:
    key: str  # product id, alias, or ALL_PRODUCTS
    event: str
    callback: Callable[..., Any]
    once: bool = False


class ProductEvents:
    """Dispatch of product state events, scoped to one store session."""

    def __init__(self) -> None:
        self._listeners: list[_ProductListener] = []
        self._tasks: set[asyncio.Task[Any]] = set()

    def register(
        self,
        key: str,
        event: str,
        callback: Callable[..., Any],
        once: bool = False,
    ) -> None:
        """Listen to ``event`` for a product id or alias, or ``"product"`` for all products."""
        self._listeners.append(_ProductListener(key, event, callback, once))

    def unregister(self, callback: Callable[..., Any]) -> None:
        self._listeners = [l for l in self._listeners if l.callback != callback]

    def trigger(self, product: Any, event: str) -> None:
        keys = {product.id, product.alias, ALL_PRODUCTS}
        matching = [l for l in self._listeners if l.event == event and l.key in keys]
        if not matching:
            return
        fired = {id(m) for m in matching if m.once}
        self._listeners = [l for l in self._listeners if id(l) not in fired]
        logger.debug(
            "product_event", product_id=product.id, event_name=event, listeners=len(matching)
        )
        for listener in matching:
            _invoke(listener.callback, product, event, self._tasks)
