"""
Tests for Callbacks and ProductEvents.
"""

import asyncio

import pytest

from iapledger.models.product import Product, ProductState
from iapledger.services.events import ALL_PRODUCTS, Callbacks, ProductEvents


class TestCallbacks:
    """Tests for single-event listener lists."""

    def test_trigger_calls_listeners_in_order(self):
        seen = []
        callbacks = Callbacks("approved")
        callbacks.push(lambda value: seen.append(("first", value)))
        callbacks.push(lambda value: seen.append(("second", value)))

        callbacks.trigger(1)

        assert seen == [("first", 1), ("second", 1)]

    def test_once_listener_fires_once(self):
        seen = []
        callbacks = Callbacks("verified")
        callbacks.push(seen.append, once=True)

        callbacks.trigger("a")
        callbacks.trigger("b")

        assert seen == ["a"]
        assert len(callbacks) == 0

    def test_remove(self):
        seen = []
        listener = seen.append
        callbacks = Callbacks("finished")
        callbacks.push(listener)
        callbacks.remove(listener)

        callbacks.trigger("ignored")

        assert seen == []

    def test_remove_bound_method(self):
        """Bound methods are matched by equality, not by the object fetched at push time."""
        seen = []
        callbacks = Callbacks("finished")
        callbacks.push(seen.append)
        callbacks.remove(seen.append)

        assert len(callbacks) == 0

    def test_failing_listener_does_not_stop_others(self):
        """A raising listener is logged and the next one still runs."""
        seen = []

        def broken(value):
            raise RuntimeError("listener bug")

        callbacks = Callbacks("approved")
        callbacks.push(broken)
        callbacks.push(seen.append)

        callbacks.trigger("value")

        assert seen == ["value"]

    def test_listener_added_during_trigger_waits(self):
        seen = []
        callbacks = Callbacks("approved")
        callbacks.push(lambda value: callbacks.push(seen.append))

        callbacks.trigger("first")
        assert seen == []

        callbacks.trigger("second")
        assert seen == ["second"]

    @pytest.mark.asyncio
    async def test_coroutine_listener_is_scheduled(self):
        seen = []

        async def listener(value):
            await asyncio.sleep(0)
            seen.append(value)

        callbacks = Callbacks("verified")
        callbacks.push(listener)

        callbacks.trigger("value")
        await callbacks.drain()

        assert seen == ["value"]

    @pytest.mark.asyncio
    async def test_failing_coroutine_listener_is_contained(self):
        async def listener(value):
            raise RuntimeError("async listener bug")

        callbacks = Callbacks("verified")
        callbacks.push(listener)

        callbacks.trigger("value")
        await callbacks.drain()


class TestProductEvents:
    """Tests for product state event dispatch."""

    def _product(self, events, product_id="sku1", alias=None):
        return Product(id=product_id, platform="test", alias=alias, events=events)

    def test_listen_by_id_alias_and_all(self):
        events = ProductEvents()
        product = self._product(events, alias="premium")
        seen = []
        events.register("sku1", "valid", lambda p: seen.append("id"))
        events.register("premium", "valid", lambda p: seen.append("alias"))
        events.register(ALL_PRODUCTS, "valid", lambda p: seen.append("all"))
        events.register("other", "valid", lambda p: seen.append("other"))

        product.set_state(ProductState.VALID)

        assert seen == ["id", "alias", "all"]

    def test_event_name_filters(self):
        events = ProductEvents()
        product = self._product(events)
        seen = []
        events.register("sku1", "owned", seen.append)

        product.set_state(ProductState.VALID)
        product.set_state(ProductState.OWNED)

        assert seen == [product]

    def test_once_only_removes_fired_listeners(self):
        """Once-listeners are removed after firing; other events keep theirs."""
        events = ProductEvents()
        product = self._product(events)
        seen = []
        events.register("sku1", "valid", lambda p: seen.append("valid"), once=True)
        events.register("sku1", "owned", lambda p: seen.append("owned"), once=True)

        product.set_state(ProductState.VALID)
        product.set_state(ProductState.VALID)
        product.set_state(ProductState.OWNED)

        assert seen == ["valid", "owned"]

    def test_unregister(self):
        events = ProductEvents()
        product = self._product(events)
        seen = []
        listener = seen.append
        events.register("sku1", "valid", listener)
        events.unregister(listener)

        product.set_state(ProductState.VALID)

        assert seen == []

    def test_failing_listener_is_contained(self):
        events = ProductEvents()
        product = self._product(events)
        seen = []

        def broken(p):
            raise ValueError("bad listener")

        events.register("sku1", "valid", broken)
        events.register("sku1", "valid", seen.append)

        product.set_state(ProductState.VALID)

        assert seen == [product]
