"""
Tests for Debouncer, bridge_call and BackgroundTasks.
"""

import asyncio
import threading

import pytest

from iapledger.services.timing import BackgroundTasks, BridgeResult, Debouncer, bridge_call


class TestDebouncer:
    """Tests for collapsing bursts of triggers."""

    @pytest.mark.asyncio
    async def test_burst_runs_action_once(self):
        calls = []
        debouncer = Debouncer(0.01, lambda: calls.append("run"))

        debouncer.trigger()
        debouncer.trigger()
        debouncer.trigger()
        assert debouncer.pending
        await asyncio.sleep(0.05)

        assert calls == ["run"]
        assert not debouncer.pending

    @pytest.mark.asyncio
    async def test_cancel(self):
        calls = []
        debouncer = Debouncer(0.01, lambda: calls.append("run"))

        debouncer.trigger()
        debouncer.cancel()
        await asyncio.sleep(0.05)

        assert calls == []

    @pytest.mark.asyncio
    async def test_flush_runs_pending_async_action(self):
        """flush() fires immediately and waits for a coroutine action to finish."""
        calls = []

        async def action():
            await asyncio.sleep(0)
            calls.append("run")

        debouncer = Debouncer(60, action)
        debouncer.trigger()
        await debouncer.flush()

        assert calls == ["run"]

    @pytest.mark.asyncio
    async def test_flush_without_trigger_does_nothing(self):
        calls = []
        debouncer = Debouncer(0, lambda: calls.append("run"))

        await debouncer.flush()

        assert calls == []

    @pytest.mark.asyncio
    async def test_failing_action_is_contained(self):
        def action():
            raise RuntimeError("boom")

        debouncer = Debouncer(0, action)
        debouncer.trigger()
        await debouncer.flush()

        assert not debouncer.pending

    def test_trigger_needs_running_loop(self):
        debouncer = Debouncer(0, lambda: None)
        with pytest.raises(RuntimeError):
            debouncer.trigger()


class TestBridgeCall:
    """Tests for awaiting callback-style bridge calls."""

    @pytest.mark.asyncio
    async def test_success(self):
        result = await bridge_call(lambda ok, fail: ok("receipt"), timeout=1)

        assert result == BridgeResult(True, ("receipt",))
        assert result.value == "receipt"

    @pytest.mark.asyncio
    async def test_failure_keeps_arguments(self):
        result = await bridge_call(lambda ok, fail: fail("Billing unavailable", 3), timeout=1)

        assert result.ok is False
        assert result.args == ("Billing unavailable", 3)

    @pytest.mark.asyncio
    async def test_timeout_resolves_to_none(self):
        """A bridge that never answers resolves to None instead of raising."""
        result = await bridge_call(lambda ok, fail: None, timeout=0.01)

        assert result is None

    @pytest.mark.asyncio
    async def test_only_first_callback_counts(self):
        def invoke(ok, fail):
            ok("first")
            fail("second")
            ok("third")

        result = await bridge_call(invoke, timeout=1)

        assert result.value == "first"
        assert result.ok

    @pytest.mark.asyncio
    async def test_raising_invoke_is_a_failure(self):
        def invoke(ok, fail):
            raise ConnectionError("bridge gone")

        result = await bridge_call(invoke, timeout=1)

        assert result.ok is False
        assert result.value == "bridge gone"

    @pytest.mark.asyncio
    async def test_callback_from_another_thread(self):
        """Callbacks fired on a native thread resolve on the event loop."""

        def invoke(ok, fail):
            threading.Thread(target=ok, args=("from thread",)).start()

        result = await bridge_call(invoke, timeout=1)

        assert result.value == "from thread"

    def test_empty_result_value(self):
        assert BridgeResult(True).value is None


class TestBackgroundTasks:
    """Tests for adapter-owned background tasks."""

    @pytest.mark.asyncio
    async def test_drain_waits_for_nested_tasks(self):
        tasks = BackgroundTasks("test")
        done = []

        async def child():
            await asyncio.sleep(0)
            done.append("child")

        async def parent():
            await asyncio.sleep(0)
            tasks.spawn(child())
            done.append("parent")

        tasks.spawn(parent())
        await tasks.drain()

        assert done == ["parent", "child"]
        assert len(tasks) == 0

    @pytest.mark.asyncio
    async def test_failed_task_is_forgotten(self):
        tasks = BackgroundTasks("test")

        async def broken():
            raise RuntimeError("task bug")

        tasks.spawn(broken())
        await tasks.drain()

        assert len(tasks) == 0

    @pytest.mark.asyncio
    async def test_cancel(self):
        tasks = BackgroundTasks("test")
        task = tasks.spawn(asyncio.sleep(60))

        tasks.cancel()
        await asyncio.gather(task, return_exceptions=True)
        await asyncio.sleep(0)

        assert task.cancelled()
        assert len(tasks) == 0
