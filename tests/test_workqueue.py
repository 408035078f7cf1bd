"""Tests for WorkQueue and Controller."""

import asyncio
from dataclasses import dataclass
from typing import Optional

import pytest

from checkly_operator.workqueue import Controller, WorkQueue


@dataclass
class Outcome:
    requeue: bool = False
    requeue_after: Optional[float] = None


class TestWorkQueue:
    """Test cases for WorkQueue."""

    @pytest.mark.asyncio
    async def test_add_deduplicates(self):
        """Test a waiting key is queued once."""
        queue = WorkQueue("test")
        queue.add("a")
        queue.add("a")
        queue.add("b")

        assert len(queue) == 2
        assert await queue.get() == "a"
        assert await queue.get() == "b"

    @pytest.mark.asyncio
    async def test_key_in_flight_is_requeued_on_done(self):
        """Test an add during processing is deferred until done."""
        queue = WorkQueue("test")
        queue.add("a")
        key = await queue.get()

        queue.add("a")
        assert len(queue) == 0
        assert queue.processing == frozenset({"a"})

        queue.done(key)
        assert len(queue) == 1
        assert queue.processing == frozenset()

    @pytest.mark.asyncio
    async def test_backoff_grows_and_caps(self):
        """Test per-key exponential backoff with a ceiling."""
        queue = WorkQueue("test", base_delay=1.0, max_delay=5.0, jitter=0)

        delays = [queue.add_rate_limited("a") for _ in range(5)]

        assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]
        assert queue.num_requeues("a") == 5
        queue.forget("a")
        assert queue.num_requeues("a") == 0
        queue.shutdown()

    @pytest.mark.asyncio
    async def test_jitter_stays_within_bounds(self):
        """Test jitter only adds up to its fraction."""
        queue = WorkQueue("test", base_delay=1.0, max_delay=100.0, jitter=0.5)

        delay = queue.add_rate_limited("a")

        assert 1.0 <= delay <= 1.5
        queue.shutdown()

    @pytest.mark.asyncio
    async def test_add_after(self):
        """Test delayed adds fire after their delay."""
        queue = WorkQueue("test")
        queue.add_after("a", 0.01)
        assert len(queue) == 0

        assert await asyncio.wait_for(queue.get(), timeout=1.0) == "a"

    @pytest.mark.asyncio
    async def test_add_after_keeps_earliest(self):
        """Test a later delay does not postpone an earlier one."""
        queue = WorkQueue("test")
        queue.add_after("a", 0.01)
        queue.add_after("a", 60)

        assert await asyncio.wait_for(queue.get(), timeout=1.0) == "a"
        queue.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_releases_waiters(self):
        """Test waiting workers are released on shutdown."""
        queue = WorkQueue("test")
        waiter = asyncio.create_task(queue.get())
        await asyncio.sleep(0)

        queue.shutdown()

        with pytest.raises(asyncio.CancelledError):
            await waiter
        queue.add("a")
        assert len(queue) == 0


class TestController:
    """Test cases for Controller."""

    @pytest.mark.asyncio
    async def test_failure_is_rate_limited(self):
        """Test an exception backs the key off instead of killing the worker."""

        async def reconcile(key):
            raise RuntimeError("boom")

        queue = WorkQueue("test", jitter=0)
        controller = Controller("test", queue, reconcile)
        queue.add("a")

        assert await controller.run_until_idle() == 1
        assert queue.num_requeues("a") == 1
        assert queue.processing == frozenset()
        queue.shutdown()

    @pytest.mark.asyncio
    async def test_outcomes(self):
        """Test requeue, requeue_after and success handling."""
        outcomes = {
            "retry": Outcome(requeue=True),
            "later": Outcome(requeue_after=30.0),
            "done": Outcome(),
        }

        async def reconcile(key):
            return outcomes[key]

        queue = WorkQueue("test", jitter=0)
        controller = Controller("test", queue, reconcile)
        queue.add_rate_limited("done")
        for key in outcomes:
            queue.add(key)

        await controller.run_until_idle()

        assert queue.num_requeues("retry") == 1
        assert queue.num_requeues("later") == 0
        assert queue.num_requeues("done") == 0
        queue.shutdown()

    @pytest.mark.asyncio
    async def test_same_key_never_runs_concurrently(self):
        """Test workers serialize reconciles of one key."""
        active = set()
        overlaps = []
        calls = []

        async def reconcile(key):
            if key in active:
                overlaps.append(key)
            active.add(key)
            await asyncio.sleep(0.02)
            active.discard(key)
            calls.append(key)
            return Outcome()

        queue = WorkQueue("test")
        controller = Controller("test", queue, reconcile, workers=3)
        await controller.start()

        queue.add("a")
        await asyncio.sleep(0.005)
        queue.add("a")
        queue.add("b")
        await asyncio.sleep(0.1)
        await controller.stop()

        assert overlaps == []
        assert calls.count("a") == 2
        assert calls.count("b") == 1
