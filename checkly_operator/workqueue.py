"""Per-key work queue and worker pool."""

import asyncio
import logging
import random
from collections import deque
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class WorkQueue:
    """
    Deduplicating work queue keyed by object key.

    Semantics:
    - a key waiting in the queue is never queued twice
    - a key being processed is never handed to a second worker; adds that
      arrive meanwhile are remembered and the key is re-queued on done()
    - failures back off exponentially per key, with jitter, up to a cap
    """

    def __init__(
        self,
        name: str,
        base_delay: float = 1.0,
        max_delay: float = 300.0,
        jitter: float = 0.1,
    ):
        """
        Initialize work queue.

        Args:
            name: Queue name used in logs
            base_delay: Delay after the first failure (seconds)
            max_delay: Upper bound on the backoff delay (seconds)
            jitter: Random fraction added on top of each backoff delay
        """
        self.name = name
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter

        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._failures: dict[str, int] = {}
        self._delayed: dict[str, tuple[float, asyncio.TimerHandle]] = {}
        self._waiters: deque[asyncio.Future] = deque()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def processing(self) -> frozenset[str]:
        return frozenset(self._processing)

    def add(self, key: str) -> None:
        """Mark key as needing work."""
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._wake()

    def add_after(self, key: str, delay: float) -> None:
        """Add key once delay seconds have passed."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        when = loop.time() + delay
        pending = self._delayed.get(key)
        if pending is not None:
            if pending[0] <= when:
                return
            pending[1].cancel()
        handle = loop.call_at(when, self._fire_delayed, key)
        self._delayed[key] = (when, handle)

    def add_rate_limited(self, key: str) -> float:
        """
        Re-add key after its backoff delay.

        Returns:
            The delay used, in seconds
        """
        failures = self._failures.get(key, 0) + 1
        self._failures[key] = failures
        delay = min(self.base_delay * (2 ** (failures - 1)), self.max_delay)
        delay = min(delay * (1 + random.uniform(0, self.jitter)), self.max_delay)
        self.add_after(key, delay)
        return delay

    def forget(self, key: str) -> None:
        """Reset the backoff of key."""
        self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        return self._failures.get(key, 0)

    async def get(self) -> str:
        """Wait for the next key and mark it as processing."""
        while not self._queue:
            if self._shutting_down:
                raise asyncio.CancelledError()
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            try:
                await waiter
            except asyncio.CancelledError:
                # Pass the wakeup on so a queued key is not stranded
                if self._queue:
                    self._wake()
                raise
            finally:
                if waiter in self._waiters:
                    self._waiters.remove(waiter)

        key = self._queue.popleft()
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: str) -> None:
        """Finish processing key; re-queue it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty:
            self._queue.append(key)
            self._wake()

    def shutdown(self) -> None:
        """Stop accepting work and release waiting workers."""
        self._shutting_down = True
        for _, handle in self._delayed.values():
            handle.cancel()
        self._delayed.clear()
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)

    def _fire_delayed(self, key: str) -> None:
        self._delayed.pop(key, None)
        self.add(key)

    def _wake(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return


ReconcileFn = Callable[[str], Awaitable[Any]]


class Controller:
    """
    Worker pool draining a WorkQueue into a reconcile function.

    The reconcile function receives a key and returns an object with a
    ``requeue`` flag and an optional ``requeue_after`` delay. Unexpected
    exceptions are logged and the key is retried with backoff; they never
    stop the workers.
    """

    def __init__(
        self,
        name: str,
        queue: WorkQueue,
        reconcile: ReconcileFn,
        workers: int = 2,
    ):
        self.name = name
        self.queue = queue
        self.reconcile = reconcile
        self.workers = workers
        self._tasks: list[asyncio.Task] = []
        self._running = False

    async def start(self) -> None:
        if self._running:
            logger.warning(f"Controller {self.name} already running")
            return
        self._running = True
        for i in range(self.workers):
            self._tasks.append(
                asyncio.create_task(self._worker(), name=f"{self.name}-worker-{i}")
            )
        logger.info(f"Controller {self.name} started with {self.workers} workers")

    async def stop(self) -> None:
        self._running = False
        self.queue.shutdown()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info(f"Controller {self.name} stopped")

    async def _worker(self) -> None:
        while self._running:
            key = await self.queue.get()
            await self.process(key)

    async def process(self, key: str) -> None:
        """Run one reconcile for a key taken from the queue."""
        try:
            outcome = await self.reconcile(key)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            delay = self.queue.add_rate_limited(key)
            logger.error(
                f"Error reconciling {self.name} {key}, retrying in {delay:.1f}s: {e}",
                exc_info=True,
            )
        else:
            self._apply(key, outcome)
        finally:
            self.queue.done(key)

    def _apply(self, key: str, outcome: Any) -> None:
        requeue_after: Optional[float] = getattr(outcome, "requeue_after", None)
        if requeue_after:
            self.queue.forget(key)
            self.queue.add_after(key, requeue_after)
        elif getattr(outcome, "requeue", False):
            delay = self.queue.add_rate_limited(key)
            logger.debug(f"{self.name} {key} requeued in {delay:.1f}s")
        else:
            self.queue.forget(key)

    async def run_until_idle(self, max_iterations: int = 1000) -> int:
        """
        Process queued keys inline until the queue is empty.

        Delayed retries are not waited for.

        Returns:
            Number of keys processed
        """
        processed = 0
        while len(self.queue) and processed < max_iterations:
            key = await self.queue.get()
            await self.process(key)
            processed += 1
        return processed
