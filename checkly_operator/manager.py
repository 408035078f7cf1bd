"""Operator manager - wires reconcile loops, queues, watches and resync."""

import asyncio
import logging
from typing import Callable, Optional

from .annotations import AnnotationScanner
from .config import Settings
from .derived import DerivedResourceSynchronizer, OwnerIndex
from .external import ExternalResourceAPI
from .mappers import CheckMapper, mapper_for
from .models import ResourceKind, WatchEvent, split_key
from .reconciler import ReconcileConfig, ReconcileLoop, ReconcileResult
from .store import ClusterStore, resource_from_object
from .watch import INGRESS, ResourceWatcher
from .workqueue import Controller, WorkQueue

logger = logging.getLogger(__name__)


class OperatorManager:
    """
    Runs the operator.

    Responsibilities:
    - One ReconcileLoop and worker pool per declarative resource kind
    - A worker pool syncing derived checks from ingress annotations
    - Feeding watch events into the queues
    - Periodic full resync with drift checks against Checkly
    """

    def __init__(
        self,
        settings: Settings,
        store: ClusterStore,
        api_for: Callable[[ResourceKind], ExternalResourceAPI],
        watcher: Optional[ResourceWatcher] = None,
    ):
        """
        Initialize operator manager.

        Args:
            settings: Operator settings
            store: Cluster store
            api_for: Returns the external API for a resource kind
            watcher: Watch source; the manager only reacts to resync without one
        """
        self.settings = settings
        self.store = store
        self.watcher = watcher
        self._running = False
        self._tasks: list[asyncio.Task] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        config = ReconcileConfig(
            finalizer=settings.finalizer_name,
            conflict_retry_limit=settings.conflict_retry_limit,
            dependency_retry_seconds=settings.dependency_retry_seconds,
        )
        self.loops: dict[ResourceKind, ReconcileLoop] = {
            kind: ReconcileLoop(kind, store, api_for(kind), mapper_for(kind), config)
            for kind in ResourceKind
        }

        self.scanner = AnnotationScanner(settings.annotation_prefix, CheckMapper())
        self.index = OwnerIndex(store, settings.controller_domain)
        self.synchronizer = DerivedResourceSynchronizer(
            store, self.scanner, self.index, settings.conflict_retry_limit
        )

        self.controllers: dict[str, Controller] = {}
        for kind, loop in self.loops.items():
            self.controllers[kind.value] = Controller(
                kind.value,
                self._new_queue(kind.value),
                self._reconcile_fn(loop),
                workers=settings.workers_per_kind,
            )
        self.controllers[INGRESS] = Controller(
            INGRESS,
            self._new_queue(INGRESS),
            self._sync_ingress,
            workers=settings.workers_per_kind,
        )

    def _new_queue(self, name: str) -> WorkQueue:
        return WorkQueue(
            name,
            base_delay=self.settings.backoff_base_seconds,
            max_delay=self.settings.backoff_max_seconds,
        )

    @staticmethod
    def _reconcile_fn(loop: ReconcileLoop):
        async def reconcile(key: str) -> ReconcileResult:
            namespace, name = split_key(key)
            result = await loop.reconcile(namespace, name)
            logger.debug(f"{loop.kind.value} {key}: {result.phase.value}")
            return result

        return reconcile

    async def _sync_ingress(self, key: str):
        namespace, name = split_key(key)
        return await self.synchronizer.sync(namespace, name)

    def enqueue(self, resource_type: str, key: str) -> None:
        self.controllers[resource_type].queue.add(key)

    def handle_event(self, event: WatchEvent) -> None:
        """Route a watch event to the matching queue(s)."""
        if event.resource_type == INGRESS:
            self.enqueue(INGRESS, event.key)
            return

        kind = ResourceKind(event.resource_type)
        self.enqueue(kind.value, event.key)

        if kind is ResourceKind.CHECK and event.object:
            # A derived check changing (or vanishing) re-syncs its owner
            owner = self.index.owner_of(resource_from_object(kind, event.object))
            if owner is not None:
                self.enqueue(INGRESS, owner.ingress_key)

    def _handle_event_threadsafe(self, event: WatchEvent) -> None:
        if self._loop is None:
            return
        self._loop.call_soon_threadsafe(self.handle_event, event)

    async def resync(self) -> None:
        """Enqueue everything, checking declared resources for external drift."""
        namespace = self.settings.watch_namespace
        for kind, loop in self.loops.items():
            resources = await self.store.list(kind, namespace=namespace if kind.namespaced else None)
            for resource in resources:
                loop.request_drift_check(resource.key)
                self.enqueue(kind.value, resource.key)

        present = set()
        for ingress in await self.store.list_ingresses(namespace):
            present.add(ingress.key)
            if self.scanner.matches(ingress):
                self.enqueue(INGRESS, ingress.key)

        # Every owner is re-synced, annotated or not, so stale derived checks go
        for ingress_namespace, ingress_name in await self.synchronizer.owning_ingresses():
            if namespace and ingress_namespace != namespace:
                continue
            key = f"{ingress_namespace}/{ingress_name}"
            if key not in present:
                logger.info(f"Collecting derived checks of deleted ingress {key}")
            self.enqueue(INGRESS, key)

    async def _periodic_resync(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.settings.resync_interval_seconds)
                logger.debug("Running periodic resync")
                await self.resync()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in periodic resync: {e}", exc_info=True)

    async def start(self) -> None:
        """Start workers, watches and periodic resync."""
        if self._running:
            logger.warning("Operator manager already running")
            return

        self._running = True
        self._loop = asyncio.get_running_loop()

        for controller in self.controllers.values():
            await controller.start()

        if self.watcher is not None:
            namespace = self.settings.watch_namespace
            for kind in ResourceKind:
                self.watcher.register_handler(kind.value, self._handle_event_threadsafe)
                self._tasks.append(
                    asyncio.create_task(
                        asyncio.to_thread(
                            self.watcher.watch_resources,
                            kind,
                            namespace if kind.namespaced else None,
                        )
                    )
                )
            self.watcher.register_handler(INGRESS, self._handle_event_threadsafe)
            self._tasks.append(
                asyncio.create_task(asyncio.to_thread(self.watcher.watch_ingresses, namespace))
            )

        await self.resync()
        self._tasks.append(asyncio.create_task(self._periodic_resync()))
        logger.info("✓ Operator manager started")

    async def stop(self) -> None:
        """Stop watches and workers; in-flight reconciles are abandoned."""
        logger.info("Stopping operator manager...")
        self._running = False

        if self.watcher is not None:
            self.watcher.stop()

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        for controller in self.controllers.values():
            await controller.stop()

        logger.info("Operator manager stopped")

    async def run_until_idle(self, max_rounds: int = 50) -> None:
        """Drain all queues inline until none has ready work."""
        for _ in range(max_rounds):
            processed = 0
            for controller in self.controllers.values():
                processed += await controller.run_until_idle()
            if not processed:
                return
