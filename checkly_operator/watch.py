"""Kubernetes watch streams for declared resources and ingresses."""

import logging
import threading
from typing import Callable, Optional

from kubernetes import watch as k8s_watch
from kubernetes.client.exceptions import ApiException

from .cluster import ClusterConnection
from .models import ResourceKind, WatchEvent

logger = logging.getLogger(__name__)

INGRESS = "ingress"


class ResourceWatcher:
    """
    Watches the operator's custom resources and ingresses.

    Watches block, so each one is meant to run in its own thread (the
    manager uses asyncio.to_thread). Handlers are called from that thread.
    """

    def __init__(
        self,
        cluster: ClusterConnection,
        group: str = "k8s.checklyhq.com",
        version: str = "v1alpha1",
        retry_delay: float = 1.0,
        max_retry_delay: float = 60.0,
    ):
        """
        Initialize resource watcher.

        Args:
            cluster: Cluster connection
            group: API group of the custom resources
            version: API version of the custom resources
            retry_delay: First wait before restarting a failed watch
            max_retry_delay: Longest wait between restarts
        """
        self.cluster = cluster
        self.group = group
        self.version = version
        self.custom_objects = cluster.custom_objects
        self.networking_v1 = cluster.networking_v1
        self._watches: list[k8s_watch.Watch] = []
        self._handlers: dict[str, list[Callable[[WatchEvent], None]]] = {}
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self._stop_event = threading.Event()

    def register_handler(
        self,
        resource_type: str,
        handler: Callable[[WatchEvent], None],
    ) -> None:
        """
        Register a handler for watch events.

        Args:
            resource_type: Kind value (e.g. "ApiCheck") or "ingress"
            handler: Callback that takes a WatchEvent
        """
        self._handlers.setdefault(resource_type, []).append(handler)

    def _emit_event(self, event: WatchEvent) -> None:
        for handler in self._handlers.get(event.resource_type, []):
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Error in watch event handler: {e}", exc_info=True)

    def watch_resources(
        self,
        kind: ResourceKind,
        namespace: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
    ) -> None:
        """
        Watch one custom resource kind until stopped.

        Args:
            kind: Resource kind to watch
            namespace: Namespace to watch (all namespaces when None)
            timeout_seconds: Server-side watch timeout
        """
        if kind.namespaced and namespace:
            list_fn = self.custom_objects.list_namespaced_custom_object
            args = (self.group, self.version, namespace, kind.plural)
        else:
            list_fn = self.custom_objects.list_cluster_custom_object
            args = (self.group, self.version, kind.plural)

        def to_event(event_type, obj):
            meta = obj.get("metadata", {})
            return WatchEvent(
                event_type=event_type,
                resource_type=kind.value,
                name=meta.get("name", ""),
                namespace=meta.get("namespace") or "",
                object=obj,
            )

        self._stream(kind.value, list_fn, args, to_event, timeout_seconds)

    def watch_ingresses(
        self,
        namespace: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
    ) -> None:
        """
        Watch ingresses until stopped.

        Args:
            namespace: Namespace to watch (all namespaces when None)
            timeout_seconds: Server-side watch timeout
        """
        if namespace:
            list_fn = self.networking_v1.list_namespaced_ingress
            args = (namespace,)
        else:
            list_fn = self.networking_v1.list_ingress_for_all_namespaces
            args = ()

        def to_event(event_type, obj):
            return WatchEvent(
                event_type=event_type,
                resource_type=INGRESS,
                name=obj.metadata.name,
                namespace=obj.metadata.namespace,
                object={"annotations": dict(obj.metadata.annotations or {})},
            )

        self._stream(INGRESS, list_fn, args, to_event, timeout_seconds)

    def _stream(self, what, list_fn, args, to_event, timeout_seconds) -> None:
        delay = self.retry_delay
        while not self._stop_event.is_set():
            watcher = k8s_watch.Watch()
            self._watches.append(watcher)
            try:
                logger.info(f"Starting watch on {what}")
                for event in watcher.stream(list_fn, *args, timeout_seconds=timeout_seconds):
                    if event["type"] == "ERROR":
                        logger.warning(f"Watch error on {what}: {event['raw_object']}")
                        continue
                    delay = self.retry_delay
                    self._emit_event(to_event(event["type"], event["object"]))
                continue
            except ApiException as e:
                if e.status == 410:  # Resource version too old
                    logger.warning(f"Watch on {what} expired, restarting...")
                    continue
                logger.error(f"Error watching {what}: {e}", exc_info=True)
            except Exception as e:
                logger.error(f"Error watching {what}: {e}", exc_info=True)
            finally:
                self._watches.remove(watcher)

            # Failed watches restart until stopped; resync covers the gap
            logger.info(f"Restarting watch on {what} in {delay:.1f}s")
            self._stop_event.wait(delay)
            delay = min(delay * 2, self.max_retry_delay)

    def stop(self) -> None:
        """Stop all active watches."""
        self._stop_event.set()
        for watcher in list(self._watches):
            watcher.stop()
