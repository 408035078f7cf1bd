"""Cluster store boundary: declared resources and ingress sources."""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, List, Optional

from kubernetes.client import V1Ingress
from kubernetes.client.exceptions import ApiException

from .cluster import ClusterConnection
from .errors import ConflictError, NotFoundError, TransientError
from .models import (
    Condition,
    DeclaredResource,
    IngressPath,
    IngressRule,
    IngressSource,
    ObjectMeta,
    ResourceKind,
    ResourceStatus,
)

logger = logging.getLogger(__name__)


class ClusterStore(ABC):
    """
    Persistent store of declared resources and ingress sources.

    Writes carry the object's resource_version; a stale version raises
    ConflictError instead of overwriting a concurrent edit.
    """

    @abstractmethod
    async def get(
        self, kind: ResourceKind, namespace: str, name: str
    ) -> Optional[DeclaredResource]:
        """Return the resource or None when absent."""

    @abstractmethod
    async def list(
        self,
        kind: ResourceKind,
        namespace: Optional[str] = None,
        labels: Optional[dict[str, str]] = None,
    ) -> List[DeclaredResource]:
        """List resources, optionally scoped to a namespace and label selector."""

    @abstractmethod
    async def create(self, resource: DeclaredResource) -> DeclaredResource:
        """Create a resource; ConflictError if it already exists."""

    @abstractmethod
    async def update(self, resource: DeclaredResource) -> DeclaredResource:
        """Write metadata and spec (not status)."""

    @abstractmethod
    async def update_status(self, resource: DeclaredResource) -> DeclaredResource:
        """Write the status subresource."""

    @abstractmethod
    async def delete(self, kind: ResourceKind, namespace: str, name: str) -> None:
        """Request deletion; finalizers hold the object until they are removed."""

    @abstractmethod
    async def get_ingress(self, namespace: str, name: str) -> Optional[IngressSource]:
        """Return the ingress or None when absent."""

    @abstractmethod
    async def list_ingresses(self, namespace: Optional[str] = None) -> List[IngressSource]:
        """List ingress sources."""


def label_selector(labels: Optional[dict[str, str]]) -> Optional[str]:
    if not labels:
        return None
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def _parse_time(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def resource_from_object(kind: ResourceKind, obj: dict[str, Any]) -> DeclaredResource:
    """Convert a custom object (as returned by the API server) to a DeclaredResource."""
    meta = obj.get("metadata") or {}
    status = obj.get("status") or {}
    return DeclaredResource(
        kind=kind,
        metadata=ObjectMeta(
            name=meta["name"],
            namespace=meta.get("namespace") or "",
            generation=meta.get("generation") or 1,
            resource_version=meta.get("resourceVersion") or "",
            finalizers=list(meta.get("finalizers") or []),
            deletion_timestamp=_parse_time(meta.get("deletionTimestamp")),
            labels=dict(meta.get("labels") or {}),
            annotations=dict(meta.get("annotations") or {}),
        ),
        spec=dict(obj.get("spec") or {}),
        status=ResourceStatus(
            external_id=status.get("externalId") or None,
            observed_generation=status.get("observedGeneration") or 0,
            applied_hash=status.get("appliedHash") or None,
            conditions=[_condition_from_dict(c) for c in status.get("conditions") or []],
        ),
    )


def _condition_from_dict(data: dict[str, Any]) -> Condition:
    condition = Condition(
        type=data["type"],
        status=data.get("status", "Unknown"),
        reason=data.get("reason") or "",
        message=data.get("message") or "",
    )
    transition = _parse_time(data.get("lastTransitionTime"))
    if transition is not None:
        condition.last_transition_time = transition
    return condition


def resource_to_object(
    resource: DeclaredResource, group: str, version: str
) -> dict[str, Any]:
    """Convert a DeclaredResource to a custom object body."""
    meta = resource.metadata
    metadata: dict[str, Any] = {
        "name": meta.name,
        "labels": meta.labels,
        "annotations": meta.annotations,
        "finalizers": meta.finalizers,
    }
    if meta.namespace:
        metadata["namespace"] = meta.namespace
    if meta.resource_version:
        metadata["resourceVersion"] = meta.resource_version

    status = resource.status
    return {
        "apiVersion": f"{group}/{version}",
        "kind": resource.kind.value,
        "metadata": metadata,
        "spec": resource.spec,
        "status": {
            "externalId": status.external_id or "",
            "observedGeneration": status.observed_generation,
            "appliedHash": status.applied_hash or "",
            "conditions": [
                {
                    "type": c.type,
                    "status": c.status.value,
                    "reason": c.reason,
                    "message": c.message,
                    "lastTransitionTime": c.last_transition_time.isoformat().replace(
                        "+00:00", "Z"
                    ),
                }
                for c in status.conditions
            ],
        },
    }


def ingress_from_object(ingress: V1Ingress) -> IngressSource:
    """Convert a V1Ingress into an IngressSource."""
    rules = []
    for rule in ingress.spec.rules or []:
        paths = []
        if rule.http and rule.http.paths:
            paths = [IngressPath(path=p.path or "/") for p in rule.http.paths]
        rules.append(IngressRule(host=rule.host or "", paths=paths))

    tls_hosts = [host for tls in ingress.spec.tls or [] for host in tls.hosts or []]

    return IngressSource(
        name=ingress.metadata.name,
        namespace=ingress.metadata.namespace,
        rules=rules,
        tls_hosts=tls_hosts,
        annotations=dict(ingress.metadata.annotations or {}),
        resource_version=ingress.metadata.resource_version or "",
        deletion_requested=ingress.metadata.deletion_timestamp is not None,
    )


def translate_api_exception(e: ApiException, what: str) -> Exception:
    """Map an ApiException to the operator error taxonomy."""
    if e.status == 404:
        return NotFoundError(f"{what} not found", status_code=404)
    if e.status == 409:
        return ConflictError(f"{what}: {e.reason}", status_code=409)
    return TransientError(f"{what}: {e.status} {e.reason}", status_code=e.status)


class KubernetesStore(ClusterStore):
    """ClusterStore backed by the Kubernetes API server."""

    def __init__(
        self,
        cluster: ClusterConnection,
        group: str = "k8s.checklyhq.com",
        version: str = "v1alpha1",
    ):
        """
        Initialize Kubernetes store.

        Args:
            cluster: Cluster connection
            group: API group of the operator's custom resources
            version: API version of the operator's custom resources
        """
        self.cluster = cluster
        self.group = group
        self.version = version
        self.custom_objects = cluster.custom_objects
        self.networking_v1 = cluster.networking_v1

    async def _call(self, what: str, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except ApiException as e:
            raise translate_api_exception(e, what) from e

    async def get(self, kind, namespace, name):
        what = f"{kind.value} {namespace}/{name}"
        try:
            if kind.namespaced:
                obj = await self._call(
                    what,
                    self.custom_objects.get_namespaced_custom_object,
                    self.group, self.version, namespace, kind.plural, name,
                )
            else:
                obj = await self._call(
                    what,
                    self.custom_objects.get_cluster_custom_object,
                    self.group, self.version, kind.plural, name,
                )
        except NotFoundError:
            return None
        return resource_from_object(kind, obj)

    async def list(self, kind, namespace=None, labels=None):
        selector = label_selector(labels)
        if kind.namespaced and namespace:
            result = await self._call(
                f"list {kind.plural}",
                self.custom_objects.list_namespaced_custom_object,
                self.group, self.version, namespace, kind.plural,
                label_selector=selector,
            )
        else:
            result = await self._call(
                f"list {kind.plural}",
                self.custom_objects.list_cluster_custom_object,
                self.group, self.version, kind.plural,
                label_selector=selector,
            )
        return [resource_from_object(kind, item) for item in result.get("items", [])]

    async def create(self, resource):
        body = resource_to_object(resource, self.group, self.version)
        body.pop("status")
        body["metadata"].pop("resourceVersion", None)
        kind = resource.kind
        if kind.namespaced:
            obj = await self._call(
                f"create {kind.value} {resource.key}",
                self.custom_objects.create_namespaced_custom_object,
                self.group, self.version, resource.metadata.namespace, kind.plural, body,
            )
        else:
            obj = await self._call(
                f"create {kind.value} {resource.key}",
                self.custom_objects.create_cluster_custom_object,
                self.group, self.version, kind.plural, body,
            )
        return resource_from_object(kind, obj)

    async def update(self, resource):
        body = resource_to_object(resource, self.group, self.version)
        body.pop("status")
        return await self._replace(resource, body, status=False)

    async def update_status(self, resource):
        body = resource_to_object(resource, self.group, self.version)
        return await self._replace(resource, body, status=True)

    async def _replace(self, resource, body, status: bool):
        kind = resource.kind
        meta = resource.metadata
        what = f"{'status of ' if status else ''}{kind.value} {resource.key}"
        if kind.namespaced:
            fn = (
                self.custom_objects.replace_namespaced_custom_object_status
                if status
                else self.custom_objects.replace_namespaced_custom_object
            )
            obj = await self._call(
                what, fn, self.group, self.version, meta.namespace, kind.plural, meta.name, body
            )
        else:
            fn = (
                self.custom_objects.replace_cluster_custom_object_status
                if status
                else self.custom_objects.replace_cluster_custom_object
            )
            obj = await self._call(
                what, fn, self.group, self.version, kind.plural, meta.name, body
            )
        return resource_from_object(kind, obj)

    async def delete(self, kind, namespace, name):
        what = f"{kind.value} {namespace}/{name}"
        try:
            if kind.namespaced:
                await self._call(
                    what,
                    self.custom_objects.delete_namespaced_custom_object,
                    self.group, self.version, namespace, kind.plural, name,
                )
            else:
                await self._call(
                    what,
                    self.custom_objects.delete_cluster_custom_object,
                    self.group, self.version, kind.plural, name,
                )
        except NotFoundError:
            logger.debug(f"{what} already gone")

    async def get_ingress(self, namespace, name):
        try:
            ingress = await self._call(
                f"Ingress {namespace}/{name}",
                self.networking_v1.read_namespaced_ingress,
                name, namespace,
            )
        except NotFoundError:
            return None
        return ingress_from_object(ingress)

    async def list_ingresses(self, namespace=None):
        if namespace:
            result = await self._call(
                "list ingresses",
                self.networking_v1.list_namespaced_ingress,
                namespace,
            )
        else:
            result = await self._call(
                "list ingresses",
                self.networking_v1.list_ingress_for_all_namespaces,
            )
        return [ingress_from_object(item) for item in result.items]
