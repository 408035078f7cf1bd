"""Pytest configuration and fixtures for operator tests."""

import copy
import itertools
from typing import Any, Optional
from unittest.mock import MagicMock

import pytest
from kubernetes import client

from checkly_operator.errors import ConflictError, NotFoundError
from checkly_operator.external import ExternalResourceAPI
from checkly_operator.mappers import mapper_for
from checkly_operator.models import (
    DeclaredResource,
    IngressPath,
    IngressRule,
    IngressSource,
    ObjectMeta,
    ResourceKind,
    utcnow,
)
from checkly_operator.reconciler import ReconcileConfig, ReconcileLoop

FINALIZER = "k8s.checklyhq.com/finalizer"
DOMAIN = "k8s.checklyhq.com"
PREFIX = f"{DOMAIN}/"


class FakeStore:
    """
    In-memory cluster store with API server semantics.

    - every write bumps resource_version; a stale version raises ConflictError
    - a spec change bumps generation
    - delete of an object with finalizers only sets deletion_timestamp; the
      object disappears once its last finalizer is removed
    """

    def __init__(self):
        self.objects: dict[tuple[ResourceKind, str, str], DeclaredResource] = {}
        self.ingresses: dict[tuple[str, str], IngressSource] = {}
        self.writes: list[tuple[str, str]] = []
        self.conflicts: list[str] = []  # operations that fail once with a conflict
        self._versions = itertools.count(1)

    def _bump(self, resource: DeclaredResource) -> None:
        resource.metadata.resource_version = str(next(self._versions))

    def _stored(self, resource: DeclaredResource) -> DeclaredResource:
        key = (resource.kind, resource.metadata.namespace, resource.metadata.name)
        stored = self.objects.get(key)
        if stored is None:
            raise NotFoundError(f"{resource.kind.value} {resource.key} not found")
        if stored.metadata.resource_version != resource.metadata.resource_version:
            raise ConflictError(f"{resource.kind.value} {resource.key} was modified")
        return stored

    def _maybe_conflict(self, operation: str) -> None:
        if operation in self.conflicts:
            self.conflicts.remove(operation)
            raise ConflictError(f"injected conflict on {operation}")

    async def get(self, kind, namespace, name):
        stored = self.objects.get((kind, namespace, name))
        return stored.model_copy(deep=True) if stored else None

    async def list(self, kind, namespace=None, labels=None):
        result = []
        for (k, ns, _), resource in sorted(self.objects.items(), key=lambda i: i[0][1:]):
            if k is not kind or (namespace and ns != namespace):
                continue
            if labels and any(resource.metadata.labels.get(lk) != lv for lk, lv in labels.items()):
                continue
            result.append(resource.model_copy(deep=True))
        return result

    async def create(self, resource):
        self._maybe_conflict("create")
        key = (resource.kind, resource.metadata.namespace, resource.metadata.name)
        if key in self.objects:
            raise ConflictError(f"{resource.kind.value} {resource.key} already exists")
        stored = resource.model_copy(deep=True)
        stored.metadata.generation = 1
        self._bump(stored)
        self.objects[key] = stored
        self.writes.append(("create", resource.key))
        return stored.model_copy(deep=True)

    async def update(self, resource):
        self._maybe_conflict("update")
        stored = self._stored(resource)
        if stored.spec != resource.spec:
            stored.metadata.generation += 1
        stored.spec = copy.deepcopy(resource.spec)
        stored.metadata.labels = dict(resource.metadata.labels)
        stored.metadata.annotations = dict(resource.metadata.annotations)
        stored.metadata.finalizers = list(resource.metadata.finalizers)
        self._bump(stored)
        self.writes.append(("update", resource.key))
        if stored.metadata.deletion_requested and not stored.metadata.finalizers:
            del self.objects[(resource.kind, resource.metadata.namespace, resource.metadata.name)]
        return stored.model_copy(deep=True)

    async def update_status(self, resource):
        self._maybe_conflict("update_status")
        stored = self._stored(resource)
        stored.status = resource.status.model_copy(deep=True)
        self._bump(stored)
        self.writes.append(("update_status", resource.key))
        return stored.model_copy(deep=True)

    async def delete(self, kind, namespace, name):
        key = (kind, namespace, name)
        stored = self.objects.get(key)
        if stored is None:
            return
        self.writes.append(("delete", stored.key))
        if not stored.metadata.finalizers:
            del self.objects[key]
            return
        if stored.metadata.deletion_timestamp is None:
            stored.metadata.deletion_timestamp = utcnow()
            self._bump(stored)

    async def get_ingress(self, namespace, name):
        ingress = self.ingresses.get((namespace, name))
        return ingress.model_copy(deep=True) if ingress else None

    async def list_ingresses(self, namespace=None):
        return [
            ingress.model_copy(deep=True)
            for (ns, _), ingress in sorted(self.ingresses.items())
            if not namespace or ns == namespace
        ]

    # Test helpers

    def put(self, resource: DeclaredResource) -> DeclaredResource:
        """Store a resource as-is (as if written by a user)."""
        stored = resource.model_copy(deep=True)
        self._bump(stored)
        self.objects[(stored.kind, stored.metadata.namespace, stored.metadata.name)] = stored
        return stored

    def peek(self, kind: ResourceKind, namespace: str, name: str) -> Optional[DeclaredResource]:
        return self.objects.get((kind, namespace, name))

    def edit_spec(self, kind: ResourceKind, namespace: str, name: str, **changes) -> None:
        """Apply a user edit to the spec."""
        stored = self.objects[(kind, namespace, name)]
        stored.spec.update(changes)
        stored.metadata.generation += 1
        self._bump(stored)

    def put_ingress(self, ingress: IngressSource) -> None:
        self.ingresses[(ingress.namespace, ingress.name)] = ingress.model_copy(deep=True)

    def remove_ingress(self, namespace: str, name: str) -> None:
        self.ingresses.pop((namespace, name), None)


class FakeExternalAPI(ExternalResourceAPI):
    """
    In-memory Checkly resource collection.

    Records every call; ``failures`` maps an operation name to exceptions
    raised (in order) on its next invocations.
    """

    def __init__(self, prefix: str = "ext"):
        self.prefix = prefix
        self.resources: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, Optional[str]]] = []
        self.failures: dict[str, list[Exception]] = {}
        self._ids = itertools.count(1)

    def fail(self, operation: str, *errors: Exception) -> None:
        self.failures.setdefault(operation, []).extend(errors)

    def _maybe_fail(self, operation: str) -> None:
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

    async def create(self, representation):
        self.calls.append(("create", None))
        self._maybe_fail("create")
        external_id = f"{self.prefix}-{next(self._ids)}"
        self.resources[external_id] = copy.deepcopy(representation)
        return {**copy.deepcopy(representation), "id": external_id}

    async def read(self, external_id):
        self.calls.append(("read", external_id))
        self._maybe_fail("read")
        if external_id not in self.resources:
            raise NotFoundError(f"{external_id} not found", status_code=404)
        observed = copy.deepcopy(self.resources[external_id])
        observed["id"] = external_id
        observed["created_at"] = "2024-01-01T00:00:00Z"
        return observed

    async def update(self, external_id, representation):
        self.calls.append(("update", external_id))
        self._maybe_fail("update")
        if external_id not in self.resources:
            raise NotFoundError(f"{external_id} not found", status_code=404)
        self.resources[external_id] = copy.deepcopy(representation)

    async def delete(self, external_id):
        self.calls.append(("delete", external_id))
        self._maybe_fail("delete")
        if external_id not in self.resources:
            raise NotFoundError(f"{external_id} not found", status_code=404)
        del self.resources[external_id]


@pytest.fixture
def store():
    """In-memory cluster store."""
    return FakeStore()


@pytest.fixture
def external_api():
    """In-memory external API for a single kind."""
    return FakeExternalAPI()


@pytest.fixture
def reconcile_config():
    """Reconcile loop configuration used in tests."""
    return ReconcileConfig(finalizer=FINALIZER, conflict_retry_limit=3, dependency_retry_seconds=5.0)


@pytest.fixture
def make_loop(store, reconcile_config):
    """Factory for reconcile loops sharing the test store."""

    def factory(kind: ResourceKind, api: ExternalResourceAPI) -> ReconcileLoop:
        return ReconcileLoop(kind, store, api, mapper_for(kind), reconcile_config)

    return factory


@pytest.fixture
def make_resource():
    """Factory for declared resources."""

    def factory(
        kind: ResourceKind,
        name: str,
        spec: dict[str, Any],
        namespace: str = "",
        **meta,
    ) -> DeclaredResource:
        if kind.namespaced and not namespace:
            namespace = "default"
        return DeclaredResource(
            kind=kind,
            metadata=ObjectMeta(name=name, namespace=namespace, **meta),
            spec=spec,
        )

    return factory


@pytest.fixture
def make_ingress():
    """Factory for ingress sources."""

    def factory(
        name: str,
        annotations: Optional[dict[str, str]] = None,
        rules: Optional[list[tuple[str, list[str]]]] = None,
        namespace: str = "default",
        tls_hosts: Optional[list[str]] = None,
    ) -> IngressSource:
        return IngressSource(
            name=name,
            namespace=namespace,
            annotations=annotations or {},
            rules=[
                IngressRule(host=host, paths=[IngressPath(path=p) for p in paths])
                for host, paths in (rules or [])
            ],
            tls_hosts=tls_hosts or [],
        )

    return factory


@pytest.fixture
def sample_check_spec():
    """Minimal ApiCheck spec."""
    return {"url": "https://a.example/health", "frequency": "60s"}


@pytest.fixture
def mock_cluster_connection():
    """Mock cluster connection for testing."""
    mock_conn = MagicMock()
    mock_conn.custom_objects = MagicMock(spec=client.CustomObjectsApi)
    mock_conn.networking_v1 = MagicMock(spec=client.NetworkingV1Api)
    return mock_conn
