"""
Reconcile loop shared by ApiCheck, Group and AlertChannel resources.

Every invocation reads the current object and converges it one step:

1. Deleting with finalizer: delete externally, clear the external id, drop
   the finalizer.
2. Missing finalizer: add it before anything is created externally.
3. Map the spec; create when there is no external id, otherwise compare
   with the last applied representation (or the live one on drift checks)
   and update only when they differ.

Invocations are idempotent; the work queue guarantees a single invocation
per object at a time, so there is never more than one external mutation in
flight for the same object.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .errors import (
    ConflictError,
    DependencyNotReadyError,
    NotFoundError,
    OperatorError,
    TransientError,
    ValidationError,
)
from .external import ExternalResourceAPI
from .finalizers import FinalizerManager
from .mappers import ResourceMapper, representation_hash
from .models import (
    ConditionStatus,
    DeclaredResource,
    ObjectRef,
    ReconcilePhase,
    ResourceKind,
    object_key,
)
from .store import ClusterStore

logger = logging.getLogger(__name__)

READY = "Ready"


@dataclass
class ReconcileConfig:
    """Per-loop settings passed in at construction."""

    finalizer: str
    conflict_retry_limit: int = 3
    dependency_retry_seconds: float = 10.0


@dataclass
class ReconcileResult:
    """Outcome of one reconcile invocation."""

    phase: ReconcilePhase
    requeue: bool = False
    requeue_after: Optional[float] = None
    error: Optional[str] = None


def phase_of(resource: DeclaredResource) -> ReconcilePhase:
    """Phase implied by a persisted object."""
    status = resource.status
    if resource.metadata.deletion_requested:
        return ReconcilePhase.DELETING
    if not status.external_id:
        return ReconcilePhase.PENDING
    ready = status.get_condition(READY)
    if (
        ready is not None
        and ready.status == ConditionStatus.TRUE
        and status.observed_generation == resource.metadata.generation
    ):
        return ReconcilePhase.SYNCED
    return ReconcilePhase.DRIFTED


class ReconcileLoop:
    """Reconciles one declarative resource kind against its external API."""

    def __init__(
        self,
        kind: ResourceKind,
        store: ClusterStore,
        api: ExternalResourceAPI,
        mapper: ResourceMapper,
        config: ReconcileConfig,
    ):
        """
        Initialize reconcile loop.

        Args:
            kind: Resource kind handled by this loop
            store: Cluster store holding the declared resources
            api: External API for this kind
            mapper: Mapper for this kind
            config: Loop configuration
        """
        if mapper.kind is not kind:
            raise ValueError(f"Mapper for {mapper.kind.value} cannot serve {kind.value}")
        self.kind = kind
        self.store = store
        self.api = api
        self.mapper = mapper
        self.config = config
        self.finalizers = FinalizerManager(store, config.finalizer)
        self._drift_checks: set[str] = set()
        # External ids created but not yet recorded in status
        self._created: dict[str, str] = {}

    def request_drift_check(self, key: str) -> None:
        """Make the next reconcile of key compare against the live external state."""
        self._drift_checks.add(key)

    async def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """
        Reconcile one object.

        Args:
            namespace: Object namespace ("" for cluster-scoped kinds)
            name: Object name

        Returns:
            ReconcileResult describing the phase and whether to retry
        """
        key = object_key(namespace, name)
        check_drift = key in self._drift_checks
        self._drift_checks.discard(key)

        attempts = 0
        while True:
            resource = await self.store.get(self.kind, namespace, name)
            if resource is None:
                return ReconcileResult(phase=ReconcilePhase.GONE)

            try:
                return await self._reconcile_once(resource, check_drift)
            except ConflictError as e:
                attempts += 1
                if attempts >= self.config.conflict_retry_limit:
                    logger.warning(
                        f"{self.kind.value} {key}: giving up after {attempts} conflicts: {e}"
                    )
                    if check_drift:
                        self._drift_checks.add(key)
                    return ReconcileResult(
                        phase=phase_of(resource), requeue=True, error=str(e)
                    )
                logger.debug(f"{self.kind.value} {key}: conflict ({e}), re-reading")

    async def _reconcile_once(
        self, resource: DeclaredResource, check_drift: bool
    ) -> ReconcileResult:
        if resource.metadata.deletion_requested:
            if not self.finalizers.has(resource):
                return ReconcileResult(phase=ReconcilePhase.GONE)
            return await self._finalize(resource)

        if not self.finalizers.has(resource):
            resource = await self.finalizers.add(resource)

        return await self._sync(resource, check_drift)

    async def _finalize(self, resource: DeclaredResource) -> ReconcileResult:
        external_id = resource.status.external_id or self._created.get(resource.key)
        if external_id:
            logger.info(
                f"Deleting Checkly {self.kind.value} {external_id} for {resource.key}"
            )
            try:
                await self.api.delete(external_id)
            except NotFoundError:
                logger.info(f"Checkly {self.kind.value} {external_id} already gone")
            except ConflictError:
                raise
            except OperatorError as e:
                return await self._retryable(resource, e, ReconcilePhase.DELETING)

            def clear(status):
                status.external_id = None
                status.applied_hash = None
                status.set_condition(
                    READY, ConditionStatus.FALSE, "Deleted", "External resource deleted"
                )

            resource = await self._write_status(resource, clear)
            self._created.pop(resource.key, None)

        await self.finalizers.remove(resource)
        logger.info(f"✓ {self.kind.value} {resource.key} cleaned up")
        return ReconcileResult(phase=ReconcilePhase.GONE)

    async def _sync(
        self, resource: DeclaredResource, check_drift: bool
    ) -> ReconcileResult:
        status = resource.status
        generation = resource.metadata.generation

        ready = status.get_condition(READY)
        if (
            ready is not None
            and ready.reason == ValidationError.reason
            and status.observed_generation == generation
        ):
            # Invalid spec stays invalid until the spec changes
            return ReconcileResult(phase=phase_of(resource))

        try:
            spec = self.mapper.parse_spec(resource.spec)
            refs = await self._resolve_references(resource, spec)
            desired = self.mapper.to_external(resource, spec, refs)
        except ValidationError as e:
            return await self._invalid(resource, e)
        except DependencyNotReadyError as e:
            return await self._dependency_not_ready(resource, e)

        desired_hash = representation_hash(desired)
        external_id = status.external_id or self._created.get(resource.key)

        try:
            if not external_id:
                created = await self._create(resource, desired)
                return await self._synced(resource, created, desired_hash, generation)

            if (
                not check_drift
                and status.applied_hash == desired_hash
                and phase_of(resource) == ReconcilePhase.SYNCED
            ):
                return ReconcileResult(phase=ReconcilePhase.SYNCED)

            try:
                observed = await self.api.read(external_id)
            except NotFoundError:
                logger.warning(
                    f"Checkly {self.kind.value} {external_id} for {resource.key} "
                    f"vanished, recreating"
                )
                created = await self._create(resource, desired)
                return await self._synced(resource, created, desired_hash, generation)

            if not self.mapper.matches(desired, observed):
                logger.info(
                    f"{self.kind.value} {resource.key} drifted, updating Checkly {external_id}"
                )
                await self.api.update(external_id, desired)

            return await self._synced(resource, observed, desired_hash, generation)

        except ValidationError as e:
            # Rejected by the external API: as terminal as a local validation error
            return await self._invalid(resource, e)
        except TransientError as e:
            phase = ReconcilePhase.SYNCING if not external_id else ReconcilePhase.DRIFTED
            return await self._retryable(resource, e, phase)

    async def _resolve_references(
        self, resource: DeclaredResource, spec: Any
    ) -> dict[ObjectRef, str]:
        refs: dict[ObjectRef, str] = {}
        for ref in self.mapper.references(resource, spec):
            target = await self.store.get(ref.kind, ref.namespace, ref.name)
            if (
                target is not None
                and target.status.external_id
                and not target.metadata.deletion_requested
            ):
                refs[ref] = target.status.external_id
        return refs

    async def _create(
        self, resource: DeclaredResource, desired: dict[str, Any]
    ) -> dict[str, Any]:
        created = await self.api.create(desired)
        external_id = self.mapper.from_external(created)["external_id"]
        # Until status records it, a retry must reuse this id instead of creating again
        self._created[resource.key] = external_id
        logger.info(
            f"✓ Created Checkly {self.kind.value} {external_id} for {resource.key}"
        )
        return created

    async def _synced(
        self,
        resource: DeclaredResource,
        representation: dict[str, Any],
        desired_hash: str,
        generation: int,
    ) -> ReconcileResult:
        fields = self.mapper.from_external(representation)

        def record(status):
            for field, value in fields.items():
                setattr(status, field, value)
            status.applied_hash = desired_hash
            status.observed_generation = generation
            status.set_condition(READY, ConditionStatus.TRUE, "Synced", "")

        await self._write_status(resource, record)
        self._created.pop(resource.key, None)
        return ReconcileResult(phase=ReconcilePhase.SYNCED)

    async def _invalid(
        self, resource: DeclaredResource, error: ValidationError
    ) -> ReconcileResult:
        logger.warning(f"{self.kind.value} {resource.key} is invalid: {error.message}")
        generation = resource.metadata.generation

        def record(status):
            status.observed_generation = generation
            status.set_condition(
                READY, ConditionStatus.FALSE, ValidationError.reason, error.message
            )

        resource = await self._write_status(resource, record)
        return ReconcileResult(phase=phase_of(resource), error=error.message)

    async def _dependency_not_ready(
        self, resource: DeclaredResource, error: DependencyNotReadyError
    ) -> ReconcileResult:
        logger.info(f"{self.kind.value} {resource.key} waiting: {error.message}")

        def record(status):
            status.set_condition(
                READY, ConditionStatus.FALSE, DependencyNotReadyError.reason, error.message
            )

        resource = await self._write_status(resource, record)
        return ReconcileResult(
            phase=phase_of(resource),
            requeue_after=self.config.dependency_retry_seconds,
            error=error.message,
        )

    async def _retryable(
        self, resource: DeclaredResource, error: OperatorError, phase: ReconcilePhase
    ) -> ReconcileResult:
        logger.warning(
            f"{self.kind.value} {resource.key}: {error.reason} error during "
            f"{phase.value}: {error.message}"
        )

        def record(status):
            status.set_condition(
                READY, ConditionStatus.FALSE, TransientError.reason, error.message
            )

        await self._write_status(resource, record)
        return ReconcileResult(phase=phase, requeue=True, error=error.message)

    async def _write_status(
        self,
        resource: DeclaredResource,
        mutate: Callable[[Any], None],
    ) -> DeclaredResource:
        """
        Apply mutate to the status and persist it when it changed.

        A version conflict re-reads the object and re-applies the mutation,
        so a result obtained from the external API (such as a fresh external
        id) is never lost to a concurrent metadata edit.
        """
        attempts = 0
        while True:
            updated = resource.model_copy(deep=True)
            mutate(updated.status)
            if updated.status == resource.status:
                return resource
            try:
                return await self.store.update_status(updated)
            except ConflictError:
                attempts += 1
                if attempts >= self.config.conflict_retry_limit:
                    raise
                fresh = await self.store.get(self.kind, resource.metadata.namespace, resource.metadata.name)
                if fresh is None:
                    raise
                resource = fresh
