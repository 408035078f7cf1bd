"""Derived ApiChecks owned by ingress rules."""

import hashlib
import logging
from dataclasses import dataclass
from typing import Optional

from .annotations import AnnotationScanner, CheckCandidate, ScanResult
from .errors import ConflictError, ValidationError
from .models import (
    ConditionStatus,
    DeclaredResource,
    ObjectMeta,
    OwnerKey,
    ResourceKind,
)
from .store import ClusterStore

logger = logging.getLogger(__name__)

ANNOTATIONS_VALID = "AnnotationsValid"
INVALID_ANNOTATION = "InvalidAnnotation"

_MAX_LABEL_VALUE = 63
_MAX_NAME = 253


def _short_hash(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()[:10]


def label_value(value: str) -> str:
    """Fit a value into a label, keeping it deterministic."""
    if len(value) <= _MAX_LABEL_VALUE:
        return value
    return f"{value[:_MAX_LABEL_VALUE - 11]}-{_short_hash(value)}"


def derived_name(owner: OwnerKey) -> str:
    """Deterministic ApiCheck name for an owner key."""
    name = f"{owner.ingress_name}-{owner.rule_key}"
    if len(name) <= _MAX_NAME:
        return name
    return f"{name[:_MAX_NAME - 11]}-{_short_hash(name)}"


class OwnerIndex:
    """
    Index of derived checks keyed by owner key.

    The back-reference is persisted on each check (labels for selection, an
    annotation with the full key), never as a live reference to the ingress,
    so the index still resolves after the ingress is gone.
    """

    def __init__(self, store: ClusterStore, domain: str):
        """
        Initialize owner index.

        Args:
            store: Cluster store
            domain: Controller domain used for label and annotation keys
        """
        self.store = store
        self.derived_label = f"{domain}/derived"
        self.ingress_label = f"{domain}/owner-ingress"
        self.rule_label = f"{domain}/owner-rule"
        self.owner_annotation = f"{domain}/owner"

    def labels_for(self, owner: OwnerKey) -> dict[str, str]:
        return {
            self.derived_label: "true",
            self.ingress_label: label_value(owner.ingress_name),
            self.rule_label: owner.rule_key,
        }

    def annotations_for(self, owner: OwnerKey) -> dict[str, str]:
        return {
            self.owner_annotation: f"{owner.ingress_namespace}/{owner.ingress_name}/{owner.rule_key}"
        }

    def owner_of(self, resource: DeclaredResource) -> Optional[OwnerKey]:
        """Owner key of a derived check, or None for authored checks."""
        if resource.metadata.labels.get(self.derived_label) != "true":
            return None
        raw = resource.metadata.annotations.get(self.owner_annotation, "")
        parts = raw.split("/")
        if len(parts) != 3 or not all(parts):
            return None
        namespace, name, rule_key = parts
        return OwnerKey(ingress_namespace=namespace, ingress_name=name, rule_key=rule_key)

    async def owned_by(self, namespace: str, name: str) -> dict[str, DeclaredResource]:
        """Derived checks owned by one ingress, by rule key."""
        candidates = await self.store.list(
            ResourceKind.CHECK,
            namespace=namespace,
            labels={self.derived_label: "true", self.ingress_label: label_value(name)},
        )
        owned = {}
        for resource in candidates:
            owner = self.owner_of(resource)
            if owner and owner.ingress_namespace == namespace and owner.ingress_name == name:
                owned[owner.rule_key] = resource
        return owned

    async def snapshot(self) -> dict[OwnerKey, DeclaredResource]:
        """All derived checks in the cluster."""
        resources = await self.store.list(
            ResourceKind.CHECK, labels={self.derived_label: "true"}
        )
        index = {}
        for resource in resources:
            owner = self.owner_of(resource)
            if owner is not None:
                index[owner] = resource
        return index


@dataclass
class SyncResult:
    """Outcome of one ingress sync."""

    created: int = 0
    updated: int = 0
    deleted: int = 0
    requeue: bool = False


class DerivedResourceSynchronizer:
    """
    Keeps the derived checks of each ingress equal to its scanner output.

    Sync is level-triggered: it always reads the current ingress and the
    currently owned checks, so events may arrive late, twice or out of
    order and the result is the same.
    """

    def __init__(
        self,
        store: ClusterStore,
        scanner: AnnotationScanner,
        index: OwnerIndex,
        conflict_retry_limit: int = 3,
    ):
        self.store = store
        self.scanner = scanner
        self.index = index
        self.conflict_retry_limit = conflict_retry_limit

    async def sync(self, namespace: str, name: str) -> SyncResult:
        """
        Converge the derived checks of one ingress.

        Args:
            namespace: Ingress namespace
            name: Ingress name

        Returns:
            SyncResult with counts and whether to retry later
        """
        attempts = 0
        while True:
            try:
                return await self._sync_once(namespace, name)
            except ConflictError as e:
                attempts += 1
                if attempts >= self.conflict_retry_limit:
                    logger.warning(f"Ingress {namespace}/{name}: giving up after conflicts: {e}")
                    return SyncResult(requeue=True)
                logger.debug(f"Ingress {namespace}/{name}: conflict ({e}), retrying")

    async def desired_for(self, namespace: str, name: str) -> ScanResult:
        """Scanner output for the ingress as currently stored."""
        ingress = await self.store.get_ingress(namespace, name)
        if ingress is None or ingress.deletion_requested or not self.scanner.matches(ingress):
            return ScanResult()
        return self.scanner.scan(ingress)

    async def _sync_once(self, namespace: str, name: str) -> SyncResult:
        scan = await self.desired_for(namespace, name)
        owned = await self.index.owned_by(namespace, name)
        result = SyncResult()

        for warning in scan.warnings:
            logger.warning(f"Ingress {namespace}/{name}: {warning}")

        for candidate in scan.candidates:
            rule_key = candidate.owner.rule_key
            existing = owned.get(rule_key)
            if existing is None:
                if await self._create(candidate):
                    result.created += 1
                else:
                    result.requeue = True
            elif existing.metadata.deletion_requested:
                # Recreate once the old object is gone
                result.requeue = True
            elif await self._update(existing, candidate):
                result.updated += 1

        for rule_key, message in scan.rejected.items():
            existing = owned.get(rule_key)
            if existing is None or existing.metadata.deletion_requested:
                logger.warning(f"Ingress {namespace}/{name}: skipping {rule_key}: {message}")
                continue
            await self._set_annotations_valid(
                existing, ConditionStatus.FALSE, INVALID_ANNOTATION, message
            )

        for rule_key, existing in owned.items():
            if rule_key in scan.keys or rule_key in scan.rejected:
                continue
            if existing.metadata.deletion_requested:
                continue
            logger.info(
                f"Ingress {namespace}/{name} no longer wants {rule_key}, "
                f"deleting ApiCheck {existing.metadata.name}"
            )
            await self.store.delete(ResourceKind.CHECK, namespace, existing.metadata.name)
            result.deleted += 1

        if result.created or result.updated or result.deleted:
            logger.info(
                f"Ingress {namespace}/{name}: {result.created} created, "
                f"{result.updated} updated, {result.deleted} deleted"
            )
        return result

    async def _create(self, candidate: CheckCandidate) -> bool:
        owner = candidate.owner
        resource = DeclaredResource(
            kind=ResourceKind.CHECK,
            metadata=ObjectMeta(
                name=derived_name(owner),
                namespace=owner.ingress_namespace,
                labels=self.index.labels_for(owner),
                annotations=self.index.annotations_for(owner),
            ),
            spec=candidate.spec,
        )
        try:
            await self.store.create(resource)
        except ConflictError:
            current = await self.store.get(
                ResourceKind.CHECK, owner.ingress_namespace, resource.metadata.name
            )
            if current is not None and self.index.owner_of(current) != owner:
                logger.warning(
                    f"ApiCheck {resource.key} exists and is not owned by "
                    f"{owner.ingress_key} {owner.rule_key}; leaving it alone"
                )
            return False
        logger.info(f"✓ Created derived ApiCheck {resource.key}")
        return True

    async def _update(self, existing: DeclaredResource, candidate: CheckCandidate) -> bool:
        changed = False
        if not self._same_spec(existing.spec, candidate.spec):
            updated = existing.model_copy(deep=True)
            updated.spec = candidate.spec
            existing = await self.store.update(updated)
            logger.info(f"Updated derived ApiCheck {existing.key}")
            changed = True

        valid = existing.status.get_condition(ANNOTATIONS_VALID)
        if valid is not None and valid.status != ConditionStatus.TRUE:
            await self._set_annotations_valid(existing, ConditionStatus.TRUE, "Valid", "")
        return changed

    def _same_spec(self, current: dict, desired: dict) -> bool:
        # Compare parsed specs so server-side defaulting does not cause update loops
        mapper = self.scanner.mapper
        try:
            return mapper.parse_spec(current) == mapper.parse_spec(desired)
        except ValidationError:
            return current == desired

    async def _set_annotations_valid(
        self,
        resource: DeclaredResource,
        status: ConditionStatus,
        reason: str,
        message: str,
    ) -> None:
        updated = resource.model_copy(deep=True)
        if updated.status.set_condition(ANNOTATIONS_VALID, status, reason, message):
            await self.store.update_status(updated)

    async def owning_ingresses(self) -> set[tuple[str, str]]:
        """Ingresses (present or not) that own at least one derived check."""
        return {
            (owner.ingress_namespace, owner.ingress_name)
            for owner in (await self.index.snapshot())
        }

    async def orphaned_owners(self) -> set[tuple[str, str]]:
        """Ingresses that own derived checks but no longer exist."""
        present = {(i.namespace, i.name) for i in await self.store.list_ingresses()}
        return await self.owning_ingresses() - present
