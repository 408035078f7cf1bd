"""Finalizer handling for declared resources."""

import logging

from .models import DeclaredResource
from .store import ClusterStore

logger = logging.getLogger(__name__)


class FinalizerManager:
    """
    Adds and removes the operator finalizer on persisted objects.

    The finalizer lives on the stored object, not in memory, so the store
    keeps a deleted object around until external cleanup has finished even
    if the operator restarts in between.
    """

    def __init__(self, store: ClusterStore, finalizer: str):
        """
        Initialize finalizer manager.

        Args:
            store: Cluster store used to persist finalizer changes
            finalizer: Finalizer name (e.g. "k8s.checklyhq.com/finalizer")
        """
        self.store = store
        self.finalizer = finalizer

    def has(self, resource: DeclaredResource) -> bool:
        return self.finalizer in resource.metadata.finalizers

    async def add(self, resource: DeclaredResource) -> DeclaredResource:
        """
        Persist the finalizer on a resource.

        Returns:
            The stored resource (unchanged if the finalizer was present)

        Raises:
            ConflictError: If the resource changed since it was read
        """
        if self.has(resource):
            return resource
        updated = resource.model_copy(deep=True)
        updated.metadata.finalizers.append(self.finalizer)
        stored = await self.store.update(updated)
        logger.debug(f"Added finalizer to {resource.kind.value} {resource.key}")
        return stored

    async def remove(self, resource: DeclaredResource) -> DeclaredResource:
        """
        Remove the finalizer, letting the store drop a deleted object.

        Raises:
            ConflictError: If the resource changed since it was read
        """
        if not self.has(resource):
            return resource
        updated = resource.model_copy(deep=True)
        updated.metadata.finalizers = [
            f for f in updated.metadata.finalizers if f != self.finalizer
        ]
        stored = await self.store.update(updated)
        logger.debug(f"Removed finalizer from {resource.kind.value} {resource.key}")
        return stored
