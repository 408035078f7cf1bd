"""Checkly operator - reconciles checks, groups and alert channels with Checkly."""

__version__ = "0.1.0"

from .annotations import AnnotationScanner, CheckCandidate, ScanResult
from .config import Settings, get_settings
from .derived import DerivedResourceSynchronizer, OwnerIndex, SyncResult
from .errors import (
    ConflictError,
    DependencyNotReadyError,
    NotFoundError,
    OperatorError,
    TransientError,
    ValidationError,
)
from .external import ChecklyClient, ExternalResourceAPI
from .manager import OperatorManager
from .mappers import AlertChannelMapper, CheckMapper, GroupMapper, mapper_for
from .models import (
    Condition,
    ConditionStatus,
    DeclaredResource,
    IngressSource,
    ObjectMeta,
    OwnerKey,
    ReconcilePhase,
    ResourceKind,
    ResourceStatus,
    WatchEvent,
)
from .reconciler import ReconcileConfig, ReconcileLoop, ReconcileResult
from .store import ClusterStore, KubernetesStore
from .workqueue import Controller, WorkQueue

__all__ = [
    # Reconciliation
    "ReconcileLoop",
    "ReconcileConfig",
    "ReconcileResult",
    "OperatorManager",
    # Ingress-derived checks
    "AnnotationScanner",
    "CheckCandidate",
    "ScanResult",
    "DerivedResourceSynchronizer",
    "OwnerIndex",
    "SyncResult",
    # Mappers
    "CheckMapper",
    "GroupMapper",
    "AlertChannelMapper",
    "mapper_for",
    # Boundaries
    "ClusterStore",
    "KubernetesStore",
    "ExternalResourceAPI",
    "ChecklyClient",
    # Queueing
    "WorkQueue",
    "Controller",
    # Configuration
    "Settings",
    "get_settings",
    # Errors
    "OperatorError",
    "ValidationError",
    "ConflictError",
    "TransientError",
    "NotFoundError",
    "DependencyNotReadyError",
    # Models
    "ResourceKind",
    "DeclaredResource",
    "ObjectMeta",
    "ResourceStatus",
    "Condition",
    "ConditionStatus",
    "ReconcilePhase",
    "OwnerKey",
    "IngressSource",
    "WatchEvent",
]
