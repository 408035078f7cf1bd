"""Resource models for the Checkly operator."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class ResourceKind(str, Enum):
    """Declarative resource kinds reconciled against Checkly."""

    CHECK = "ApiCheck"
    GROUP = "Group"
    ALERT_CHANNEL = "AlertChannel"

    @property
    def plural(self) -> str:
        return _PLURALS[self]

    @property
    def namespaced(self) -> bool:
        # Groups and alert channels are shared across namespaces
        return self is ResourceKind.CHECK


_PLURALS = {
    ResourceKind.CHECK: "apichecks",
    ResourceKind.GROUP: "groups",
    ResourceKind.ALERT_CHANNEL: "alertchannels",
}


class ConditionStatus(str, Enum):
    """Condition status values."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ReconcilePhase(str, Enum):
    """Per-object reconciliation phase."""

    PENDING = "Pending"
    SYNCING = "Syncing"
    SYNCED = "Synced"
    DRIFTED = "Drifted"
    DELETING = "Deleting"
    GONE = "Gone"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Condition(BaseModel):
    """Status condition on a declared resource."""

    type: str
    status: ConditionStatus = ConditionStatus.UNKNOWN
    reason: str = ""
    message: str = ""
    last_transition_time: datetime = Field(default_factory=utcnow)


class ObjectRef(BaseModel):
    """Reference to a declared resource by kind and name."""

    kind: ResourceKind
    name: str
    namespace: str = ""

    model_config = ConfigDict(frozen=True)


class ObjectMeta(BaseModel):
    """Subset of Kubernetes object metadata the operator relies on."""

    name: str
    namespace: str = ""
    generation: int = 1
    resource_version: str = ""
    finalizers: list[str] = Field(default_factory=list)
    deletion_timestamp: Optional[datetime] = None
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)

    @property
    def deletion_requested(self) -> bool:
        return self.deletion_timestamp is not None


class ResourceStatus(BaseModel):
    """Observed state written back by the reconcile loop."""

    external_id: Optional[str] = None
    observed_generation: int = 0
    applied_hash: Optional[str] = None
    conditions: list[Condition] = Field(default_factory=list)

    def get_condition(self, condition_type: str) -> Optional[Condition]:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    def set_condition(
        self,
        condition_type: str,
        status: ConditionStatus,
        reason: str = "",
        message: str = "",
    ) -> bool:
        """
        Set a condition, keeping its transition time unless the status flips.

        Args:
            condition_type: Condition type (e.g. "Ready")
            status: New condition status
            reason: Machine-readable reason
            message: Human-readable message

        Returns:
            True if anything about the condition changed
        """
        existing = self.get_condition(condition_type)
        if existing is None:
            self.conditions.append(
                Condition(type=condition_type, status=status, reason=reason, message=message)
            )
            self.conditions.sort(key=lambda c: c.type)
            return True

        changed = (existing.status, existing.reason, existing.message) != (
            status,
            reason,
            message,
        )
        if existing.status != status:
            existing.last_transition_time = utcnow()
        existing.status = status
        existing.reason = reason
        existing.message = message
        return changed


class DeclaredResource(BaseModel):
    """
    A declarative resource (ApiCheck, Group or AlertChannel).

    The spec is kept as the raw mapping the author wrote so that an invalid
    spec can still be stored and reported on; mappers validate it.
    """

    kind: ResourceKind
    metadata: ObjectMeta
    spec: dict[str, Any] = Field(default_factory=dict)
    status: ResourceStatus = Field(default_factory=ResourceStatus)

    @property
    def key(self) -> str:
        return object_key(self.metadata.namespace, self.metadata.name)

    @property
    def ref(self) -> ObjectRef:
        return ObjectRef(
            kind=self.kind, name=self.metadata.name, namespace=self.metadata.namespace
        )


class OwnerKey(BaseModel):
    """Deterministic identity of a derived check: ingress plus rule."""

    ingress_namespace: str
    ingress_name: str
    rule_key: str

    model_config = ConfigDict(frozen=True)

    @property
    def ingress_key(self) -> str:
        return object_key(self.ingress_namespace, self.ingress_name)


class IngressPath(BaseModel):
    """Single HTTP path of an ingress rule."""

    path: str = "/"


class IngressRule(BaseModel):
    """Host rule of an ingress."""

    host: str = ""
    paths: list[IngressPath] = Field(default_factory=list)


class IngressSource(BaseModel):
    """Read-only view of an ingress-like object."""

    name: str
    namespace: str
    rules: list[IngressRule] = Field(default_factory=list)
    tls_hosts: list[str] = Field(default_factory=list)
    annotations: dict[str, str] = Field(default_factory=dict)
    resource_version: str = ""
    deletion_requested: bool = False

    @property
    def key(self) -> str:
        return object_key(self.namespace, self.name)


class WatchEvent(BaseModel):
    """Cluster watch event."""

    event_type: str  # ADDED, MODIFIED, DELETED, ERROR
    resource_type: str
    name: str
    namespace: str = ""
    object: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> str:
        return object_key(self.namespace, self.name)


def object_key(namespace: str, name: str) -> str:
    """Queue key for an object; cluster-scoped objects have no namespace part."""
    return f"{namespace}/{name}" if namespace else name


def split_key(key: str) -> tuple[str, str]:
    """Inverse of object_key."""
    namespace, _, name = key.rpartition("/")
    return namespace, name
