"""
Translation between declared specs and Checkly API representations.

Mappers are pure: they never perform I/O. Identical input always produces a
byte-identical canonical representation, which the reconcile loop hashes to
detect no-op reconciles without calling the external API.
"""

import hashlib
import json
from abc import ABC, abstractmethod
from typing import Any, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .durations import parse_duration
from .errors import DependencyNotReadyError, TransientError, ValidationError
from .models import DeclaredResource, ObjectRef, ResourceKind

# Frequencies accepted by the Checkly API
SECOND_FREQUENCIES = (10, 20, 30)
MINUTE_FREQUENCIES = (1, 2, 5, 10, 15, 30, 60, 120, 180, 360, 720, 1440)

OPERATOR_TAG = "checkly-operator"


class SpecModel(BaseModel):
    """Base for kind-specific spec models (camelCase in the cluster)."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class Assertion(SpecModel):
    """Extra API check assertion."""

    source: str
    comparison: str
    target: str
    property: str = ""


class CheckSpec(SpecModel):
    """ApiCheck spec."""

    url: str
    method: str = "GET"
    frequency: str = "5m"
    success: str = "200"
    assertions: list[Assertion] = Field(default_factory=list)
    max_response_time: int = Field(default=15000, alias="maxResponseTime", ge=0)
    locations: list[str] = Field(default_factory=list)
    group: Optional[str] = None
    muted: bool = False

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"url must be an absolute http(s) URL, got {value!r}")
        return value

    @field_validator("method")
    @classmethod
    def _check_method(cls, value: str) -> str:
        method = value.upper()
        if method not in ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"):
            raise ValueError(f"unsupported method {value!r}")
        return method

    @field_validator("success")
    @classmethod
    def _check_success(cls, value: str) -> str:
        if not value.isdigit() or not 100 <= int(value) <= 599:
            raise ValueError(f"success must be an HTTP status code, got {value!r}")
        return value


class GroupSpec(SpecModel):
    """Group spec."""

    locations: list[str] = Field(default_factory=list)
    private_locations: list[str] = Field(default_factory=list, alias="privateLocations")
    alert_channels: list[str] = Field(default_factory=list, alias="alertChannels")
    activated: bool = True
    muted: bool = False


class EmailChannel(SpecModel):
    address: str

    @field_validator("address")
    @classmethod
    def _check_address(cls, value: str) -> str:
        if "@" not in value:
            raise ValueError(f"invalid email address {value!r}")
        return value


class WebhookChannel(SpecModel):
    url: str
    method: str = "POST"


class SlackChannel(SpecModel):
    url: str
    channel: str = ""


class AlertChannelSpec(SpecModel):
    """AlertChannel spec; exactly one channel type must be configured."""

    send_recovery: bool = Field(default=True, alias="sendRecovery")
    send_failure: bool = Field(default=True, alias="sendFailure")
    send_degraded: bool = Field(default=False, alias="sendDegraded")
    email: Optional[EmailChannel] = None
    webhook: Optional[WebhookChannel] = None
    slack: Optional[SlackChannel] = None


def canonical_json(representation: dict[str, Any]) -> str:
    """Serialize a representation deterministically."""
    return json.dumps(representation, sort_keys=True, separators=(",", ":"))


def representation_hash(representation: dict[str, Any]) -> str:
    """Digest of the canonical representation."""
    return hashlib.sha256(canonical_json(representation).encode("utf-8")).hexdigest()


def subset_matches(desired: Any, observed: Any) -> bool:
    """
    Compare a desired value with an observed one.

    Dict keys missing from desired are server-populated and ignored. Lists
    must have the same length and match element by element.
    """
    if isinstance(desired, dict):
        if not isinstance(observed, dict):
            return False
        return all(
            key in observed and subset_matches(value, observed[key])
            for key, value in desired.items()
        )
    if isinstance(desired, list):
        if not isinstance(observed, list) or len(desired) != len(observed):
            return False
        return all(subset_matches(d, o) for d, o in zip(desired, observed))
    return desired == observed


def external_id_value(external_id: str) -> Any:
    """Checkly uses integer ids for groups and alert channels."""
    return int(external_id) if external_id.isdigit() else external_id


def checkly_frequency(value: str) -> dict[str, int]:
    """
    Translate a frequency duration into Checkly's frequency fields.

    Raises:
        ValidationError: If the duration is not a supported frequency
    """
    seconds = parse_duration(value)
    if seconds in SECOND_FREQUENCIES:
        return {"frequency": 0, "frequencyOffset": int(seconds)}
    if seconds % 60 == 0 and int(seconds // 60) in MINUTE_FREQUENCIES:
        return {"frequency": int(seconds // 60)}
    raise ValidationError(
        f"unsupported frequency {value!r}: use 10s, 20s, 30s or one of "
        f"{', '.join(f'{m}m' for m in MINUTE_FREQUENCIES)}"
    )


class ResourceMapper(ABC):
    """Maps one declarative resource kind to its Checkly representation."""

    kind: ResourceKind
    spec_model: type[SpecModel]

    def parse_spec(self, raw: dict[str, Any]) -> SpecModel:
        """
        Validate a raw spec mapping.

        Raises:
            ValidationError: If the spec is malformed
        """
        try:
            spec = self.spec_model.model_validate(raw or {})
        except PydanticValidationError as e:
            details = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'spec'}: {err['msg']}"
                for err in e.errors()
            )
            raise ValidationError(f"invalid {self.kind.value} spec: {details}") from e
        self.validate(spec)
        return spec

    def validate(self, spec: SpecModel) -> None:
        """Cross-field validation hook."""

    def references(self, resource: DeclaredResource, spec: SpecModel) -> list[ObjectRef]:
        """Declared resources whose external ids the representation needs."""
        return []

    @abstractmethod
    def to_external(
        self,
        resource: DeclaredResource,
        spec: SpecModel,
        refs: dict[ObjectRef, str],
    ) -> dict[str, Any]:
        """Build the external representation for a validated spec."""

    def matches(self, desired: dict[str, Any], observed: dict[str, Any]) -> bool:
        return subset_matches(desired, observed)

    def from_external(self, representation: dict[str, Any]) -> dict[str, Any]:
        """
        Status fields recorded from a created or observed representation.

        Raises:
            TransientError: If the representation carries no id
        """
        external_id = representation.get("id")
        if external_id is None or external_id == "":
            raise TransientError(f"Checkly {self.kind.value} response has no id")
        return {"external_id": str(external_id)}

    @staticmethod
    def _resolve(refs: dict[ObjectRef, str], ref: ObjectRef) -> Any:
        external_id = refs.get(ref)
        if not external_id:
            raise DependencyNotReadyError(
                f"{ref.kind.value} {ref.name!r} has no Checkly id yet"
            )
        return external_id_value(external_id)

    @staticmethod
    def _tags(resource: DeclaredResource) -> list[str]:
        tags = [OPERATOR_TAG]
        if resource.metadata.namespace:
            tags.append(resource.metadata.namespace)
        return tags


class CheckMapper(ResourceMapper):
    """ApiCheck to Checkly API check."""

    kind = ResourceKind.CHECK
    spec_model = CheckSpec

    def validate(self, spec: CheckSpec) -> None:
        checkly_frequency(spec.frequency)

    def references(self, resource, spec: CheckSpec) -> list[ObjectRef]:
        if spec.group:
            return [ObjectRef(kind=ResourceKind.GROUP, name=spec.group)]
        return []

    def to_external(self, resource, spec: CheckSpec, refs) -> dict[str, Any]:
        assertions = [
            {
                "source": "STATUS_CODE",
                "comparison": "EQUALS",
                "property": "",
                "target": spec.success,
            }
        ]
        assertions.extend(a.model_dump() for a in spec.assertions)

        representation: dict[str, Any] = {
            "name": resource.metadata.name,
            "checkType": "API",
            "activated": True,
            "muted": spec.muted,
            "shouldFail": False,
            "locations": list(spec.locations),
            "maxResponseTime": spec.max_response_time,
            "tags": self._tags(resource),
            "request": {
                "method": spec.method,
                "url": spec.url,
                "assertions": assertions,
            },
        }
        representation.update(checkly_frequency(spec.frequency))

        if spec.group:
            group_ref = ObjectRef(kind=ResourceKind.GROUP, name=spec.group)
            representation["groupId"] = self._resolve(refs, group_ref)
        return representation


class GroupMapper(ResourceMapper):
    """Group to Checkly check group."""

    kind = ResourceKind.GROUP
    spec_model = GroupSpec

    def validate(self, spec: GroupSpec) -> None:
        if not spec.locations and not spec.private_locations:
            raise ValidationError("group needs at least one location or private location")

    def references(self, resource, spec: GroupSpec) -> list[ObjectRef]:
        return [
            ObjectRef(kind=ResourceKind.ALERT_CHANNEL, name=name)
            for name in spec.alert_channels
        ]

    def to_external(self, resource, spec: GroupSpec, refs) -> dict[str, Any]:
        subscriptions = [
            {"alertChannelId": self._resolve(refs, ref), "activated": True}
            for ref in self.references(resource, spec)
        ]
        return {
            "name": resource.metadata.name,
            "activated": spec.activated,
            "muted": spec.muted,
            "concurrency": 2,
            "locations": list(spec.locations),
            "privateLocations": list(spec.private_locations),
            "tags": self._tags(resource),
            "alertChannelSubscriptions": subscriptions,
        }


class AlertChannelMapper(ResourceMapper):
    """AlertChannel to Checkly alert channel."""

    kind = ResourceKind.ALERT_CHANNEL
    spec_model = AlertChannelSpec

    def validate(self, spec: AlertChannelSpec) -> None:
        configured = [t for t in ("email", "webhook", "slack") if getattr(spec, t)]
        if len(configured) != 1:
            raise ValidationError(
                "alert channel needs exactly one of email, webhook or slack, "
                f"got {configured or 'none'}"
            )

    def to_external(self, resource, spec: AlertChannelSpec, refs) -> dict[str, Any]:
        if spec.email:
            channel_type = "EMAIL"
            config = {"address": spec.email.address}
        elif spec.webhook:
            channel_type = "WEBHOOK"
            config = {
                "name": resource.metadata.name,
                "url": spec.webhook.url,
                "method": spec.webhook.method.upper(),
            }
        else:
            channel_type = "SLACK"
            config = {"url": spec.slack.url, "channel": spec.slack.channel}

        return {
            "type": channel_type,
            "config": config,
            "sendRecovery": spec.send_recovery,
            "sendFailure": spec.send_failure,
            "sendDegraded": spec.send_degraded,
        }


MAPPERS: dict[ResourceKind, type[ResourceMapper]] = {
    ResourceKind.CHECK: CheckMapper,
    ResourceKind.GROUP: GroupMapper,
    ResourceKind.ALERT_CHANNEL: AlertChannelMapper,
}


def mapper_for(kind: ResourceKind) -> ResourceMapper:
    """Instantiate the mapper for a resource kind."""
    return MAPPERS[kind]()
