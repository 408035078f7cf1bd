"""
Ingress annotation scanning.

Turns an ingress's rules and annotations into candidate ApiCheck specs, one
per monitored endpoint. Annotation keys live under a configurable prefix
(for example ``k8s.checklyhq.com/``):

``<prefix>enabled: "true"``
    monitor every rule endpoint of the ingress
``<prefix>check-url``
    explicit URL for ``rule-0``; monitored even when the ingress is not enabled
``<prefix><rule-key>.<setting>``
    per-rule override, e.g. ``k8s.checklyhq.com/rule-1.frequency: 30s``
``<prefix><setting>``
    ingress-wide default for every rule

Settings: check-url, enabled, frequency, success, max-response-time,
locations, group, muted, method, scheme. The most specific value wins:
per-rule, then ingress-wide, then the built-in defaults.

Endpoint ``j`` of ingress rule ``i`` gets rule key ``rule-i`` for the first
path and ``rule-i-j`` for the others, so appending a path never renames the
existing checks.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import urlparse

from .durations import parse_duration_ms
from .errors import ValidationError
from .mappers import CheckMapper
from .models import IngressSource, OwnerKey

SETTINGS = (
    "check-url",
    "enabled",
    "frequency",
    "success",
    "max-response-time",
    "locations",
    "group",
    "muted",
    "method",
    "scheme",
)

_RULE_KEY_RE = re.compile(r"^rule-\d+(-\d+)?$")
_TRUE = ("true", "yes", "1")
_FALSE = ("false", "no", "0")


@dataclass
class CheckCandidate:
    """A derived check the ingress asks for."""

    owner: OwnerKey
    spec: dict[str, Any]


@dataclass
class ScanResult:
    """Scanner output for one ingress."""

    candidates: list[CheckCandidate] = field(default_factory=list)
    # rule key -> reason it was excluded
    rejected: dict[str, str] = field(default_factory=dict)
    # problems not tied to a single rule (unknown keys)
    warnings: list[str] = field(default_factory=list)

    @property
    def keys(self) -> set[str]:
        return {c.owner.rule_key for c in self.candidates}


@dataclass
class _Endpoint:
    rule_key: str
    host: str = ""
    path: str = "/"


def parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValidationError(f"expected true or false, got {value!r}")


class AnnotationScanner:
    """Derives check specs from ingress annotations. Performs no I/O."""

    def __init__(self, prefix: str, mapper: Optional[CheckMapper] = None):
        """
        Initialize annotation scanner.

        Args:
            prefix: Annotation key prefix, used verbatim (e.g. "k8s.checklyhq.com/")
            mapper: Check mapper used to validate the produced specs
        """
        self.prefix = prefix
        self.mapper = mapper or CheckMapper()

    def matches(self, ingress: IngressSource) -> bool:
        """True when the ingress carries any annotation under the prefix."""
        return any(key.startswith(self.prefix) for key in ingress.annotations)

    def scan(self, ingress: IngressSource) -> ScanResult:
        """
        Compute the candidate checks for an ingress.

        A malformed value only excludes the rule it applies to; the rest of
        the ingress is still scanned.

        Args:
            ingress: Ingress to scan

        Returns:
            ScanResult with candidates and rejected rule keys
        """
        result = ScanResult()
        ingress_wide, per_rule = self._split_annotations(ingress, result)

        endpoints = self._endpoints(ingress)
        # Explicit URLs for rule keys that have no ingress rule
        for rule_key in sorted(per_rule):
            if rule_key not in endpoints and "check-url" in per_rule[rule_key]:
                endpoints[rule_key] = _Endpoint(rule_key=rule_key)
        if "rule-0" not in endpoints and "check-url" in ingress_wide:
            endpoints["rule-0"] = _Endpoint(rule_key="rule-0")

        for rule_key, endpoint in endpoints.items():
            overrides = per_rule.get(rule_key, {})
            settings = dict(ingress_wide)
            if rule_key != "rule-0":
                # The ingress-wide URL only names rule-0
                settings.pop("check-url", None)
            settings.update(overrides)

            try:
                spec = self._build_spec(endpoint, settings, ingress)
            except ValidationError as e:
                result.rejected[rule_key] = e.message
                continue
            if spec is None:
                continue

            owner = OwnerKey(
                ingress_namespace=ingress.namespace,
                ingress_name=ingress.name,
                rule_key=rule_key,
            )
            result.candidates.append(CheckCandidate(owner=owner, spec=spec))

        result.candidates.sort(key=lambda c: c.owner.rule_key)
        return result

    def _split_annotations(
        self, ingress: IngressSource, result: ScanResult
    ) -> tuple[dict[str, str], dict[str, dict[str, str]]]:
        ingress_wide: dict[str, str] = {}
        per_rule: dict[str, dict[str, str]] = {}

        for key, value in ingress.annotations.items():
            if not key.startswith(self.prefix):
                continue
            name = key[len(self.prefix):]
            if name in SETTINGS:
                ingress_wide[name] = value
                continue

            rule_key, _, setting = name.partition(".")
            if _RULE_KEY_RE.match(rule_key) and setting in SETTINGS:
                per_rule.setdefault(rule_key, {})[setting] = value
            else:
                result.warnings.append(f"ignoring unknown annotation {key!r}")

        return ingress_wide, per_rule

    def _endpoints(self, ingress: IngressSource) -> dict[str, _Endpoint]:
        endpoints: dict[str, _Endpoint] = {}
        for i, rule in enumerate(ingress.rules):
            paths = [p.path for p in rule.paths] or ["/"]
            for j, path in enumerate(paths):
                rule_key = f"rule-{i}" if j == 0 else f"rule-{i}-{j}"
                endpoints[rule_key] = _Endpoint(rule_key=rule_key, host=rule.host, path=path)
        return endpoints

    def _build_spec(
        self,
        endpoint: _Endpoint,
        settings: dict[str, str],
        ingress: IngressSource,
    ) -> Optional[dict[str, Any]]:
        enabled = parse_bool(settings["enabled"]) if "enabled" in settings else None
        url = settings.get("check-url")

        if enabled is False or (enabled is None and not url):
            return None

        if not url:
            if not endpoint.host:
                raise ValidationError(
                    f"{endpoint.rule_key} has no host; set a check-url annotation"
                )
            scheme = settings.get("scheme") or (
                "https" if endpoint.host in ingress.tls_hosts or not ingress.tls_hosts else "http"
            )
            url = f"{scheme}://{endpoint.host}{_normalize_path(endpoint.path)}"

        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValidationError(f"invalid check-url {url!r}")

        spec: dict[str, Any] = {"url": url}
        if "frequency" in settings:
            spec["frequency"] = settings["frequency"].strip()
        if "success" in settings:
            spec["success"] = settings["success"].strip()
        if "max-response-time" in settings:
            spec["maxResponseTime"] = parse_duration_ms(settings["max-response-time"])
        if "locations" in settings:
            spec["locations"] = [
                loc.strip() for loc in settings["locations"].split(",") if loc.strip()
            ]
        if settings.get("group"):
            spec["group"] = settings["group"].strip()
        if "muted" in settings:
            spec["muted"] = parse_bool(settings["muted"])
        if "method" in settings:
            spec["method"] = settings["method"].strip().upper()

        # Same validation the reconcile loop applies; keeps bad values scoped to this rule
        self.mapper.parse_spec(spec)
        return spec


def _normalize_path(path: str) -> str:
    # Strip regex/prefix wildcards used by some ingress controllers
    path = path.rstrip("*") or "/"
    return path if path.startswith("/") else f"/{path}"
