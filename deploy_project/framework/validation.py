"""Descriptor validation.

`check_cluster_topology` and `check_workload` are pure and total: they never
raise for bad input. They return a `ValidationResult` that either carries the
parsed descriptor or a non-empty, ordered list of violations (field path, rule,
observed value). Unknown fields are violations, so operator typos surface here
instead of being silently ignored.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Generic, Sequence, TypeVar

from pipelinekit.config_namespace import ConfigFieldError, ConfigNamespace

from deploy_project.framework.descriptors import (
    EXPOSURE_TYPES,
    ArtifactReference,
    ClusterTopology,
    Exposure,
    NetworkPlacement,
    NodeGroup,
    ResourceEnvelope,
    WorkloadDescriptor,
)
from deploy_project.framework.errors import ValidationError, Violation
from deploy_project.framework.quantities import parse_quantity

T = TypeVar("T")

DEFAULT_SUPPORTED_VERSIONS: tuple[str, ...] = ("1.28", "1.29", "1.30", "1.31")
MIN_SUBNETS = 2

_CLUSTER_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,99}$")
_DNS_LABEL_RE = re.compile(r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$")
_VERSION_RE = re.compile(r"^(?P<major>\d+)\.(?P<minor>\d+)(?:\.(?P<patch>\d+))?$")
_REGISTRY_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9.-]*(?::\d+)?$")
_REPOSITORY_RE = re.compile(r"^[a-z0-9]+(?:[._-][a-z0-9]+)*(?:/[a-z0-9]+(?:[._-][a-z0-9]+)*)*$")
_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")


@dataclass(frozen=True)
class ValidationResult(Generic[T]):
    kind: str
    value: T | None
    violations: tuple[Violation, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.violations

    def unwrap(self) -> T:
        if self.violations or self.value is None:
            raise ValidationError(self.kind, self.violations or (Violation("<root>", "is invalid"),))
        return self.value


class _Collector:
    def __init__(self) -> None:
        self.violations: list[Violation] = []

    def add(self, field: str, rule: str, value: Any = None) -> None:
        self.violations.append(Violation(field=field, rule=rule, value=value))

    def take(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T | None:
        try:
            return fn(*args, **kwargs)
        except ConfigFieldError as exc:
            self.add(exc.path, exc.rule, exc.value)
            return None

    def reject_unknown(self, root: ConfigNamespace) -> None:
        for path, value in root.unknown_items():
            self.add(path, "is not a recognised field", value)


def _as_mapping(raw: Any, kind: str) -> tuple[Mapping[str, Any] | None, ValidationResult[Any] | None]:
    if hasattr(raw, "to_dict") and callable(raw.to_dict):
        raw = raw.to_dict()
    if not isinstance(raw, Mapping):
        return None, ValidationResult(kind, None, (Violation("<root>", "must be a mapping", raw),))
    return raw, None


def version_minor(version: str) -> str | None:
    match = _VERSION_RE.match(version or "")
    if match is None:
        return None
    return f"{int(match.group('major'))}.{int(match.group('minor'))}"


def check_cluster_topology(
    raw: Mapping[str, Any] | ClusterTopology,
    *,
    supported_versions: Sequence[str] = DEFAULT_SUPPORTED_VERSIONS,
) -> ValidationResult[ClusterTopology]:
    data, failed = _as_mapping(raw, "ClusterTopology")
    if failed is not None:
        return failed

    c = _Collector()
    root = ConfigNamespace(dict(data), path="")

    name = c.take(root.get_str, "name")
    if name is not None and not _CLUSTER_NAME_RE.match(name):
        c.add("name", "must start alphanumeric and contain only letters, digits, '-' or '_' (max 100)", name)

    version = c.take(root.get_str, "controlPlaneVersion")
    if version is not None:
        minor = version_minor(version)
        allowed = {version_minor(v) for v in supported_versions}
        if minor is None:
            c.add("controlPlaneVersion", "must be a version like 1.29 or 1.29.3", version)
        elif minor not in allowed:
            c.add("controlPlaneVersion", f"must be one of: {', '.join(supported_versions)}", version)

    region = c.take(root.get_str, "region", default=None)
    tags = c.take(root.get_str_mapping, "tags", default={})

    vpc_id: str | None = None
    subnet_ids: list[str] | None = None
    network = c.take(root.namespace, "network")
    if network is not None:
        vpc_id = c.take(network.get_str, "vpcId")
        subnet_ids = c.take(network.get_list_str, "subnetIds")
        if subnet_ids is not None:
            if len(subnet_ids) < MIN_SUBNETS:
                c.add(
                    "network.subnetIds",
                    f"must list at least {MIN_SUBNETS} subnets for availability-zone spread",
                    subnet_ids,
                )
            duplicates = sorted({s for s in subnet_ids if subnet_ids.count(s) > 1})
            if duplicates:
                c.add("network.subnetIds", "must not contain duplicates", duplicates)

    instance_class: str | None = None
    min_size = desired_size = max_size = None
    node_group = c.take(root.namespace, "nodeGroup")
    if node_group is not None:
        instance_class = c.take(node_group.get_str, "instanceClass")
        min_size = c.take(node_group.get_int, "minSize")
        desired_size = c.take(node_group.get_int, "desiredSize")
        max_size = c.take(node_group.get_int, "maxSize")

        if min_size is not None and min_size < 0:
            c.add("nodeGroup.minSize", "must be >= 0", min_size)
        if min_size is not None and desired_size is not None and desired_size < min_size:
            c.add("nodeGroup.desiredSize", f"must be >= minSize ({min_size})", desired_size)
        if desired_size is not None and max_size is not None and desired_size > max_size:
            c.add("nodeGroup.desiredSize", f"must be <= maxSize ({max_size})", desired_size)
        if max_size is not None and max_size < 1:
            c.add("nodeGroup.maxSize", "must be >= 1", max_size)
        if min_size is not None and max_size is not None and max_size < min_size:
            c.add("nodeGroup.maxSize", f"must be >= minSize ({min_size})", max_size)

    c.reject_unknown(root)
    if c.violations:
        return ValidationResult("ClusterTopology", None, tuple(c.violations))

    topology = ClusterTopology(
        name=name,  # type: ignore[arg-type]
        control_plane_version=version,  # type: ignore[arg-type]
        network=NetworkPlacement(vpc_id=vpc_id, subnet_ids=tuple(subnet_ids or ())),  # type: ignore[arg-type]
        node_group=NodeGroup(
            instance_class=instance_class,  # type: ignore[arg-type]
            min_size=min_size,  # type: ignore[arg-type]
            desired_size=desired_size,  # type: ignore[arg-type]
            max_size=max_size,  # type: ignore[arg-type]
        ),
        region=region,
        tags=tuple(sorted((tags or {}).items())),
    )
    return ValidationResult("ClusterTopology", topology)


def _check_image(c: _Collector, root: ConfigNamespace) -> ArtifactReference | None:
    raw = c.take(root.get_raw, "image", default=None)
    if raw is None:
        c.add("image", "is required", None)
        return None

    if isinstance(raw, str):
        try:
            parsed = ArtifactReference.parse(raw.strip())
        except ValueError:
            c.add("image", "must be a reference like registry/repository:tag", raw)
            return None
        registry, repository, tag = parsed.registry, parsed.repository, parsed.tag
    elif isinstance(raw, Mapping):
        image = c.take(root.namespace, "image")
        if image is None:  # pragma: no cover
            return None
        registry = c.take(image.get_str, "registry")
        repository = c.take(image.get_str, "repository")
        tag = c.take(image.get_str, "tag")
    else:
        c.add("image", "must be a mapping or a registry/repository:tag string", raw)
        return None

    before = len(c.violations)
    if registry is not None and not _REGISTRY_RE.match(registry):
        c.add("image.registry", "must be a registry host (optionally with :port)", registry)
    if repository is not None and not _REPOSITORY_RE.match(repository):
        c.add("image.repository", "must be lowercase path components separated by '/'", repository)
    if tag is not None and not _TAG_RE.match(tag):
        c.add("image.tag", "must be a resolvable tag ([A-Za-z0-9_][A-Za-z0-9_.-]{0,127})", tag)
    if registry is None or repository is None or tag is None or len(c.violations) != before:
        return None
    return ArtifactReference(registry=registry, repository=repository, tag=tag)


_RESOURCE_PAIRS: tuple[tuple[str, str], ...] = (
    ("cpuRequest", "cpuLimit"),
    ("memoryRequest", "memoryLimit"),
)


def _check_resources(c: _Collector, root: ConfigNamespace) -> ResourceEnvelope | None:
    resources = c.take(root.namespace, "resources")
    if resources is None:
        return None

    texts: dict[str, str] = {}
    amounts: dict[str, Decimal] = {}
    for request_key, limit_key in _RESOURCE_PAIRS:
        for key in (request_key, limit_key):
            path = resources.field_path(key)
            raw = c.take(resources.get_raw, key, default=None)
            if raw is None:
                c.add(path, "is required", None)
                continue
            try:
                amount = parse_quantity(raw)
            except ValueError:
                c.add(path, "must be a quantity like 250m, 0.5, 128Mi or 1G", raw)
                continue
            if amount <= 0:
                c.add(path, "must be > 0", raw)
                continue
            texts[key] = str(raw).strip()
            amounts[key] = amount

        if request_key in amounts and limit_key in amounts and amounts[request_key] > amounts[limit_key]:
            c.add(
                resources.field_path(request_key),
                f"must be <= {limit_key} ({texts[limit_key]})",
                texts[request_key],
            )

    if len(texts) != 4:
        return None
    return ResourceEnvelope(
        cpu_request=texts["cpuRequest"],
        memory_request=texts["memoryRequest"],
        cpu_limit=texts["cpuLimit"],
        memory_limit=texts["memoryLimit"],
    )


def check_workload(raw: Mapping[str, Any] | WorkloadDescriptor) -> ValidationResult[WorkloadDescriptor]:
    data, failed = _as_mapping(raw, "WorkloadDescriptor")
    if failed is not None:
        return failed

    c = _Collector()
    root = ConfigNamespace(dict(data), path="")

    name = c.take(root.get_str, "name")
    if name is not None and not _DNS_LABEL_RE.match(name):
        c.add("name", "must be a DNS-1123 label (lowercase alphanumerics and '-', max 63)", name)

    namespace = c.take(root.get_str, "namespace", default="default")
    if namespace is not None and not _DNS_LABEL_RE.match(namespace):
        c.add("namespace", "must be a DNS-1123 label (lowercase alphanumerics and '-', max 63)", namespace)

    cluster = c.take(root.get_str, "cluster")
    if cluster is not None and not _CLUSTER_NAME_RE.match(cluster):
        c.add("cluster", "must name a cluster (letters, digits, '-' or '_')", cluster)

    image = _check_image(c, root)
    replicas = c.take(root.get_int, "replicas", min_value=0)
    container_port = c.take(root.get_int, "containerPort", min_value=1, max_value=65535)
    resources = _check_resources(c, root)

    exposure: Exposure | None = None
    exposure_ns: ConfigNamespace | None
    raw_exposure = root.get_raw("exposure", default=None)
    if isinstance(raw_exposure, str):
        # Shorthand: `exposure: LoadBalanced` == `exposure: {type: LoadBalanced}`.
        exposure_ns = ConfigNamespace({"type": raw_exposure}, path="exposure")
    else:
        exposure_ns = c.take(root.namespace, "exposure", default={})
    if exposure_ns is not None:
        exposure_type = c.take(exposure_ns.get_str, "type", default="Internal", choices=EXPOSURE_TYPES)
        external_port = c.take(exposure_ns.get_optional_int, "externalPort", min_value=1, max_value=65535)
        target_port = c.take(exposure_ns.get_optional_int, "targetPort", min_value=1, max_value=65535)

        if exposure_type == "LoadBalanced":
            if exposure_ns.get_raw("externalPort", default=None) is None:
                c.add("exposure.externalPort", "is required when exposure.type is LoadBalanced", None)
            if replicas == 0:
                c.add("replicas", "must be >= 1 when exposure.type is LoadBalanced", replicas)
        elif exposure_type == "Internal" and external_port is not None:
            c.add("exposure.externalPort", "is only allowed when exposure.type is LoadBalanced", external_port)

        if target_port is not None and container_port is not None and target_port != container_port:
            c.add("exposure.targetPort", f"must equal containerPort ({container_port})", target_port)

        if exposure_type is not None:
            exposure = Exposure(
                type=exposure_type,  # type: ignore[arg-type]
                external_port=external_port,
                target_port=target_port,
            )

    c.reject_unknown(root)
    if c.violations:
        return ValidationResult("WorkloadDescriptor", None, tuple(c.violations))

    workload = WorkloadDescriptor(
        name=name,  # type: ignore[arg-type]
        namespace=namespace,  # type: ignore[arg-type]
        cluster=cluster,  # type: ignore[arg-type]
        image=image,  # type: ignore[arg-type]
        replicas=replicas,  # type: ignore[arg-type]
        container_port=container_port,  # type: ignore[arg-type]
        resources=resources,  # type: ignore[arg-type]
        exposure=exposure or Exposure(),
    )
    return ValidationResult("WorkloadDescriptor", workload)


def validate_cluster_topology(
    raw: Mapping[str, Any] | ClusterTopology,
    *,
    supported_versions: Sequence[str] = DEFAULT_SUPPORTED_VERSIONS,
) -> ClusterTopology:
    """Raising form of `check_cluster_topology`."""

    return check_cluster_topology(raw, supported_versions=supported_versions).unwrap()


def validate_workload(raw: Mapping[str, Any] | WorkloadDescriptor) -> WorkloadDescriptor:
    """Raising form of `check_workload`."""

    return check_workload(raw).unwrap()
