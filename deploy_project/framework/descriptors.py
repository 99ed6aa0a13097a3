"""Descriptor value types.

Descriptors are plain frozen values. They are produced by the parsers in
`deploy_project.framework.validation` (which enforce every invariant) and
serialised back with `to_dict()` using the camelCase wire names.
"""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field, replace
from typing import Any, Literal, TypeAlias

ExposureType: TypeAlias = Literal["Internal", "LoadBalanced"]
EXPOSURE_TYPES: tuple[str, ...] = ("Internal", "LoadBalanced")

_ARTIFACT_RE = re.compile(r"^(?P<registry>[^/\s]+)/(?P<repository>[^:@\s]+):(?P<tag>[^:/@\s]+)$")


@dataclass(frozen=True)
class ArtifactReference:
    """`{registry, repository, tag}` triple; rendered as `registry/repository:tag`."""

    registry: str
    repository: str
    tag: str

    def __str__(self) -> str:
        return f"{self.registry}/{self.repository}:{self.tag}"

    @classmethod
    def parse(cls, text: str) -> "ArtifactReference":
        match = _ARTIFACT_RE.match(text or "")
        if match is None:
            raise ValueError(f"Invalid artifact reference (expected registry/repository:tag): {text!r}")
        return cls(
            registry=match.group("registry"),
            repository=match.group("repository"),
            tag=match.group("tag"),
        )

    def to_dict(self) -> dict[str, str]:
        return {"registry": self.registry, "repository": self.repository, "tag": self.tag}


@dataclass(frozen=True)
class NetworkPlacement:
    vpc_id: str
    subnet_ids: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {"vpcId": self.vpc_id, "subnetIds": list(self.subnet_ids)}


@dataclass(frozen=True)
class NodeGroup:
    instance_class: str
    min_size: int
    desired_size: int
    max_size: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "instanceClass": self.instance_class,
            "minSize": self.min_size,
            "desiredSize": self.desired_size,
            "maxSize": self.max_size,
        }


@dataclass(frozen=True)
class ClusterTopology:
    name: str
    control_plane_version: str
    network: NetworkPlacement
    node_group: NodeGroup
    region: str | None = None
    tags: tuple[tuple[str, str], ...] = ()

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "name": self.name,
            "controlPlaneVersion": self.control_plane_version,
            "network": self.network.to_dict(),
            "nodeGroup": self.node_group.to_dict(),
        }
        if self.region is not None:
            out["region"] = self.region
        if self.tags:
            out["tags"] = dict(self.tags)
        return out

    def fingerprint(self) -> str:
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ResourceEnvelope:
    """Requests and limits, kept in their original textual form."""

    cpu_request: str
    memory_request: str
    cpu_limit: str
    memory_limit: str

    def to_dict(self) -> dict[str, str]:
        return {
            "cpuRequest": self.cpu_request,
            "memoryRequest": self.memory_request,
            "cpuLimit": self.cpu_limit,
            "memoryLimit": self.memory_limit,
        }


@dataclass(frozen=True)
class Exposure:
    type: ExposureType = "Internal"
    external_port: int | None = None
    target_port: int | None = None

    @property
    def load_balanced(self) -> bool:
        return self.type == "LoadBalanced"

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": self.type}
        if self.external_port is not None:
            out["externalPort"] = self.external_port
        if self.target_port is not None:
            out["targetPort"] = self.target_port
        return out


@dataclass(frozen=True)
class WorkloadDescriptor:
    name: str
    cluster: str
    image: ArtifactReference
    replicas: int
    container_port: int
    resources: ResourceEnvelope
    exposure: Exposure = field(default_factory=Exposure)
    namespace: str = "default"

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.cluster, self.namespace, self.name)

    def with_image(self, image: ArtifactReference) -> "WorkloadDescriptor":
        return replace(self, image=image)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "namespace": self.namespace,
            "cluster": self.cluster,
            "image": self.image.to_dict(),
            "replicas": self.replicas,
            "containerPort": self.container_port,
            "resources": self.resources.to_dict(),
            "exposure": self.exposure.to_dict(),
        }

    def fingerprint(self) -> str:
        """Stable digest of the declared state (identical descriptors hash equal)."""

        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class BuildStage:
    base_image: str
    name: str | None = None
    workdir: str | None = None
    commands: tuple[str, ...] = ()
    copies_from: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "baseImage": self.base_image,
            "workdir": self.workdir,
            "commands": list(self.commands),
        }


@dataclass(frozen=True)
class ImageDescriptor:
    """How a build artifact becomes a runnable unit."""

    runtime_stage: BuildStage
    exposed_port: int | None
    entry_command: tuple[str, ...]
    build_stage: BuildStage | None = None

    @property
    def base_runtime(self) -> str:
        return self.runtime_stage.base_image

    def to_dict(self) -> dict[str, Any]:
        return {
            "baseRuntime": self.base_runtime,
            "buildStage": self.build_stage.to_dict() if self.build_stage else None,
            "runtimeStage": self.runtime_stage.to_dict(),
            "exposedPort": self.exposed_port,
            "entryCommand": list(self.entry_command),
        }
