"""External collaborator interfaces used by the pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from deploy_project.framework.credentials import CredentialProvider
from deploy_project.framework.descriptors import ArtifactReference, ImageDescriptor
from deploy_project.framework.reconciliation import Orchestrator, TopologyProvisioner
from deploy_project.framework.runtime import TriggerEvent


@dataclass(frozen=True)
class SourceCheckout:
    path: str
    commit_id: str
    branch: str

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "commit_id": self.commit_id, "branch": self.branch}


@dataclass(frozen=True)
class BuiltImage:
    local_tag: str
    image: ImageDescriptor
    commit_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"local_tag": self.local_tag, "commit_id": self.commit_id, "image": self.image.to_dict()}


class SourceFetcher(Protocol):
    def fetch(self, trigger: TriggerEvent) -> SourceCheckout:
        ...


class ImageBuilder(Protocol):
    def build(self, checkout: SourceCheckout, dockerfile_path: str, image: ImageDescriptor) -> BuiltImage:
        ...


class ImageRegistry(Protocol):
    def publish(self, built: BuiltImage, reference: ArtifactReference) -> ArtifactReference:
        ...


@dataclass(frozen=True)
class Backends:
    """The full set of collaborators a pipeline run talks to."""

    kind: str
    source: SourceFetcher
    builder: ImageBuilder
    registry: ImageRegistry
    credentials: CredentialProvider
    orchestrator: Orchestrator
    provisioner: TopologyProvisioner
