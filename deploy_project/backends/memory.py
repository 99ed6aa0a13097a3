"""In-memory collaborators for dry runs and tests.

They honour the same contracts as the real drivers: published references are
returned exactly as requested, the orchestrator is idempotent for identical
descriptors and refuses expired credentials.
"""

from __future__ import annotations

import os
import threading
import uuid
from dataclasses import dataclass
from datetime import timedelta

from deploy_project.framework.collaborators import BuiltImage, SourceCheckout
from deploy_project.framework.credentials import ClusterCredential, Clock, utc_now
from deploy_project.framework.descriptors import ArtifactReference, ClusterTopology, ImageDescriptor, WorkloadDescriptor
from deploy_project.framework.reconciliation import ApplyReceipt, plan_rollout
from deploy_project.framework.runtime import TriggerEvent


class LocalDirectorySource:
    """Treats an existing directory as the checkout of every triggered commit."""

    def __init__(self, path: str):
        self._path = os.path.abspath(path)
        self.fetched: list[TriggerEvent] = []

    def fetch(self, trigger: TriggerEvent) -> SourceCheckout:
        if not os.path.isdir(self._path):
            raise FileNotFoundError(f"Source directory not found: {self._path}")
        self.fetched.append(trigger)
        return SourceCheckout(path=self._path, commit_id=trigger.commit_id, branch=trigger.branch)


class InMemoryImageBuilder:
    def __init__(self) -> None:
        self.builds: list[BuiltImage] = []

    def build(self, checkout: SourceCheckout, dockerfile_path: str, image: ImageDescriptor) -> BuiltImage:
        built = BuiltImage(local_tag=f"dry-run/{checkout.commit_id[:12]}", image=image, commit_id=checkout.commit_id)
        self.builds.append(built)
        return built


class InMemoryRegistry:
    def __init__(self) -> None:
        self.published: dict[str, BuiltImage] = {}

    def publish(self, built: BuiltImage, reference: ArtifactReference) -> ArtifactReference:
        self.published[str(reference)] = built
        return reference

    def resolve(self, reference: ArtifactReference) -> BuiltImage:
        try:
            return self.published[str(reference)]
        except KeyError:
            raise KeyError(f"Artifact not published: {reference}") from None


class StaticCredentialProvider:
    """Issues random tokens valid for `ttl_s` seconds from `clock()`."""

    def __init__(self, *, ttl_s: float = 900.0, clock: Clock = utc_now):
        if ttl_s <= 0:
            raise ValueError("ttl_s must be > 0")
        self._ttl_s = ttl_s
        self._clock = clock
        self.issued: list[ClusterCredential] = []

    def acquire(self, cluster: str) -> ClusterCredential:
        credential = ClusterCredential(
            cluster=cluster,
            token=uuid.uuid4().hex,
            expires_at=self._clock() + timedelta(seconds=self._ttl_s),
        )
        self.issued.append(credential)
        return credential


@dataclass(frozen=True)
class _Deployed:
    workload: WorkloadDescriptor
    uid: str
    apply_id: str


class InMemoryOrchestrator:
    """Reference orchestrator: tracks declared state per workload key."""

    def __init__(self, *, clock: Clock = utc_now):
        self._clock = clock
        self._lock = threading.Lock()
        self._state: dict[tuple[str, str, str], _Deployed] = {}
        self.receipts: list[ApplyReceipt] = []

    def apply(self, workload: WorkloadDescriptor, credential: ClusterCredential) -> ApplyReceipt:
        if credential.cluster != workload.cluster:
            raise ValueError(f"Credential for {credential.cluster} cannot apply to cluster {workload.cluster}")
        credential.require_fresh(now=self._clock())

        with self._lock:
            previous = self._state.get(workload.key)
            rollout = plan_rollout(previous.workload if previous else None, workload)
            if previous is not None and not rollout.changed:
                receipt = ApplyReceipt(
                    apply_id=previous.apply_id,
                    workload=workload.key,
                    fingerprint=workload.fingerprint(),
                    changed=False,
                    rollout=rollout,
                )
            else:
                uid = previous.uid if previous else uuid.uuid4().hex
                apply_id = f"apply-{uuid.uuid4().hex[:12]}"
                self._state[workload.key] = _Deployed(workload=workload, uid=uid, apply_id=apply_id)
                receipt = ApplyReceipt(
                    apply_id=apply_id,
                    workload=workload.key,
                    fingerprint=workload.fingerprint(),
                    changed=True,
                    rollout=rollout,
                )
            self.receipts.append(receipt)
            return receipt

    def current(self, key: tuple[str, str, str]) -> WorkloadDescriptor | None:
        with self._lock:
            deployed = self._state.get(key)
            return deployed.workload if deployed else None

    def identity(self, key: tuple[str, str, str]) -> str | None:
        with self._lock:
            deployed = self._state.get(key)
            return deployed.uid if deployed else None


class InMemoryProvisioner:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state: dict[str, tuple[str, str]] = {}

    def provision(self, topology: ClusterTopology) -> str:
        fingerprint = topology.fingerprint()
        with self._lock:
            existing = self._state.get(topology.name)
            if existing is not None and existing[0] == fingerprint:
                return existing[1]
            apply_id = f"topology-{fingerprint[:12]}"
            self._state[topology.name] = (fingerprint, apply_id)
            return apply_id

    def provisioned(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._state))
