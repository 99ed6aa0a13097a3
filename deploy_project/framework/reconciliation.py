"""Reconciliation contract between the pipeline and the cluster orchestrator.

The orchestrator itself is external. This module states what it must
guarantee (as data, via `plan_rollout`) and owns the submission gateway that
validates descriptors before anything is forwarded.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal, Protocol, Sequence, TypeAlias

from deploy_project.framework.credentials import ClusterCredential, CredentialProvider
from deploy_project.framework.descriptors import ClusterTopology, WorkloadDescriptor
from deploy_project.framework.errors import Violation
from deploy_project.framework.locks import KeyedLocks, topology_lock_key, workload_lock_key
from deploy_project.framework.validation import (
    DEFAULT_SUPPORTED_VERSIONS,
    check_cluster_topology,
    check_workload,
)

RolloutStrategy: TypeAlias = Literal["create", "noop", "rolling", "scale_to_zero"]
SubmissionStatus: TypeAlias = Literal["accepted", "rejected"]


@dataclass(frozen=True)
class RolloutPlan:
    strategy: RolloutStrategy
    replicas_from: int | None
    replicas_to: int
    exposure_change: tuple[str, str] | None = None
    image_change: bool = False

    @property
    def changed(self) -> bool:
        return self.strategy != "noop"

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy,
            "replicasFrom": self.replicas_from,
            "replicasTo": self.replicas_to,
            "exposureChange": list(self.exposure_change) if self.exposure_change else None,
            "imageChange": self.image_change,
        }


def plan_rollout(previous: WorkloadDescriptor | None, desired: WorkloadDescriptor) -> RolloutPlan:
    """Describe how the orchestrator must move from `previous` to `desired`.

    Any change to a running workload rolls replicas over incrementally, except
    an explicit scale to zero. An exposure type change keeps the same workload
    (only the service in front of it changes).
    """

    if previous is None:
        return RolloutPlan(strategy="create", replicas_from=None, replicas_to=desired.replicas)
    if previous.key != desired.key:
        raise ValueError(f"Cannot plan a rollout across workloads: {previous.key} -> {desired.key}")

    exposure_change = None
    if previous.exposure.type != desired.exposure.type:
        exposure_change = (previous.exposure.type, desired.exposure.type)
    image_change = previous.image != desired.image

    if previous.fingerprint() == desired.fingerprint():
        strategy: RolloutStrategy = "noop"
    elif desired.replicas == 0:
        strategy = "scale_to_zero"
    else:
        strategy = "rolling"

    return RolloutPlan(
        strategy=strategy,
        replicas_from=previous.replicas,
        replicas_to=desired.replicas,
        exposure_change=exposure_change,
        image_change=image_change,
    )


@dataclass(frozen=True)
class ApplyReceipt:
    apply_id: str
    workload: tuple[str, str, str]
    fingerprint: str
    changed: bool
    rollout: RolloutPlan

    def to_dict(self) -> dict[str, Any]:
        return {
            "applyId": self.apply_id,
            "workload": "/".join(self.workload),
            "fingerprint": self.fingerprint,
            "changed": self.changed,
            "rollout": self.rollout.to_dict(),
        }


class Orchestrator(Protocol):
    def apply(self, workload: WorkloadDescriptor, credential: ClusterCredential) -> ApplyReceipt:
        ...


class TopologyProvisioner(Protocol):
    def provision(self, topology: ClusterTopology) -> str:
        ...


@dataclass(frozen=True)
class SubmissionResult:
    """Either `accepted` with an apply id, or `rejected` with the violations. Never both."""

    kind: str
    status: SubmissionStatus
    apply_id: str | None = None
    violations: tuple[Violation, ...] = ()
    changed: bool | None = None

    @property
    def accepted(self) -> bool:
        return self.status == "accepted"

    @classmethod
    def accept(cls, kind: str, apply_id: str, *, changed: bool | None = None) -> "SubmissionResult":
        return cls(kind=kind, status="accepted", apply_id=apply_id, changed=changed)

    @classmethod
    def reject(cls, kind: str, violations: Sequence[Violation]) -> "SubmissionResult":
        if not violations:
            raise ValueError("A rejected submission must carry at least one violation")
        return cls(kind=kind, status="rejected", violations=tuple(violations))

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"kind": self.kind, "status": self.status}
        if self.accepted:
            out["applyId"] = self.apply_id
            if self.changed is not None:
                out["changed"] = self.changed
        else:
            out["violations"] = [v.to_dict() for v in self.violations]
        return out


class SubmissionGateway:
    """Validates descriptors, then forwards them to the orchestrator/provisioner.

    Validation failures come back as a rejected result and nothing is forwarded.
    Collaborator failures propagate unchanged; the caller never sees a partial
    acceptance.
    """

    def __init__(
        self,
        *,
        orchestrator: Orchestrator,
        provisioner: TopologyProvisioner,
        credentials: CredentialProvider,
        locks: KeyedLocks | None = None,
        supported_versions: Sequence[str] = DEFAULT_SUPPORTED_VERSIONS,
        lock_timeout_s: float | None = None,
        holder: str = "gateway",
        logger: logging.Logger | None = None,
    ):
        self._orchestrator = orchestrator
        self._provisioner = provisioner
        self._credentials = credentials
        self._locks = locks or KeyedLocks()
        self._supported_versions = tuple(supported_versions)
        self._lock_timeout_s = lock_timeout_s
        self._holder = holder
        self._logger = logger or logging.getLogger(__name__)

    def submit_workload(self, raw: Mapping[str, Any] | WorkloadDescriptor) -> SubmissionResult:
        result = check_workload(raw)
        if not result.ok:
            self._logger.warning(
                "Rejected WorkloadDescriptor (%d violation(s)): %s",
                len(result.violations),
                "; ".join(str(v) for v in result.violations),
            )
            return SubmissionResult.reject("WorkloadDescriptor", result.violations)

        workload = result.unwrap()
        credential = self._credentials.acquire(workload.cluster)
        with self._locks.hold(workload_lock_key(workload.cluster), self._holder, timeout=self._lock_timeout_s):
            receipt = self._orchestrator.apply(workload, credential)
        self._logger.info(
            "Accepted WorkloadDescriptor %s (apply_id=%s, changed=%s)",
            "/".join(workload.key),
            receipt.apply_id,
            receipt.changed,
        )
        return SubmissionResult.accept("WorkloadDescriptor", receipt.apply_id, changed=receipt.changed)

    def submit_topology(self, raw: Mapping[str, Any] | ClusterTopology) -> SubmissionResult:
        result = check_cluster_topology(raw, supported_versions=self._supported_versions)
        if not result.ok:
            self._logger.warning(
                "Rejected ClusterTopology (%d violation(s)): %s",
                len(result.violations),
                "; ".join(str(v) for v in result.violations),
            )
            return SubmissionResult.reject("ClusterTopology", result.violations)

        topology = result.unwrap()
        with self._locks.hold(topology_lock_key(topology.name), self._holder, timeout=self._lock_timeout_s):
            apply_id = self._provisioner.provision(topology)
        self._logger.info("Accepted ClusterTopology %s (apply_id=%s)", topology.name, apply_id)
        return SubmissionResult.accept("ClusterTopology", apply_id)
