from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from deploy_project.backends.memory import InMemoryOrchestrator, InMemoryProvisioner, StaticCredentialProvider
from deploy_project.framework.credentials import ClusterCredential
from deploy_project.framework.descriptors import ArtifactReference, Exposure
from deploy_project.framework.errors import ConflictError, CredentialExpiredError
from deploy_project.framework.locks import KeyedLocks
from deploy_project.framework.reconciliation import SubmissionGateway, SubmissionResult, plan_rollout
from deploy_project.framework.validation import validate_workload


def _raw_workload(**overrides) -> dict:
    raw = {
        "name": "web",
        "cluster": "prod-eu",
        "image": {"registry": "registry.example.com", "repository": "team/web", "tag": "abc123"},
        "replicas": 2,
        "containerPort": 3000,
        "resources": {"cpuRequest": "250m", "memoryRequest": "128Mi", "cpuLimit": "500m", "memoryLimit": "256Mi"},
    }
    raw.update(overrides)
    return raw


def _raw_topology(**overrides) -> dict:
    raw = {
        "name": "prod-eu",
        "controlPlaneVersion": "1.29",
        "network": {"vpcId": "vpc-0abc", "subnetIds": ["subnet-a", "subnet-b"]},
        "nodeGroup": {"instanceClass": "t3.medium", "minSize": 1, "desiredSize": 2, "maxSize": 3},
    }
    raw.update(overrides)
    return raw


class _RecordingOrchestrator(InMemoryOrchestrator):
    def __init__(self):
        super().__init__()
        self.calls = 0

    def apply(self, workload, credential):
        self.calls += 1
        return super().apply(workload, credential)


def _gateway(**kwargs):
    orchestrator = kwargs.pop("orchestrator", None) or _RecordingOrchestrator()
    provisioner = kwargs.pop("provisioner", None) or InMemoryProvisioner()
    gateway = SubmissionGateway(
        orchestrator=orchestrator,
        provisioner=provisioner,
        credentials=StaticCredentialProvider(),
        **kwargs,
    )
    return gateway, orchestrator, provisioner


def test_plan_rollout_first_apply_creates():
    plan = plan_rollout(None, validate_workload(_raw_workload()))

    assert plan.strategy == "create"
    assert plan.replicas_from is None
    assert plan.replicas_to == 2


def test_plan_rollout_identical_descriptor_is_noop():
    workload = validate_workload(_raw_workload())

    plan = plan_rollout(workload, validate_workload(_raw_workload()))

    assert plan.strategy == "noop"
    assert not plan.changed


def test_plan_rollout_new_image_rolls():
    previous = validate_workload(_raw_workload())
    desired = previous.with_image(ArtifactReference("registry.example.com", "team/web", "def456"))

    plan = plan_rollout(previous, desired)

    assert plan.strategy == "rolling"
    assert plan.image_change
    assert plan.exposure_change is None


def test_plan_rollout_scale_to_zero_and_exposure_change():
    previous = validate_workload(_raw_workload())

    assert plan_rollout(previous, replace(previous, replicas=0)).strategy == "scale_to_zero"

    balanced = replace(previous, exposure=Exposure(type="LoadBalanced", external_port=80))
    plan = plan_rollout(previous, balanced)
    assert plan.strategy == "rolling"
    assert plan.exposure_change == ("Internal", "LoadBalanced")


def test_plan_rollout_refuses_different_workloads():
    previous = validate_workload(_raw_workload())

    with pytest.raises(ValueError, match="across workloads"):
        plan_rollout(previous, replace(previous, name="api"))


def test_orchestrator_is_idempotent_for_identical_descriptors():
    orchestrator = InMemoryOrchestrator()
    credential = StaticCredentialProvider().acquire("prod-eu")
    workload = validate_workload(_raw_workload())

    first = orchestrator.apply(workload, credential)
    second = orchestrator.apply(validate_workload(_raw_workload()), credential)

    assert first.changed
    assert not second.changed
    assert second.apply_id == first.apply_id
    assert second.rollout.strategy == "noop"


def test_exposure_change_keeps_workload_identity():
    orchestrator = InMemoryOrchestrator()
    credential = StaticCredentialProvider().acquire("prod-eu")
    workload = validate_workload(_raw_workload())

    orchestrator.apply(workload, credential)
    uid = orchestrator.identity(workload.key)
    receipt = orchestrator.apply(
        validate_workload(_raw_workload(exposure={"type": "LoadBalanced", "externalPort": 80})), credential
    )

    assert receipt.changed
    assert orchestrator.identity(workload.key) == uid
    assert orchestrator.current(workload.key).exposure.load_balanced


def test_orchestrator_refuses_expired_credential():
    orchestrator = InMemoryOrchestrator()
    expired = ClusterCredential(
        cluster="prod-eu", token="t", expires_at=datetime.now(timezone.utc) - timedelta(seconds=1)
    )

    with pytest.raises(CredentialExpiredError):
        orchestrator.apply(validate_workload(_raw_workload()), expired)


def test_gateway_rejects_invalid_workload_without_forwarding():
    gateway, orchestrator, _provisioner = _gateway()

    result = gateway.submit_workload(_raw_workload(replicas=-1, containerPort=70000))

    assert result.status == "rejected"
    assert result.apply_id is None
    assert [v.field for v in result.violations] == ["replicas", "containerPort"]
    assert orchestrator.calls == 0


def test_gateway_accepts_valid_workload():
    gateway, orchestrator, _provisioner = _gateway()

    result = gateway.submit_workload(_raw_workload())

    assert result.accepted
    assert result.apply_id == orchestrator.receipts[0].apply_id
    assert result.changed is True
    assert result.to_dict()["status"] == "accepted"
    assert "violations" not in result.to_dict()


def test_gateway_topology_accept_and_reject():
    gateway, _orchestrator, provisioner = _gateway()

    accepted = gateway.submit_topology(_raw_topology())
    rejected = gateway.submit_topology(
        _raw_topology(nodeGroup={"instanceClass": "t3.medium", "minSize": 2, "desiredSize": 1, "maxSize": 3})
    )

    assert accepted.accepted
    assert accepted.apply_id.startswith("topology-")
    assert provisioner.provisioned() == ("prod-eu",)
    assert rejected.to_dict()["violations"][0]["field"] == "nodeGroup.desiredSize"


def test_gateway_lock_conflict_propagates():
    locks = KeyedLocks()
    gateway, orchestrator, _provisioner = _gateway(locks=locks, lock_timeout_s=0)
    locks.acquire("workload:prod-eu", "run-123")

    with pytest.raises(ConflictError, match="held by run-123"):
        gateway.submit_workload(_raw_workload())

    assert orchestrator.calls == 0


def test_submission_result_reject_requires_violations():
    with pytest.raises(ValueError):
        SubmissionResult.reject("WorkloadDescriptor", [])
