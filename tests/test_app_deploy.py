import json
from dataclasses import replace
from pathlib import Path

import pytest
import yaml

from deploy_project.app import deploy as app_deploy
from deploy_project.backends import build_backends
from deploy_project.backends.memory import InMemoryRegistry
from deploy_project.framework.config import RunConfig
from deploy_project.framework.errors import ValidationError
from deploy_project.framework.runtime import TriggerEvent

DOCKERFILE = """\
FROM python:3.12-slim
WORKDIR /srv
COPY . .
RUN pip install --no-cache-dir -r requirements.txt
EXPOSE 8000
CMD ["gunicorn", "app:server", "--bind", "0.0.0.0:8000"]
"""


def _write_project(tmp_path: Path, **workload_overrides) -> dict:
    source_dir = tmp_path / "src"
    source_dir.mkdir()
    (source_dir / "Dockerfile").write_text(DOCKERFILE, encoding="utf-8")

    workload = {
        "name": "api",
        "cluster": "prod-eu",
        "image": {"registry": "registry.example.com", "repository": "team/api", "tag": "bootstrap"},
        "replicas": 2,
        "containerPort": 8000,
        "resources": {"cpuRequest": "100m", "memoryRequest": "64Mi", "cpuLimit": "1", "memoryLimit": "512Mi"},
        "exposure": {"type": "LoadBalanced", "externalPort": 80},
    }
    workload.update(workload_overrides)
    workload_path = tmp_path / "workload.yaml"
    workload_path.write_text(yaml.safe_dump(workload), encoding="utf-8")

    topology_path = tmp_path / "cluster.yaml"
    topology_path.write_text(
        yaml.safe_dump(
            {
                "name": "prod-eu",
                "controlPlaneVersion": "1.29",
                "network": {"vpcId": "vpc-0abc", "subnetIds": ["subnet-a", "subnet-b"]},
                "nodeGroup": {"instanceClass": "t3.medium", "minSize": 1, "desiredSize": 2, "maxSize": 3},
            }
        ),
        encoding="utf-8",
    )

    return {
        "pipeline": {
            "branch": "main",
            "workload_path": str(workload_path),
            "topology_path": str(topology_path),
            "context_dir": str(source_dir),
        },
        "image": {"registry": "registry.example.com", "repository": "team/api"},
        "logging": {"log_dir": str(tmp_path / "logs")},
    }


def _trigger(branch: str = "main") -> TriggerEvent:
    return TriggerEvent(commit_id="9f1c2ab", branch=branch, timestamp="2024-05-01T12:00:00Z")


def test_dry_run_deploys_and_records_run(tmp_path):
    cfg_dict = _write_project(tmp_path)

    run = app_deploy.run_deployment(cfg_dict, _trigger(), run_id="run_unit_dry", dry_run=True)

    assert run is not None
    assert run.status == "succeeded"
    assert str(run.outputs["artifact"]) == "registry.example.com/team/api:9f1c2ab"

    logs_dir = tmp_path / "logs"
    record = json.loads((logs_dir / "run_unit_dry_run.json").read_text(encoding="utf-8"))
    assert record["status"] == "succeeded"
    assert [stage["status"] for stage in record["stages"]] == ["succeeded"] * 5
    assert record["outputs"]["credential"]["token"] == "<redacted>"
    assert record["outputs"]["apply_receipt"]["rollout"]["strategy"] == "create"

    lines = (logs_dir / "runs_index.jsonl").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    entry = json.loads(lines[0])
    assert entry["run_id"] == "run_unit_dry"
    assert entry["artifact"] == "registry.example.com/team/api:9f1c2ab"
    assert entry["artifacts"]["run_record"].endswith("run_unit_dry_run.json")

    oplog = (logs_dir / "run_unit_dry_oplog.log").read_text(encoding="utf-8")
    assert "Published registry.example.com/team/api:9f1c2ab" in oplog


def test_failed_publish_is_recorded(tmp_path):
    cfg_dict = _write_project(tmp_path)
    cfg, _warnings = RunConfig.from_dict(cfg_dict)

    class _DownRegistry(InMemoryRegistry):
        def publish(self, built, reference):
            raise ConnectionError("registry.example.com: connection refused")

    backends = replace(build_backends(cfg, dry_run=True), registry=_DownRegistry())

    run = app_deploy.run_deployment(cfg_dict, _trigger(), run_id="run_unit_fail", backends=backends)

    assert run.status == "failed"
    record = json.loads((tmp_path / "logs" / "run_unit_fail_run.json").read_text(encoding="utf-8"))
    assert record["first_failure"]["name"] == "publish_image"
    assert record["error"]["cause"] == "ConnectionError"
    entry = json.loads((tmp_path / "logs" / "runs_index.jsonl").read_text(encoding="utf-8"))
    assert entry["stages"]["apply_workload"] == "skipped"
    assert backends.orchestrator.receipts == []


def test_trigger_for_other_branch_is_ignored(tmp_path):
    cfg_dict = _write_project(tmp_path)

    run = app_deploy.run_deployment(cfg_dict, _trigger(branch="feature/x"), run_id="run_ignored", dry_run=True)

    assert run is None
    assert not (tmp_path / "logs" / "runs_index.jsonl").exists()


def test_invalid_workload_raises_before_any_stage(tmp_path):
    cfg_dict = _write_project(tmp_path, replicas=0)

    with pytest.raises(ValidationError) as excinfo:
        app_deploy.run_deployment(cfg_dict, _trigger(), run_id="run_invalid", dry_run=True)

    assert [v.field for v in excinfo.value.violations] == ["replicas"]
    assert not (tmp_path / "logs" / "run_invalid_run.json").exists()


def test_workload_must_target_configured_cluster(tmp_path):
    cfg_dict = _write_project(tmp_path)
    cfg_dict["pipeline"]["cluster"] = "staging"

    with pytest.raises(ValidationError, match=r"must equal pipeline\.cluster \(staging\)"):
        app_deploy.run_deployment(cfg_dict, _trigger(), dry_run=True)


def test_submit_topology_dry_run(tmp_path):
    cfg_dict = _write_project(tmp_path)

    result = app_deploy.submit_topology(cfg_dict, dry_run=True)

    assert result.accepted
    assert result.apply_id.startswith("topology-")


def test_submit_topology_rejects_unsupported_version(tmp_path):
    cfg_dict = _write_project(tmp_path)
    cfg_dict["cluster"] = {"supported_versions": ["1.30"]}

    result = app_deploy.submit_topology(cfg_dict, dry_run=True)

    assert result.status == "rejected"
    assert [v.field for v in result.violations] == ["controlPlaneVersion"]


def test_submit_topology_requires_a_path(tmp_path):
    cfg_dict = _write_project(tmp_path)
    del cfg_dict["pipeline"]["topology_path"]

    with pytest.raises(ValueError, match="Missing topology path"):
        app_deploy.submit_topology(cfg_dict, dry_run=True)
