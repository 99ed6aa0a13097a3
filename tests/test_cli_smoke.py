import json

import yaml

from deploy_project import cli

WORKLOAD = {
    "name": "web",
    "cluster": "prod-eu",
    "image": {"registry": "registry.example.com", "repository": "team/web", "tag": "abc123"},
    "replicas": 2,
    "containerPort": 3000,
    "resources": {"cpuRequest": "250m", "memoryRequest": "128Mi", "cpuLimit": "500m", "memoryLimit": "256Mi"},
    "exposure": "Internal",
}

DOCKERFILE = """\
FROM node:18-alpine
WORKDIR /app
COPY . .
EXPOSE 3000
CMD ["node", "server.js"]
"""


def _write_yaml(path, payload):
    path.write_text(yaml.safe_dump(payload), encoding="utf-8")
    return str(path)


def _configure(tmp_path, monkeypatch) -> str:
    source_dir = tmp_path / "src"
    source_dir.mkdir()
    (source_dir / "Dockerfile").write_text(DOCKERFILE, encoding="utf-8")
    workload_path = _write_yaml(tmp_path / "workload.yaml", WORKLOAD)
    config_path = _write_yaml(
        tmp_path / "config.yaml",
        {
            "pipeline": {"branch": "main", "workload_path": workload_path, "context_dir": str(source_dir)},
            "image": {"registry": "registry.example.com", "repository": "team/web"},
            "logging": {"log_dir": str(tmp_path / "logs")},
        },
    )
    monkeypatch.setenv("DEPLOY_PROJECT_CONFIG", config_path)
    return config_path


def test_cli_validate_workload_ok(tmp_path, capsys):
    path = _write_yaml(tmp_path / "workload.yaml", WORKLOAD)

    rc = cli.main(["validate-workload", path])

    assert rc == 0
    out = json.loads(capsys.readouterr().out)
    assert out["exposure"] == {"type": "Internal"}


def test_cli_validate_workload_reports_violations(tmp_path, capsys):
    path = _write_yaml(tmp_path / "workload.yaml", {**WORKLOAD, "exposure": "LoadBalanced"})

    rc = cli.main(["validate-workload", path])

    assert rc == 1
    err = capsys.readouterr().err
    assert "WorkloadDescriptor: 1 violation(s)" in err
    assert "exposure.externalPort" in err


def test_cli_validate_topology_with_supported_versions(tmp_path, capsys):
    path = _write_yaml(
        tmp_path / "cluster.yaml",
        {
            "name": "prod-eu",
            "controlPlaneVersion": "1.27",
            "network": {"vpcId": "vpc-0abc", "subnetIds": ["subnet-a", "subnet-b"]},
            "nodeGroup": {"instanceClass": "t3.medium", "minSize": 1, "desiredSize": 2, "maxSize": 3},
        },
    )

    assert cli.main(["validate-topology", path]) == 1
    assert "controlPlaneVersion" in capsys.readouterr().err

    assert cli.main(["validate-topology", path, "--supported-version", "1.27"]) == 0


def test_cli_validate_image_checks_workload_port(tmp_path, capsys):
    dockerfile = tmp_path / "Dockerfile"
    dockerfile.write_text(DOCKERFILE, encoding="utf-8")
    workload_path = _write_yaml(tmp_path / "workload.yaml", {**WORKLOAD, "containerPort": 8080})

    assert cli.main(["validate-image", str(dockerfile)]) == 0
    assert json.loads(capsys.readouterr().out)["exposedPort"] == 3000

    assert cli.main(["validate-image", str(dockerfile), "--workload", workload_path]) == 1
    assert "containerPort" in capsys.readouterr().err


def test_cli_render_manifests(tmp_path, capsys):
    path = _write_yaml(tmp_path / "workload.yaml", WORKLOAD)

    assert cli.main(["render-manifests", path]) == 0

    documents = list(yaml.safe_load_all(capsys.readouterr().out))
    assert [doc["kind"] for doc in documents] == ["Deployment", "Service"]


def test_cli_list_stages_smoke(tmp_path, monkeypatch, capsys):
    _configure(tmp_path, monkeypatch)

    rc = cli.main(["list-stages"])
    assert rc == 0

    lines = capsys.readouterr().out.splitlines()
    assert [line.split("\t")[0] for line in lines] == [
        "1. fetch_source",
        "2. build_image",
        "3. publish_image",
        "4. acquire_credentials",
        "5. apply_workload",
    ]
    assert "locked" in lines[-1]


def test_cli_run_dry_run_then_history(tmp_path, monkeypatch, capsys):
    _configure(tmp_path, monkeypatch)

    rc = cli.main(["run", "--commit", "abc123", "--dry-run", "--timestamp", "2024-05-01T12:00:00Z"])

    assert rc == 0
    out = capsys.readouterr().out
    assert "apply_workload\tsucceeded" in out
    assert "registry.example.com/team/web:abc123" in out

    assert cli.main(["history"]) == 0
    history = capsys.readouterr().out
    assert "prod-eu" in history


def test_cli_run_ignores_other_branch(tmp_path, monkeypatch, capsys):
    _configure(tmp_path, monkeypatch)

    rc = cli.main(["run", "--commit", "abc123", "--branch", "feature/x", "--dry-run"])

    assert rc == 0
    assert "Trigger ignored" in capsys.readouterr().out


def test_cli_history_without_runs(tmp_path, monkeypatch, capsys):
    _configure(tmp_path, monkeypatch)

    assert cli.main(["history"]) == 0
    assert "No runs recorded" in capsys.readouterr().out
