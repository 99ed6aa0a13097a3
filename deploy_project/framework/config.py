from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Literal, Mapping

from pipelinekit.config_namespace import ConfigNamespace

from deploy_project.framework.runtime import PIPELINE_STAGE_IDS
from deploy_project.framework.validation import DEFAULT_SUPPORTED_VERSIONS, version_minor

BackendKind = Literal["local", "dry_run"]
BACKEND_KINDS: tuple[str, ...] = ("local", "dry_run")

DEFAULT_STAGE_TIMEOUT_S = 900.0
DEFAULT_CREDENTIAL_SKEW_S = 60.0


@dataclass(frozen=True)
class BackendConfig:
    kind: BackendKind = "dry_run"
    git_remote: str | None = None
    kubectl_context: str | None = None
    terraform_dir: str | None = None
    region: str | None = None
    workdir: str = "./.deploy_work"


@dataclass(frozen=True)
class RunConfig:
    branch: str
    workload_path: str
    registry: str
    repository: str
    log_dir: str
    run_index_path: str
    cluster: str | None = None
    topology_path: str | None = None
    dockerfile_path: str = "Dockerfile"
    context_dir: str = "."
    default_timeout_s: float | None = DEFAULT_STAGE_TIMEOUT_S
    stage_timeouts: dict[str, float] = field(default_factory=dict)
    credential_skew_s: float = DEFAULT_CREDENTIAL_SKEW_S
    supported_versions: tuple[str, ...] = DEFAULT_SUPPORTED_VERSIONS
    backend: BackendConfig = field(default_factory=BackendConfig)
    strict: bool = False

    def timeout_for(self, stage_id: str) -> float | None:
        return self.stage_timeouts.get(stage_id, self.default_timeout_s)

    @staticmethod
    def from_dict(cfg: Mapping[str, Any]) -> tuple["RunConfig", list[str]]:
        """
        Parse and validate configuration, returning (RunConfig, warnings).

        Raises:
            ValueError: if required keys are missing or invalid, or if unknown
            keys are present while `strict: true`.
        """

        if not isinstance(cfg, Mapping):
            raise ValueError("Config must be a mapping")

        warnings: list[str] = []
        root = ConfigNamespace(dict(cfg), path="")
        strict = root.get_bool("strict", default=False)

        pipeline = root.namespace("pipeline")
        branch = pipeline.get_str("branch", default="main")
        cluster = pipeline.get_str("cluster", default=None)
        workload_path = pipeline.get_str("workload_path")
        topology_path = pipeline.get_str("topology_path", default=None)
        dockerfile_path = pipeline.get_str("dockerfile_path", default="Dockerfile")
        context_dir = pipeline.get_str("context_dir", default=".")
        credential_skew_s = pipeline.get_float(
            "credential_skew_s", default=DEFAULT_CREDENTIAL_SKEW_S, min_value=0
        )

        default_timeout_s: float | None
        if pipeline.get_raw("default_timeout_s", default=DEFAULT_STAGE_TIMEOUT_S) is None:
            default_timeout_s = None
        else:
            default_timeout_s = pipeline.get_float("default_timeout_s", default=DEFAULT_STAGE_TIMEOUT_S)
            if default_timeout_s <= 0:
                raise ValueError(f"pipeline.default_timeout_s must be > 0 (got {default_timeout_s!r})")

        timeouts_ns = pipeline.namespace("stage_timeouts", default={})
        stage_timeouts: dict[str, float] = {}
        for stage_id in list(timeouts_ns.data.keys()):
            if stage_id not in PIPELINE_STAGE_IDS:
                raise ValueError(
                    f"Unknown stage id in pipeline.stage_timeouts: {stage_id} "
                    f"(available: {', '.join(PIPELINE_STAGE_IDS)})"
                )
            value = timeouts_ns.get_float(stage_id)
            if value <= 0:
                raise ValueError(f"pipeline.stage_timeouts.{stage_id} must be > 0 (got {value!r})")
            stage_timeouts[stage_id] = value

        image = root.namespace("image")
        registry = image.get_str("registry")
        repository = image.get_str("repository")

        cluster_ns = root.namespace("cluster", default={})
        supported_versions = tuple(
            cluster_ns.get_list_str("supported_versions", default=list(DEFAULT_SUPPORTED_VERSIONS))
        )
        for version in supported_versions:
            if version_minor(version) is None:
                raise ValueError(f"Invalid cluster.supported_versions entry: {version!r}")

        logging_ns = root.namespace("logging", default={})
        log_dir = logging_ns.get_str("log_dir", default="./logs")
        run_index_path = logging_ns.get_str("run_index", default=None) or os.path.join(log_dir, "runs_index.jsonl")

        backend_ns = root.namespace("backend", default={})
        kind = backend_ns.get_str("kind", default="dry_run", choices=BACKEND_KINDS)
        backend = BackendConfig(
            kind=kind,  # type: ignore[arg-type]
            git_remote=backend_ns.get_str("git_remote", default=None),
            kubectl_context=backend_ns.get_str("kubectl_context", default=None),
            terraform_dir=backend_ns.get_str("terraform_dir", default=None),
            region=backend_ns.get_str("region", default=None),
            workdir=backend_ns.get_str("workdir", default="./.deploy_work"),
        )
        if backend.kind == "local" and not backend.git_remote:
            raise ValueError("backend.git_remote is required when backend.kind is 'local'")

        unknown_keys = root.unknown_paths()
        if unknown_keys:
            if strict:
                raise ValueError("Unknown config keys: " + ", ".join(unknown_keys))
            warnings.extend(f"Unknown config key: {key}" for key in unknown_keys)

        return (
            RunConfig(
                branch=branch,
                cluster=cluster,
                workload_path=workload_path,
                topology_path=topology_path,
                dockerfile_path=dockerfile_path,
                context_dir=context_dir,
                default_timeout_s=default_timeout_s,
                stage_timeouts=stage_timeouts,
                credential_skew_s=credential_skew_s,
                registry=registry,
                repository=repository,
                supported_versions=supported_versions,
                log_dir=log_dir,
                run_index_path=run_index_path,
                backend=backend,
                strict=strict,
            ),
            warnings,
        )
