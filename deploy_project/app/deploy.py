from __future__ import annotations

import logging
import os
from typing import Any

from deploy_project.backends import build_backends
from deploy_project.foundation.config_io import CONFIG_ENV_VAR, load_yaml_mapping
from deploy_project.foundation.logging_utils import close_logger, setup_operational_logger
from deploy_project.framework.artifacts import (
    append_run_index_entry,
    build_run_index_entry,
    run_record_path,
    write_run_record,
)
from deploy_project.framework.collaborators import Backends
from deploy_project.framework.config import RunConfig
from deploy_project.framework.coordinator import PipelineCoordinator
from deploy_project.framework.descriptors import WorkloadDescriptor
from deploy_project.framework.errors import ValidationError, Violation
from deploy_project.framework.locks import KeyedLocks
from deploy_project.framework.reconciliation import SubmissionGateway, SubmissionResult
from deploy_project.framework.runtime import PipelineRun, TriggerEvent, generate_run_id
from deploy_project.framework.validation import validate_workload
from deploy_project.stages._shared import StageEnv
from deploy_project.stages.registry import build_stage_registry


def _log_config_meta(logger: logging.Logger, config_meta: dict[str, Any] | None) -> None:
    if not config_meta:
        return
    mode = config_meta.get("mode")
    paths = config_meta.get("paths") or []
    env_var = config_meta.get("env_var") or CONFIG_ENV_VAR
    if mode in {"env", "explicit"} and paths:
        label = f"env {env_var}" if mode == "env" else "explicit path"
        logger.info("Loaded config from %s=%s", label, paths[0])
    elif paths:
        base = paths[0]
        local = paths[1] if len(paths) > 1 else None
        if local:
            logger.info("Loaded config base=%s local=%s", base, local)
        else:
            logger.info("Loaded config base=%s", base)


def load_workload(cfg: RunConfig) -> WorkloadDescriptor:
    """Load and validate the configured workload descriptor (raises ValidationError)."""

    workload = validate_workload(load_yaml_mapping(cfg.workload_path))
    if cfg.cluster is not None and workload.cluster != cfg.cluster:
        raise ValidationError(
            "WorkloadDescriptor",
            [Violation("cluster", f"must equal pipeline.cluster ({cfg.cluster})", workload.cluster)],
        )
    return workload


def _record_run(cfg: RunConfig, run: PipelineRun, *, oplog_path: str) -> None:
    logger = run.logger
    record_path = run_record_path(cfg.log_dir, run.run_id)
    write_run_record(record_path, run)
    logger.info("Wrote run record to %s", record_path)

    entry = build_run_index_entry(run, artifacts={"run_record": record_path, "oplog": oplog_path})
    try:
        append_run_index_entry(cfg.run_index_path, entry)
        logger.info("Appended run index entry to %s (status=%s)", cfg.run_index_path, entry["status"])
    except Exception as exc:  # noqa: BLE001
        logger.exception("Run index append failed: %s", exc)


def run_deployment(
    cfg_dict: dict[str, Any],
    trigger: TriggerEvent,
    *,
    run_id: str | None = None,
    config_meta: dict[str, Any] | None = None,
    dry_run: bool | None = None,
    backends: Backends | None = None,
) -> PipelineRun | None:
    """
    Run the deployment pipeline once for `trigger`.

    Returns the finished run, or None when the trigger is not for the
    configured branch. Raises ValidationError when the workload descriptor is
    invalid; no run is started in that case.
    """

    cfg, cfg_warnings = RunConfig.from_dict(cfg_dict)
    run_id = run_id or generate_run_id()
    logger, oplog_path = setup_operational_logger(cfg.log_dir, run_id)

    try:
        _log_config_meta(logger, config_meta)
        for warning in cfg_warnings:
            logger.warning("%s", warning)
        logger.info(
            "Trigger received: commit=%s branch=%s timestamp=%s",
            trigger.commit_id,
            trigger.branch,
            trigger.timestamp,
        )

        try:
            workload = load_workload(cfg)
        except ValidationError as exc:
            for violation in exc.violations:
                logger.error("Invalid workload descriptor: %s", violation)
            raise
        logger.info("Loaded workload %s from %s", "/".join(workload.key), cfg.workload_path)

        backends = backends or build_backends(cfg, dry_run=dry_run, logger=logger)
        env = StageEnv(
            backends=backends,
            registry=cfg.registry,
            repository=cfg.repository,
            dockerfile_path=cfg.dockerfile_path,
        )
        coordinator = PipelineCoordinator(
            build_stage_registry(cfg, env),
            branch=cfg.branch,
            credentials=backends.credentials,
            locks=KeyedLocks(),
            credential_skew_s=cfg.credential_skew_s,
            logger=logger,
            on_finished=lambda finished: _record_run(cfg, finished, oplog_path=oplog_path),
        )

        run = coordinator.submit(trigger, workload, run_id=run_id)
        if run is None:
            return None
        coordinator.drain()

        logger.info("Operational log stored at %s", oplog_path)
        return run
    except ValidationError:
        raise
    except Exception:
        logger.exception("Deployment run %s failed before completion", run_id)
        raise
    finally:
        close_logger(logger)


def submit_topology(
    cfg_dict: dict[str, Any],
    path: str | None = None,
    *,
    dry_run: bool | None = None,
    backends: Backends | None = None,
) -> SubmissionResult:
    cfg, cfg_warnings = RunConfig.from_dict(cfg_dict)
    topology_path = path or cfg.topology_path
    if not topology_path:
        raise ValueError("Missing topology path: pass a file or set pipeline.topology_path")

    run_id = generate_run_id()
    logger, _oplog_path = setup_operational_logger(cfg.log_dir, run_id)
    try:
        for warning in cfg_warnings:
            logger.warning("%s", warning)
        raw = load_yaml_mapping(topology_path)
        backends = backends or build_backends(cfg, dry_run=dry_run, logger=logger)
        gateway = SubmissionGateway(
            orchestrator=backends.orchestrator,
            provisioner=backends.provisioner,
            credentials=backends.credentials,
            supported_versions=cfg.supported_versions,
            logger=logger,
        )
        logger.info("Submitting cluster topology from %s", os.path.abspath(topology_path))
        return gateway.submit_topology(raw)
    except Exception:
        logger.exception("Topology submission failed")
        raise
    finally:
        close_logger(logger)
