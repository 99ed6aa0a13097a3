from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Sequence
from typing import Any

from deploy_project.framework.errors import ValidationError, Violation
from deploy_project.framework.validation import DEFAULT_SUPPORTED_VERSIONS


def _print_err(message: str) -> None:
    sys.stderr.write(message.rstrip() + "\n")


def _report(kind: str, violations: Sequence[Violation]) -> int:
    _print_err(f"{kind}: {len(violations)} violation(s)")
    for violation in violations:
        _print_err(f"  - {violation}")
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="deploy_project", add_help=True)
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Explicit config path (otherwise config/config.yaml + config/config.local.yaml, or DEPLOY_PROJECT_CONFIG).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    topology = sub.add_parser("validate-topology", help="Validate a cluster topology descriptor")
    topology.add_argument("path", type=str)
    topology.add_argument(
        "--supported-version",
        action="append",
        default=None,
        help=f"Allowed control plane version (repeatable; default: {', '.join(DEFAULT_SUPPORTED_VERSIONS)})",
    )

    workload = sub.add_parser("validate-workload", help="Validate a workload descriptor")
    workload.add_argument("path", type=str)

    image = sub.add_parser("validate-image", help="Parse a Dockerfile into an image descriptor")
    image.add_argument("path", type=str)
    image.add_argument("--workload", type=str, default=None, help="Also check the workload's containerPort")

    render = sub.add_parser("render-manifests", help="Print the Kubernetes manifests for a workload")
    render.add_argument("path", type=str)

    sub.add_parser("list-stages", help="List pipeline stages in execution order")

    run = sub.add_parser("run", help="Run the deployment pipeline for one commit")
    run.add_argument("--commit", type=str, required=True)
    run.add_argument("--branch", type=str, default=None, help="Trigger branch (defaults to pipeline.branch)")
    run.add_argument("--timestamp", type=str, default=None, help="Trigger timestamp (defaults to now, UTC)")
    run.add_argument("--dry-run", action="store_true", help="Use in-memory backends")

    submit = sub.add_parser("submit-topology", help="Validate and provision a cluster topology")
    submit.add_argument("path", type=str, nargs="?", default=None)
    submit.add_argument("--dry-run", action="store_true", help="Use the in-memory provisioner")

    sub.add_parser("history", help="Summarize the run index per cluster")

    return parser


def _load_cfg(args: argparse.Namespace) -> tuple[dict[str, Any], dict[str, Any]]:
    from deploy_project.foundation.config_io import load_config

    return load_config(config_path=args.config)


def _cmd_validate_topology(args: argparse.Namespace) -> int:
    from deploy_project.foundation.config_io import load_yaml_mapping
    from deploy_project.framework.validation import check_cluster_topology

    versions = tuple(args.supported_version or DEFAULT_SUPPORTED_VERSIONS)
    result = check_cluster_topology(load_yaml_mapping(args.path), supported_versions=versions)
    if not result.ok:
        return _report("ClusterTopology", result.violations)
    print(json.dumps(result.unwrap().to_dict(), indent=2))
    return 0


def _cmd_validate_workload(args: argparse.Namespace) -> int:
    from deploy_project.foundation.config_io import load_yaml_mapping
    from deploy_project.framework.validation import check_workload

    result = check_workload(load_yaml_mapping(args.path))
    if not result.ok:
        return _report("WorkloadDescriptor", result.violations)
    print(json.dumps(result.unwrap().to_dict(), indent=2))
    return 0


def _cmd_validate_image(args: argparse.Namespace) -> int:
    from deploy_project.foundation.config_io import load_yaml_mapping
    from deploy_project.framework.image_descriptor import check_workload_matches_image, load_image_descriptor
    from deploy_project.framework.validation import check_workload

    result = load_image_descriptor(args.path)
    if not result.ok:
        return _report("ImageDescriptor", result.violations)
    image = result.unwrap()
    if args.workload:
        workload_result = check_workload(load_yaml_mapping(args.workload))
        if not workload_result.ok:
            return _report("WorkloadDescriptor", workload_result.violations)
        mismatches = check_workload_matches_image(workload_result.unwrap(), image)
        if mismatches:
            return _report("WorkloadDescriptor", mismatches)
    print(json.dumps(image.to_dict(), indent=2))
    return 0


def _cmd_render_manifests(args: argparse.Namespace) -> int:
    from deploy_project.foundation.config_io import load_yaml_mapping
    from deploy_project.framework.manifests import dump_manifests, render_workload_manifests
    from deploy_project.framework.validation import check_workload

    result = check_workload(load_yaml_mapping(args.path))
    if not result.ok:
        return _report("WorkloadDescriptor", result.violations)
    sys.stdout.write(dump_manifests(render_workload_manifests(result.unwrap())))
    return 0


def _cmd_list_stages(args: argparse.Namespace) -> int:
    from deploy_project.backends import build_backends
    from deploy_project.framework.config import RunConfig
    from deploy_project.stages._shared import StageEnv
    from deploy_project.stages.registry import build_stage_registry

    cfg_dict, _meta = _load_cfg(args)
    cfg, _warnings = RunConfig.from_dict(cfg_dict)
    env = StageEnv(
        backends=build_backends(cfg, dry_run=True),
        registry=cfg.registry,
        repository=cfg.repository,
        dockerfile_path=cfg.dockerfile_path,
    )
    for row in build_stage_registry(cfg, env).describe():
        io = row["io"]
        flags = []
        if row["timeout_s"] is not None:
            flags.append(f"timeout_s={row['timeout_s']:g}")
        if row["locked"]:
            flags.append("locked")
        if io["requires"]:
            flags.append(f"requires={','.join(io['requires'])}")
        if io["provides"]:
            flags.append(f"provides={','.join(io['provides'])}")
        print(f"{row['position']}. {row['stage_id']}\t{row['doc'] or ''}\t[{' '.join(flags)}]".rstrip())
    return 0


def _cmd_run(args: argparse.Namespace) -> int:
    from deploy_project.app.deploy import run_deployment
    from deploy_project.framework.config import RunConfig
    from deploy_project.framework.runtime import TriggerEvent
    from pipelinekit.engine.pipeline import utc_now_iso8601

    cfg_dict, cfg_meta = _load_cfg(args)
    branch = args.branch or RunConfig.from_dict(cfg_dict)[0].branch
    trigger = TriggerEvent(commit_id=args.commit, branch=branch, timestamp=args.timestamp or utc_now_iso8601())
    try:
        run = run_deployment(cfg_dict, trigger, config_meta=cfg_meta, dry_run=True if args.dry_run else None)
    except ValidationError as exc:
        return _report(exc.kind, exc.violations)

    if run is None:
        print(f"Trigger ignored (branch={trigger.branch}, commit={trigger.commit_id})")
        return 0
    for record in run.stages:
        print(f"{record.name}\t{record.status}")
    if run.status != "succeeded":
        error = run.error or {}
        _print_err(f"Run {run.run_id} failed: {error.get('message')}")
        return 1
    print(f"Run {run.run_id} succeeded: {run.outputs.get('artifact')}")
    return 0


def _cmd_submit_topology(args: argparse.Namespace) -> int:
    from deploy_project.app.deploy import submit_topology

    cfg_dict, _meta = _load_cfg(args)
    result = submit_topology(cfg_dict, args.path, dry_run=True if args.dry_run else None)
    if not result.accepted:
        return _report(result.kind, result.violations)
    print(f"Accepted {result.kind}: apply_id={result.apply_id}")
    return 0


def _cmd_history(args: argparse.Namespace) -> int:
    from deploy_project.framework.artifacts import load_run_history, summarize_history
    from deploy_project.framework.config import RunConfig

    cfg_dict, _meta = _load_cfg(args)
    cfg, _warnings = RunConfig.from_dict(cfg_dict)
    summary = summarize_history(load_run_history(cfg.run_index_path))
    if summary.empty:
        print(f"No runs recorded in {cfg.run_index_path}")
        return 0
    print(summary.to_string(index=False))
    return 0


_COMMANDS = {
    "validate-topology": _cmd_validate_topology,
    "validate-workload": _cmd_validate_workload,
    "validate-image": _cmd_validate_image,
    "render-manifests": _cmd_render_manifests,
    "list-stages": _cmd_list_stages,
    "run": _cmd_run,
    "submit-topology": _cmd_submit_topology,
    "history": _cmd_history,
}


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    handler = _COMMANDS.get(args.command)
    if handler is None:
        raise AssertionError(f"Unhandled command: {args.command}")
    return int(handler(args))


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main(sys.argv[1:]))
