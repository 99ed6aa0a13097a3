from __future__ import annotations

from deploy_project.framework.config import RunConfig
from deploy_project.framework.runtime import PIPELINE_STAGE_IDS
from deploy_project.stages._shared import StageEnv
from pipelinekit.stage_registry import StageRegistry


def get_stage_registry(env: StageEnv) -> StageRegistry:
    # Single import point for the stage sequence (used by the app and the CLI).
    from deploy_project.stages import __all_stages__  # noqa: PLC0415

    registry = StageRegistry.from_refs(builder(env) for builder in __all_stages__)
    order = tuple(ref.id for ref in registry.ordered())
    if order != PIPELINE_STAGE_IDS:
        raise RuntimeError(
            f"Stage sequence drifted: expected {list(PIPELINE_STAGE_IDS)} got {list(order)}"
        )
    return registry


def build_stage_registry(cfg: RunConfig, env: StageEnv) -> StageRegistry:
    return get_stage_registry(env).with_timeouts(cfg.stage_timeouts, default=cfg.default_timeout_s)
