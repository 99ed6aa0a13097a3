"""Reusable pipeline kernel (stage sequencing engine + strict config helpers).

This package is intentionally independent of `deploy_project.*`. Anything
deployment-specific (descriptors, backends, locking policy) must live in the
consuming application.
"""

from pipelinekit.config_namespace import ConfigFieldError, ConfigNamespace, ConfigTypeError
from pipelinekit.engine.pipeline import (
    STAGE_STATUSES,
    DefaultStageRecorder,
    FlowContext,
    NullStageRecorder,
    RunCancelled,
    RunStatus,
    SequenceRunner,
    StageExecutionError,
    StageRecord,
    StageRecorder,
    StageStatus,
    StageTimeoutError,
    remaining_stage_time,
    utc_now_iso8601,
)
from pipelinekit.stage_registry import StageRegistry
from pipelinekit.stage_types import StageFn, StageIO, StageRef

__all__ = [
    "STAGE_STATUSES",
    "ConfigFieldError",
    "ConfigNamespace",
    "ConfigTypeError",
    "DefaultStageRecorder",
    "FlowContext",
    "NullStageRecorder",
    "RunCancelled",
    "RunStatus",
    "SequenceRunner",
    "StageExecutionError",
    "StageFn",
    "StageIO",
    "StageRecord",
    "StageRecorder",
    "StageRef",
    "StageRegistry",
    "StageStatus",
    "StageTimeoutError",
    "remaining_stage_time",
    "utc_now_iso8601",
]
