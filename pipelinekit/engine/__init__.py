"""Engine primitives for running fixed stage sequences."""

from pipelinekit.engine.pipeline import (
    STAGE_STATUSES,
    TERMINAL_STAGE_STATUSES,
    DefaultStageRecorder,
    FlowContext,
    NullStageRecorder,
    RunCancelled,
    RunStatus,
    SequenceRunner,
    StageExecutionError,
    StageGuard,
    StageRecord,
    StageRecorder,
    StageStatus,
    StageTimeoutError,
    remaining_stage_time,
    utc_now_iso8601,
)

__all__ = [
    "STAGE_STATUSES",
    "TERMINAL_STAGE_STATUSES",
    "DefaultStageRecorder",
    "FlowContext",
    "NullStageRecorder",
    "RunCancelled",
    "RunStatus",
    "SequenceRunner",
    "StageExecutionError",
    "StageGuard",
    "StageRecord",
    "StageRecorder",
    "StageStatus",
    "StageTimeoutError",
    "remaining_stage_time",
    "utc_now_iso8601",
]
