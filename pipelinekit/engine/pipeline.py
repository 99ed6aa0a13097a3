"""Execution engine for fixed stage sequences.

This module is intentionally app-agnostic and must not import `deploy_project.*`.
"""

from __future__ import annotations

import contextlib
import contextvars
import logging
import time
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, ContextManager, Literal, Protocol, Sequence, TypeAlias

if TYPE_CHECKING:
    from pipelinekit.stage_types import StageRef

StageStatus: TypeAlias = Literal["pending", "running", "succeeded", "failed", "skipped"]
RunStatus: TypeAlias = Literal["pending", "running", "succeeded", "failed"]

STAGE_STATUSES: tuple[str, ...] = ("pending", "running", "succeeded", "failed", "skipped")
TERMINAL_STAGE_STATUSES: tuple[str, ...] = ("succeeded", "failed", "skipped")

_STAGE_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "pending": ("running", "skipped"),
    "running": ("succeeded", "failed"),
    "succeeded": (),
    "failed": (),
    "skipped": (),
}


_STAGE_DEADLINE: contextvars.ContextVar[float | None] = contextvars.ContextVar("stage_deadline", default=None)


def utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def remaining_stage_time() -> float | None:
    """Seconds left before the current stage's timeout, or None outside a bounded stage."""

    deadline = _STAGE_DEADLINE.get()
    if deadline is None:
        return None
    return max(0.0, deadline - time.monotonic())


class RunCancelled(RuntimeError):
    """Raised by a stage guard that stopped waiting because the run was cancelled."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class StageExecutionError(RuntimeError):
    """A stage could not complete. Terminal for the current run."""

    def __init__(self, stage: str, message: str):
        self.stage = stage
        super().__init__(f"Stage {stage} failed: {message}")


class StageTimeoutError(StageExecutionError):
    def __init__(self, stage: str, timeout_s: float):
        self.timeout_s = timeout_s
        super().__init__(stage, f"timed out after {timeout_s:g}s")


@dataclass
class StageRecord:
    name: str
    status: StageStatus = "pending"
    started_at: str | None = None
    finished_at: str | None = None
    duration_s: float | None = None
    error: dict[str, Any] | None = None

    def transition(self, status: StageStatus) -> None:
        allowed = _STAGE_TRANSITIONS.get(self.status, ())
        if status not in allowed:
            raise RuntimeError(
                f"Illegal stage transition for {self.name}: {self.status} -> {status}"
            )
        self.status = status
        if status == "running":
            self.started_at = utc_now_iso8601()
        elif status in ("succeeded", "failed"):
            self.finished_at = utc_now_iso8601()

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name, "status": self.status}
        if self.started_at:
            out["started_at"] = self.started_at
        if self.finished_at:
            out["finished_at"] = self.finished_at
        if self.duration_s is not None:
            out["duration_s"] = self.duration_s
        if self.error is not None:
            out["error"] = dict(self.error)
        return out


class FlowContext(Protocol):
    logger: logging.Logger
    outputs: dict[str, Any]
    stages: list[StageRecord]
    status: RunStatus
    error: dict[str, Any] | None

    def cancel_requested(self) -> str | None:
        ...


StageGuard: TypeAlias = Callable[[FlowContext, "StageRef"], ContextManager[Any]]


class StageRecorder(Protocol):
    def on_stage_start(self, ctx: FlowContext, path: str, stage: "StageRef") -> None:
        ...

    def on_stage_end(self, ctx: FlowContext, path: str, record: StageRecord) -> None:
        ...

    def on_stage_error(self, ctx: FlowContext, path: str, stage_name: str, exc: Exception) -> None:
        ...


class DefaultStageRecorder:
    def on_stage_start(self, ctx: FlowContext, path: str, stage: "StageRef") -> None:
        tokens: list[str] = []
        if stage.timeout_s is not None:
            tokens.append(f"timeout_s={stage.timeout_s:g}")
        if stage.locked:
            tokens.append("locked=true")
        if stage.io.requires:
            tokens.append(f"requires={','.join(stage.io.requires)}")
        if tokens:
            ctx.logger.info("Stage: %s (%s)", path, ", ".join(tokens))
        else:
            ctx.logger.info("Stage: %s", path)

    def on_stage_end(self, ctx: FlowContext, path: str, record: StageRecord) -> None:
        ctx.logger.info("Completed stage %s (duration_s=%.3f)", path, record.duration_s or 0.0)

    def on_stage_error(self, ctx: FlowContext, path: str, stage_name: str, exc: Exception) -> None:
        ctx.logger.error("Stage failed: %s (%s)", path, exc)


class NullStageRecorder:
    def on_stage_start(self, ctx: FlowContext, path: str, stage: "StageRef") -> None:
        return

    def on_stage_end(self, ctx: FlowContext, path: str, record: StageRecord) -> None:
        return

    def on_stage_error(self, ctx: FlowContext, path: str, stage_name: str, exc: Exception) -> None:
        return


class SequenceRunner:
    """Runs a fixed sequence of stages as a fail-fast state machine.

    Stage `i+1` only starts after stage `i` succeeded. The first failure marks
    every later stage `skipped` and the run `failed`; the error is recorded on
    the context rather than raised. Cancellation is honoured between stages only;
    a cancel that arrives during the last stage still fails the run.

    Stages flagged `locked` run inside the optional `guard` context manager. The
    guard is entered before the stage's timeout starts (waiting there is queue
    time) and exited only when the stage callable has actually returned, even
    if the runner already gave up on it.
    """

    def __init__(
        self,
        stages: Sequence["StageRef"],
        *,
        name: str = "pipeline",
        recorder: StageRecorder | None = None,
        guard: StageGuard | None = None,
    ):
        if not stages:
            raise ValueError("SequenceRunner requires at least one stage")
        names = [ref.id for ref in stages]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate stage name(s) in sequence: {', '.join(duplicates)}")
        self._stages = tuple(stages)
        self._name = name
        self._recorder = recorder or DefaultStageRecorder()
        self._guard = guard
        self._validate_recorder(self._recorder)

    @property
    def stage_names(self) -> tuple[str, ...]:
        return tuple(ref.id for ref in self._stages)

    def new_records(self) -> list[StageRecord]:
        return [StageRecord(name=ref.id) for ref in self._stages]

    def skip_all(self, ctx: FlowContext) -> None:
        self._prepare(ctx)
        self._skip_remaining(ctx, 0)

    def run(self, ctx: FlowContext) -> RunStatus:
        self._prepare(ctx)
        ctx.status = "running"

        for index, stage in enumerate(self._stages):
            reason = ctx.cancel_requested()
            if reason is not None:
                ctx.logger.warning("Run cancelled before stage %s: %s", stage.id, reason)
                self._skip_remaining(ctx, index)
                ctx.error = {"type": "RunCancelled", "message": reason, "stage": None}
                ctx.status = "failed"
                return ctx.status

            record = ctx.stages[index]
            path = f"{self._name}/{stage.id}"
            record.transition("running")
            started = time.monotonic()
            release = contextlib.ExitStack()
            try:
                self._recorder.on_stage_start(ctx, path, stage)
                missing = [key for key in stage.io.requires if key not in ctx.outputs]
                if missing:
                    raise StageExecutionError(
                        stage.id, f"missing required outputs: {', '.join(missing)}"
                    )
                if stage.locked and self._guard is not None:
                    release.enter_context(self._guard(ctx, stage))
                    started = time.monotonic()
                result = self._invoke(stage, ctx, release)
                self._capture(ctx, stage, result)
            except Exception as exc:
                if not isinstance(exc, StageTimeoutError):
                    release.close()
                record.duration_s = round(time.monotonic() - started, 3)
                error = self._error_payload(stage, exc)
                record.error = error
                record.transition("failed")
                try:
                    self._recorder.on_stage_error(ctx, path, stage.id, exc)
                except Exception:
                    ctx.logger.exception("Stage recorder failed during error handling for %s", path)
                self._skip_remaining(ctx, index + 1)
                ctx.error = error
                ctx.status = "failed"
                return ctx.status

            record.duration_s = round(time.monotonic() - started, 3)
            record.transition("succeeded")
            self._recorder.on_stage_end(ctx, path, record)

        reason = ctx.cancel_requested()
        if reason is not None:
            ctx.logger.warning("Run cancelled during stage %s: %s", self._stages[-1].id, reason)
            ctx.error = {"type": "RunCancelled", "message": reason, "stage": None}
            ctx.status = "failed"
            return ctx.status

        ctx.status = "succeeded"
        return ctx.status

    def _prepare(self, ctx: FlowContext) -> None:
        if not ctx.stages:
            ctx.stages.extend(self.new_records())
            return
        names = tuple(record.name for record in ctx.stages)
        if names != self.stage_names:
            raise ValueError(
                f"Context stage records do not match sequence: expected={list(self.stage_names)} got={list(names)}"
            )
        not_pending = [record.name for record in ctx.stages if record.status != "pending"]
        if not_pending:
            raise RuntimeError(f"Stages already executed: {', '.join(not_pending)}")

    def _skip_remaining(self, ctx: FlowContext, start: int) -> None:
        for record in ctx.stages[start:]:
            if record.status == "pending":
                record.transition("skipped")

    def _invoke(self, stage: "StageRef", ctx: FlowContext, release: contextlib.ExitStack) -> Any:
        timeout_s = stage.timeout_s
        if timeout_s is None:
            with release:
                return stage.fn(ctx)

        deadline = time.monotonic() + timeout_s

        def _bounded() -> Any:
            token = _STAGE_DEADLINE.set(deadline)
            try:
                return stage.fn(ctx)
            finally:
                _STAGE_DEADLINE.reset(token)
                release.close()

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"stage-{stage.id}")
        try:
            future = executor.submit(_bounded)
        except Exception:
            release.close()
            executor.shutdown(wait=False)
            raise
        try:
            return future.result(timeout=timeout_s)
        except FuturesTimeoutError as exc:
            if future.done():
                raise
            ctx.logger.warning(
                "Stage %s exceeded %gs; its guard stays held until the call returns", stage.id, timeout_s
            )
            raise StageTimeoutError(stage.id, float(timeout_s)) from exc
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _capture(self, ctx: FlowContext, stage: "StageRef", result: Any) -> None:
        provides = stage.io.provides
        if not provides:
            return
        if len(provides) == 1:
            ctx.outputs[provides[0]] = result
            return
        if not isinstance(result, Mapping):
            raise StageExecutionError(
                stage.id, f"must return a mapping with keys {list(provides)} (type={type(result).__name__})"
            )
        missing = [key for key in provides if key not in result]
        if missing:
            raise StageExecutionError(stage.id, f"result missing declared outputs: {', '.join(missing)}")
        for key in provides:
            ctx.outputs[key] = result[key]

    def _error_payload(self, stage: "StageRef", exc: Exception) -> dict[str, Any]:
        if isinstance(exc, RunCancelled):
            payload: dict[str, Any] = {"type": "RunCancelled", "message": exc.reason, "stage": stage.id}
        elif isinstance(exc, StageExecutionError):
            payload = {"type": type(exc).__name__, "message": str(exc), "stage": stage.id}
        else:
            payload = {
                "type": StageExecutionError.__name__,
                "message": str(StageExecutionError(stage.id, str(exc) or type(exc).__name__)),
                "stage": stage.id,
                "cause": type(exc).__name__,
            }
        if not hasattr(exc, "pipeline_stage"):
            try:
                setattr(exc, "pipeline_stage", stage.id)
            except Exception:
                pass
        return payload

    def _validate_recorder(self, recorder: StageRecorder) -> None:
        required = ("on_stage_start", "on_stage_end", "on_stage_error")
        for name in required:
            method = getattr(recorder, name, None)
            if method is None or not callable(method):
                raise TypeError(f"Stage recorder missing required method: {name}")
