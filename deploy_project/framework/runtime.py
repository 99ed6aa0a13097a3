from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pipelinekit.engine.pipeline import RunStatus, StageRecord, utc_now_iso8601

from deploy_project.framework.descriptors import WorkloadDescriptor

FETCH_SOURCE = "fetch_source"
BUILD_IMAGE = "build_image"
PUBLISH_IMAGE = "publish_image"
ACQUIRE_CREDENTIALS = "acquire_credentials"
APPLY_WORKLOAD = "apply_workload"

PIPELINE_STAGE_IDS: tuple[str, ...] = (
    FETCH_SOURCE,
    BUILD_IMAGE,
    PUBLISH_IMAGE,
    ACQUIRE_CREDENTIALS,
    APPLY_WORKLOAD,
)


def generate_run_id() -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return f"run_{stamp}_{uuid.uuid4().hex[:8]}"


def normalize_timestamp(value: str) -> str:
    """Canonical UTC form of an ISO-8601 instant (`...Z`); naive values are read as UTC."""

    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValueError(f"TriggerEvent.timestamp is not an ISO-8601 instant: {value!r}") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class TriggerEvent:
    """A source-change event: `{commitId, branch, timestamp}`."""

    commit_id: str
    branch: str
    timestamp: str

    def __post_init__(self) -> None:
        for name in ("commit_id", "branch", "timestamp"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"TriggerEvent.{name} must be a non-empty string")
            object.__setattr__(self, name, value.strip())
        object.__setattr__(self, "timestamp", normalize_timestamp(self.timestamp))

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.commit_id, self.branch, self.timestamp)

    def to_dict(self) -> dict[str, str]:
        return {"commit_id": self.commit_id, "branch": self.branch, "timestamp": self.timestamp}


def _json_safe(value: Any, *, max_depth: int = 8) -> Any:
    if max_depth <= 0:
        return "<max_depth>"
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return _json_safe(to_dict(), max_depth=max_depth - 1)
    if isinstance(value, (list, tuple)):
        return [_json_safe(item, max_depth=max_depth - 1) for item in value]
    if isinstance(value, dict):
        return {str(k): _json_safe(v, max_depth=max_depth - 1) for k, v in value.items()}
    return repr(value)


@dataclass
class PipelineRun:
    run_id: str
    cluster: str
    trigger: TriggerEvent
    workload: WorkloadDescriptor
    logger: logging.Logger
    created_at: str = field(default_factory=utc_now_iso8601)

    stages: list[StageRecord] = field(default_factory=list)
    status: RunStatus = "pending"
    outputs: dict[str, Any] = field(default_factory=dict)
    error: dict[str, Any] | None = None
    finished_at: str | None = None

    _cancel_reason: str | None = field(default=None, init=False, repr=False)
    _cancel_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def request_cancel(self, reason: str) -> None:
        with self._cancel_lock:
            if self._cancel_reason is None:
                self._cancel_reason = reason.strip() or "cancelled"

    def cancel_requested(self) -> str | None:
        with self._cancel_lock:
            return self._cancel_reason

    @property
    def terminal(self) -> bool:
        return self.status in ("succeeded", "failed")

    def first_failure(self) -> StageRecord | None:
        for record in self.stages:
            if record.status == "failed":
                return record
        return None

    def stage_status(self, name: str) -> str:
        for record in self.stages:
            if record.name == name:
                return record.status
        raise KeyError(f"Unknown stage: {name}")

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "run_id": self.run_id,
            "cluster": self.cluster,
            "status": self.status,
            "trigger": self.trigger.to_dict(),
            "workload": self.workload.to_dict(),
            "created_at": self.created_at,
            "finished_at": self.finished_at,
            "stages": [record.to_dict() for record in self.stages],
            "outputs": _json_safe(self.outputs),
        }
        if self.error is not None:
            payload["error"] = dict(self.error)
        reason = self.cancel_requested()
        if reason is not None:
            payload["cancel_reason"] = reason
        return payload
