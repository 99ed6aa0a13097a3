import logging
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from deploy_project.backends.memory import (
    InMemoryImageBuilder,
    InMemoryOrchestrator,
    InMemoryProvisioner,
    InMemoryRegistry,
    LocalDirectorySource,
    StaticCredentialProvider,
)
from deploy_project.framework.collaborators import Backends
from deploy_project.framework.coordinator import PipelineCoordinator
from deploy_project.framework.errors import ValidationError
from deploy_project.framework.locks import KeyedLocks
from deploy_project.framework.runtime import PIPELINE_STAGE_IDS, TriggerEvent
from deploy_project.stages._shared import StageEnv
from deploy_project.stages.registry import get_stage_registry
from pipelinekit.engine.pipeline import NullStageRecorder

DOCKERFILE = """\
FROM node:18-alpine AS builder
WORKDIR /app
COPY . .
RUN npm ci && npm run build

FROM node:18-alpine
WORKDIR /app
COPY --from=builder /app/dist ./dist
EXPOSE 3000
CMD ["serve", "-s", "dist", "-l", "3000"]
"""


def _workload(cluster: str = "prod-eu", **overrides) -> dict:
    raw = {
        "name": "web",
        "cluster": cluster,
        "image": {"registry": "registry.example.com", "repository": "team/web", "tag": "bootstrap"},
        "replicas": 2,
        "containerPort": 3000,
        "resources": {"cpuRequest": "250m", "memoryRequest": "128Mi", "cpuLimit": "500m", "memoryLimit": "256Mi"},
    }
    raw.update(overrides)
    return raw


def _trigger(commit: str, branch: str = "main", timestamp: str = "2024-05-01T12:00:00Z") -> TriggerEvent:
    return TriggerEvent(commit_id=commit, branch=branch, timestamp=timestamp)


class _FakeClock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


class _FailingRegistry(InMemoryRegistry):
    def publish(self, built, reference):
        raise RuntimeError("registry unavailable")


class _RetaggingRegistry(InMemoryRegistry):
    def publish(self, built, reference):
        super().publish(built, reference)
        return type(reference)(reference.registry, reference.repository, "latest")


class _BlockingBuilder(InMemoryImageBuilder):
    """Blocks builds of `commit` until `release` is set."""

    def __init__(self, commit: str):
        super().__init__()
        self.commit = commit
        self.entered = threading.Event()
        self.release = threading.Event()

    def build(self, checkout, dockerfile_path, image):
        if checkout.commit_id == self.commit:
            self.entered.set()
            assert self.release.wait(5)
        return super().build(checkout, dockerfile_path, image)


class _BlockingOrchestrator(InMemoryOrchestrator):
    """Blocks every apply until `release` is set."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def apply(self, workload, credential):
        self.entered.set()
        assert self.release.wait(5)
        return super().apply(workload, credential)


class _SlowOrchestrator(InMemoryOrchestrator):
    """Takes `delay_s` per apply and records how many applies overlap."""

    def __init__(self, delay_s):
        super().__init__()
        self.delay_s = delay_s
        self._counter = threading.Lock()
        self.calls = 0
        self.active = 0
        self.max_active = 0

    def apply(self, workload, credential):
        with self._counter:
            self.calls += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            time.sleep(self.delay_s)
            return super().apply(workload, credential)
        finally:
            with self._counter:
                self.active -= 1


def _wait_until(predicate, timeout=5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _backends(tmp_path, **overrides) -> Backends:
    (tmp_path / "Dockerfile").write_text(DOCKERFILE, encoding="utf-8")
    parts = {
        "kind": "dry_run",
        "source": LocalDirectorySource(str(tmp_path)),
        "builder": InMemoryImageBuilder(),
        "registry": InMemoryRegistry(),
        "credentials": StaticCredentialProvider(),
        "orchestrator": InMemoryOrchestrator(),
        "provisioner": InMemoryProvisioner(),
    }
    parts.update(overrides)
    return Backends(**parts)


def _coordinator(backends: Backends, *, timeouts=None, **kwargs) -> PipelineCoordinator:
    env = StageEnv(backends=backends, registry="registry.example.com", repository="team/web")
    stages = get_stage_registry(env)
    if timeouts:
        stages = stages.with_timeouts(timeouts)
    kwargs.setdefault("recorder", NullStageRecorder())
    return PipelineCoordinator(
        stages,
        branch="main",
        credentials=backends.credentials,
        logger=logging.getLogger("test.coordinator"),
        **kwargs,
    )


def _statuses(run) -> dict[str, str]:
    return {record.name: record.status for record in run.stages}


def test_successful_run_applies_published_artifact(tmp_path):
    backends = _backends(tmp_path)
    coordinator = _coordinator(backends)

    run = coordinator.submit(_trigger("abc123"), _workload())
    assert run is not None
    assert run.status == "pending"
    assert list(_statuses(run)) == list(PIPELINE_STAGE_IDS)

    assert coordinator.drain() == [run]

    assert run.status == "succeeded"
    assert set(_statuses(run).values()) == {"succeeded"}
    assert str(run.outputs["artifact"]) == "registry.example.com/team/web:abc123"
    assert run.outputs["apply_receipt"].changed
    deployed = backends.orchestrator.current(("prod-eu", "default", "web"))
    assert deployed.image.tag == "abc123"
    assert run.finished_at is not None


def test_publish_failure_skips_credentials_and_apply(tmp_path):
    backends = _backends(tmp_path, registry=_FailingRegistry())
    coordinator = _coordinator(backends)

    run = coordinator.submit(_trigger("abc123"), _workload())
    coordinator.drain()

    assert run.status == "failed"
    assert _statuses(run) == {
        "fetch_source": "succeeded",
        "build_image": "succeeded",
        "publish_image": "failed",
        "acquire_credentials": "skipped",
        "apply_workload": "skipped",
    }
    assert run.error["stage"] == "publish_image"
    assert "registry unavailable" in run.error["message"]
    assert run.first_failure().name == "publish_image"
    assert backends.orchestrator.receipts == []
    assert backends.credentials.issued == []


def test_registry_returning_another_reference_fails_publish(tmp_path):
    backends = _backends(tmp_path, registry=_RetaggingRegistry())
    coordinator = _coordinator(backends)

    run = coordinator.submit(_trigger("abc123"), _workload())
    coordinator.drain()

    assert run.stage_status("publish_image") == "failed"
    assert "registry returned registry.example.com/team/web:latest" in run.error["message"]
    assert backends.orchestrator.receipts == []


def test_image_port_mismatch_fails_build(tmp_path):
    backends = _backends(tmp_path)
    coordinator = _coordinator(backends)

    run = coordinator.submit(_trigger("abc123"), _workload(containerPort=8080))
    coordinator.drain()

    assert run.status == "failed"
    assert run.error["stage"] == "build_image"
    assert backends.builder.builds == []


def test_other_branch_and_duplicate_triggers_are_ignored(tmp_path):
    coordinator = _coordinator(_backends(tmp_path))

    assert coordinator.submit(_trigger("abc123", branch="feature/x"), _workload()) is None
    first = coordinator.submit(_trigger("abc123"), _workload())
    assert first is not None
    assert coordinator.submit(_trigger("abc123"), _workload()) is None
    # The same instant written with an offset is still the same trigger.
    assert coordinator.submit(_trigger("abc123", timestamp="2024-05-01T14:00:00+02:00"), _workload()) is None

    # Same commit with a different timestamp is a distinct trigger.
    assert coordinator.submit(_trigger("abc123", timestamp="2024-05-01T12:05:00Z"), _workload()) is not None
    assert len(coordinator.runs()) == 2


def test_trigger_timestamps_are_normalized_to_utc():
    assert _trigger("c1", timestamp="2024-05-01T14:00:00+02:00").timestamp == "2024-05-01T12:00:00Z"
    assert _trigger("c1", timestamp="2024-05-01T12:00:00").timestamp == "2024-05-01T12:00:00Z"
    assert _trigger("c1", timestamp="2024-05-01T12:00:00.250Z").timestamp == "2024-05-01T12:00:00.250000Z"

    with pytest.raises(ValueError, match="not an ISO-8601 instant"):
        _trigger("c1", timestamp="yesterday")


def test_invalid_workload_creates_no_run(tmp_path):
    coordinator = _coordinator(_backends(tmp_path))

    with pytest.raises(ValidationError) as excinfo:
        coordinator.submit(_trigger("abc123"), _workload(replicas=-1))

    assert [v.field for v in excinfo.value.violations] == ["replicas"]
    assert coordinator.runs() == []


def test_runs_for_one_cluster_execute_in_arrival_order(tmp_path):
    backends = _backends(tmp_path)
    finished: list[str] = []
    coordinator = _coordinator(backends, on_finished=lambda run: finished.append(run.trigger.commit_id))

    runs = [coordinator.submit(_trigger(commit), _workload()) for commit in ("c1", "c2", "c3")]
    assert [r.run_id for r in coordinator.pending("prod-eu")] == [r.run_id for r in runs]

    coordinator.drain()

    assert finished == ["c1", "c2", "c3"]
    assert [r.rollout.strategy for r in backends.orchestrator.receipts] == ["create", "rolling", "rolling"]
    assert backends.orchestrator.current(("prod-eu", "default", "web")).image.tag == "c3"


def test_drain_is_refused_in_background_mode(tmp_path):
    coordinator = _coordinator(_backends(tmp_path), background=True)

    with pytest.raises(RuntimeError, match="background=False"):
        coordinator.drain()


def test_second_run_waits_while_first_is_running(tmp_path):
    builder = _BlockingBuilder("a1")
    backends = _backends(tmp_path, builder=builder)
    finished: list[str] = []
    staging_done = threading.Event()

    def _on_finished(run):
        finished.append(run.trigger.commit_id)
        if run.cluster == "staging":
            staging_done.set()

    coordinator = _coordinator(backends, background=True, on_finished=_on_finished)

    run_a = coordinator.submit(_trigger("a1"), _workload())
    assert builder.entered.wait(5)
    run_b = coordinator.submit(_trigger("b2"), _workload())

    assert coordinator.active("prod-eu") is run_a
    assert coordinator.pending("prod-eu") == [run_b]
    assert run_b.status == "pending"
    assert run_b.stage_status("fetch_source") == "pending"

    # Another cluster is not held up by the blocked run.
    run_c = coordinator.submit(_trigger("c3"), _workload(cluster="staging"))
    assert staging_done.wait(5)
    assert run_c.status == "succeeded"
    assert run_a.status == "running"

    builder.release.set()
    assert coordinator.wait_idle(timeout=5)

    assert run_a.status == "succeeded"
    assert run_b.status == "succeeded"
    assert finished == ["c3", "a1", "b2"]


def test_cancel_pending_run_skips_every_stage(tmp_path):
    backends = _backends(tmp_path)
    finished: list[str] = []
    coordinator = _coordinator(backends, on_finished=lambda run: finished.append(run.run_id))

    first = coordinator.submit(_trigger("c1"), _workload())
    second = coordinator.submit(_trigger("c2"), _workload())

    assert coordinator.cancel(second.run_id, "superseded") is True
    assert second.status == "failed"
    assert set(_statuses(second).values()) == {"skipped"}
    assert second.error == {"type": "RunCancelled", "message": "superseded", "stage": None}
    assert second.to_dict()["cancel_reason"] == "superseded"
    assert finished == [second.run_id]

    assert coordinator.drain() == [first]
    assert first.status == "succeeded"
    assert coordinator.cancel(first.run_id, "too late") is False

    with pytest.raises(KeyError):
        coordinator.cancel("run_missing", "nope")


def test_cancel_running_run_stops_before_next_stage(tmp_path):
    builder = _BlockingBuilder("a1")
    backends = _backends(tmp_path, builder=builder)
    coordinator = _coordinator(backends, background=True)

    run = coordinator.submit(_trigger("a1"), _workload())
    assert builder.entered.wait(5)
    assert coordinator.cancel(run.run_id, "operator abort") is True
    builder.release.set()
    assert coordinator.wait_idle(timeout=5)

    assert run.status == "failed"
    assert run.stage_status("build_image") == "succeeded"
    assert run.stage_status("publish_image") == "skipped"
    assert run.error["type"] == "RunCancelled"
    assert backends.registry.published == {}


def test_expired_credential_is_refreshed_before_apply(tmp_path):
    clock = _FakeClock()
    credentials = StaticCredentialProvider(ttl_s=60, clock=clock)
    backends = _backends(tmp_path, credentials=credentials, orchestrator=InMemoryOrchestrator(clock=clock))

    class _SlowRecorder(NullStageRecorder):
        def on_stage_end(self, ctx, path, record):
            if record.name == "acquire_credentials":
                clock.advance(120)

    coordinator = _coordinator(backends, clock=clock, recorder=_SlowRecorder())

    run = coordinator.submit(_trigger("abc123"), _workload())
    coordinator.drain()

    assert run.status == "succeeded"
    assert len(credentials.issued) == 2
    assert run.outputs["credential"] is credentials.issued[1]


def test_run_waits_for_a_held_cluster_lock_then_applies(tmp_path):
    locks = KeyedLocks()
    locks.acquire("workload:prod-eu", "gateway")
    backends = _backends(tmp_path)
    done = threading.Event()
    coordinator = _coordinator(
        backends,
        locks=locks,
        timeouts={"apply_workload": 0.1},
        background=True,
        on_finished=lambda run: done.set(),
    )

    run = coordinator.submit(_trigger("abc123"), _workload())

    assert _wait_until(lambda: run.stage_status("apply_workload") == "running")
    assert not done.wait(0.5)
    assert run.status == "running"
    assert backends.orchestrator.receipts == []

    locks.release("workload:prod-eu", "gateway")
    assert coordinator.wait_idle(timeout=5)

    assert run.status == "succeeded"
    assert len(backends.orchestrator.receipts) == 1
    assert locks.holder("workload:prod-eu") is None


def test_cancel_while_queued_for_the_cluster_lock(tmp_path):
    locks = KeyedLocks()
    locks.acquire("workload:prod-eu", "gateway")
    backends = _backends(tmp_path)
    coordinator = _coordinator(backends, locks=locks, background=True)

    run = coordinator.submit(_trigger("abc123"), _workload())
    assert _wait_until(lambda: run.stage_status("apply_workload") == "running")

    assert coordinator.cancel(run.run_id, "superseded") is True
    assert coordinator.wait_idle(timeout=5)

    assert run.status == "failed"
    assert run.error == {"type": "RunCancelled", "message": "superseded", "stage": "apply_workload"}
    assert backends.orchestrator.receipts == []
    assert locks.holder("workload:prod-eu") == "gateway"


def test_timed_out_apply_keeps_the_cluster_lock_until_it_returns(tmp_path):
    locks = KeyedLocks()
    orchestrator = _SlowOrchestrator(delay_s=0.3)
    backends = _backends(tmp_path, orchestrator=orchestrator)
    coordinator = _coordinator(backends, locks=locks, timeouts={"apply_workload": 0.1})

    first = coordinator.submit(_trigger("c1"), _workload())
    second = coordinator.submit(_trigger("c2"), _workload())
    coordinator.drain()

    assert first.error["type"] == "StageTimeoutError"
    assert second.error["type"] == "StageTimeoutError"
    assert _wait_until(lambda: orchestrator.calls == 2 and orchestrator.active == 0)
    assert orchestrator.max_active == 1
    assert _wait_until(lambda: locks.holder("workload:prod-eu") is None)


def test_cancel_during_apply_fails_the_run_once_apply_returns(tmp_path):
    orchestrator = _BlockingOrchestrator()
    backends = _backends(tmp_path, orchestrator=orchestrator)
    coordinator = _coordinator(backends, background=True)

    run = coordinator.submit(_trigger("abc123"), _workload())
    assert orchestrator.entered.wait(5)
    assert coordinator.cancel(run.run_id, "operator abort") is True
    orchestrator.release.set()
    assert coordinator.wait_idle(timeout=5)

    assert run.status == "failed"
    assert run.stage_status("apply_workload") == "succeeded"
    assert run.error == {"type": "RunCancelled", "message": "operator abort", "stage": None}
    assert run.to_dict()["cancel_reason"] == "operator abort"


def test_credential_refresh_is_bounded_by_the_apply_timeout(tmp_path):
    clock = _FakeClock()
    release = threading.Event()

    class _HangingRefresh(StaticCredentialProvider):
        def acquire(self, cluster):
            if self.issued:
                release.wait(5)
            return super().acquire(cluster)

    credentials = _HangingRefresh(ttl_s=60, clock=clock)
    backends = _backends(tmp_path, credentials=credentials, orchestrator=InMemoryOrchestrator(clock=clock))

    class _SlowRecorder(NullStageRecorder):
        def on_stage_end(self, ctx, path, record):
            if record.name == "acquire_credentials":
                clock.advance(120)

    coordinator = _coordinator(
        backends, clock=clock, recorder=_SlowRecorder(), timeouts={"apply_workload": 0.2}
    )

    run = coordinator.submit(_trigger("abc123"), _workload())
    started = time.monotonic()
    try:
        coordinator.drain()
    finally:
        release.set()

    assert time.monotonic() - started < 2
    assert run.status == "failed"
    assert run.error["type"] == "StageTimeoutError"
    assert run.error["stage"] == "apply_workload"
    assert _wait_until(lambda: len(credentials.issued) == 2)
    assert run.outputs["credential"] is credentials.issued[0]
    assert backends.orchestrator.receipts == []


def test_finished_callback_errors_do_not_break_the_run(tmp_path, caplog):
    def _boom(run):
        raise RuntimeError("callback exploded")

    coordinator = _coordinator(_backends(tmp_path), on_finished=_boom)
    run = coordinator.submit(_trigger("abc123"), _workload())

    with caplog.at_level(logging.ERROR, logger="test.coordinator"):
        coordinator.drain()

    assert run.status == "succeeded"
    assert "Run-finished callback failed" in caplog.text
