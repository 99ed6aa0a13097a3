"""Pipeline coordinator: turns triggers into runs and serializes them per cluster."""

from __future__ import annotations

import contextlib
import dataclasses
import logging
import threading
from collections import deque
from typing import Any, Callable, Iterator, Mapping

from pipelinekit.engine.pipeline import (
    RunCancelled,
    SequenceRunner,
    StageExecutionError,
    StageRecorder,
    remaining_stage_time,
    utc_now_iso8601,
)
from pipelinekit.stage_registry import StageRegistry
from pipelinekit.stage_types import StageFn, StageRef

from deploy_project.framework.credentials import (
    ClusterCredential,
    Clock,
    CredentialProvider,
    ensure_fresh,
    utc_now,
)
from deploy_project.framework.descriptors import WorkloadDescriptor
from deploy_project.framework.errors import ConflictError
from deploy_project.framework.locks import KeyedLocks, workload_lock_key
from deploy_project.framework.runtime import PipelineRun, TriggerEvent, generate_run_id
from deploy_project.framework.validation import validate_workload

RunCallback = Callable[[PipelineRun], None]

CREDENTIAL_OUTPUT = "credential"
LOCK_POLL_S = 0.1


class PipelineCoordinator:
    """
    Accepts triggers, creates one run per distinct trigger and executes runs.

    Runs for the same cluster execute strictly one at a time in arrival order;
    runs for different clusters may execute concurrently (`background=True`
    starts one worker thread per cluster with queued work). With
    `background=False` nothing executes until `drain()` is called.
    """

    def __init__(
        self,
        stages: StageRegistry,
        *,
        branch: str,
        credentials: CredentialProvider,
        locks: KeyedLocks | None = None,
        credential_skew_s: float = 0.0,
        clock: Clock = utc_now,
        recorder: StageRecorder | None = None,
        logger: logging.Logger | None = None,
        on_finished: RunCallback | None = None,
        background: bool = False,
    ):
        self._stages = stages
        self._branch = branch
        self._credentials = credentials
        self._locks = locks or KeyedLocks()
        self._skew_s = credential_skew_s
        self._clock = clock
        self._recorder = recorder
        self._logger = logger or logging.getLogger(__name__)
        self._on_finished = on_finished
        self._background = background

        self._mutex = threading.Lock()
        self._idle = threading.Condition(self._mutex)
        self._queues: dict[str, deque[PipelineRun]] = {}
        self._active: dict[str, PipelineRun] = {}
        self._workers: dict[str, threading.Thread] = {}
        self._runs: dict[str, PipelineRun] = {}
        self._seen: dict[tuple[str, tuple[str, str, str]], str] = {}

    @property
    def branch(self) -> str:
        return self._branch

    def runs(self) -> list[PipelineRun]:
        with self._mutex:
            return list(self._runs.values())

    def get(self, run_id: str) -> PipelineRun:
        with self._mutex:
            try:
                return self._runs[run_id]
            except KeyError:
                raise KeyError(f"Unknown run id: {run_id}") from None

    def active(self, cluster: str) -> PipelineRun | None:
        with self._mutex:
            return self._active.get(cluster)

    def pending(self, cluster: str) -> list[PipelineRun]:
        with self._mutex:
            return list(self._queues.get(cluster, ()))

    def _new_runner(self) -> SequenceRunner:
        stages = [
            dataclasses.replace(ref, fn=self._with_fresh_credential(ref)) if ref.locked else ref
            for ref in self._stages.ordered()
        ]
        return SequenceRunner(stages, recorder=self._recorder, guard=self._guard)

    def submit(
        self,
        trigger: TriggerEvent,
        workload: WorkloadDescriptor | Mapping[str, Any],
        *,
        run_id: str | None = None,
    ) -> PipelineRun | None:
        """
        Queue a run for `trigger`.

        Returns None when the trigger is for another branch or was already
        accepted for this cluster. Raises ValidationError for an invalid
        workload; no run is created in that case.
        """

        if trigger.branch != self._branch:
            self._logger.info(
                "Ignoring trigger for branch %s (configured branch: %s, commit=%s)",
                trigger.branch,
                self._branch,
                trigger.commit_id,
            )
            return None

        descriptor = validate_workload(workload)
        cluster = descriptor.cluster

        with self._mutex:
            seen_key = (cluster, trigger.key)
            if seen_key in self._seen:
                self._logger.info(
                    "Ignoring duplicate trigger for cluster %s (commit=%s, run_id=%s)",
                    cluster,
                    trigger.commit_id,
                    self._seen[seen_key],
                )
                return None

            run = PipelineRun(
                run_id=run_id or generate_run_id(),
                cluster=cluster,
                trigger=trigger,
                workload=descriptor,
                logger=self._logger,
            )
            if run.run_id in self._runs:
                raise ValueError(f"Duplicate run id: {run.run_id}")
            run.stages.extend(self._new_runner().new_records())

            self._seen[seen_key] = run.run_id
            self._runs[run.run_id] = run
            queue = self._queues.setdefault(cluster, deque())
            queue.append(run)
            self._logger.info(
                "Queued run %s for cluster %s (commit=%s, position=%d)",
                run.run_id,
                cluster,
                trigger.commit_id,
                len(queue) + (1 if cluster in self._active else 0),
            )
            if self._background and cluster not in self._workers:
                worker = threading.Thread(
                    target=self._drain_cluster,
                    args=(cluster,),
                    name=f"deploy-{cluster}",
                    daemon=True,
                )
                self._workers[cluster] = worker
                worker.start()
        return run

    def drain(self) -> list[PipelineRun]:
        """Execute every queued run in the calling thread; returns them in execution order."""

        if self._background:
            raise RuntimeError("drain() is only available when background=False")
        executed: list[PipelineRun] = []
        while True:
            with self._mutex:
                clusters = [name for name, queue in self._queues.items() if queue]
            if not clusters:
                return executed
            for cluster in clusters:
                executed.extend(self._drain_cluster(cluster))

    def wait_idle(self, timeout: float | None = None) -> bool:
        with self._idle:
            return self._idle.wait_for(
                lambda: not self._workers and not any(self._queues.values()), timeout=timeout
            )

    def cancel(self, run_id: str, reason: str) -> bool:
        """
        Request cancellation. A pending run is finished immediately as failed;
        a running run stops before its next stage (or while queued for the
        cluster lock) and ends as failed. Returns False for finished runs.
        """

        finished_now: PipelineRun | None = None
        with self._mutex:
            run = self._runs.get(run_id)
            if run is None:
                raise KeyError(f"Unknown run id: {run_id}")
            if run.terminal:
                return False
            run.request_cancel(reason)
            queue = self._queues.get(run.cluster)
            if queue is not None and run in queue:
                queue.remove(run)
                finished_now = run

        if finished_now is not None:
            self._logger.warning("Cancelled pending run %s: %s", run_id, reason)
            self._new_runner().skip_all(finished_now)
            finished_now.status = "failed"
            finished_now.error = {"type": "RunCancelled", "message": finished_now.cancel_requested(), "stage": None}
            finished_now.finished_at = utc_now_iso8601()
            self._finish(finished_now)
            with self._idle:
                self._idle.notify_all()
        else:
            self._logger.warning("Cancellation requested for running run %s: %s", run_id, reason)
        return True

    def _drain_cluster(self, cluster: str) -> list[PipelineRun]:
        executed: list[PipelineRun] = []
        while True:
            with self._mutex:
                queue = self._queues.get(cluster)
                if not queue:
                    self._active.pop(cluster, None)
                    if self._workers.get(cluster) is threading.current_thread():
                        del self._workers[cluster]
                    self._idle.notify_all()
                    return executed
                run = queue.popleft()
                self._active[cluster] = run
            self._execute(run)
            executed.append(run)

    def _execute(self, run: PipelineRun) -> None:
        self._logger.info(
            "Starting run %s for cluster %s (commit=%s, branch=%s)",
            run.run_id,
            run.cluster,
            run.trigger.commit_id,
            run.trigger.branch,
        )
        try:
            self._new_runner().run(run)
        except Exception as exc:
            self._logger.exception("Run %s aborted by an engine error", run.run_id)
            run.status = "failed"
            run.error = {"type": type(exc).__name__, "message": str(exc), "stage": None}
        run.finished_at = utc_now_iso8601()

        if run.status == "succeeded":
            self._logger.info("Run %s succeeded", run.run_id)
        else:
            error = run.error or {}
            self._logger.error(
                "Run %s failed at stage %s: %s",
                run.run_id,
                error.get("stage") or "<none>",
                error.get("message"),
            )
        self._finish(run)

    def _finish(self, run: PipelineRun) -> None:
        if self._on_finished is None:
            return
        try:
            self._on_finished(run)
        except Exception:
            self._logger.exception("Run-finished callback failed for %s", run.run_id)

    def _with_fresh_credential(self, ref: StageRef) -> StageFn:
        """Wrap a locked stage so an expired credential is re-acquired inside its timeout."""

        fn = ref.fn

        def _action(run: PipelineRun) -> Any:
            credential = run.outputs.get(CREDENTIAL_OUTPUT)
            if isinstance(credential, ClusterCredential):
                fresh = ensure_fresh(
                    credential,
                    self._credentials,
                    skew_s=self._skew_s,
                    clock=self._clock,
                    logger=run.logger,
                )
                remaining = remaining_stage_time()
                if remaining is not None and remaining <= 0:
                    raise StageExecutionError(ref.id, "no time left after refreshing the cluster credential")
                run.outputs[CREDENTIAL_OUTPUT] = fresh
            return fn(run)

        return _action

    @contextlib.contextmanager
    def _guard(self, run: PipelineRun, stage: StageRef) -> Iterator[None]:
        """
        Hold the cluster apply lock for a locked stage.

        While another holder has the lock the run stays queued: it keeps
        waiting (outside the stage timeout) until the lock frees up or the run
        is cancelled.
        """

        key = workload_lock_key(run.cluster)
        queued = False
        while True:
            reason = run.cancel_requested()
            if reason is not None:
                raise RunCancelled(reason)
            try:
                self._locks.acquire(key, run.run_id, timeout=LOCK_POLL_S)
                break
            except ConflictError as exc:
                if not queued:
                    run.logger.info("Queued behind %s (held by %s)", key, exc.holder or "<unknown>")
                    queued = True
        run.logger.debug("Acquired %s for stage %s", key, stage.id)
        try:
            yield
        finally:
            self._locks.release(key, run.run_id)
            run.logger.debug("Released %s", key)
