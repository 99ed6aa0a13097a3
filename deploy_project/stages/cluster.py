from __future__ import annotations

from deploy_project.framework.credentials import ClusterCredential
from deploy_project.framework.errors import StageExecutionError
from deploy_project.framework.reconciliation import ApplyReceipt
from deploy_project.framework.runtime import ACQUIRE_CREDENTIALS, APPLY_WORKLOAD, PipelineRun
from deploy_project.framework.validation import check_workload
from deploy_project.stages._shared import StageEnv
from pipelinekit.stage_types import StageIO, StageRef


def acquire_credentials_stage(env: StageEnv) -> StageRef:
    def _action(ctx: PipelineRun) -> ClusterCredential:
        credential = env.backends.credentials.acquire(ctx.cluster)
        ctx.logger.info("Acquired credential for cluster %s (expires_at=%s)", ctx.cluster, credential.expires_at)
        return credential

    return StageRef(
        id=ACQUIRE_CREDENTIALS,
        fn=_action,
        doc="Obtain a short-lived credential for the target cluster.",
        io=StageIO(provides=("credential",)),
    )


def apply_workload_stage(env: StageEnv) -> StageRef:
    def _action(ctx: PipelineRun) -> ApplyReceipt:
        artifact = ctx.outputs["artifact"]
        credential = ctx.outputs["credential"]
        result = check_workload(ctx.workload.with_image(artifact))
        if not result.ok:
            raise StageExecutionError(
                APPLY_WORKLOAD, "; ".join(str(v) for v in result.violations)
            )
        desired = result.unwrap()
        receipt = env.backends.orchestrator.apply(desired, credential)
        ctx.logger.info(
            "Applied %s (apply_id=%s, changed=%s, rollout=%s)",
            "/".join(desired.key),
            receipt.apply_id,
            receipt.changed,
            receipt.rollout.strategy,
        )
        return receipt

    return StageRef(
        id=APPLY_WORKLOAD,
        fn=_action,
        doc="Submit the workload, pinned to the published artifact, to the orchestrator.",
        locked=True,
        io=StageIO(requires=("artifact", "credential"), provides=("apply_receipt",)),
    )
