from __future__ import annotations

from deploy_project.framework.collaborators import SourceCheckout
from deploy_project.framework.errors import StageExecutionError
from deploy_project.framework.runtime import FETCH_SOURCE, PipelineRun
from deploy_project.stages._shared import StageEnv
from pipelinekit.stage_types import StageIO, StageRef


def build(env: StageEnv) -> StageRef:
    def _action(ctx: PipelineRun) -> SourceCheckout:
        checkout = env.backends.source.fetch(ctx.trigger)
        if checkout.commit_id != ctx.trigger.commit_id:
            raise StageExecutionError(
                FETCH_SOURCE,
                f"checked out {checkout.commit_id} but the trigger asked for {ctx.trigger.commit_id}",
            )
        ctx.logger.info("Fetched %s@%s into %s", checkout.branch, checkout.commit_id, checkout.path)
        return checkout

    return StageRef(
        id=FETCH_SOURCE,
        fn=_action,
        doc="Check out the triggering commit.",
        io=StageIO(provides=("source",)),
    )
