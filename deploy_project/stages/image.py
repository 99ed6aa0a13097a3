from __future__ import annotations

from deploy_project.framework.collaborators import BuiltImage
from deploy_project.framework.descriptors import ArtifactReference
from deploy_project.framework.errors import StageExecutionError
from deploy_project.framework.image_descriptor import check_workload_matches_image, load_image_descriptor
from deploy_project.framework.runtime import BUILD_IMAGE, PUBLISH_IMAGE, PipelineRun
from deploy_project.stages._shared import StageEnv
from pipelinekit.stage_types import StageIO, StageRef


def build_image_stage(env: StageEnv) -> StageRef:
    def _action(ctx: PipelineRun) -> BuiltImage:
        checkout = ctx.outputs["source"]
        dockerfile = env.dockerfile_in(checkout.path)
        try:
            result = load_image_descriptor(dockerfile)
        except FileNotFoundError as exc:
            raise StageExecutionError(BUILD_IMAGE, f"Dockerfile not found: {dockerfile}") from exc
        if not result.ok:
            raise StageExecutionError(
                BUILD_IMAGE,
                "invalid image descriptor: " + "; ".join(str(v) for v in result.violations),
            )
        image = result.unwrap()
        mismatches = check_workload_matches_image(ctx.workload, image)
        if mismatches:
            raise StageExecutionError(BUILD_IMAGE, "; ".join(str(v) for v in mismatches))

        ctx.logger.info(
            "Building image from %s (runtime=%s, port=%s)", dockerfile, image.base_runtime, image.exposed_port
        )
        return env.backends.builder.build(checkout, dockerfile, image)

    return StageRef(
        id=BUILD_IMAGE,
        fn=_action,
        doc="Build the runnable image from the checked-out Dockerfile.",
        io=StageIO(requires=("source",), provides=("built_image",)),
    )


def publish_image_stage(env: StageEnv) -> StageRef:
    def _action(ctx: PipelineRun) -> ArtifactReference:
        built = ctx.outputs["built_image"]
        requested = ArtifactReference(registry=env.registry, repository=env.repository, tag=ctx.trigger.commit_id)
        published = env.backends.registry.publish(built, requested)
        if published != requested:
            raise StageExecutionError(
                PUBLISH_IMAGE, f"registry returned {published} for requested reference {requested}"
            )
        ctx.logger.info("Published %s", published)
        return published

    return StageRef(
        id=PUBLISH_IMAGE,
        fn=_action,
        doc="Push the built image; its reference becomes the run's artifact.",
        io=StageIO(requires=("built_image",), provides=("artifact",)),
    )
