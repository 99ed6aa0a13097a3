from __future__ import annotations

from deploy_project.stages.cluster import acquire_credentials_stage, apply_workload_stage
from deploy_project.stages.image import build_image_stage, publish_image_stage
from deploy_project.stages.source import build as fetch_source_stage

# Execution order is the list order.
__all_stages__ = [
    fetch_source_stage,
    build_image_stage,
    publish_image_stage,
    acquire_credentials_stage,
    apply_workload_stage,
]
