"""Project-specific framework utilities.

This package holds the deployment domain model and its contracts (descriptors,
validation, pipeline runs, coordination, reconciliation, run artifacts) but
intentionally excludes stage implementations and tool drivers.

Common entrypoints:

- `deploy_project.framework.validation`: descriptor validation
- `deploy_project.framework.coordinator`: per-cluster run queueing/execution
- `deploy_project.framework.artifacts`: run record, run index and history

For reusable, project-agnostic pipeline primitives, use `pipelinekit`.
"""
