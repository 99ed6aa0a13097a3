from __future__ import annotations

import json
import os
from typing import Any, Mapping

from deploy_project.framework.runtime import PipelineRun

RUN_INDEX_SCHEMA_VERSION = 1


def build_run_index_entry(run: PipelineRun, *, artifacts: Mapping[str, str | None] | None = None) -> dict[str, Any]:
    artifact = run.outputs.get("artifact")
    receipt = run.outputs.get("apply_receipt")
    entry: dict[str, Any] = {
        "schema_version": RUN_INDEX_SCHEMA_VERSION,
        "run_id": run.run_id,
        "cluster": run.cluster,
        "workload": run.workload.name,
        "created_at": run.created_at,
        "finished_at": run.finished_at,
        "status": run.status,
        "trigger": run.trigger.to_dict(),
        "stages": {record.name: record.status for record in run.stages},
        "artifact": str(artifact) if artifact is not None else None,
        "apply_id": getattr(receipt, "apply_id", None),
        "artifacts": dict(artifacts or {}),
    }
    if run.error is not None:
        entry["error"] = dict(run.error)
    return entry


def append_run_index_entry(path: str, entry: Mapping[str, Any]) -> None:
    """
    Append a single JSON object to a JSONL run index file.

    The caller is responsible for building a schema_versioned entry object.
    """

    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "a", encoding="utf-8") as handle:
        handle.write(json.dumps(dict(entry), ensure_ascii=False))
        handle.write("\n")
