from __future__ import annotations

import json
import os
from typing import Any

from deploy_project.framework.runtime import PipelineRun


def run_record_path(log_dir: str, run_id: str) -> str:
    return os.path.join(log_dir, f"{run_id}_run.json")


def write_run_record(path: str, run: PipelineRun, *, extra: dict[str, Any] | None = None) -> None:
    payload = run.to_dict()
    failure = run.first_failure()
    if failure is not None:
        payload["first_failure"] = failure.to_dict()
    if extra:
        payload.update(extra)

    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "w", encoding="utf-8") as file:
        json.dump(payload, file, ensure_ascii=False, indent=2)
        file.write("\n")
