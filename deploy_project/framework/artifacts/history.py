"""Run history loaded from the JSONL run index."""

from __future__ import annotations

import json
import os

import pandas as pd

HISTORY_COLUMNS: list[str] = [
    "run_id",
    "cluster",
    "workload",
    "status",
    "created_at",
    "finished_at",
    "trigger.commit_id",
    "trigger.branch",
    "artifact",
    "error.stage",
    "error.message",
]

SUMMARY_COLUMNS: list[str] = ["cluster", "runs", "succeeded", "failed", "last_run_at", "last_failed_stage"]


def load_run_history(path: str) -> pd.DataFrame:
    """
    Load `runs_index.jsonl` into a flat DataFrame (nested keys become dotted columns).

    Missing files yield an empty frame. Malformed lines raise ValueError with the
    line number.
    """

    if not os.path.exists(path):
        return pd.DataFrame(columns=HISTORY_COLUMNS)

    rows: list[dict] = []
    with open(path, "r", encoding="utf-8") as handle:
        for line_no, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                row = json.loads(line)
            except json.JSONDecodeError as exc:
                raise ValueError(f"Invalid JSON in {path} at line {line_no}: {exc}") from exc
            if not isinstance(row, dict):
                raise ValueError(f"Run index entry must be an object ({path} line {line_no})")
            rows.append(row)

    if not rows:
        return pd.DataFrame(columns=HISTORY_COLUMNS)

    df = pd.json_normalize(rows, max_level=1)
    for column in HISTORY_COLUMNS:
        if column not in df.columns:
            df[column] = None
    return df


def summarize_history(df: pd.DataFrame) -> pd.DataFrame:
    """Per-cluster run counts plus the most recent failing stage."""

    if df.empty:
        return pd.DataFrame(columns=SUMMARY_COLUMNS)

    records: list[dict] = []
    ordered = df.sort_values("created_at", kind="stable")
    for cluster, group in ordered.groupby("cluster", sort=True):
        failed = group[group["status"] == "failed"]
        last_failed_stage = None
        if not failed.empty:
            stage = failed["error.stage"].iloc[-1]
            last_failed_stage = None if pd.isna(stage) else str(stage)
        records.append(
            {
                "cluster": cluster,
                "runs": int(len(group)),
                "succeeded": int((group["status"] == "succeeded").sum()),
                "failed": int(len(failed)),
                "last_run_at": group["created_at"].iloc[-1],
                "last_failed_stage": last_failed_stage,
            }
        )
    return pd.DataFrame.from_records(records, columns=SUMMARY_COLUMNS)
