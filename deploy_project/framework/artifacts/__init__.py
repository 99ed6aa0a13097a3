"""Run artifact helpers (run record, run index, history).

This package is independent of `deploy_project.stages` and
`deploy_project.backends` (framework boundary).
"""

from .history import load_run_history, summarize_history
from .run_index import RUN_INDEX_SCHEMA_VERSION, append_run_index_entry, build_run_index_entry
from .run_record import run_record_path, write_run_record

__all__ = [
    "RUN_INDEX_SCHEMA_VERSION",
    "append_run_index_entry",
    "build_run_index_entry",
    "load_run_history",
    "run_record_path",
    "summarize_history",
    "write_run_record",
]
