from __future__ import annotations

import difflib
from dataclasses import dataclass
from typing import Any, Iterable

from pipelinekit.stage_types import StageRef


@dataclass(frozen=True)
class StageRegistry:
    _by_id: dict[str, StageRef]
    _order: tuple[str, ...] = ()

    @classmethod
    def from_refs(cls, refs: Iterable[StageRef]) -> "StageRegistry":
        entries: dict[str, StageRef] = {}
        order: list[str] = []
        for ref in refs:
            if ref.id in entries:
                raise ValueError(f"Duplicate stage id: {ref.id}")
            entries[ref.id] = ref
            order.append(ref.id)
        return cls(_by_id=entries, _order=tuple(order))

    def available(self) -> tuple[str, ...]:
        return tuple(sorted(self._by_id.keys()))

    def ordered(self) -> tuple[StageRef, ...]:
        """Stages in registration order (the execution order)."""

        return tuple(self._by_id[stage_id] for stage_id in self._order)

    def describe(self) -> tuple[dict[str, Any], ...]:
        rows: list[dict[str, Any]] = []
        for position, ref in enumerate(self.ordered(), start=1):
            rows.append(
                {
                    "position": position,
                    "stage_id": ref.id,
                    "doc": ref.doc,
                    "timeout_s": ref.timeout_s,
                    "locked": ref.locked,
                    "io": {
                        "requires": list(ref.io.requires),
                        "provides": list(ref.io.provides),
                    },
                }
            )
        return tuple(rows)

    def get(self, stage_id: str) -> StageRef:
        ref = self._by_id.get((stage_id or "").strip())
        if ref is None:
            available = ", ".join(self.available()) or "<none>"
            suggestions = self.suggest(stage_id)
            hint = f"; did you mean: {', '.join(suggestions)}" if suggestions else ""
            raise ValueError(f"Unknown stage id: {stage_id} (available: {available}{hint})")
        return ref

    def suggest(self, stage_id: str, *, limit: int = 3) -> tuple[str, ...]:
        key = (stage_id or "").strip()
        if not key:
            return ()
        return tuple(difflib.get_close_matches(key, list(self.available()), n=limit))

    def with_timeouts(self, timeouts: dict[str, float], *, default: float | None = None) -> "StageRegistry":
        unknown = sorted(set(timeouts) - set(self._by_id))
        if unknown:
            raise ValueError(f"Timeouts configured for unknown stage ids: {', '.join(unknown)}")
        refs = []
        for ref in self.ordered():
            timeout = timeouts.get(ref.id, ref.timeout_s if ref.timeout_s is not None else default)
            refs.append(ref.with_timeout(timeout))
        return StageRegistry.from_refs(refs)
