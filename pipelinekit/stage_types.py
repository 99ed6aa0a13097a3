from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from pipelinekit.engine.pipeline import FlowContext


@dataclass(frozen=True)
class StageIO:
    """Output keys a stage reads from and writes into `ctx.outputs`."""

    requires: tuple[str, ...] = ()
    provides: tuple[str, ...] = ()


class StageFn(Protocol):
    def __call__(self, ctx: FlowContext) -> Any:
        ...


@dataclass(frozen=True)
class StageRef:
    id: str
    fn: StageFn
    doc: str | None = None
    timeout_s: float | None = None
    locked: bool = False
    io: StageIO = field(default_factory=StageIO)

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise TypeError("StageRef.id must be a non-empty string")
        object.__setattr__(self, "id", self.id.strip())

        if not callable(self.fn):
            raise TypeError(f"StageRef.fn must be callable (stage={self.id})")
        if self.doc is not None and (not isinstance(self.doc, str) or not self.doc.strip()):
            raise TypeError("StageRef.doc must be a non-empty string or None")
        if self.timeout_s is not None:
            if isinstance(self.timeout_s, bool) or not isinstance(self.timeout_s, (int, float)):
                raise TypeError(f"StageRef.timeout_s must be a number or None (stage={self.id})")
            if self.timeout_s <= 0:
                raise ValueError(f"StageRef.timeout_s must be > 0 (stage={self.id}, got {self.timeout_s})")
        if len(set(self.io.provides)) != len(self.io.provides):
            raise ValueError(f"StageRef.io.provides has duplicate keys (stage={self.id})")

    def with_timeout(self, timeout_s: float | None) -> "StageRef":
        return StageRef(
            id=self.id,
            fn=self.fn,
            doc=self.doc,
            timeout_s=timeout_s,
            locked=self.locked,
            io=self.io,
        )
