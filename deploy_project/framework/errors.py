"""Error taxonomy for descriptor submission and pipeline runs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from pipelinekit.engine.pipeline import StageExecutionError, StageTimeoutError


@dataclass(frozen=True)
class Violation:
    field: str
    rule: str
    value: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "rule": self.rule, "value": self.value}

    def __str__(self) -> str:
        return f"{self.field}: {self.rule} (got {self.value!r})"


class ValidationError(ValueError):
    """Malformed or invariant-violating descriptor. Never retried automatically."""

    def __init__(self, kind: str, violations: Sequence[Violation]):
        if not violations:
            raise ValueError("ValidationError requires at least one violation")
        self.kind = kind
        self.violations = tuple(violations)
        lines = "; ".join(str(v) for v in self.violations)
        super().__init__(f"Invalid {kind}: {lines}")


class ConflictError(RuntimeError):
    """The cluster lock is held by another run."""

    def __init__(self, key: str, holder: str | None = None):
        self.key = key
        self.holder = holder
        suffix = f" (held by {holder})" if holder else ""
        super().__init__(f"Lock {key} is already held{suffix}")


class CredentialExpiredError(RuntimeError):
    def __init__(self, cluster: str, expires_at: str):
        self.cluster = cluster
        self.expires_at = expires_at
        super().__init__(f"Credential for cluster {cluster} expired at {expires_at}")


__all__ = [
    "ConflictError",
    "CredentialExpiredError",
    "StageExecutionError",
    "StageTimeoutError",
    "ValidationError",
    "Violation",
]
