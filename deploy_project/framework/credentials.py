"""Cluster credential handles.

A credential is an opaque token plus an expiry instant. Once expired it is never
reused: callers re-acquire instead of retrying with stale credentials.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

from deploy_project.framework.errors import CredentialExpiredError

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class ClusterCredential:
    cluster: str
    token: str = field(repr=False)
    expires_at: datetime

    def __post_init__(self) -> None:
        if self.expires_at.tzinfo is None:
            raise ValueError("ClusterCredential.expires_at must be timezone-aware")

    def is_expired(self, *, now: datetime | None = None, skew_s: float = 0.0) -> bool:
        current = now or utc_now()
        return current + timedelta(seconds=skew_s) >= self.expires_at

    def require_fresh(self, *, now: datetime | None = None, skew_s: float = 0.0) -> None:
        if self.is_expired(now=now, skew_s=skew_s):
            raise CredentialExpiredError(self.cluster, _iso(self.expires_at))

    def to_dict(self) -> dict[str, str]:
        return {"cluster": self.cluster, "expires_at": _iso(self.expires_at), "token": "<redacted>"}


class CredentialProvider(Protocol):
    def acquire(self, cluster: str) -> ClusterCredential:
        ...


def ensure_fresh(
    credential: ClusterCredential,
    provider: CredentialProvider,
    *,
    skew_s: float = 0.0,
    clock: Clock = utc_now,
    logger: logging.Logger | None = None,
) -> ClusterCredential:
    """Return `credential`, or a newly acquired one if it has expired."""

    try:
        credential.require_fresh(now=clock(), skew_s=skew_s)
        return credential
    except CredentialExpiredError as exc:
        if logger:
            logger.warning("%s; re-acquiring", exc)

    fresh = provider.acquire(credential.cluster)
    if fresh.cluster != credential.cluster:
        raise ValueError(
            f"Credential provider returned a credential for {fresh.cluster} (expected {credential.cluster})"
        )
    fresh.require_fresh(now=clock(), skew_s=skew_s)
    return fresh
