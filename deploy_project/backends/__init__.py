"""Collaborator backends: `local` drives real tools, `dry_run` stays in memory."""

from __future__ import annotations

import logging

from deploy_project.framework.collaborators import Backends
from deploy_project.framework.config import RunConfig


def build_backends(cfg: RunConfig, *, dry_run: bool | None = None, logger: logging.Logger | None = None) -> Backends:
    kind = "dry_run" if dry_run else cfg.backend.kind
    if logger:
        logger.info("Using %s backends", kind)

    if kind == "dry_run":
        from deploy_project.backends.memory import (  # noqa: PLC0415
            InMemoryImageBuilder,
            InMemoryOrchestrator,
            InMemoryProvisioner,
            InMemoryRegistry,
            LocalDirectorySource,
            StaticCredentialProvider,
        )

        return Backends(
            kind=kind,
            source=LocalDirectorySource(cfg.context_dir),
            builder=InMemoryImageBuilder(),
            registry=InMemoryRegistry(),
            credentials=StaticCredentialProvider(),
            orchestrator=InMemoryOrchestrator(),
            provisioner=InMemoryProvisioner(),
        )

    if kind == "local":
        from deploy_project.backends.local import (  # noqa: PLC0415
            DockerImageBuilder,
            DockerRegistry,
            EksCredentialProvider,
            GitSourceFetcher,
            KubectlOrchestrator,
            TerraformProvisioner,
        )

        if not cfg.backend.git_remote:
            raise ValueError("backend.git_remote is required for local backends")
        return Backends(
            kind=kind,
            source=GitSourceFetcher(cfg.backend.git_remote, cfg.backend.workdir),
            builder=DockerImageBuilder(),
            registry=DockerRegistry(),
            credentials=EksCredentialProvider(region=cfg.backend.region),
            orchestrator=KubectlOrchestrator(context=cfg.backend.kubectl_context),
            provisioner=TerraformProvisioner(cfg.backend.terraform_dir or "terraform"),
        )

    raise ValueError(f"Unknown backend kind: {kind}")


__all__ = ["Backends", "build_backends"]
