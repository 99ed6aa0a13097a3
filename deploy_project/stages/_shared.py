from __future__ import annotations

import os
from dataclasses import dataclass

from deploy_project.framework.collaborators import Backends


@dataclass(frozen=True)
class StageEnv:
    """What stage builders close over: collaborators plus the image coordinates."""

    backends: Backends
    registry: str
    repository: str
    dockerfile_path: str = "Dockerfile"

    def dockerfile_in(self, checkout_path: str) -> str:
        if os.path.isabs(self.dockerfile_path):
            return self.dockerfile_path
        return os.path.join(checkout_path, self.dockerfile_path)
