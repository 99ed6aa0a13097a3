"""Subprocess drivers for the real toolchain (git, docker, aws, kubectl, terraform)."""

from __future__ import annotations

import contextlib
import json
import logging
import os
import subprocess
import tempfile
from datetime import datetime
from typing import Iterator, Mapping, Sequence

import yaml

from pipelinekit.engine.pipeline import remaining_stage_time

from deploy_project.framework.collaborators import BuiltImage, SourceCheckout
from deploy_project.framework.credentials import ClusterCredential, Clock, utc_now
from deploy_project.framework.descriptors import ArtifactReference, ClusterTopology, ImageDescriptor, WorkloadDescriptor
from deploy_project.framework.manifests import (
    DESCRIPTOR_ANNOTATION,
    dump_manifests,
    render_tfvars,
    render_workload_manifests,
)
from deploy_project.framework.reconciliation import ApplyReceipt, plan_rollout
from deploy_project.framework.runtime import TriggerEvent
from deploy_project.framework.validation import check_workload

logger = logging.getLogger(__name__)

TIMEOUT_RETURNCODE = 124
TOKEN_USER = "deploy-project"


class CommandError(RuntimeError):
    def __init__(self, cmd: Sequence[str], returncode: int, stderr: str):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no stderr"
        super().__init__(f"{cmd[0]} exited with {returncode}: {detail}")


def run_command(
    cmd: Sequence[str],
    *,
    input_text: str | None = None,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    timeout_s: float | None = None,
) -> str:
    """Run `cmd` and return its stdout.

    Without an explicit `timeout_s` the command is bounded by what is left of
    the current stage's timeout.
    """

    if timeout_s is None:
        timeout_s = remaining_stage_time()
    if timeout_s is not None and timeout_s <= 0:
        raise CommandError(cmd, TIMEOUT_RETURNCODE, "stage deadline already passed")
    logger.debug("Running: %s", " ".join(cmd))
    try:
        proc = subprocess.run(
            list(cmd),
            input=input_text,
            cwd=cwd,
            env=dict(env) if env is not None else None,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout_s,
        )
    except FileNotFoundError as exc:
        raise CommandError(cmd, 127, f"{cmd[0]} not found ({exc})") from exc
    except subprocess.TimeoutExpired as exc:
        raise CommandError(cmd, TIMEOUT_RETURNCODE, f"timed out after {timeout_s:g}s") from exc
    if proc.returncode != 0:
        raise CommandError(cmd, proc.returncode, proc.stderr or "")
    return proc.stdout or ""


class GitSourceFetcher:
    def __init__(self, remote: str, workdir: str):
        self._remote = remote
        self._workdir = os.path.abspath(workdir)

    def fetch(self, trigger: TriggerEvent) -> SourceCheckout:
        path = os.path.join(self._workdir, "src", trigger.commit_id)
        if not os.path.isdir(os.path.join(path, ".git")):
            os.makedirs(os.path.dirname(path), exist_ok=True)
            run_command(["git", "clone", "--no-checkout", "--branch", trigger.branch, self._remote, path])
        run_command(["git", "-C", path, "fetch", "origin", trigger.branch])
        run_command(["git", "-C", path, "checkout", "--detach", trigger.commit_id])
        head = run_command(["git", "-C", path, "rev-parse", "HEAD"]).strip()
        return SourceCheckout(path=path, commit_id=head, branch=trigger.branch)


class DockerImageBuilder:
    def build(self, checkout: SourceCheckout, dockerfile_path: str, image: ImageDescriptor) -> BuiltImage:
        local_tag = f"deploy-project/build:{checkout.commit_id[:12]}"
        run_command(["docker", "build", "--file", dockerfile_path, "--tag", local_tag, checkout.path])
        return BuiltImage(local_tag=local_tag, image=image, commit_id=checkout.commit_id)


class DockerRegistry:
    def publish(self, built: BuiltImage, reference: ArtifactReference) -> ArtifactReference:
        target = str(reference)
        run_command(["docker", "tag", built.local_tag, target])
        run_command(["docker", "push", target])
        return ArtifactReference.parse(target)


class EksCredentialProvider:
    """`aws eks get-token`: a bearer token plus its expiry."""

    def __init__(self, *, region: str | None = None):
        self._region = region

    def acquire(self, cluster: str) -> ClusterCredential:
        cmd = ["aws", "eks", "get-token", "--cluster-name", cluster, "--output", "json"]
        if self._region:
            cmd.extend(["--region", self._region])
        payload = json.loads(run_command(cmd))
        status = payload.get("status") or {}
        token = status.get("token")
        expires = status.get("expirationTimestamp")
        if not isinstance(token, str) or not isinstance(expires, str):
            raise ValueError("aws eks get-token returned no token/expirationTimestamp")
        expires_at = datetime.fromisoformat(expires.replace("Z", "+00:00"))
        return ClusterCredential(cluster=cluster, token=token, expires_at=expires_at)


@contextlib.contextmanager
def token_kubeconfig(credential: ClusterCredential) -> Iterator[str]:
    """A private (0600) kubeconfig holding only the bearer token as user `TOKEN_USER`."""

    fd, path = tempfile.mkstemp(prefix="deploy-project-", suffix=".kubeconfig")
    try:
        os.chmod(path, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            yaml.safe_dump(
                {
                    "apiVersion": "v1",
                    "kind": "Config",
                    "users": [{"name": TOKEN_USER, "user": {"token": credential.token}}],
                },
                handle,
                sort_keys=False,
            )
        yield path
    finally:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(path)


class KubectlOrchestrator:
    """Applies rendered manifests with `kubectl apply` and waits for the rollout.

    The cluster endpoint comes from `kubeconfig` (default: `$KUBECONFIG` or
    `~/.kube/config`); the token is merged in from a private temporary file and
    never appears on the command line.
    """

    def __init__(
        self,
        *,
        context: str | None = None,
        kubeconfig: str | None = None,
        rollout_timeout_s: float = 300.0,
        clock: Clock = utc_now,
    ):
        self._context = context
        self._kubeconfig = kubeconfig or os.environ.get("KUBECONFIG") or os.path.expanduser("~/.kube/config")
        self._rollout_timeout_s = rollout_timeout_s
        self._clock = clock

    def _kubectl(self, credential: ClusterCredential, *args: str, input_text: str | None = None) -> str:
        credential.require_fresh(now=self._clock())
        cmd = ["kubectl"]
        if self._context:
            cmd.extend(["--context", self._context])
        cmd.extend(["--user", TOKEN_USER, *args])
        with token_kubeconfig(credential) as token_path:
            env = dict(os.environ, KUBECONFIG=os.pathsep.join([self._kubeconfig, token_path]))
            return run_command(cmd, input_text=input_text, env=env)

    def _previous(self, workload: WorkloadDescriptor, credential: ClusterCredential) -> WorkloadDescriptor | None:
        raw = self._kubectl(
            credential,
            "get",
            "deployment",
            workload.name,
            "--namespace",
            workload.namespace,
            "--ignore-not-found",
            "--output",
            "json",
        )
        if not raw.strip():
            return None
        annotations = (json.loads(raw).get("metadata") or {}).get("annotations") or {}
        recorded = annotations.get(DESCRIPTOR_ANNOTATION)
        if not recorded:
            return None
        result = check_workload(json.loads(recorded))
        return result.value if result.ok else None

    def apply(self, workload: WorkloadDescriptor, credential: ClusterCredential) -> ApplyReceipt:
        previous = self._previous(workload, credential)
        rollout = plan_rollout(previous, workload)
        fingerprint = workload.fingerprint()
        apply_id = f"{workload.name}-{fingerprint[:12]}"

        if rollout.changed:
            output = self._kubectl(
                credential, "apply", "--filename", "-", input_text=dump_manifests(render_workload_manifests(workload))
            )
            for line in output.splitlines():
                logger.info("kubectl: %s", line)
            if workload.replicas > 0:
                self._kubectl(
                    credential,
                    "rollout",
                    "status",
                    f"deployment/{workload.name}",
                    "--namespace",
                    workload.namespace,
                    f"--timeout={int(self._rollout_timeout_s)}s",
                )

        return ApplyReceipt(
            apply_id=apply_id,
            workload=workload.key,
            fingerprint=fingerprint,
            changed=rollout.changed,
            rollout=rollout,
        )


class TerraformProvisioner:
    def __init__(self, terraform_dir: str):
        self._dir = os.path.abspath(terraform_dir)

    def provision(self, topology: ClusterTopology) -> str:
        if not os.path.isdir(self._dir):
            raise FileNotFoundError(f"Terraform directory not found: {self._dir}")
        var_file = os.path.join(self._dir, f"{topology.name}.tfvars.json")
        with open(var_file, "w", encoding="utf-8") as handle:
            json.dump(render_tfvars(topology), handle, indent=2, sort_keys=True)
            handle.write("\n")

        run_command(["terraform", f"-chdir={self._dir}", "init", "-input=false"])
        run_command(
            [
                "terraform",
                f"-chdir={self._dir}",
                "apply",
                "-auto-approve",
                "-input=false",
                f"-var-file={var_file}",
            ]
        )
        return f"topology-{topology.fingerprint()[:12]}"
