"""
Plan/Apply Executor

Computes a terraform plan into a saved artifact, then applies exactly that
artifact after approval.

Guarantees:
- The applied file is byte-identical to the planned one (sha256 pinned at plan
  time, re-checked before apply; the artifact is made read-only)
- No re-planning between approval and apply
- Each stage runs within its own wall-clock budget; exceeding it kills the
  process and raises StageTimeout without producing an ApplyResult
- No automatic retries
"""

import hashlib
import json
import logging
import subprocess
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from tfpipelines.error_handling import ApplyError, PlanError, StageTimeout
from tfpipelines.schemas import ApplyResult, PipelineInvocation, PlanArtifact
from tfpipelines.stages import ToolRunner, raw_output
from tfpipelines.subprocess_security import SubprocessSecurityError

logger = logging.getLogger(__name__)

PLAN_NO_CHANGES = 0
PLAN_HAS_CHANGES = 2


def file_sha256(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


class TerraformExecutor:
    """
    Runs terraform init/plan/apply for one invocation at a time.

    Example:
        executor = TerraformExecutor(SecureSubprocess(), artifact_dir=Path(".tfpipelines/plans"))
        artifact = executor.plan(invocation)
        # ... approval gate ...
        result = executor.apply(artifact, invocation)
    """

    def __init__(
        self,
        runner: ToolRunner,
        artifact_dir: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.runner = runner
        self.artifact_dir = (artifact_dir or Path(".tfpipelines/plans")).resolve()
        self.artifact_dir.mkdir(parents=True, exist_ok=True)
        self.env = env or {}
        self._clock = clock

    def plan(self, invocation: PipelineInvocation, destroy: bool = False) -> PlanArtifact:
        """
        Compute a plan and save it as an artifact.

        init and plan share the plan budget.

        Args:
            invocation: Pipeline invocation
            destroy: If True, compute a destroy plan

        Returns:
            PlanArtifact pinned by its sha256 digest

        Raises:
            PlanError: Version mismatch, init/plan failure, or missing artifact
            StageTimeout: The plan budget was exceeded
        """
        budget = invocation.timeouts.plan_seconds
        deadline = self._clock() + budget
        workdir = invocation.working_directory

        try:
            self._check_version(invocation, deadline)

            init_command = ["terraform", "init", "-input=false", "-no-color"]
            if invocation.backend_config:
                init_command.append(f"-backend-config={invocation.backend_config}")
            result = self._run(init_command, deadline, budget, workdir)
            if result["returncode"] != 0:
                raise PlanError("terraform init failed", detail=raw_output(result))

            plan_id = self._new_plan_id(invocation.environment, destroy)
            plan_path = self.artifact_dir / f"{plan_id}.tfplan"

            plan_command = [
                "terraform", "plan", "-input=false", "-no-color",
                "-detailed-exitcode", f"-out={plan_path}",
            ]
            if destroy:
                plan_command.append("-destroy")
            if invocation.var_file:
                plan_command.append(f"-var-file={invocation.var_file}")

            result = self._run(plan_command, deadline, budget, workdir)

        except subprocess.TimeoutExpired:
            raise StageTimeout(f"plan exceeded its {budget}s budget and was aborted")
        except (OSError, UnicodeError, SubprocessSecurityError) as e:
            raise PlanError(f"Could not run terraform: {e}")

        if result["returncode"] not in (PLAN_NO_CHANGES, PLAN_HAS_CHANGES):
            raise PlanError(
                f"terraform plan exited with {result['returncode']}",
                detail=raw_output(result),
            )
        if not plan_path.exists():
            raise PlanError("terraform plan did not write a plan artifact", detail=raw_output(result))

        # Pin the artifact: read-only on disk, digest recorded
        plan_path.chmod(0o444)
        artifact = PlanArtifact(
            plan_id=plan_id,
            path=str(plan_path),
            sha256=file_sha256(plan_path),
            size_bytes=plan_path.stat().st_size,
            environment=invocation.environment,
            working_directory=workdir,
            destroy=destroy,
            has_changes=result["returncode"] == PLAN_HAS_CHANGES,
            created_at=datetime.now().isoformat(),
        )
        logger.info(
            "Planned %s (changes=%s, sha256=%s)", plan_id, artifact.has_changes, artifact.sha256[:12]
        )
        return artifact

    def apply(self, artifact: PlanArtifact, invocation: PipelineInvocation) -> ApplyResult:
        """
        Apply exactly the approved plan artifact.

        Args:
            artifact: Artifact returned by plan()
            invocation: Pipeline invocation (timeouts)

        Returns:
            ApplyResult

        Raises:
            ApplyError: Artifact changed/missing or terraform apply failed
            StageTimeout: The apply (or destroy) budget was exceeded
        """
        budget = (
            invocation.timeouts.destroy_seconds if artifact.destroy
            else invocation.timeouts.apply_seconds
        )
        stage = "destroy" if artifact.destroy else "apply"
        self.verify_artifact(artifact)

        start = self._clock()
        deadline = start + budget
        command = ["terraform", "apply", "-input=false", "-no-color", artifact.path]

        try:
            result = self._run(command, deadline, budget, artifact.working_directory)
        except subprocess.TimeoutExpired:
            raise StageTimeout(f"{stage} exceeded its {budget}s budget and was aborted")
        except (OSError, UnicodeError, SubprocessSecurityError) as e:
            raise ApplyError(f"Could not run terraform: {e}")

        if result["returncode"] != 0:
            raise ApplyError(
                f"terraform apply exited with {result['returncode']}",
                detail=raw_output(result),
            )

        return ApplyResult(
            plan_id=artifact.plan_id,
            sha256=artifact.sha256,
            destroy=artifact.destroy,
            detail=(result.get("stdout") or "").strip(),
            duration_seconds=max(0.0, self._clock() - start),
        )

    def verify_artifact(self, artifact: PlanArtifact) -> None:
        """
        Refuse an artifact whose bytes differ from what was approved.

        Raises:
            ApplyError: If the file is missing or its digest changed
        """
        path = Path(artifact.path)
        if not path.exists():
            raise ApplyError(f"Plan artifact {artifact.plan_id} is missing: {path}")
        digest = file_sha256(path)
        if digest != artifact.sha256:
            raise ApplyError(
                f"Plan artifact {artifact.plan_id} changed since it was approved",
                detail=f"expected sha256 {artifact.sha256}, found {digest}",
            )

    def discard(self, artifact: PlanArtifact) -> None:
        """Delete a plan artifact once its run is over."""
        path = Path(artifact.path)
        if path.exists():
            path.chmod(0o644)
            path.unlink()
            logger.debug("Discarded plan artifact %s", artifact.plan_id)

    def _check_version(self, invocation: PipelineInvocation, deadline: float) -> None:
        pinned = invocation.terraform_version
        if pinned == "latest":
            return
        result = self._run(
            ["terraform", "version", "-json"], deadline,
            invocation.timeouts.plan_seconds, invocation.working_directory,
        )
        try:
            installed = json.loads(result["stdout"])["terraform_version"]
        except (json.JSONDecodeError, KeyError, TypeError):
            raise PlanError("Could not determine terraform version", detail=raw_output(result))
        if installed != pinned:
            raise PlanError(
                f"terraform {installed} is installed but {pinned} is pinned",
                detail="Install the pinned version or set terraform_version to 'latest'",
            )

    def _run(
        self,
        command: List[str],
        deadline: float,
        budget: int,
        cwd: str,
    ) -> Dict[str, Any]:
        remaining = deadline - self._clock()
        if remaining <= 0:
            raise subprocess.TimeoutExpired(command, budget)
        return self.runner.execute_command(command, timeout=remaining, cwd=cwd, env=self.env)

    @staticmethod
    def _new_plan_id(environment: str, destroy: bool) -> str:
        kind = "destroy" if destroy else "deploy"
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        return f"{environment}-{kind}-{stamp}-{uuid.uuid4().hex[:8]}"
