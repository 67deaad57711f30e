"""
Deploy Pipeline

plan -> approval -> apply, gated on a successful CI run.

The artifact approved at the gate is the artifact applied. A gate that closes
without approval means nothing is applied. The artifact is deleted when the
run ends, whatever the outcome.
"""

import logging
from typing import Any, Dict, List, Optional

from tfpipelines.base import PipelineOrchestrator
from tfpipelines.error_handling import PipelineError, StageFailure
from tfpipelines.executor import TerraformExecutor
from tfpipelines.schemas import (
    PipelineInvocation,
    PipelineResult,
    PlanArtifact,
    StageResult,
    StageStatus,
)

logger = logging.getLogger(__name__)


class DeployPipeline(PipelineOrchestrator):
    """
    Plan, wait for one reviewer, apply the approved plan.

    Example:
        ci = CIPipeline(invocation, stage_runner).execute()
        deploy = DeployPipeline(
            invocation,
            TerraformExecutor(SecureSubprocess()),
            ci_result=ci,
            approval_source=StaticApprovalSource(["alice"]),
        )
        result = deploy.execute()
    """

    pipeline_name = "deploy"

    def __init__(
        self,
        invocation: PipelineInvocation,
        executor: TerraformExecutor,
        ci_result: Optional[PipelineResult] = None,
        **kwargs
    ):
        super().__init__(invocation, **kwargs)
        self.executor = executor
        self.ci_result = ci_result
        self.artifact: Optional[PlanArtifact] = None

    def _define_steps(self) -> List[Dict[str, Any]]:
        return [
            {"id": "plan", "name": "Terraform plan"},
            {"id": "approval", "name": "Deployment approval"},
            {"id": "apply", "name": "Terraform apply"},
        ]

    def _preflight(self) -> None:
        if self.ci_result is None:
            raise StageFailure(
                "Deploy requires a CI result",
                detail="Run the ci pipeline first and pass its result",
            )
        if not self.ci_result.success:
            raise StageFailure(
                f"CI run {self.ci_result.run_id} did not succeed ({self.ci_result.status.value})"
            )

    def _execute_step(self, step: Dict[str, Any], context: Dict[str, Any]) -> StageResult:
        step_id = step["id"]

        if step_id == "plan":
            with self.create_spinner("terraform plan", self.invocation.timeouts.plan_seconds):
                self.artifact = self.executor.plan(self.invocation)
            self.step_evidence["plan"] = self.artifact.model_dump()
            changes = "changes pending" if self.artifact.has_changes else "no changes"
            return StageResult(
                stage_name=step_id,
                status=StageStatus.PASS,
                detail=f"{self.artifact.plan_id} ({changes})",
            )

        if not self.artifact.has_changes:
            logger.info("Plan %s has no changes; %s skipped", self.artifact.plan_id, step_id)
            return StageResult(stage_name=step_id, status=StageStatus.SKIPPED, detail="plan has no changes")

        if step_id == "approval":
            config = self.gate_config(
                "approval",
                "Deployment approval",
                f"Apply plan {self.artifact.plan_id} to {self.invocation.environment}",
            )
            try:
                decision = self.run_gate(config, self.artifact.model_dump())
            except PipelineError:
                logger.warning(
                    "Gate %s closed without approval; plan %s will not be applied",
                    config.gate_id, self.artifact.plan_id,
                )
                raise
            self.step_evidence["approval"] = decision.model_dump(mode="json")
            return StageResult(
                stage_name=step_id,
                status=StageStatus.PASS,
                detail=f"approved by {', '.join(decision.approvers)}",
            )

        if step_id == "apply":
            with self.create_spinner("terraform apply", self.invocation.timeouts.apply_seconds):
                applied = self.executor.apply(self.artifact, self.invocation)
            self.step_evidence["apply"] = applied.model_dump()
            return StageResult(
                stage_name=step_id,
                status=StageStatus.PASS,
                detail=applied.detail,
                duration_seconds=applied.duration_seconds,
            )

        raise ValueError(f"Unknown step: {step_id}")

    def _cleanup(self) -> None:
        if self.artifact is not None:
            logger.info("Discarding plan %s", self.artifact.plan_id)
            self.executor.discard(self.artifact)
