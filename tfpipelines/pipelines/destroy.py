"""
Destroy Pipeline

confirm -> plan (destroy) -> approval -> final_approval -> destroy

The confirmation word is checked before anything else, so a typo fails before
any plan is computed or any gate is created. The two gates must be approved by
two different reviewers.
The destroy plan is deleted when the run ends.
"""

import logging
from typing import Any, Dict, List, Optional

from tfpipelines.base import PipelineOrchestrator
from tfpipelines.confirmation import validate_confirmation
from tfpipelines.error_handling import PipelineError
from tfpipelines.executor import TerraformExecutor
from tfpipelines.schemas import (
    ApprovalDecision,
    ConfirmationToken,
    PipelineInvocation,
    PlanArtifact,
    StageResult,
    StageStatus,
)

logger = logging.getLogger(__name__)


class DestroyPipeline(PipelineOrchestrator):
    """
    Tear down an environment after confirmation and two distinct approvals.

    Example:
        result = DestroyPipeline(
            invocation,
            TerraformExecutor(SecureSubprocess()),
            confirmation=ConfirmationToken(supplied_word="DESTROY"),
            approval_source=StaticApprovalSource(["alice", "bob"]),
        ).execute()
    """

    pipeline_name = "destroy"

    def __init__(
        self,
        invocation: PipelineInvocation,
        executor: TerraformExecutor,
        confirmation: ConfirmationToken,
        **kwargs
    ):
        super().__init__(invocation, **kwargs)
        self.executor = executor
        self.confirmation = confirmation
        self.artifact: Optional[PlanArtifact] = None
        self.first_decision: Optional[ApprovalDecision] = None

    def _define_steps(self) -> List[Dict[str, Any]]:
        return [
            {"id": "confirm", "name": "Confirmation word"},
            {"id": "plan", "name": "Terraform destroy plan"},
            {"id": "approval", "name": "Destroy approval"},
            {"id": "final_approval", "name": "Final destroy approval"},
            {"id": "destroy", "name": "Terraform destroy"},
        ]

    def _execute_step(self, step: Dict[str, Any], context: Dict[str, Any]) -> StageResult:
        step_id = step["id"]

        if step_id == "confirm":
            validate_confirmation(self.confirmation)
            return StageResult(stage_name=step_id, status=StageStatus.PASS, detail="confirmation word accepted")

        if step_id == "plan":
            with self.create_spinner("terraform plan -destroy", self.invocation.timeouts.plan_seconds):
                self.artifact = self.executor.plan(self.invocation, destroy=True)
            self.step_evidence["plan"] = self.artifact.model_dump()
            return StageResult(
                stage_name=step_id,
                status=StageStatus.PASS,
                detail=f"{self.artifact.plan_id} ({self.artifact.size_bytes} bytes)",
            )

        if not self.artifact.has_changes:
            logger.info("Destroy plan %s is empty; %s skipped", self.artifact.plan_id, step_id)
            return StageResult(stage_name=step_id, status=StageStatus.SKIPPED, detail="nothing to destroy")

        if step_id == "approval":
            config = self.gate_config(
                "approval",
                "Destroy approval",
                f"Destroy {self.invocation.environment} using plan {self.artifact.plan_id}",
            )
            self.first_decision = self._gate(config)
            return StageResult(
                stage_name=step_id,
                status=StageStatus.PASS,
                detail=f"approved by {', '.join(self.first_decision.approvers)}",
            )

        if step_id == "final_approval":
            config = self.gate_config(
                "final-approval",
                "Final destroy approval",
                f"Second reviewer sign-off to destroy {self.invocation.environment}",
                excluded_reviewers=self.first_decision.approvers,
            )
            decision = self._gate(config)
            return StageResult(
                stage_name=step_id,
                status=StageStatus.PASS,
                detail=f"approved by {', '.join(decision.approvers)}",
            )

        if step_id == "destroy":
            with self.create_spinner("terraform apply (destroy)", self.invocation.timeouts.destroy_seconds):
                applied = self.executor.apply(self.artifact, self.invocation)
            self.step_evidence["destroy"] = applied.model_dump()
            return StageResult(
                stage_name=step_id,
                status=StageStatus.PASS,
                detail=applied.detail,
                duration_seconds=applied.duration_seconds,
            )

        raise ValueError(f"Unknown step: {step_id}")

    def _cleanup(self) -> None:
        if self.artifact is not None:
            logger.info("Discarding destroy plan %s", self.artifact.plan_id)
            self.executor.discard(self.artifact)

    def _gate(self, config) -> ApprovalDecision:
        try:
            decision = self.run_gate(config, self.artifact.model_dump())
        except PipelineError:
            logger.warning(
                "Gate %s closed without approval; plan %s will not be applied",
                config.gate_id, self.artifact.plan_id,
            )
            raise
        self.step_evidence[config.gate_id] = decision.model_dump(mode="json")
        return decision
