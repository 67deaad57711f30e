"""
CI Pipeline

Runs the seven verification stages in order. A failing stage never stops the
stages after it; the pipeline fails if any stage that ran failed.
"""

from typing import Any, Dict, List

from tfpipelines.base import PipelineOrchestrator
from tfpipelines.schemas import StageResult
from tfpipelines.stages import VERIFICATION_STAGES, VerificationStageRunner

STAGE_NAMES = {
    "format": "Format check",
    "validate": "Validate",
    "lint": "Lint (tflint)",
    "test": "Terraform test",
    "security": "Security scan (checkov)",
    "compliance": "Policy compliance (conftest)",
    "cost": "Cost estimation (infracost)",
}


class CIPipeline(PipelineOrchestrator):
    """
    Verification-only pipeline.

    Example:
        runner = VerificationStageRunner(SecureSubprocess(), env=tool_environment(invocation))
        result = CIPipeline(invocation, runner).execute()
        result.outputs["lint_result"]   # "pass" | "fail" | "skipped"
    """

    pipeline_name = "ci"

    def __init__(self, invocation, stage_runner: VerificationStageRunner, **kwargs):
        super().__init__(invocation, **kwargs)
        self.stage_runner = stage_runner
        self._stages = {stage.name: stage for stage in VERIFICATION_STAGES}

    def _define_steps(self) -> List[Dict[str, Any]]:
        return [
            {"id": stage.name, "name": STAGE_NAMES[stage.name], "continue_on_failure": True}
            for stage in VERIFICATION_STAGES
        ]

    def _execute_step(self, step: Dict[str, Any], context: Dict[str, Any]) -> StageResult:
        return self.stage_runner.run_stage(self._stages[step["id"]], self.invocation)
