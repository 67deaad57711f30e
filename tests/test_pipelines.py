"""
Tests for the CI, deploy and destroy pipelines.
"""

import json
import subprocess
import threading
import time
from pathlib import Path

from tfpipelines.approval_gates import ApprovalPolicy, StaticApprovalSource
from tfpipelines.pipelines import CIPipeline, DeployPipeline, DestroyPipeline
from tfpipelines.schemas import (
    ConfirmationToken,
    FailureKind,
    FeatureFlags,
    GateState,
    PipelineInvocation,
    PipelineStatus,
    StageStatus,
)
from tfpipelines.stages import VerificationStageRunner


class AdvancingSource:
    """Approval source that lets the gate deadline pass."""

    def __init__(self, clock, seconds: float) -> None:
        self.clock = clock
        self.seconds = seconds

    def attach(self, gate) -> None:
        self.clock.advance(self.seconds)

    def detach(self) -> None:
        pass


def run_ci(invocation, stage_runner, pipeline_kwargs):
    return CIPipeline(invocation, stage_runner, **pipeline_kwargs).execute()


class TestCIPipeline:
    """Tests for the verification pipeline."""

    def test_all_stages_pass(self, invocation, stage_runner, pipeline_kwargs) -> None:
        result = run_ci(invocation, stage_runner, pipeline_kwargs)

        assert result.success
        assert result.outputs == {
            "format_result": "pass",
            "validate_result": "pass",
            "lint_result": "pass",
            "test_result": "pass",
            "security_result": "pass",
            "compliance_result": "pass",
            "cost_result": "pass",
            "overall_status": "success",
        }

    def test_cost_disabled_outputs(self, workdir, stage_runner, pipeline_kwargs) -> None:
        """Cost disabled: seven stage outputs, six executed, cost skipped."""
        invocation = PipelineInvocation(
            working_directory=str(workdir),
            environment="staging",
            flags=FeatureFlags(enable_cost_estimation=False),
        )
        result = run_ci(invocation, stage_runner, pipeline_kwargs)

        stage_outputs = {k: v for k, v in result.outputs.items() if k != "overall_status"}
        assert len(stage_outputs) == 7
        assert result.outputs["cost_result"] == "skipped"
        assert len([r for r in result.stage_results if r.status is not StageStatus.SKIPPED]) == 6
        assert result.success

    def test_failure_does_not_stop_later_stages(self, invocation, stage_runner, runner, pipeline_kwargs) -> None:
        """A failing stage is reported and every later stage still runs."""
        runner.respond("terraform", "fmt", returncode=3, stdout="main.tf")
        result = run_ci(invocation, stage_runner, pipeline_kwargs)

        assert result.status is PipelineStatus.FAILED
        assert result.failure_kind is FailureKind.STAGE_FAILURE
        assert result.outputs["format_result"] == "fail"
        assert result.outputs["cost_result"] == "pass"
        assert result.outputs["overall_status"] == "failure"
        assert len(runner.commands("infracost")) == 1

    def test_unexpected_stage_error_is_a_failure(self, invocation, runner, pipeline_kwargs) -> None:
        """A stage that raises is reported failed and later stages still run."""
        class BrokenLint(VerificationStageRunner):
            def run_stage(self, stage, invocation):
                if stage.name == "lint":
                    raise RuntimeError("report parser crashed")
                return super().run_stage(stage, invocation)

        result = run_ci(invocation, BrokenLint(runner), pipeline_kwargs)

        assert result.status is PipelineStatus.FAILED
        assert result.failure_kind is FailureKind.STAGE_FAILURE
        assert result.stage("lint").status is StageStatus.FAIL
        assert "report parser crashed" in result.stage("lint").detail
        assert result.outputs["test_result"] == "pass"
        assert result.outputs["cost_result"] == "pass"

    def test_audit_file_written(self, invocation, stage_runner, pipeline_kwargs, audit_dir) -> None:
        """Each run leaves a JSON audit file."""
        result = run_ci(invocation, stage_runner, pipeline_kwargs)
        audit = json.loads(Path(result.audit_log_path).read_text(encoding="utf-8"))

        assert audit["status"] == "succeeded"
        assert len(audit["stage_results"]) == 7
        assert Path(result.audit_log_path).parent == audit_dir
        events = [e["event_type"] for e in audit["audit_log"]]
        assert events[0] == "pipeline_started"
        assert events[-1] == "pipeline_finalized"


class TestDeployPipeline:
    """Tests for the gated deploy pipeline."""

    def deploy(self, invocation, executor, ci_result, pipeline_kwargs, **kwargs):
        return DeployPipeline(invocation, executor, ci_result=ci_result, **pipeline_kwargs, **kwargs)

    def test_requires_ci_result(self, invocation, executor, runner, pipeline_kwargs) -> None:
        """Without a CI result nothing is planned."""
        result = self.deploy(invocation, executor, None, pipeline_kwargs).execute()

        assert result.failure_kind is FailureKind.STAGE_FAILURE
        assert runner.commands("terraform", "plan") == []
        assert result.outputs["plan_result"] == "skipped"

    def test_requires_successful_ci(self, invocation, stage_runner, executor, runner, pipeline_kwargs) -> None:
        runner.respond("checkov", returncode=1, stdout='{"summary": {"failed": 2}}')
        ci = run_ci(invocation, stage_runner, pipeline_kwargs)

        result = self.deploy(invocation, executor, ci, pipeline_kwargs).execute()

        assert not result.success
        assert result.failure_kind is FailureKind.STAGE_FAILURE
        assert runner.commands("terraform", "plan") == []

    def test_approved_deploy_applies_plan(
        self, invocation, stage_runner, executor, runner, pipeline_kwargs
    ) -> None:
        ci = run_ci(invocation, stage_runner, pipeline_kwargs)
        pipeline = self.deploy(
            invocation, executor, ci, pipeline_kwargs,
            approval_source=StaticApprovalSource(["alice"]),
        )
        result = pipeline.execute()

        assert result.success
        assert result.outputs == {
            "plan_result": "pass",
            "approval_result": "pass",
            "apply_result": "pass",
            "overall_status": "success",
        }
        assert runner.commands("terraform", "apply")[0][-1] == pipeline.artifact.path
        assert result.artifacts["apply"]["sha256"] == pipeline.artifact.sha256
        assert not Path(pipeline.artifact.path).exists()

    def test_rejection_applies_nothing(
        self, invocation, stage_runner, executor, runner, pipeline_kwargs
    ) -> None:
        ci = run_ci(invocation, stage_runner, pipeline_kwargs)
        pipeline = self.deploy(
            invocation, executor, ci, pipeline_kwargs,
            approval_source=StaticApprovalSource(rejecters=["bob"]),
        )
        result = pipeline.execute()

        assert result.failure_kind is FailureKind.GATE_REJECTED
        assert result.outputs["approval_result"] == "fail"
        assert result.outputs["apply_result"] == "skipped"
        assert runner.commands("terraform", "apply") == []
        assert not Path(pipeline.artifact.path).exists()

    def test_gate_timeout(self, invocation, stage_runner, executor, runner, pipeline_kwargs, clock) -> None:
        ci = run_ci(invocation, stage_runner, pipeline_kwargs)
        result = self.deploy(
            invocation, executor, ci, pipeline_kwargs,
            approval_source=AdvancingSource(clock, 3601),
        ).execute()

        assert result.failure_kind is FailureKind.GATE_TIMED_OUT
        assert runner.commands("terraform", "apply") == []

    def test_unauthorized_reviewer_cannot_approve(
        self, invocation, stage_runner, executor, runner, pipeline_kwargs, clock
    ) -> None:
        """Only listed reviewers count; the gate then times out."""
        ci = run_ci(invocation, stage_runner, pipeline_kwargs)

        class Source(StaticApprovalSource):
            def attach(self, gate) -> None:
                super().attach(gate)
                clock.advance(3601)

        result = self.deploy(
            invocation, executor, ci, pipeline_kwargs,
            approval_source=Source(["mallory"]),
            policy=ApprovalPolicy({"staging": ["alice"]}),
        ).execute()

        assert result.failure_kind is FailureKind.GATE_TIMED_OUT

    def test_no_changes_skips_gate(self, invocation, stage_runner, executor, runner, pipeline_kwargs) -> None:
        """An empty plan succeeds without approval or apply."""
        runner.plan_exit_code = 0
        ci = run_ci(invocation, stage_runner, pipeline_kwargs)
        pipeline = self.deploy(invocation, executor, ci, pipeline_kwargs)
        result = pipeline.execute()

        assert result.success
        assert result.outputs["approval_result"] == "skipped"
        assert result.outputs["apply_result"] == "skipped"
        assert pipeline.gates == []
        assert not Path(pipeline.artifact.path).exists()

    def test_plan_error_aborts(self, invocation, stage_runner, executor, runner, pipeline_kwargs) -> None:
        ci = run_ci(invocation, stage_runner, pipeline_kwargs)
        runner.respond("terraform", "plan", returncode=1, stderr="Error: Invalid provider configuration")
        result = self.deploy(invocation, executor, ci, pipeline_kwargs).execute()

        assert result.failure_kind is FailureKind.PLAN_ERROR
        assert "Invalid provider configuration" in result.stage("plan").detail
        assert result.outputs["approval_result"] == "skipped"

    def test_apply_timeout(self, invocation, stage_runner, executor, runner, pipeline_kwargs) -> None:
        ci = run_ci(invocation, stage_runner, pipeline_kwargs)
        runner.respond("terraform", "apply", raises=subprocess.TimeoutExpired(["terraform", "apply"], 3600))
        pipeline = self.deploy(
            invocation, executor, ci, pipeline_kwargs,
            approval_source=StaticApprovalSource(["alice"]),
        )
        result = pipeline.execute()

        assert result.failure_kind is FailureKind.TIMEOUT
        assert result.outputs["apply_result"] == "fail"
        assert "apply" not in result.artifacts
        assert not Path(pipeline.artifact.path).exists()

    def test_apply_failure_discards_artifact(
        self, invocation, stage_runner, executor, runner, pipeline_kwargs
    ) -> None:
        ci = run_ci(invocation, stage_runner, pipeline_kwargs)
        runner.respond("terraform", "apply", returncode=1, stderr="Error: creating bucket")
        pipeline = self.deploy(
            invocation, executor, ci, pipeline_kwargs,
            approval_source=StaticApprovalSource(["alice"]),
        )
        result = pipeline.execute()

        assert result.failure_kind is FailureKind.APPLY_ERROR
        assert "creating bucket" in result.stage("apply").detail
        assert not Path(pipeline.artifact.path).exists()

    def test_unexpected_plan_error_fails_plan_stage(
        self, invocation, stage_runner, executor, runner, pipeline_kwargs, monkeypatch
    ) -> None:
        """An unexpected exception is recorded as a failed stage, not a skipped one."""
        ci = run_ci(invocation, stage_runner, pipeline_kwargs)

        def broken_plan(invocation, destroy=False):
            raise RuntimeError("plan file unreadable")

        monkeypatch.setattr(executor, "plan", broken_plan)
        result = self.deploy(invocation, executor, ci, pipeline_kwargs).execute()

        assert result.failure_kind is FailureKind.STAGE_FAILURE
        assert result.outputs["plan_result"] == "fail"
        assert "plan file unreadable" in result.stage("plan").detail
        assert result.outputs["approval_result"] == "skipped"
        assert result.outputs["apply_result"] == "skipped"
        assert runner.commands("terraform", "apply") == []

    def test_cancel_while_waiting(self, invocation, stage_runner, executor, runner, pipeline_kwargs) -> None:
        """Cancelling during the gate ends the run cancelled with nothing applied."""
        ci = run_ci(invocation, stage_runner, pipeline_kwargs)

        class NoReviewers:
            def attach(self, gate) -> None:
                pass

            def detach(self) -> None:
                pass

        pipeline = self.deploy(invocation, executor, ci, pipeline_kwargs, approval_source=NoReviewers())
        outcome = {}
        thread = threading.Thread(target=lambda: outcome.update(result=pipeline.execute()))
        thread.start()

        for _ in range(200):
            if pipeline.gates:
                break
            time.sleep(0.01)
        pipeline.cancel()
        thread.join(timeout=5)

        result = outcome["result"]
        assert result.status is PipelineStatus.CANCELLED
        assert result.failure_kind is FailureKind.CANCELLED
        assert pipeline.gates[0].state is GateState.CANCELLED
        assert runner.commands("terraform", "apply") == []


class TestDestroyPipeline:
    """Tests for the doubly-approved destroy pipeline."""

    def destroy(self, invocation, executor, pipeline_kwargs, word="DESTROY", **kwargs):
        return DestroyPipeline(
            invocation, executor,
            confirmation=ConfirmationToken(supplied_word=word),
            **pipeline_kwargs, **kwargs,
        )

    def test_confirmation_mismatch_before_any_gate(self, invocation, executor, runner, pipeline_kwargs) -> None:
        """'destroy' is not 'DESTROY': fail before planning or creating a gate."""
        pipeline = self.destroy(
            invocation, executor, pipeline_kwargs, word="destroy",
            approval_source=StaticApprovalSource(["alice", "bob"]),
        )
        result = pipeline.execute()

        assert result.failure_kind is FailureKind.CONFIRMATION_MISMATCH
        assert pipeline.gates == []
        assert runner.calls == []
        assert result.outputs["confirm_result"] == "fail"
        assert result.outputs["destroy_result"] == "skipped"

    def test_two_distinct_reviewers_destroy(self, invocation, executor, runner, pipeline_kwargs) -> None:
        pipeline = self.destroy(
            invocation, executor, pipeline_kwargs,
            approval_source=StaticApprovalSource(["alice", "bob"]),
        )
        result = pipeline.execute()

        assert result.success
        assert [g.decision.approvers for g in pipeline.gates] == [["alice"], ["bob"]]
        assert "-destroy" in runner.commands("terraform", "plan")[0]
        assert runner.commands("terraform", "apply")[0][-1] == pipeline.artifact.path
        assert result.outputs == {
            "confirm_result": "pass",
            "plan_result": "pass",
            "approval_result": "pass",
            "final_approval_result": "pass",
            "destroy_result": "pass",
            "overall_status": "success",
        }
        assert not Path(pipeline.artifact.path).exists()

    def test_same_reviewer_twice_does_not_destroy(
        self, invocation, executor, runner, pipeline_kwargs, clock
    ) -> None:
        """A single reviewer cannot satisfy both gates."""
        class OnlyAlice(StaticApprovalSource):
            def attach(self, gate) -> None:
                super().attach(gate)
                if not gate.state.terminal:
                    clock.advance(3601)

        pipeline = self.destroy(
            invocation, executor, pipeline_kwargs,
            approval_source=OnlyAlice(["alice", "alice"]),
        )
        result = pipeline.execute()

        assert result.failure_kind is FailureKind.GATE_TIMED_OUT
        assert result.outputs["approval_result"] == "pass"
        assert result.outputs["final_approval_result"] == "fail"
        assert runner.commands("terraform", "apply") == []
        assert not Path(pipeline.artifact.path).exists()

    def test_final_rejection(self, invocation, executor, runner, pipeline_kwargs) -> None:
        class RejectSecond:
            def __init__(self) -> None:
                self.gates = 0

            def attach(self, gate) -> None:
                self.gates += 1
                source = StaticApprovalSource(["alice"]) if self.gates == 1 else StaticApprovalSource(
                    rejecters=["bob"]
                )
                source.attach(gate)

            def detach(self) -> None:
                pass

        result = self.destroy(invocation, executor, pipeline_kwargs, approval_source=RejectSecond()).execute()

        assert result.failure_kind is FailureKind.GATE_REJECTED
        assert runner.commands("terraform", "apply") == []

    def test_custom_confirmation_word(self, invocation, executor, pipeline_kwargs) -> None:
        pipeline = DestroyPipeline(
            invocation, executor,
            confirmation=ConfirmationToken(supplied_word="staging", expected_word="staging"),
            approval_source=StaticApprovalSource(["alice", "bob"]),
            **pipeline_kwargs,
        )
        assert pipeline.execute().success
