"""
Tests for tfpipelines.error_handling module.
"""

import pytest

from tfpipelines.error_handling import (
    ApplyError,
    ConfirmationMismatch,
    DiagnosticClassifier,
    DiagnosticType,
    GateRejected,
    GateTimedOut,
    PipelineCancelled,
    PlanError,
    StageFailure,
    StageTimeout,
    TroubleshootingGuide,
    format_error_with_guidance,
)
from tfpipelines.schemas import FailureKind


class TestErrorKinds:
    @pytest.mark.parametrize("error_class, kind", [
        (StageFailure, FailureKind.STAGE_FAILURE),
        (GateRejected, FailureKind.GATE_REJECTED),
        (GateTimedOut, FailureKind.GATE_TIMED_OUT),
        (ConfirmationMismatch, FailureKind.CONFIRMATION_MISMATCH),
        (PlanError, FailureKind.PLAN_ERROR),
        (ApplyError, FailureKind.APPLY_ERROR),
        (StageTimeout, FailureKind.TIMEOUT),
        (PipelineCancelled, FailureKind.CANCELLED),
    ])
    def test_kind(self, error_class, kind) -> None:
        assert error_class("boom").kind is kind

    def test_every_kind_has_guidance(self) -> None:
        for kind in FailureKind:
            guidance = TroubleshootingGuide.get_guidance(kind)
            assert guidance.what_happened
            assert guidance.troubleshooting


class TestDiagnosticClassifier:
    """Tests for classifying raw tool output."""

    def test_state_lock_in_detail(self) -> None:
        error = PlanError("terraform plan exited with 1", detail="Error: Error acquiring the state lock")
        assert DiagnosticClassifier.classify(error) is DiagnosticType.STATE_LOCK

    def test_credentials(self) -> None:
        error = PlanError("AssumeRoleWithWebIdentity failed for arn:aws:iam::1:role/x")
        assert DiagnosticClassifier.classify(error) is DiagnosticType.CREDENTIALS

    def test_provider(self) -> None:
        error = PlanError("init failed", detail="Failed to query available provider packages")
        assert DiagnosticClassifier.classify(error) is DiagnosticType.PROVIDER

    def test_plain_exception(self) -> None:
        assert DiagnosticClassifier.classify(RuntimeError("something odd")) is DiagnosticType.UNKNOWN


class TestFormatErrorWithGuidance:
    """Tests for the guidance block."""

    def test_sections(self) -> None:
        message = format_error_with_guidance(
            GateTimedOut("Deploy approval timed out after 3600s"),
            pipeline_name="deploy",
            stage_name="approval",
        )

        assert "WHAT HAPPENED:" in message
        assert "TROUBLESHOOTING:" in message
        assert "RECOVERY:" in message
        assert "Error (gate_timed_out)" in message
        assert "Pipeline: deploy" in message
        assert "Stage: approval" in message

    def test_diagnostic_hint_comes_first(self) -> None:
        error = PlanError("terraform plan exited with 1", detail="Error acquiring the state lock")
        message = format_error_with_guidance(error)
        assert "1. State is locked by another run" in message

    def test_unknown_error_is_stage_failure(self) -> None:
        message = format_error_with_guidance(ValueError("bad"))
        assert "Error (stage_failure): bad" in message
        assert "Pipeline:" not in message

    def test_format_method(self) -> None:
        error = ConfirmationMismatch("Confirmation word mismatch")
        assert error.format(pipeline_name="destroy") == format_error_with_guidance(error, pipeline_name="destroy")
