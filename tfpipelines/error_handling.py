"""
Error Handling for Terraform Pipelines.

Provides:
- A PipelineError hierarchy, one subclass per failure kind
- Classification of raw terraform diagnostics (state lock, credentials, provider)
- Structured error messages with troubleshooting guidance

No failure is ever retried automatically. Recovery is always a human
re-invocation after fixing the underlying cause.

Usage:
    from tfpipelines.error_handling import format_error_with_guidance, PlanError

    try:
        artifact = executor.plan(invocation)
    except PlanError as e:
        print(format_error_with_guidance(e, pipeline_name="deploy", stage_name="plan"))
"""
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from tfpipelines.schemas import FailureKind


class PipelineError(Exception):
    """
    Base pipeline exception carrying its failure kind.

    Usage:
        raise PlanError("terraform plan exited with 1", detail=stderr)
    """

    kind = FailureKind.STAGE_FAILURE

    def __init__(
        self,
        message: str,
        detail: str = "",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.detail = detail
        self.context = context or {}

    def get_guidance(self) -> "ErrorGuidance":
        """Get troubleshooting guidance for this error."""
        return TroubleshootingGuide.get_guidance(self.kind, DiagnosticClassifier.classify(self))

    def format(self, pipeline_name: str = "", stage_name: str = "") -> str:
        """Format this error with full guidance."""
        return format_error_with_guidance(self, pipeline_name=pipeline_name, stage_name=stage_name)


class StageFailure(PipelineError):
    kind = FailureKind.STAGE_FAILURE


class GateRejected(PipelineError):
    kind = FailureKind.GATE_REJECTED


class GateTimedOut(PipelineError):
    kind = FailureKind.GATE_TIMED_OUT


class ConfirmationMismatch(PipelineError):
    kind = FailureKind.CONFIRMATION_MISMATCH


class PlanError(PipelineError):
    kind = FailureKind.PLAN_ERROR


class ApplyError(PipelineError):
    kind = FailureKind.APPLY_ERROR


class StageTimeout(PipelineError):
    kind = FailureKind.TIMEOUT


class PipelineCancelled(PipelineError):
    kind = FailureKind.CANCELLED


class DiagnosticType(Enum):
    """Classification of raw terraform/tool diagnostics."""
    STATE_LOCK = "state_lock"         # Another run holds the state lock
    CREDENTIALS = "credentials"       # Auth, expired token, OIDC exchange
    PROVIDER = "provider"             # Provider install/version problems
    CONFIGURATION = "configuration"   # HCL errors, missing variables
    UNKNOWN = "unknown"


class DiagnosticClassifier:
    """Classify error text by the underlying cause."""

    PATTERNS = {
        DiagnosticType.STATE_LOCK: [
            r"error acquiring the state lock",
            r"conditionalcheckfailed",
            r"lock info",
            r"state.*locked",
        ],
        DiagnosticType.CREDENTIALS: [
            r"no valid credential sources",
            r"expiredtoken",
            r"invalidclienttokenid",
            r"accessdenied",
            r"unauthorized",
            r"assumerolewithwebidentity",
            r"token.*expired",
        ],
        DiagnosticType.PROVIDER: [
            r"failed to query available provider packages",
            r"could not load plugin",
            r"incompatible provider version",
            r"inconsistent dependency lock file",
        ],
        DiagnosticType.CONFIGURATION: [
            r"unsupported argument",
            r"no value for required variable",
            r"reference to undeclared",
            r"invalid.*block",
            r"argument or block definition required",
        ],
    }

    @classmethod
    def classify(cls, error: Exception) -> DiagnosticType:
        """
        Classify an error by its message and captured tool output.

        Args:
            error: The exception to classify

        Returns:
            DiagnosticType classification
        """
        error_text = str(error)
        if isinstance(error, PipelineError) and error.detail:
            error_text = f"{error_text}\n{error.detail}"

        for diagnostic_type, patterns in cls.PATTERNS.items():
            for pattern in patterns:
                if re.search(pattern, error_text, re.IGNORECASE):
                    return diagnostic_type

        return DiagnosticType.UNKNOWN


@dataclass
class ErrorGuidance:
    """Structured error guidance."""
    kind: FailureKind
    what_happened: str
    troubleshooting: List[str]
    recovery: str


class TroubleshootingGuide:
    """Provides troubleshooting guidance based on failure kind."""

    GUIDES = {
        FailureKind.STAGE_FAILURE: {
            "what_happened": "One or more verification stages failed.",
            "troubleshooting": [
                "Review each failing stage's detail output below",
                "Run the failing tool locally in the working directory",
                "Disable optional stages only if the check does not apply",
            ],
            "recovery": "Fix the reported issues, then re-run the pipeline",
        },
        FailureKind.GATE_REJECTED: {
            "what_happened": "A reviewer rejected the approval gate.",
            "troubleshooting": [
                "Read the reviewer's comment in the audit log",
                "Address the concerns and produce a new plan",
            ],
            "recovery": "Re-run the pipeline to request a fresh approval",
        },
        FailureKind.GATE_TIMED_OUT: {
            "what_happened": "No decision was recorded before the approval gate expired.",
            "troubleshooting": [
                "Check that reviewers for this environment were notified",
                "Verify the reviewer list for the environment in the config file",
                "Increase gate_timeout_seconds if reviews routinely take longer",
            ],
            "recovery": "Re-run the pipeline; the expired plan is discarded",
        },
        FailureKind.CONFIRMATION_MISMATCH: {
            "what_happened": "The confirmation word did not match exactly (case-sensitive).",
            "troubleshooting": [
                "Type the expected word exactly, including case",
            ],
            "recovery": "Re-run the destroy pipeline with the correct confirmation word",
        },
        FailureKind.PLAN_ERROR: {
            "what_happened": "Terraform could not compute a plan.",
            "troubleshooting": [
                "Run 'terraform init' and 'terraform plan' locally in the working directory",
                "Check the pinned terraform version matches the installed binary",
                "Verify cloud credentials and the OIDC role configuration",
            ],
            "recovery": "Fix the plan error, then re-run the pipeline",
        },
        FailureKind.APPLY_ERROR: {
            "what_happened": "Terraform failed while applying the approved plan.",
            "troubleshooting": [
                "Inspect the apply output for the failing resource",
                "Run 'terraform state list' to see what was created",
                "Check for drift introduced outside this pipeline",
            ],
            "recovery": "Fix the cause, then re-run to plan and approve again",
        },
        FailureKind.TIMEOUT: {
            "what_happened": "A stage exceeded its wall-clock budget and was aborted.",
            "troubleshooting": [
                "Check for hung provider calls or very large resource graphs",
                "Raise the relevant timeout in the config file if the work is legitimately long",
            ],
            "recovery": "Re-run the pipeline after addressing the slow stage",
        },
        FailureKind.CANCELLED: {
            "what_happened": "The pipeline was cancelled.",
            "troubleshooting": [
                "No apply or destroy ran after cancellation",
            ],
            "recovery": "Re-run the pipeline when ready",
        },
    }

    DIAGNOSTIC_HINTS = {
        DiagnosticType.STATE_LOCK: "State is locked by another run; wait for it or 'terraform force-unlock' the stale lock",
        DiagnosticType.CREDENTIALS: "Credentials were rejected; check the OIDC role trust policy and token audience",
        DiagnosticType.PROVIDER: "Provider installation failed; check .terraform.lock.hcl and registry access",
        DiagnosticType.CONFIGURATION: "Terraform configuration is invalid; run 'terraform validate' locally",
    }

    @classmethod
    def get_guidance(
        cls,
        kind: FailureKind,
        diagnostic: DiagnosticType = DiagnosticType.UNKNOWN,
    ) -> ErrorGuidance:
        """
        Get troubleshooting guidance for a failure kind.

        Args:
            kind: The failure kind
            diagnostic: Optional diagnostic classification of the raw output

        Returns:
            ErrorGuidance with troubleshooting steps
        """
        guide = cls.GUIDES[kind]
        troubleshooting = list(guide["troubleshooting"])
        hint = cls.DIAGNOSTIC_HINTS.get(diagnostic)
        if hint:
            troubleshooting.insert(0, hint)

        return ErrorGuidance(
            kind=kind,
            what_happened=guide["what_happened"],
            troubleshooting=troubleshooting,
            recovery=guide["recovery"],
        )


def format_error_with_guidance(
    error: Exception,
    pipeline_name: str = "",
    stage_name: str = "",
) -> str:
    """
    Format an error with comprehensive troubleshooting guidance.

    Errors that are not PipelineErrors are reported as stage failures.

    Args:
        error: The exception that occurred
        pipeline_name: Name of the pipeline that failed
        stage_name: Name of the stage that failed

    Returns:
        Formatted error message with guidance
    """
    kind = error.kind if isinstance(error, PipelineError) else FailureKind.STAGE_FAILURE
    guidance = TroubleshootingGuide.get_guidance(kind, DiagnosticClassifier.classify(error))

    lines = [
        f"\n{'=' * 70}",
        "WHAT HAPPENED:",
        f"{'=' * 70}",
        "",
        guidance.what_happened,
        "",
        f"Error ({kind.value}): {error}",
    ]

    if pipeline_name:
        lines.append(f"Pipeline: {pipeline_name}")
    if stage_name:
        lines.append(f"Stage: {stage_name}")

    lines.extend([
        "",
        f"{'=' * 70}",
        "TROUBLESHOOTING:",
        f"{'=' * 70}",
        "",
    ])

    for i, step in enumerate(guidance.troubleshooting, 1):
        lines.append(f"{i}. {step}")

    lines.extend([
        "",
        f"{'=' * 70}",
        "RECOVERY:",
        f"{'=' * 70}",
        "",
        guidance.recovery,
    ])

    return "\n".join(lines)
