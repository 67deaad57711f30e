"""
Pipeline Schemas

Pydantic models for pipeline invocations, stage results, approval gates, plan
artifacts and pipeline results.

All models are immutable (frozen=True). Records produced internally use strict
mode; models built from caller-supplied parameters (CLI flags, YAML) are lax so
that strings and numbers coerce into their declared types.
"""

import re
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator


STAGE_ORDER = ("format", "validate", "lint", "test", "security", "compliance", "cost")

DEFAULT_TOOL_CONFIG_PATHS = {
    "tflint": ".tflint.hcl",
    "checkov": ".checkov.yaml",
    "conftest": "policy",
    "infracost": "infracost.yml",
}

_IDENTIFIER = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class StageStatus(str, Enum):
    """Outcome of a single stage."""
    PASS = "pass"
    FAIL = "fail"
    SKIPPED = "skipped"


class FailureKind(str, Enum):
    """Externally visible failure taxonomy."""
    STAGE_FAILURE = "stage_failure"
    GATE_REJECTED = "gate_rejected"
    GATE_TIMED_OUT = "gate_timed_out"
    CONFIRMATION_MISMATCH = "confirmation_mismatch"
    PLAN_ERROR = "plan_error"
    APPLY_ERROR = "apply_error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class GateState(str, Enum):
    """Approval gate states. Everything except PENDING is terminal."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self is not GateState.PENDING


class ApprovalAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class PipelineStatus(str, Enum):
    """Final pipeline status."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FeatureFlags(BaseModel):
    """Optional CI stages. A disabled stage is reported as skipped."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    enable_security_scan: bool = True
    enable_compliance: bool = True
    enable_cost_estimation: bool = True
    enable_lint: bool = True


class TimeoutBudget(BaseModel):
    """Per-stage wall-clock budgets in seconds."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    check_seconds: int = Field(600, ge=1, description="Budget for each CI verification stage")
    plan_seconds: int = Field(1800, ge=1, description="Budget for init + plan")
    apply_seconds: int = Field(3600, ge=1, description="Budget for apply")
    destroy_seconds: int = Field(3600, ge=1, description="Budget for destroy apply")


class PipelineInvocation(BaseModel):
    """
    Parameters for one pipeline run.

    Immutable for the lifetime of the run. Every optional field has a default,
    so callers only need to supply the working directory and environment.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    working_directory: str = Field(".", description="Terraform root module directory")
    environment: str = Field(..., description="Target environment name (e.g. 'production')")
    terraform_version: str = Field("1.6.6", description="Pinned terraform version or 'latest'")
    region: str = Field("us-east-1", description="Cloud region exported to tools")
    flags: FeatureFlags = Field(default_factory=FeatureFlags)
    tool_config_paths: Dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_TOOL_CONFIG_PATHS),
        description="Tool name -> config path (relative paths resolve against working_directory)",
    )
    timeouts: TimeoutBudget = Field(default_factory=TimeoutBudget)
    var_file: Optional[str] = Field(None, description="Optional -var-file for plan")
    backend_config: Optional[str] = Field(None, description="Optional -backend-config for init")

    @field_validator("working_directory")
    @classmethod
    def validate_working_directory(cls, v: str) -> str:
        """Reject empty paths and null bytes."""
        if not v or not v.strip():
            raise ValueError("Working directory cannot be empty")
        if "\0" in v:
            raise ValueError("Null bytes not allowed in paths")
        return v

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Environment names are simple identifiers."""
        if not v or not _IDENTIFIER.match(v):
            raise ValueError(
                f"Invalid environment name: '{v}'. "
                "Use letters, digits, dash, dot or underscore"
            )
        return v

    @field_validator("tool_config_paths")
    @classmethod
    def merge_tool_defaults(cls, v: Dict[str, str]) -> Dict[str, str]:
        """Caller-supplied paths override defaults tool by tool."""
        merged = dict(DEFAULT_TOOL_CONFIG_PATHS)
        merged.update(v)
        return merged

    def stage_enabled(self, stage_name: str) -> bool:
        """Whether a CI stage runs for this invocation."""
        flag = {
            "lint": self.flags.enable_lint,
            "security": self.flags.enable_security_scan,
            "compliance": self.flags.enable_compliance,
            "cost": self.flags.enable_cost_estimation,
        }
        return flag.get(stage_name, True)


class PipelineSecrets(BaseModel):
    """
    Opaque credential inputs.

    Values only ever reach tool subprocesses through their environment and are
    masked in reprs and logs.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    infracost_api_key: Optional[SecretStr] = None
    terraform_token: Optional[SecretStr] = None
    env: Dict[str, SecretStr] = Field(default_factory=dict)

    def to_env(self) -> Dict[str, str]:
        """Render secrets as environment variables for tool subprocesses."""
        env = {name: value.get_secret_value() for name, value in self.env.items()}
        if self.infracost_api_key is not None:
            env["INFRACOST_API_KEY"] = self.infracost_api_key.get_secret_value()
        if self.terraform_token is not None:
            env["TF_TOKEN_app_terraform_io"] = self.terraform_token.get_secret_value()
        return env


class StageResult(BaseModel):
    """Result of a single stage. Detail holds raw tool diagnostics verbatim."""
    model_config = ConfigDict(frozen=True, strict=True)

    stage_name: str
    status: StageStatus
    detail: str = ""
    failure_kind: Optional[FailureKind] = None
    duration_seconds: float = Field(0.0, ge=0)

    @property
    def passed(self) -> bool:
        return self.status is StageStatus.PASS


class ApprovalGateConfig(BaseModel):
    """
    Configuration for an approval gate.

    Defines what needs approval, for which environment, and how many distinct
    reviewers must approve.
    """
    model_config = ConfigDict(frozen=True, strict=True)

    gate_id: str = Field(..., description="Unique gate identifier")
    gate_name: str = Field(..., description="Human-readable gate name")
    environment: str = Field(..., description="Environment the approval is tied to")
    description: str = Field("", description="What is being approved")
    required_approvers: int = Field(1, description="Distinct approvals required", ge=1)
    timeout_seconds: int = Field(3600, description="Time allowed from gate creation", ge=1)
    excluded_reviewers: List[str] = Field(
        default_factory=list,
        description="Reviewers whose approval does not count (e.g. approvers of an earlier gate)",
    )

    @field_validator("gate_id")
    @classmethod
    def validate_gate_id(cls, v: str) -> str:
        """Validate gate ID format."""
        if not v or not v.strip():
            raise ValueError("Gate ID cannot be empty")
        if len(v) > 100:
            raise ValueError("Gate ID too long (max 100 chars)")
        if not all(c.isalnum() or c in "-_" for c in v):
            raise ValueError("Gate ID must be alphanumeric with dash/underscore only")
        return v


class ApprovalEvent(BaseModel):
    """An approval or rejection from a reviewer."""
    model_config = ConfigDict(frozen=True)

    reviewer: str
    action: ApprovalAction
    timestamp: str
    comment: Optional[str] = None

    @field_validator("reviewer")
    @classmethod
    def validate_reviewer(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Reviewer identity cannot be empty")
        return v.strip()


class ApprovalDecision(BaseModel):
    """
    Record of how an approval gate ended.

    Immutable record of who approved or rejected and when.
    """
    model_config = ConfigDict(frozen=True, strict=True)

    gate_id: str = Field(..., description="Gate identifier")
    environment: str = Field(..., description="Environment the gate protected")
    state: GateState = Field(..., description="Terminal gate state")
    approvers: List[str] = Field(default_factory=list, description="Distinct approving reviewers")
    rejected_by: Optional[str] = Field(None, description="Reviewer who rejected")
    timestamp: str = Field(..., description="ISO format decision time")
    comment: Optional[str] = Field(None, description="Reviewer comment")

    @field_validator("comment")
    @classmethod
    def validate_comment(cls, v: Optional[str]) -> Optional[str]:
        """Validate comment length."""
        if v is not None and len(v) > 1000:
            raise ValueError("Comment too long (max 1000 chars)")
        return v

    @property
    def approved(self) -> bool:
        return self.state is GateState.APPROVED


class ConfirmationToken(BaseModel):
    """Literal word the invoker must type before a destroy may proceed."""
    model_config = ConfigDict(frozen=True)

    supplied_word: str
    expected_word: str = "DESTROY"


class PlanArtifact(BaseModel):
    """
    A saved terraform plan.

    The sha256 digest is captured at plan time; apply refuses any file whose
    digest no longer matches.
    """
    model_config = ConfigDict(frozen=True, strict=True)

    plan_id: str
    path: str
    sha256: str
    size_bytes: int = Field(..., ge=0)
    environment: str
    working_directory: str
    destroy: bool = False
    has_changes: bool = True
    created_at: str


class ApplyResult(BaseModel):
    """Outcome of applying a plan artifact."""
    model_config = ConfigDict(frozen=True, strict=True)

    plan_id: str
    sha256: str
    destroy: bool
    detail: str = ""
    duration_seconds: float = Field(0.0, ge=0)


class PipelineResult(BaseModel):
    """
    Result of a pipeline run.

    Immutable record of what happened, with outputs keyed by stage name.
    """
    model_config = ConfigDict(frozen=True, strict=True)

    pipeline: str = Field(..., description="Pipeline name (ci, deploy, destroy)")
    run_id: str = Field(..., description="Unique run identifier")
    status: PipelineStatus
    stage_results: List[StageResult] = Field(default_factory=list)
    failure_kind: Optional[FailureKind] = None
    error: Optional[str] = None
    start_time: str
    end_time: str
    duration_seconds: float = Field(..., ge=0)
    audit_log_path: Optional[str] = None
    artifacts: Dict[str, Any] = Field(default_factory=dict, description="Plan/apply records")

    @property
    def success(self) -> bool:
        return self.status is PipelineStatus.SUCCEEDED

    @property
    def outputs(self) -> Dict[str, str]:
        """Named outputs: one per stage plus overall_status."""
        outputs = {f"{r.stage_name}_result": r.status.value for r in self.stage_results}
        outputs["overall_status"] = "success" if self.success else "failure"
        return outputs

    def stage(self, name: str) -> Optional[StageResult]:
        """Look up a stage result by name."""
        for result in self.stage_results:
            if result.stage_name == name:
                return result
        return None
