"""
PipelineOrchestrator Base Class

Foundation for the CI, deploy and destroy pipelines.

Key guarantees:
- Sequential stage execution in a fixed order; no two stages run concurrently
- One StageResult per declared stage, including stages never reached
- Gate, confirmation, plan, apply and timeout failures abort the rest of the run
- Cancellation between stages or while a gate is waiting, with no apply afterwards
- JSON audit file per run, written atomically
"""

import json
import logging
import re
import threading
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from tfpipelines.approval_gates import (
    ApprovalAuditLog,
    ApprovalGate,
    ApprovalPolicy,
    StaticApprovalSource,
)
from tfpipelines.console import console
from tfpipelines.error_handling import (
    PipelineCancelled,
    PipelineError,
    StageFailure,
)
from tfpipelines.output_formatter import OutputFormatter
from tfpipelines.progress import (
    Spinner,
    print_error,
    print_info,
    print_step_header,
    print_success,
    print_warning,
)
from tfpipelines.schemas import (
    ApprovalDecision,
    ApprovalGateConfig,
    FailureKind,
    PipelineInvocation,
    PipelineResult,
    PipelineStatus,
    StageResult,
    StageStatus,
)
from tfpipelines.stages import aggregate_success

logger = logging.getLogger(__name__)


class PipelineOrchestrator(ABC):
    """
    Base class for sequential, gated pipelines.

    Subclasses must implement:
    - _define_steps(): Return the ordered step definitions
    - _execute_step(): Execute one step and return its StageResult

    A step definition is a dict with:
    - id: Stage name reported in outputs (e.g. "plan")
    - name: Human-readable stage name
    - continue_on_failure: If True, a failed result does not stop later stages

    Example:
        class ChecksOnly(PipelineOrchestrator):
            pipeline_name = "checks"

            def _define_steps(self):
                return [{"id": "format", "name": "Format check", "continue_on_failure": True}]

            def _execute_step(self, step, context):
                return self.stage_runner.run_stage(FORMAT, self.invocation)
    """

    pipeline_name = "pipeline"

    def __init__(
        self,
        invocation: PipelineInvocation,
        run_id: Optional[str] = None,
        policy: Optional[ApprovalPolicy] = None,
        approval_source: Optional[Any] = None,
        gate_timeout_seconds: int = 3600,
        audit_dir: Optional[Path] = None,
        quiet_mode: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize pipeline orchestrator.

        Args:
            invocation: Immutable run parameters
            run_id: Unique ID for this run (default: generated)
            policy: Reviewer authorization per environment
            approval_source: Feeds reviewer events into gates (attach/detach)
            gate_timeout_seconds: Timeout for each approval gate
            audit_dir: Directory for audit files (default: .tfpipelines/audit)
            quiet_mode: If True, suppress console output
            clock: Monotonic clock, injectable for tests
        """
        self.invocation = invocation
        self.run_id = run_id or (
            f"{self.pipeline_name}-{datetime.now().strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"
        )
        self.policy = policy or ApprovalPolicy()
        self.approval_source = approval_source or StaticApprovalSource()
        self.gate_timeout_seconds = gate_timeout_seconds
        self.audit_dir = audit_dir or Path(".tfpipelines/audit")
        self.quiet_mode = quiet_mode
        self._clock = clock

        self.stage_results: List[StageResult] = []
        self.step_evidence: Dict[str, Any] = {}
        self.gates: List[ApprovalGate] = []
        self.audit_log: List[Dict[str, Any]] = []
        self.start_time = datetime.now()

        self._steps: List[Dict[str, Any]] = []
        self._cancel_event = threading.Event()
        self._gate_lock = threading.Lock()
        self._active_gate: Optional[ApprovalGate] = None
        self._approval_audit: Optional[ApprovalAuditLog] = None

    @abstractmethod
    def _define_steps(self) -> List[Dict[str, Any]]:
        """Return the ordered step definitions."""

    @abstractmethod
    def _execute_step(
        self,
        step: Dict[str, Any],
        context: Dict[str, Any]
    ) -> StageResult:
        """
        Execute a single step.

        Args:
            step: Step definition from _define_steps()
            context: Execution context (prior evidence, run metadata)

        Returns:
            StageResult for this step

        Raises:
            PipelineError to abort the pipeline
        """

    def _preflight(self) -> None:
        """Checks that must pass before the first stage. Raise PipelineError to abort."""

    def _cleanup(self) -> None:
        """Release what the run created. Called once after the last stage, whatever the outcome."""

    def cancel(self) -> None:
        """
        Cancel the run.

        A gate that is currently waiting is torn down immediately; no further
        stage starts.
        """
        self._cancel_event.set()
        with self._gate_lock:
            gate = self._active_gate
        if gate is not None:
            gate.cancel()
        logger.info("Pipeline %s cancelled", self.run_id)

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def execute(self) -> PipelineResult:
        """
        Execute the complete pipeline.

        Returns:
            PipelineResult with one StageResult per declared stage
        """
        self._steps = self._define_steps()
        started = self._clock()

        if not self.quiet_mode:
            console.print("\n" + "=" * 70, style="accent1")
            console.print(f"PIPELINE: {self.pipeline_name.upper()}", style="bold_primary")
            console.print("=" * 70, style="accent1")
            console.print(f"Run: {self.run_id}", style="secondary")
            console.print(f"Environment: {self.invocation.environment}", style="secondary")
            console.print(f"Working directory: {self.invocation.working_directory}", style="secondary")
            console.print(f"Stages: {len(self._steps)}", style="secondary")
            console.print("=" * 70, style="accent1")

        self._log_audit("pipeline_started", {
            "pipeline": self.pipeline_name,
            "run_id": self.run_id,
            "invocation": self.invocation.model_dump(mode="json"),
            "total_stages": len(self._steps),
        })

        failure: Optional[PipelineError] = None
        try:
            self._preflight()
            for index, step in enumerate(self._steps, 1):
                if self.cancelled:
                    raise PipelineCancelled(f"Pipeline cancelled before stage {step['id']}")
                self._execute_step_with_enforcement(step, index)

            if not aggregate_success(self.stage_results):
                failed = [r.stage_name for r in self.stage_results if r.status is StageStatus.FAIL]
                failure = StageFailure(f"{len(failed)} stage(s) failed: {', '.join(failed)}")

        except PipelineError as e:
            failure = e
        except KeyboardInterrupt:
            self.cancel()
            failure = PipelineCancelled("Pipeline interrupted by user (Ctrl+C)")
        except Exception as e:
            logger.exception("Unexpected error in pipeline %s", self.run_id)
            failure = StageFailure(f"Unexpected error: {e}")

        try:
            self._cleanup()
        except OSError as e:
            logger.warning("Cleanup after %s failed: %s", self.run_id, e)

        self._record_unreached_steps(failure)
        return self._finalize(failure, max(0.0, self._clock() - started))

    def _execute_step_with_enforcement(self, step: Dict[str, Any], index: int) -> StageResult:
        step_id = step["id"]
        step_name = step.get("name", step_id)

        if not self.quiet_mode:
            print_step_header(index, step_name, len(self._steps))

        self._log_audit("stage_started", {"stage": step_id})
        start = self._clock()

        try:
            result = self._execute_step(step, self._build_execution_context(step))
        except PipelineError as e:
            detail = f"{e}\n{e.detail}".strip() if e.detail else str(e)
            result = StageResult(
                stage_name=step_id,
                status=StageStatus.FAIL,
                detail=detail,
                failure_kind=e.kind,
                duration_seconds=max(0.0, self._clock() - start),
            )
            self.stage_results.append(result)
            self._log_audit("stage_failed", {"stage": step_id, "kind": e.kind.value, "error": str(e)})
            if not self.quiet_mode:
                print_error(f"{step_name} failed ({e.kind.value})")
            raise
        except Exception as e:
            logger.exception("Unexpected error in stage %s", step_id)
            result = StageResult(
                stage_name=step_id,
                status=StageStatus.FAIL,
                detail=f"Unexpected error: {e}",
                failure_kind=FailureKind.STAGE_FAILURE,
                duration_seconds=max(0.0, self._clock() - start),
            )

        self.stage_results.append(result)
        self._log_audit("stage_completed", {"stage": step_id, "status": result.status.value})

        if not self.quiet_mode:
            if result.status is StageStatus.PASS:
                print_success(f"{step_name} passed")
            elif result.status is StageStatus.SKIPPED:
                print_info(f"{step_name} skipped: {result.detail}")
            else:
                print_warning(f"{step_name} failed")

        if result.status is StageStatus.FAIL and not step.get("continue_on_failure"):
            raise StageFailure(f"{step_name} failed", detail=result.detail)

        return result

    def _record_unreached_steps(self, failure: Optional[PipelineError]) -> None:
        """Report every declared stage, even those an abort prevented."""
        reported = {r.stage_name for r in self.stage_results}
        reason = f"not run: pipeline aborted ({failure.kind.value})" if failure else "not run"
        for step in self._steps:
            if step["id"] not in reported:
                self.stage_results.append(StageResult(
                    stage_name=step["id"],
                    status=StageStatus.SKIPPED,
                    detail=reason,
                ))

    def _build_execution_context(self, step: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "pipeline": self.pipeline_name,
            "run_id": self.run_id,
            "stage": step["id"],
            "prior_evidence": dict(self.step_evidence),
            "stages_completed": [r.stage_name for r in self.stage_results],
        }

    def run_gate(self, config: ApprovalGateConfig, context: Optional[Dict[str, Any]] = None) -> ApprovalDecision:
        """
        Create an approval gate and block until it is approved.

        Args:
            config: Gate configuration
            context: Evidence shown to the reviewer

        Returns:
            The approving ApprovalDecision

        Raises:
            GateRejected, GateTimedOut, PipelineCancelled
        """
        if self._approval_audit is None:
            self._approval_audit = ApprovalAuditLog(self.audit_dir)

        gate = ApprovalGate(config, policy=self.policy, audit_log=self._approval_audit, clock=self._clock)
        self.gates.append(gate)
        with self._gate_lock:
            self._active_gate = gate
        if self.cancelled:
            gate.cancel()

        if not self.quiet_mode:
            console.print(OutputFormatter.approval_gate(config, context or {}))

        self._log_audit("gate_opened", {"gate_id": config.gate_id, "environment": config.environment})
        self.approval_source.attach(gate)
        try:
            decision = gate.require_approval()
        finally:
            self.approval_source.detach()
            with self._gate_lock:
                self._active_gate = None
            if gate.decision is not None:
                self._log_audit("gate_closed", {
                    "gate_id": config.gate_id,
                    "state": gate.decision.state.value,
                    "approvers": gate.decision.approvers,
                })

        return decision

    def gate_config(
        self,
        suffix: str,
        gate_name: str,
        description: str,
        excluded_reviewers: Optional[List[str]] = None,
    ) -> ApprovalGateConfig:
        """Gate configuration tied to this invocation's environment."""
        environment = re.sub(r"[^A-Za-z0-9_-]", "-", self.invocation.environment)
        return ApprovalGateConfig(
            gate_id=f"{self.pipeline_name}-{environment}-{suffix}",
            gate_name=gate_name,
            environment=self.invocation.environment,
            description=description,
            required_approvers=1,
            timeout_seconds=self.gate_timeout_seconds,
            excluded_reviewers=list(excluded_reviewers or []),
        )

    def create_spinner(self, message: str, budget_seconds: Optional[int] = None) -> Spinner:
        """Spinner for long-running terraform calls (no-op in quiet mode)."""
        return Spinner(message, budget_seconds=budget_seconds, enabled=not self.quiet_mode)

    def _log_audit(self, event_type: str, data: Dict[str, Any]) -> None:
        self.audit_log.append({
            "timestamp": datetime.now().isoformat(),
            "event_type": event_type,
            "data": data,
        })

    def _finalize(self, failure: Optional[PipelineError], duration: float) -> PipelineResult:
        if failure is None:
            status = PipelineStatus.SUCCEEDED
        elif failure.kind is FailureKind.CANCELLED:
            status = PipelineStatus.CANCELLED
        else:
            status = PipelineStatus.FAILED

        self._log_audit("pipeline_finalized", {
            "status": status.value,
            "failure_kind": failure.kind.value if failure else None,
            "error": str(failure) if failure else None,
        })
        audit_path = self._save_audit_log(status, failure)

        result = PipelineResult(
            pipeline=self.pipeline_name,
            run_id=self.run_id,
            status=status,
            stage_results=self._ordered_results(),
            failure_kind=failure.kind if failure else None,
            error=str(failure) if failure else None,
            start_time=self.start_time.isoformat(),
            end_time=datetime.now().isoformat(),
            duration_seconds=duration,
            audit_log_path=str(audit_path),
            artifacts=dict(self.step_evidence),
        )

        if not self.quiet_mode:
            guidance = failure.format(pipeline_name=self.pipeline_name) if failure else None
            console.print(OutputFormatter.pipeline_summary(result, guidance))
            console.print(f"\nAudit log: {audit_path}", style="dim")

        return result

    def _ordered_results(self) -> List[StageResult]:
        order = {step["id"]: i for i, step in enumerate(self._steps)}
        return sorted(self.stage_results, key=lambda r: order.get(r.stage_name, len(order)))

    def _save_audit_log(self, status: PipelineStatus, failure: Optional[PipelineError]) -> Path:
        """
        Save the run's audit log to disk.

        Written to a temp file then renamed so a crash never leaves a partial file.
        """
        self.audit_dir.mkdir(parents=True, exist_ok=True)
        audit_file = self.audit_dir / f"{self.run_id}.json"

        audit_data = {
            "pipeline": self.pipeline_name,
            "run_id": self.run_id,
            "status": status.value,
            "start_time": self.start_time.isoformat(),
            "end_time": datetime.now().isoformat(),
            "stage_results": [r.model_dump(mode="json") for r in self.stage_results],
            "step_evidence": self.step_evidence,
            "audit_log": self.audit_log,
        }
        if failure is not None:
            audit_data["failure_kind"] = failure.kind.value
            audit_data["error"] = str(failure)

        temp_file = audit_file.with_suffix(".json.tmp")
        with open(temp_file, "w", encoding="utf-8") as f:
            json.dump(audit_data, f, indent=2, default=str)
        temp_file.replace(audit_file)
        return audit_file
