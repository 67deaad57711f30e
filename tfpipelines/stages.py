"""
Verification Stages

The seven CI checks, in their fixed order, and the runner that turns one tool
invocation into one StageResult.

Tool contract: exit code plus JSON (or plain text) on stdout. A nonzero exit
code or output that cannot be interpreted is a failure, with the tool's raw
output kept verbatim in the result detail. A missing or crashing binary fails
that stage only. Nothing is retried.
"""

import json
import logging
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from tfpipelines.schemas import (
    FailureKind,
    PipelineInvocation,
    StageResult,
    StageStatus,
)
from tfpipelines.subprocess_security import SubprocessSecurityError

logger = logging.getLogger(__name__)

Interpretation = Tuple[StageStatus, str]


class ToolRunner(Protocol):
    """Anything that runs a command like SecureSubprocess.execute_command."""

    def execute_command(
        self,
        command: List[str],
        timeout: float = 300,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        ...


class MalformedOutput(ValueError):
    """Tool exited cleanly but its output could not be interpreted."""


@dataclass(frozen=True)
class VerificationStage:
    """A CI stage: the commands it runs and how to read the last one's output."""
    name: str
    flag: Optional[str]
    build_commands: Callable[[PipelineInvocation, Path], List[List[str]]]
    interpret: Callable[[Dict[str, Any]], Interpretation]


def raw_output(result: Dict[str, Any]) -> str:
    """Combined stdout/stderr exactly as the tool produced them."""
    parts = [result.get("stdout") or "", result.get("stderr") or ""]
    return "\n".join(part for part in parts if part)


def _load_json(result: Dict[str, Any]) -> Any:
    try:
        return json.loads(result.get("stdout") or "")
    except json.JSONDecodeError as e:
        raise MalformedOutput(f"invalid JSON: {e}")


def resolve_tool_config(
    invocation: PipelineInvocation,
    workdir: Path,
    tool: str,
) -> Optional[Path]:
    """
    Resolve a tool config path against the working directory.

    Returns:
        The path if it exists, otherwise None (the tool falls back to its defaults)
    """
    configured = invocation.tool_config_paths.get(tool)
    if not configured:
        return None
    path = Path(configured)
    if not path.is_absolute():
        path = workdir / path
    return path if path.exists() else None


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _format_commands(invocation: PipelineInvocation, workdir: Path) -> List[List[str]]:
    return [["terraform", "fmt", "-check", "-recursive", "-diff"]]


def _validate_commands(invocation: PipelineInvocation, workdir: Path) -> List[List[str]]:
    return [
        ["terraform", "init", "-backend=false", "-input=false", "-no-color"],
        ["terraform", "validate", "-json", "-no-color"],
    ]


def _lint_commands(invocation: PipelineInvocation, workdir: Path) -> List[List[str]]:
    command = ["tflint", "--format", "json"]
    config = resolve_tool_config(invocation, workdir, "tflint")
    if config is not None:
        command.extend(["--config", str(config)])
    return [command]


def _test_commands(invocation: PipelineInvocation, workdir: Path) -> List[List[str]]:
    return [["terraform", "test", "-no-color"]]


def _security_commands(invocation: PipelineInvocation, workdir: Path) -> List[List[str]]:
    command = ["checkov", "-d", ".", "-o", "json", "--quiet"]
    config = resolve_tool_config(invocation, workdir, "checkov")
    if config is not None:
        command.extend(["--config-file", str(config)])
    return [command]


def _compliance_commands(invocation: PipelineInvocation, workdir: Path) -> List[List[str]]:
    policy = resolve_tool_config(invocation, workdir, "conftest")
    if policy is None:
        raise FileNotFoundError(
            f"Policy directory not found: {invocation.tool_config_paths.get('conftest')}"
        )
    targets = sorted(p.name for p in workdir.glob("*.tf")) or ["."]
    return [["conftest", "test", "--output", "json", "--policy", str(policy), *targets]]


def _cost_commands(invocation: PipelineInvocation, workdir: Path) -> List[List[str]]:
    command = ["infracost", "breakdown", "--format", "json", "--no-color"]
    config = resolve_tool_config(invocation, workdir, "infracost")
    if config is not None:
        command.extend(["--config-file", str(config)])
    else:
        command.extend(["--path", "."])
    return [command]


# ---------------------------------------------------------------------------
# Interpreters
# ---------------------------------------------------------------------------

def interpret_exit_code(result: Dict[str, Any]) -> Interpretation:
    if result["returncode"] != 0:
        return StageStatus.FAIL, raw_output(result)
    return StageStatus.PASS, (result.get("stdout") or "").strip()


def interpret_validate(result: Dict[str, Any]) -> Interpretation:
    if result["returncode"] != 0:
        return StageStatus.FAIL, raw_output(result)
    data = _load_json(result)
    if not isinstance(data, dict) or not isinstance(data.get("valid"), bool):
        raise MalformedOutput("missing 'valid' field")
    if not data["valid"]:
        return StageStatus.FAIL, raw_output(result)
    return StageStatus.PASS, f"valid ({data.get('warning_count', 0)} warning(s))"


def interpret_tflint(result: Dict[str, Any]) -> Interpretation:
    if result["returncode"] != 0:
        return StageStatus.FAIL, raw_output(result)
    data = _load_json(result)
    if not isinstance(data, dict) or not isinstance(data.get("issues"), list):
        raise MalformedOutput("missing 'issues' list")
    return StageStatus.PASS, f"{len(data['issues'])} issue(s) below failure threshold"


def interpret_checkov(result: Dict[str, Any]) -> Interpretation:
    if result["returncode"] != 0:
        return StageStatus.FAIL, raw_output(result)
    data = _load_json(result)
    reports = data if isinstance(data, list) else [data]
    passed = failed = skipped = 0
    for report in reports:
        if not isinstance(report, dict):
            raise MalformedOutput("unexpected report type")
        # An empty scan prints the bare summary instead of a report
        summary = report.get("summary", report)
        if not isinstance(summary, dict) or "failed" not in summary:
            raise MalformedOutput("missing 'summary.failed'")
        passed += int(summary.get("passed", 0))
        failed += int(summary["failed"])
        skipped += int(summary.get("skipped", 0))
    if failed:
        return StageStatus.FAIL, raw_output(result)
    return StageStatus.PASS, f"passed={passed} failed=0 skipped={skipped}"


def interpret_conftest(result: Dict[str, Any]) -> Interpretation:
    if result["returncode"] != 0:
        return StageStatus.FAIL, raw_output(result)
    data = _load_json(result)
    if not isinstance(data, list):
        raise MalformedOutput("expected a list of file results")
    successes = failures = warnings = 0
    for entry in data:
        if not isinstance(entry, dict):
            raise MalformedOutput("unexpected file result type")
        successes += int(entry.get("successes", 0))
        failures += len(entry.get("failures") or [])
        warnings += len(entry.get("warnings") or [])
    if failures:
        return StageStatus.FAIL, raw_output(result)
    return StageStatus.PASS, f"{len(data)} file(s), {successes} passed, {warnings} warning(s)"


def interpret_infracost(result: Dict[str, Any]) -> Interpretation:
    if result["returncode"] != 0:
        return StageStatus.FAIL, raw_output(result)
    data = _load_json(result)
    if not isinstance(data, dict) or "totalMonthlyCost" not in data:
        raise MalformedOutput("missing 'totalMonthlyCost'")
    currency = data.get("currency", "USD")
    return StageStatus.PASS, f"Estimated monthly cost: {data['totalMonthlyCost']} {currency}"


VERIFICATION_STAGES = (
    VerificationStage("format", None, _format_commands, interpret_exit_code),
    VerificationStage("validate", None, _validate_commands, interpret_validate),
    VerificationStage("lint", "enable_lint", _lint_commands, interpret_tflint),
    VerificationStage("test", None, _test_commands, interpret_exit_code),
    VerificationStage("security", "enable_security_scan", _security_commands, interpret_checkov),
    VerificationStage("compliance", "enable_compliance", _compliance_commands, interpret_conftest),
    VerificationStage("cost", "enable_cost_estimation", _cost_commands, interpret_infracost),
)


def aggregate_success(results: List[StageResult]) -> bool:
    """CI succeeds iff every stage that ran passed."""
    return all(r.status is StageStatus.PASS for r in results if r.status is not StageStatus.SKIPPED)


class VerificationStageRunner:
    """
    Runs verification stages against an invocation's working directory.

    Any tool failure, including an unexpected report shape, fails only its
    own stage; run_stage does not raise for it.
    """

    def __init__(
        self,
        runner: ToolRunner,
        env: Optional[Dict[str, str]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.runner = runner
        self.env = env or {}
        self._clock = clock

    def run_stage(self, stage: VerificationStage, invocation: PipelineInvocation) -> StageResult:
        """
        Run one stage and map its outcome to a StageResult.

        Args:
            stage: Stage definition
            invocation: Pipeline invocation

        Returns:
            StageResult (skipped if the stage's flag is off)
        """
        if not invocation.stage_enabled(stage.name):
            return StageResult(
                stage_name=stage.name,
                status=StageStatus.SKIPPED,
                detail=f"disabled ({stage.flag}=false)",
            )

        workdir = Path(invocation.working_directory)
        budget = invocation.timeouts.check_seconds
        start = self._clock()
        deadline = start + budget

        def finish(status: StageStatus, detail: str, kind: Optional[FailureKind] = None) -> StageResult:
            if status is StageStatus.FAIL and kind is None:
                kind = FailureKind.STAGE_FAILURE
            return StageResult(
                stage_name=stage.name,
                status=status,
                detail=detail,
                failure_kind=kind,
                duration_seconds=max(0.0, self._clock() - start),
            )

        try:
            commands = stage.build_commands(invocation, workdir)
            result: Dict[str, Any] = {}
            for index, command in enumerate(commands):
                remaining = deadline - self._clock()
                if remaining <= 0:
                    raise subprocess.TimeoutExpired(command, budget)
                result = self.runner.execute_command(
                    command, timeout=remaining, cwd=str(workdir), env=self.env
                )
                if result["returncode"] != 0 and index < len(commands) - 1:
                    return finish(StageStatus.FAIL, raw_output(result))

            try:
                status, detail = stage.interpret(result)
            except MalformedOutput:
                raise
            except (TypeError, ValueError, KeyError, AttributeError) as e:
                raise MalformedOutput(f"unexpected report shape: {e}") from e
            logger.debug("Stage %s -> %s", stage.name, status.value)
            return finish(status, detail)

        except subprocess.TimeoutExpired:
            return finish(
                StageStatus.FAIL,
                f"{stage.name} exceeded its {budget}s budget and was aborted",
                FailureKind.TIMEOUT,
            )
        except MalformedOutput as e:
            return finish(StageStatus.FAIL, f"Malformed {stage.name} output ({e}):\n{raw_output(result)}")
        except (OSError, UnicodeError, SubprocessSecurityError) as e:
            logger.warning("Stage %s could not run its tool: %s", stage.name, e)
            return finish(StageStatus.FAIL, f"Tool invocation failed: {e}")
