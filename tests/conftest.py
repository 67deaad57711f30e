"""Pytest configuration and shared fixtures."""

import json
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

from tfpipelines.executor import TerraformExecutor
from tfpipelines.schemas import PipelineInvocation
from tfpipelines.stages import VerificationStageRunner

_OUT = re.compile(r"^-out=(.+)$")


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRunner:
    """
    Stands in for SecureSubprocess.

    Every tool answers with a clean, passing result unless a test registers a
    response for a command prefix. `terraform plan` writes `plan_bytes` to its
    -out path the way terraform would.
    """

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.responses: Dict[Tuple[str, ...], Dict[str, Any]] = {}
        self.plan_bytes = b"terraform-plan-v1"
        self.plan_exit_code = 2
        self.terraform_version = "1.6.6"

    def respond(
        self,
        *prefix: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        raises: Optional[BaseException] = None,
    ) -> None:
        self.responses[prefix] = {
            "returncode": returncode,
            "stdout": stdout,
            "stderr": stderr,
            "raises": raises,
        }

    def commands(self, *prefix: str) -> List[List[str]]:
        return [c for c in self.calls if tuple(c[:len(prefix)]) == prefix]

    def execute_command(
        self,
        command: List[str],
        timeout: float = 300,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        self.calls.append(list(command))

        response = self._registered(command)
        if response is not None:
            if response["raises"] is not None:
                raise response["raises"]
            result = {k: response[k] for k in ("returncode", "stdout", "stderr")}
        else:
            result = self._default(command)

        if command[:2] == ["terraform", "plan"] and result["returncode"] in (0, 2):
            for arg in command:
                match = _OUT.match(arg)
                if match:
                    Path(match.group(1)).write_bytes(self.plan_bytes)

        result["duration"] = 0.01
        return result

    def _registered(self, command: List[str]) -> Optional[Dict[str, Any]]:
        for prefix in sorted(self.responses, key=len, reverse=True):
            if tuple(command[:len(prefix)]) == prefix:
                return self.responses[prefix]
        return None

    def _default(self, command: List[str]) -> Dict[str, Any]:
        ok = {"returncode": 0, "stdout": "", "stderr": ""}
        tool, action = command[0], command[1] if len(command) > 1 else ""

        if tool == "terraform" and action == "version":
            ok["stdout"] = json.dumps({"terraform_version": self.terraform_version})
        elif tool == "terraform" and action == "validate":
            ok["stdout"] = json.dumps({"valid": True, "warning_count": 0, "diagnostics": []})
        elif tool == "terraform" and action == "plan":
            ok["returncode"] = self.plan_exit_code
        elif tool == "terraform" and action == "apply":
            ok["stdout"] = "Apply complete! Resources: 1 added, 0 changed, 0 destroyed."
        elif tool == "tflint":
            ok["stdout"] = json.dumps({"issues": [], "errors": []})
        elif tool == "checkov":
            ok["stdout"] = json.dumps({"summary": {"passed": 4, "failed": 0, "skipped": 0}})
        elif tool == "conftest":
            ok["stdout"] = json.dumps([
                {"filename": "main.tf", "namespace": "main", "successes": 3, "failures": [], "warnings": []}
            ])
        elif tool == "infracost":
            ok["stdout"] = json.dumps({"totalMonthlyCost": "42.10", "currency": "USD"})
        return ok


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    """A terraform root module with a policy directory."""
    root = tmp_path / "infra"
    (root / "policy").mkdir(parents=True)
    (root / "main.tf").write_text('resource "null_resource" "example" {}\n', encoding="utf-8")
    (root / "policy" / "deny.rego").write_text("package main\n", encoding="utf-8")
    return root


@pytest.fixture
def invocation(workdir: Path) -> PipelineInvocation:
    return PipelineInvocation(working_directory=str(workdir), environment="staging")


@pytest.fixture
def audit_dir(tmp_path: Path) -> Path:
    return tmp_path / "audit"


@pytest.fixture
def stage_runner(runner: FakeRunner, clock: FakeClock) -> VerificationStageRunner:
    return VerificationStageRunner(runner, clock=clock)


@pytest.fixture
def executor(runner: FakeRunner, clock: FakeClock, tmp_path: Path) -> TerraformExecutor:
    return TerraformExecutor(runner, artifact_dir=tmp_path / "plans", clock=clock)


@pytest.fixture
def pipeline_kwargs(audit_dir: Path, clock: FakeClock) -> Dict[str, Any]:
    """Orchestrator options shared by pipeline tests."""
    return {"audit_dir": audit_dir, "quiet_mode": True, "clock": clock}
