"""
Tool Subprocess Security

Every terraform, tflint, checkov, conftest and infracost call goes through
SecureSubprocess:
- Only allowlisted tool binaries run
- Commands are explicit argument lists; shell=True is never used
- Each execution is recorded in a daily JSONL audit file as a start/end pair
- Values passed through -var and -backend-config are redacted in the audit
  trail, and the environment (credentials, API keys) is never recorded
- Timeouts kill the process and propagate subprocess.TimeoutExpired
"""

import json
import logging
import os
import subprocess
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_COMMANDS = frozenset({
    "terraform",
    "tflint",
    "checkov",
    "conftest",
    "infracost",
})

SHELL_METACHARACTERS = frozenset("|&;$`()<>\n")

# Flags whose values may carry secrets: -var=name=value, -backend-config=key=value
REDACTED_FLAGS = ("-var", "-backend-config")
REDACTED = "***"


class SubprocessSecurityError(Exception):
    """Raised when a command is malformed or not allowlisted."""
    pass


def redact_arguments(command: List[str]) -> List[str]:
    """
    Mask inline values of secret-bearing flags.

    `-var=region=eu-west-1` becomes `-var=region=***`; a separated
    `-var region=eu-west-1` is masked the same way. File arguments such as
    `-var-file=prod.tfvars` or `-backend-config=backend.hcl` are kept.
    """
    redacted = []
    mask_next = False
    for arg in command:
        if mask_next:
            redacted.append(_mask_assignment(arg))
            mask_next = False
            continue
        flag, sep, value = arg.partition("=")
        if flag in REDACTED_FLAGS:
            if sep:
                redacted.append(f"{flag}={_mask_assignment(value)}")
            else:
                redacted.append(arg)
                mask_next = True
            continue
        redacted.append(arg)
    return redacted


def _mask_assignment(value: str) -> str:
    name, sep, _ = value.partition("=")
    return f"{name}={REDACTED}" if sep else value


class SecureSubprocess:
    """
    Allowlisted tool runner with an audit trail.

    Example:
        runner = SecureSubprocess(audit_log_dir=Path(".tfpipelines/audit"))

        result = runner.execute_command(
            ["terraform", "fmt", "-check", "-recursive"],
            timeout=600,
            cwd="infra",
            env={"TF_IN_AUTOMATION": "1"},
        )
        if result["returncode"] != 0:
            print(result["stdout"])
    """

    def __init__(
        self,
        allowed_commands: Optional[Iterable[str]] = None,
        audit_log_dir: Optional[Path] = None,
        strict_mode: bool = True
    ):
        """
        Args:
            allowed_commands: Tool binary names that may run (defaults to the infrastructure tools)
            audit_log_dir: Directory for audit logs (defaults to .tfpipelines/audit)
            strict_mode: Refuse to run anything when the allowlist is empty
        """
        if allowed_commands is None:
            allowed_commands = DEFAULT_ALLOWED_COMMANDS
        self.allowed_commands: Set[str] = set(allowed_commands)
        self.strict_mode = strict_mode
        self.audit_log_dir = audit_log_dir or Path(".tfpipelines/audit")
        self.audit_log_dir.mkdir(parents=True, exist_ok=True)
        self.audit_log_file = self.audit_log_dir / f"subprocess-{datetime.now().strftime('%Y%m%d')}.jsonl"

    def execute_command(
        self,
        command: List[str],
        timeout: float = 300,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        """
        Run one tool invocation.

        Args:
            command: Argument list, tool binary first
            timeout: Wall-clock limit in seconds
            cwd: Working directory
            env: Variables layered over the current environment

        Returns:
            Dict with returncode, stdout, stderr and duration (seconds)

        Raises:
            SubprocessSecurityError: Command malformed or not allowlisted
            subprocess.TimeoutExpired: Limit exceeded (the process is killed)
            OSError: Binary missing or not executable
        """
        self.validate(command)

        execution_id = self._record_start(command, cwd, timeout)
        full_env = {**os.environ, **env} if env else None
        started = time.monotonic()

        try:
            completed = subprocess.run(
                command,
                timeout=timeout,
                capture_output=True,
                text=True,
                errors="replace",
                cwd=cwd,
                env=full_env,
                shell=False,
            )
        except subprocess.TimeoutExpired:
            self._record_end(execution_id, "timeout", time.monotonic() - started)
            logger.warning("%s killed after %ss timeout", command[0], timeout)
            raise
        except OSError as e:
            self._record_end(execution_id, "error", time.monotonic() - started, error=str(e))
            raise

        duration = time.monotonic() - started
        outcome = "ok" if completed.returncode == 0 else "nonzero_exit"
        self._record_end(execution_id, outcome, duration, returncode=completed.returncode)

        return {
            "returncode": completed.returncode,
            "stdout": completed.stdout or "",
            "stderr": completed.stderr or "",
            "duration": duration,
        }

    def validate(self, command: List[str]) -> None:
        """
        Raises:
            SubprocessSecurityError: If the command may not run
        """
        if not command or not isinstance(command, list):
            raise SubprocessSecurityError("Command must be non-empty list")
        if not all(isinstance(arg, str) for arg in command):
            raise SubprocessSecurityError("All command arguments must be strings")

        binary = command[0]
        if SHELL_METACHARACTERS.intersection(binary):
            raise SubprocessSecurityError(f"Command name contains shell metacharacters: {binary}")

        if not self.allowed_commands:
            if self.strict_mode:
                raise SubprocessSecurityError(
                    "Empty command allowlist detected (security risk).\n"
                    "\n"
                    "Solutions:\n"
                    "  1. List the tools in allowed_commands in the config file\n"
                    "  2. Set strict_mode=False for testing/development only\n"
                )
            logger.warning("Empty command allowlist - running %s unchecked", binary)
            return

        if not self.is_command_allowed(binary):
            raise SubprocessSecurityError(
                f"Command '{Path(binary).name}' not in allowlist. "
                f"Allowed: {sorted(self.allowed_commands)}"
            )

    def is_command_allowed(self, command: str) -> bool:
        """Full paths are matched by basename (/usr/local/bin/terraform -> terraform)."""
        if not self.allowed_commands:
            return not self.strict_mode
        return Path(command).name in self.allowed_commands

    def _record_start(self, command: List[str], cwd: Optional[str], timeout: float) -> str:
        execution_id = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
        self._append({
            "execution_id": execution_id,
            "timestamp": datetime.now().isoformat(),
            "event": "execution_start",
            "tool": Path(command[0]).name,
            "command": redact_arguments(command),
            "cwd": cwd,
            "timeout": timeout,
        })
        logger.debug("exec %s (cwd=%s)", " ".join(redact_arguments(command)), cwd)
        return execution_id

    def _record_end(self, execution_id: str, outcome: str, duration: float, **details: Any) -> None:
        self._append({
            "execution_id": execution_id,
            "timestamp": datetime.now().isoformat(),
            "event": "execution_end",
            "outcome": outcome,
            "duration": round(duration, 3),
            **details,
        })

    def _append(self, entry: Dict[str, Any]) -> None:
        with open(self.audit_log_file, 'a', encoding='utf-8') as f:
            f.write(json.dumps(entry) + "\n")
