"""
Tests for tfpipelines.subprocess_security module.
"""

import json
import subprocess

import pytest

from tfpipelines.subprocess_security import SecureSubprocess, SubprocessSecurityError, redact_arguments


@pytest.fixture
def secure(tmp_path) -> SecureSubprocess:
    return SecureSubprocess(allowed_commands={"terraform"}, audit_log_dir=tmp_path / "audit")


def read_audit(secure):
    lines = secure.audit_log_file.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


class FakeCompleted:
    def __init__(self, returncode=0, stdout="", stderr=""):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class TestValidation:
    """Tests for the command allowlist."""

    def test_not_in_allowlist(self, secure) -> None:
        with pytest.raises(SubprocessSecurityError, match="not in allowlist"):
            secure.execute_command(["rm", "-rf", "/"])

    def test_full_path_uses_basename(self, secure) -> None:
        assert secure.is_command_allowed("/usr/local/bin/terraform")
        assert not secure.is_command_allowed("/usr/bin/tflint")

    @pytest.mark.parametrize("command", [[], "terraform plan", ["terraform", 3]])
    def test_malformed(self, secure, command) -> None:
        with pytest.raises(SubprocessSecurityError):
            secure.execute_command(command)

    def test_shell_metacharacters(self, secure) -> None:
        with pytest.raises(SubprocessSecurityError, match="metacharacters"):
            secure.execute_command(["terraform;rm"])

    def test_empty_allowlist_strict(self, tmp_path) -> None:
        secure = SecureSubprocess(allowed_commands=set(), audit_log_dir=tmp_path)
        with pytest.raises(SubprocessSecurityError, match="Empty command allowlist"):
            secure.execute_command(["terraform", "version"])
        assert not secure.is_command_allowed("terraform")

    def test_default_allowlist(self, tmp_path) -> None:
        secure = SecureSubprocess(audit_log_dir=tmp_path)
        assert secure.allowed_commands == {"terraform", "tflint", "checkov", "conftest", "infracost"}


class TestExecution:
    """Tests for execution and the audit trail."""

    def test_success_is_audited(self, secure, monkeypatch) -> None:
        captured = {}

        def fake_run(command, **kwargs):
            captured.update(kwargs)
            return FakeCompleted(returncode=0, stdout="ok")

        monkeypatch.setattr(subprocess, "run", fake_run)
        result = secure.execute_command(["terraform", "fmt", "-check"], cwd="infra", env={"TF_TOKEN": "secret"})

        assert result["returncode"] == 0
        assert result["stdout"] == "ok"
        assert captured["shell"] is False
        assert captured["env"]["TF_TOKEN"] == "secret"

        entries = read_audit(secure)
        assert [e["event"] for e in entries] == ["execution_start", "execution_end"]
        assert entries[0]["execution_id"] == entries[1]["execution_id"]
        assert entries[1]["outcome"] == "ok"
        assert entries[0]["tool"] == "terraform"
        assert entries[0]["command"] == ["terraform", "fmt", "-check"]
        assert "secret" not in secure.audit_log_file.read_text(encoding="utf-8")

    def test_no_env_inherits_parent(self, secure, monkeypatch) -> None:
        captured = {}

        def fake_run(command, **kwargs):
            captured.update(kwargs)
            return FakeCompleted()

        monkeypatch.setattr(subprocess, "run", fake_run)
        secure.execute_command(["terraform", "version"])
        assert captured["env"] is None

    def test_undecodable_output_is_replaced(self, secure, monkeypatch) -> None:
        """Invalid UTF-8 from a tool is replaced rather than raising."""
        captured = {}

        def fake_run(command, **kwargs):
            captured.update(kwargs)
            return FakeCompleted()

        monkeypatch.setattr(subprocess, "run", fake_run)
        secure.execute_command(["terraform", "version"])
        assert captured["text"] is True
        assert captured["errors"] == "replace"

    def test_timeout_propagates(self, secure, monkeypatch) -> None:
        def fake_run(command, **kwargs):
            raise subprocess.TimeoutExpired(command, kwargs["timeout"])

        monkeypatch.setattr(subprocess, "run", fake_run)
        with pytest.raises(subprocess.TimeoutExpired):
            secure.execute_command(["terraform", "plan"], timeout=1)

        end = read_audit(secure)[-1]
        assert end["outcome"] == "timeout"

    def test_missing_binary(self, secure, monkeypatch) -> None:
        def fake_run(command, **kwargs):
            raise FileNotFoundError("terraform")

        monkeypatch.setattr(subprocess, "run", fake_run)
        with pytest.raises(OSError):
            secure.execute_command(["terraform", "version"])


class TestRedaction:
    """Tests for masking secret-bearing arguments in the audit trail."""

    def test_inline_var(self) -> None:
        assert redact_arguments(["terraform", "plan", "-var=db_password=hunter2"]) == [
            "terraform", "plan", "-var=db_password=***",
        ]

    def test_separated_var(self) -> None:
        assert redact_arguments(["terraform", "plan", "-var", "token=abc"]) == [
            "terraform", "plan", "-var", "token=***",
        ]

    def test_files_kept(self) -> None:
        command = ["terraform", "init", "-backend-config=backend.hcl", "-var-file=prod.tfvars"]
        assert redact_arguments(command) == command

    def test_backend_key_value(self) -> None:
        assert redact_arguments(["terraform", "init", "-backend-config=access_key=AKIA"]) == [
            "terraform", "init", "-backend-config=access_key=***",
        ]

    def test_audit_never_holds_value(self, secure, monkeypatch) -> None:
        monkeypatch.setattr(subprocess, "run", lambda command, **kwargs: FakeCompleted())
        secure.execute_command(["terraform", "plan", "-var=db_password=hunter2"])
        assert "hunter2" not in secure.audit_log_file.read_text(encoding="utf-8")
